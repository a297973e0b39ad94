"""
Writer side of the blob cache.

A ``BlobCacheDestination`` forwards everything to the wrapped destination
and keeps a copy of each blob in the cache directory. After storing a layer
it also stores the compressed or decompressed form the compression policy
asks for, and links the two with variant records.
"""

import logging
from typing import Any, BinaryIO

from .errors import CacheIOError
from .reference import ImageDestination, ImageReference
from .storage import CHUNK_SIZE, CachingReader, atomic_write
from .types import BlobInfo
from .validation import compute_sha256

logger = logging.getLogger(__name__)


class BlobCacheDestination(ImageDestination):
    """
    Image destination that writes through a BlobCache.

    Args:
        cache: The BlobCache this destination was opened from
        destination: Destination opened from the wrapped reference
    """

    def __init__(self, cache, destination: ImageDestination):
        self._cache = cache
        self._destination = destination

    def reference(self) -> ImageReference:
        return self._cache

    def put_blob(self, ctx: Any, stream: BinaryIO, blobinfo: BlobInfo, is_config: bool) -> BlobInfo:
        """
        Upload a blob to the wrapped destination, keeping a copy in the cache.

        The copy is only stored if the wrapped destination consumed the
        whole stream and the content matches blobinfo.digest (when given).
        Problems storing the copy are logged; the upload result is returned
        regardless.
        """
        present, _ = self._cache.has_blob(blobinfo)
        if present:
            logger.debug(f"Blob {blobinfo.digest} already cached, uploading without copying")
            return self._destination.put_blob(ctx, stream, blobinfo, is_config)

        reader = CachingReader(stream, self._cache.directory(), blobinfo.digest)
        try:
            info = self._destination.put_blob(ctx, reader, blobinfo, is_config)
        except Exception:
            reader.discard()
            raise

        # Destinations that stop after reading blobinfo.size bytes never see EOF
        if not reader.eof:
            try:
                while reader.read(CHUNK_SIZE):
                    pass
            except (OSError, ValueError) as e:
                logger.debug(f"Could not finish reading {blobinfo.digest} for the cache: {e}")

        digest = blobinfo.digest or reader.digest
        if reader.commit(self._cache.blob_path(digest, is_config)):
            logger.info(f"Cached {'config' if is_config else 'layer'} {digest} ({reader.size} bytes)")
            if not is_config:
                self._cache.store_variant(digest)
        return info

    def try_reusing_blob(self, ctx: Any, blobinfo: BlobInfo) -> tuple[bool, BlobInfo]:
        """
        Avoid a full upload when possible.

        If the wrapped destination cannot reuse the blob but the cache holds
        it, the cached copy is uploaded instead of fetching it again.
        """
        reused, info = self._destination.try_reusing_blob(ctx, blobinfo)
        if reused:
            return reused, info

        cached = self._cache.open_blob(blobinfo)
        if cached is None:
            return False, blobinfo
        f, size, is_config = cached
        logger.debug(f"Uploading {blobinfo.digest} from cache ({size} bytes)")
        with f:
            info = self._destination.put_blob(ctx, f, blobinfo.with_digest(blobinfo.digest, size), is_config)
        return True, info

    def put_manifest(self, ctx: Any, manifest: bytes, instance_digest: str | None = None) -> None:
        digest = instance_digest or compute_sha256(manifest)
        try:
            atomic_write(self._cache.blob_path(digest), manifest)
        except CacheIOError as e:
            logger.warning(f"Failed to cache manifest {digest}: {e}")
        self._destination.put_manifest(ctx, manifest, instance_digest)

    def commit(self, ctx: Any) -> None:
        self._destination.commit(ctx)

    def close(self) -> None:
        self._destination.close()
