"""
Reader side of the blob cache.

A ``BlobCacheSource`` answers blob reads from the cache directory when it
can, and otherwise reads from the wrapped source, saving what it reads.
"""

import logging
from typing import Any, BinaryIO

from .errors import CacheIOError
from .image import guess_manifest_type, manifest_layer_infos
from .reference import ImageReference, ImageSource
from .storage import CachingReader, atomic_write
from .types import BlobInfo, LayerCompression

logger = logging.getLogger(__name__)


class BlobCacheSource(ImageSource):
    """
    Image source that reads through a BlobCache.

    Args:
        cache: The BlobCache this source was opened from
        source: Source opened from the wrapped reference
    """

    def __init__(self, cache, source: ImageSource):
        self._cache = cache
        self._source = source

    def reference(self) -> ImageReference:
        return self._cache

    def get_manifest(self, ctx: Any, instance_digest: str | None = None) -> tuple[bytes, str]:
        """
        Return a manifest and its media type.

        Manifests requested by digest are served from, and saved to, the cache.
        The top-level manifest (no digest) is always fetched, since the
        wrapped reference may point at a moving tag.
        """
        if instance_digest:
            cached = self._cache.open_blob(BlobInfo(instance_digest))
            if cached is not None:
                f, size, _ = cached
                with f:
                    manifest = f.read()
                logger.debug(f"Manifest {instance_digest} served from cache ({size} bytes)")
                return manifest, guess_manifest_type(manifest)

        manifest, media_type = self._source.get_manifest(ctx, instance_digest)
        if instance_digest:
            try:
                atomic_write(self._cache.blob_path(instance_digest), manifest)
            except CacheIOError as e:
                logger.warning(f"Failed to cache manifest {instance_digest}: {e}")
        return manifest, media_type

    def get_blob(self, ctx: Any, blobinfo: BlobInfo) -> tuple[BinaryIO, int]:
        """
        Return an open stream for a blob and its size.

        Raises:
            CacheIOError: if the blob is cached but cannot be read
            Whatever the wrapped source raises on a cache miss
        """
        cached = self._cache.open_blob(blobinfo)
        if cached is not None:
            f, size, _ = cached
            logger.debug(f"Cache hit: {blobinfo.digest} ({size} bytes)")
            return f, size

        logger.debug(f"Cache miss: {blobinfo.digest}, reading from {self._cache.transport().name()}")
        stream, size = self._source.get_blob(ctx, blobinfo)
        if not blobinfo.digest:
            return stream, size
        path = self._cache.blob_path(blobinfo.digest, blobinfo.is_config)
        on_commit = None if blobinfo.is_config else lambda: self._cache.store_variant(blobinfo.digest)
        reader = CachingReader(stream, self._cache.directory(), blobinfo.digest, path=path, on_commit=on_commit)
        return reader, size

    def layer_infos_for_copy(self, ctx: Any) -> list[BlobInfo] | None:
        """
        Return the layer list with cached variants substituted per the compression policy.

        With PRESERVE_ORIGINAL the wrapped source's answer is returned as is.
        """
        infos = self._source.layer_infos_for_copy(ctx)
        if self._cache.compress is LayerCompression.PRESERVE_ORIGINAL:
            return infos

        if infos is None:
            manifest, _ = self.get_manifest(ctx)
            infos = manifest_layer_infos(manifest)
        return [self._cache.select_blob(info) for info in infos]

    def close(self) -> None:
        self._source.close()
