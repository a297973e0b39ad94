"""
Blob cache store.

A ``BlobCache`` wraps an image reference. Blobs written to destinations
opened from it are also saved to a local directory, and sources opened from
it read blobs back from that directory before asking the wrapped reference.
"""

import gzip
import logging
import os
import shutil
import zlib
from typing import Any, BinaryIO

from . import image
from .destination import BlobCacheDestination
from .errors import CacheIOError, ClearCacheError, ConfigurationError
from .reference import ImageDestination, ImageReference, ImageSource, ImageTransport, image_name
from .source import BlobCacheSource
from .storage import (
    CHUNK_SIZE,
    AtomicFile,
    HashingWriter,
    is_gzip,
    make_filename,
    record_variant,
    resolve_variant,
)
from .types import (
    COMPRESSED_MEDIA_TYPES,
    DECOMPRESSED_MEDIA_TYPES,
    BlobInfo,
    LayerCompression,
    SystemContext,
    VariantKind,
)

logger = logging.getLogger(__name__)

POLICY_VARIANTS = {
    LayerCompression.COMPRESS: VariantKind.COMPRESSED,
    LayerCompression.DECOMPRESS: VariantKind.DECOMPRESSED,
}


class BlobCache(ImageReference):
    """
    An image reference that saves copies of blobs passing through it.

    Args:
        reference: The wrapped image reference; identity and deletion are forwarded to it
        directory: Existing directory holding cached blobs. It may be shared by
            several threads and processes at once.
        compress: Which representation of a layer readers should prefer when
            the cache holds more than one

    Raises:
        ConfigurationError: if directory is empty or compress is not a LayerCompression
    """

    def __init__(self, reference: ImageReference, directory: str, compress: LayerCompression):
        if not directory:
            raise ConfigurationError(
                f"error creating cache around reference {image_name(reference)!r}: no directory specified"
            )
        if not isinstance(compress, LayerCompression):
            raise ConfigurationError(f"unhandled LayerCompression value {compress!r}")
        self._reference = reference
        self._directory = directory
        self._compress = compress

    def __repr__(self):
        return f"BlobCache({image_name(self._reference)!r}, directory={self._directory!r}, compress={self._compress.name})"

    @property
    def compress(self) -> LayerCompression:
        return self._compress

    @property
    def wrapped(self) -> ImageReference:
        return self._reference

    # Identity, forwarded to the wrapped reference

    def transport(self) -> ImageTransport:
        return self._reference.transport()

    def string_within_transport(self) -> str:
        return self._reference.string_within_transport()

    def docker_reference(self) -> str | None:
        return self._reference.docker_reference()

    def policy_configuration_identity(self) -> str:
        return self._reference.policy_configuration_identity()

    def policy_configuration_namespaces(self) -> list[str]:
        return self._reference.policy_configuration_namespaces()

    def delete_image(self, ctx: Any, sys: SystemContext | None = None) -> None:
        self._reference.delete_image(ctx, sys)

    # Cache

    def directory(self) -> str:
        return self._directory

    def blob_path(self, digest: str, is_config: bool = False) -> str:
        return os.path.join(self._directory, make_filename(digest, is_config))

    def has_blob(self, blobinfo: BlobInfo) -> tuple[bool, int]:
        """
        Check whether the cache holds a blob.

        Both the plain and the config filename are tried. A stored blob only
        counts if blobinfo.size is -1 or equals the stored size.

        Returns:
            (True, stored_size) if found, (False, -1) otherwise

        Raises:
            CacheIOError: if a stat fails for any reason other than the file not existing
        """
        if not blobinfo.digest:
            return False, -1

        for is_config in (False, True):
            filename = self.blob_path(blobinfo.digest, is_config)
            try:
                size = os.stat(filename).st_size
            except FileNotFoundError:
                continue
            except OSError as e:
                raise CacheIOError(f"checking size: {e}", operation="checking size", path=filename) from e
            if blobinfo.size == -1 or blobinfo.size == size:
                return True, size

        return False, -1

    def open_blob(self, blobinfo: BlobInfo) -> tuple[BinaryIO, int, bool] | None:
        """
        Open a cached blob for reading.

        Applies the same rule as has_blob: both filename forms are tried,
        and a stored file only counts if blobinfo.size is -1 or equals its size.

        Returns:
            (file, size, is_config) for the first matching form, or None

        Raises:
            CacheIOError: if a cached file exists but cannot be opened
        """
        if not blobinfo.digest:
            return None
        for is_config in (False, True):
            filename = self.blob_path(blobinfo.digest, is_config)
            try:
                f = open(filename, "rb")
            except FileNotFoundError:
                continue
            except OSError as e:
                raise CacheIOError(f"opening {filename}: {e}", operation="opening", path=filename) from e
            size = os.fstat(f.fileno()).st_size
            if blobinfo.size == -1 or blobinfo.size == size:
                return f, size, is_config
            f.close()
        return None

    def record_variant(self, owner: str, kind: VariantKind, target: str) -> None:
        record_variant(self._directory, owner, kind, target)

    def resolve_variant(self, digest: str, kind: VariantKind) -> tuple[str | None, bool]:
        return resolve_variant(self._directory, digest, kind)

    def select_blob(self, blobinfo: BlobInfo) -> BlobInfo:
        """
        Apply the compression policy to a blob.

        Returns the info of the cached variant the policy prefers, or
        blobinfo unchanged when the policy preserves originals, no link
        exists, or the linked blob is not actually in the cache.
        """
        kind = POLICY_VARIANTS.get(self._compress)
        if kind is None or not blobinfo.digest:
            return blobinfo

        target, found = self.resolve_variant(blobinfo.digest, kind)
        if not found:
            return blobinfo

        present, size = self.has_blob(BlobInfo(digest=target))
        if not present:
            logger.debug(f"Ignoring stale variant link {blobinfo.digest}{kind.suffix} -> {target}")
            return blobinfo

        media_types = COMPRESSED_MEDIA_TYPES if kind is VariantKind.COMPRESSED else DECOMPRESSED_MEDIA_TYPES
        media_type = media_types.get(blobinfo.media_type, blobinfo.media_type)
        logger.debug(f"Substituting {target} for {blobinfo.digest} ({self._compress.name})")
        return blobinfo.with_digest(target, size, media_type)

    def store_variant(self, digest: str) -> str | None:
        """
        Store the layer variant the compression policy prefers, next to the cached layer.

        COMPRESS gzips an uncompressed layer, DECOMPRESS gunzips a compressed
        one; otherwise nothing is written. The new blob is stored under its
        own digest and variant links are recorded in both directions.
        Failures are logged, since the cached original stays usable.

        Returns:
            The digest of the stored variant, or None
        """
        if self._compress is LayerCompression.PRESERVE_ORIGINAL:
            return None

        path = self.blob_path(digest)
        try:
            compressed = is_gzip(path)
            if self._compress is LayerCompression.COMPRESS and not compressed:
                target = self._write_variant(path, compress=True)
                self.record_variant(digest, VariantKind.COMPRESSED, target)
                self.record_variant(target, VariantKind.DECOMPRESSED, digest)
            elif self._compress is LayerCompression.DECOMPRESS and compressed:
                target = self._write_variant(path, compress=False)
                self.record_variant(digest, VariantKind.DECOMPRESSED, target)
                self.record_variant(target, VariantKind.COMPRESSED, digest)
            else:
                return None
        except (OSError, EOFError, zlib.error, CacheIOError) as e:
            logger.warning(f"Failed to store {self._compress.value}ed variant of {digest}: {e}")
            return None

        logger.info(f"Stored {self._compress.value}ed variant of {digest} as {target}")
        return target

    def _write_variant(self, path: str, compress: bool) -> str:
        with AtomicFile(self._directory) as atomic:
            writer = HashingWriter(atomic)
            with open(path, "rb") as src:
                if compress:
                    # Fixed mtime and no filename, so equal content gives an equal digest
                    with gzip.GzipFile(filename="", mode="wb", fileobj=writer, mtime=0) as gz:
                        shutil.copyfileobj(src, gz, CHUNK_SIZE)
                else:
                    with gzip.GzipFile(fileobj=src, mode="rb") as gz:
                        shutil.copyfileobj(gz, writer, CHUNK_SIZE)
            target = writer.digest
            atomic.commit(self.blob_path(target))
        return target

    def clear_cache(self) -> None:
        """
        Remove every entry from the cache directory.

        Not atomic: on the first failure, entries already removed stay
        removed. Writes racing the clear may or may not survive it.

        Raises:
            CacheIOError: if the directory cannot be listed (nothing is removed)
            ClearCacheError: if an entry cannot be removed
        """
        try:
            with os.scandir(self._directory) as it:
                entries = list(it)
        except OSError as e:
            raise CacheIOError(
                f"error reading directory {self._directory!r}: {e}",
                operation="listing", path=self._directory,
            ) from e

        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    shutil.rmtree(entry.path)
                else:
                    os.unlink(entry.path)
            except FileNotFoundError:
                continue
            except OSError as e:
                raise ClearCacheError(
                    f"clearing cache for {image_name(self)!r}: {e}",
                    operation="removing", path=entry.path,
                ) from e

        logger.info(f"Cleared {len(entries)} entries from {self._directory}")

    # Images

    def new_image(self, ctx: Any, sys: SystemContext | None = None) -> "image.Image":
        return image.from_reference(ctx, sys, self)

    def new_image_source(self, ctx: Any, sys: SystemContext | None = None) -> ImageSource:
        return BlobCacheSource(self, self._reference.new_image_source(ctx, sys))

    def new_image_destination(self, ctx: Any, sys: SystemContext | None = None) -> ImageDestination:
        return BlobCacheDestination(self, self._reference.new_image_destination(ctx, sys))


def new_blob_cache(reference: ImageReference, directory: str, compress: LayerCompression) -> BlobCache:
    """Create a BlobCache; see BlobCache for arguments and errors."""
    return BlobCache(reference, directory, compress)
