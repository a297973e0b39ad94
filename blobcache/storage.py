"""
On-disk layout of the blob cache.

Directory layout (flat, names relative to the cache directory):

    <digest>               blob content, non-config
    <digest>.config        blob content, config object
    <digest>.compressed    variant link: digest of a compressed copy
    <digest>.decompressed  variant link: digest of a decompressed copy
    .tmp-*                 in-flight writes, renamed into place when complete

The directory may be shared by several threads and processes. Nothing here
locks; every file is written under a temporary name in the same directory and
then renamed, so readers see either no file or a complete one.
"""

import hashlib
import logging
import os
import tempfile

from .errors import CacheIOError
from .types import VariantKind

logger = logging.getLogger(__name__)

CONFIG_SUFFIX = ".config"
TEMP_PREFIX = ".tmp-"
GZIP_MAGIC = b"\x1f\x8b"
CHUNK_SIZE = 1024 * 1024


def make_filename(digest: str, is_config: bool) -> str:
    """
    Return the cache filename for a blob.

    Args:
        digest: Canonical digest string ("sha256:<hex>")
        is_config: Whether the blob is an image config object

    Returns:
        The digest itself, or the digest with ".config" appended for configs

    Example:
        >>> make_filename("sha256:abc", True)
        'sha256:abc.config'
    """
    if is_config:
        return digest + CONFIG_SUFFIX
    return digest


class AtomicFile:
    """
    A file written under a temporary name and renamed into place on commit.

    The final name may be decided after writing (e.g. once the digest of the
    streamed content is known). Leaving the ``with`` block without calling
    ``commit`` removes the temporary file.

    Example:
        >>> with AtomicFile(directory) as f:
        ...     f.write(data)
        ...     f.commit(os.path.join(directory, name))
    """

    def __init__(self, directory: str):
        fd, self.tmp_path = tempfile.mkstemp(dir=directory, prefix=TEMP_PREFIX)
        self.file = os.fdopen(fd, "wb")
        self.committed = False

    def write(self, data: bytes) -> int:
        return self.file.write(data)

    def commit(self, path: str) -> None:
        self.file.flush()
        os.fsync(self.file.fileno())
        self.file.close()
        os.replace(self.tmp_path, path)
        self.committed = True

    def discard(self) -> None:
        if not self.file.closed:
            self.file.close()
        if self.committed:
            return
        try:
            os.unlink(self.tmp_path)
        except FileNotFoundError:
            pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.discard()


def atomic_write(path: str, data: bytes) -> None:
    """
    Write data to path so that concurrent readers never observe a partial file.

    Raises:
        CacheIOError: if the temporary file cannot be written or renamed
    """
    try:
        with AtomicFile(os.path.dirname(path) or ".") as f:
            f.write(data)
            f.commit(path)
    except OSError as e:
        raise CacheIOError(f"writing {path}: {e}", operation="writing", path=path) from e
    logger.debug(f"Wrote {len(data)} bytes to {path}")


def variant_path(directory: str, digest: str, kind: VariantKind) -> str:
    return os.path.join(directory, digest + kind.suffix)


def record_variant(directory: str, owner: str, kind: VariantKind, target: str) -> None:
    """
    Record that the compressed or decompressed counterpart of owner is stored as target.

    The link is advisory: it does not imply target is (still) in the cache.

    Raises:
        CacheIOError: if the link file cannot be written
    """
    path = variant_path(directory, owner, kind)
    atomic_write(path, target.encode("utf-8"))
    logger.debug(f"Recorded variant link {owner}{kind.suffix} -> {target}")


def resolve_variant(directory: str, digest: str, kind: VariantKind) -> tuple[str | None, bool]:
    """
    Read the variant link of the given kind for digest.

    Returns:
        (target_digest, True) if a link exists, (None, False) otherwise

    Raises:
        CacheIOError: if the link exists but cannot be read
    """
    path = variant_path(directory, digest, kind)
    try:
        with open(path, "rb") as f:
            target = f.read().decode("utf-8").strip()
    except FileNotFoundError:
        return None, False
    except (OSError, UnicodeDecodeError) as e:
        raise CacheIOError(f"reading variant link {path}: {e}", operation="reading variant link", path=path) from e

    if not target:
        logger.warning(f"Ignoring empty variant link {path}")
        return None, False
    return target, True


class CachingReader:
    """
    A read-only stream that copies everything read from another stream into the cache.

    The copy goes to a temporary file and is only renamed into place once the
    wrapped stream has been read to the end and the content matches the
    expected digest. Failures on the cache side are logged and stop the copy;
    they never interrupt the reader.

    Args:
        stream: The stream being read (e.g. a remote blob)
        directory: Cache directory for the temporary file
        expected_digest: Digest the content must hash to, or "" if unknown
        path: If given, commit to this path automatically at end of stream
        on_commit: Called with no arguments after the copy is stored
    """

    def __init__(self, stream, directory: str, expected_digest: str = "", path: str | None = None, on_commit=None):
        self._stream = stream
        self._expected = expected_digest
        self._path = path
        self._on_commit = on_commit
        self._hasher = hashlib.sha256()
        self.size = 0
        self.eof = False
        self.committed = False
        try:
            self._atomic = AtomicFile(directory)
        except OSError as e:
            logger.warning(f"Not caching blob {expected_digest or '(unknown digest)'}: {e}")
            self._atomic = None

    @property
    def digest(self) -> str:
        return "sha256:" + self._hasher.hexdigest()

    def readable(self) -> bool:
        return True

    def read(self, n: int = -1) -> bytes:
        data = self._stream.read(n)
        if data:
            self._hasher.update(data)
            self.size += len(data)
            if self._atomic is not None:
                try:
                    self._atomic.write(data)
                except OSError as e:
                    logger.warning(f"Stopped caching blob {self._expected or '(unknown digest)'}: {e}")
                    self.discard()

        # An unbounded read, or an empty result for a bounded one, means end of stream
        if (n is None or n < 0 or not data) and n != 0 and not self.eof:
            self.eof = True
            if self._path is not None:
                self.commit(self._path)
        return data

    def commit(self, path: str) -> bool:
        """
        Rename the copy into place at path.

        Returns:
            True if the copy is now stored at path, False if it was discarded
        """
        if self.committed:
            return True
        if self._atomic is None or not self.eof:
            self.discard()
            return False
        if self._expected.startswith("sha256:") and self._expected != self.digest:
            logger.warning(f"Not caching blob: expected digest {self._expected}, got {self.digest}")
            self.discard()
            return False
        try:
            self._atomic.commit(path)
        except OSError as e:
            logger.warning(f"Failed to store {path}: {e}")
            self.discard()
            return False
        self.committed = True
        logger.debug(f"Cached {self.size} bytes as {path}")
        if self._on_commit is not None:
            self._on_commit()
        return True

    def discard(self) -> None:
        if self._atomic is not None:
            self._atomic.discard()
            self._atomic = None

    def close(self) -> None:
        if not self.committed:
            self.discard()
        self._stream.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class HashingWriter:
    """Write-only file object that hashes what it passes on to an AtomicFile."""

    def __init__(self, atomic: AtomicFile):
        self._atomic = atomic
        self._hasher = hashlib.sha256()

    def write(self, data) -> int:
        self._hasher.update(data)
        return self._atomic.write(data)

    def flush(self) -> None:
        pass

    @property
    def digest(self) -> str:
        return "sha256:" + self._hasher.hexdigest()


def is_gzip(path: str) -> bool:
    with open(path, "rb") as f:
        return f.read(2) == GZIP_MAGIC
