"""
Exception hierarchy for the blob cache.

Every exception carries a human-readable message and an optional context
dictionary (operation, path, digest, ...) that is rendered into ``str()`` so
log lines are diagnosable without a traceback.

Absence of a blob is never an exception: ``BlobCache.has_blob`` and
``resolve_variant`` report it through their return values.
"""

from typing import Any


class BlobCacheError(Exception):
    """Base exception for all blob cache errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(BlobCacheError):
    """Raised when a cache is constructed with an unusable directory or policy."""


class CacheIOError(BlobCacheError):
    """Raised when a filesystem operation on the cache fails for a reason other than absence.

    Context includes:
        - operation: what was being done (e.g. "checking size")
        - path: the file or directory involved
    """

    def __init__(self, message: str, operation: str, path: str, context: dict[str, Any] | None = None) -> None:
        merged = {"operation": operation, "path": path}
        merged.update(context or {})
        super().__init__(message, merged)
        self.operation = operation
        self.path = path


class ClearCacheError(CacheIOError):
    """Raised when clearing the cache stops part way.

    Entries removed before the failure stay removed; the directory contents
    are indeterminate afterwards.
    """


class ManifestError(BlobCacheError):
    """Raised when an image manifest cannot be interpreted."""


class BlobNotFoundError(BlobCacheError):
    """Raised when a blob is neither cached nor available from the wrapped endpoint."""


class UnsupportedOperationError(BlobCacheError):
    """Raised when an endpoint does not support the requested operation."""
