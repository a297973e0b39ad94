"""
Write-through blob cache for container images.

A BlobCache wraps an image reference and keeps a local copy of every blob
that passes through it, keyed by digest. Later reads are served from disk,
and a compression policy can substitute a compressed or decompressed copy
of a layer that holds the same content.

Features:
    - Content-addressed storage under a flat, shareable directory
    - Existence checks that tell "absent" from "unreadable"
    - Variant links between compressed and decompressed layer copies
    - Atomic temp-file-then-rename writes, safe across processes
    - Reader and writer adapters that wrap any image source or destination
    - Image tarball endpoint and a pull-through OCI registry front-end
    - Configurable via environment variables

Cache Directory Layout:
    <digest>               layer blob
    <digest>.config        config blob
    <digest>.compressed    digest of the compressed copy of <digest>
    <digest>.decompressed  digest of the decompressed copy of <digest>

See README.md for full documentation.
"""

__version__ = "0.1.0"

from .blobcache import BlobCache, new_blob_cache
from .config import Config
from .errors import (
    BlobCacheError,
    BlobNotFoundError,
    CacheIOError,
    ClearCacheError,
    ConfigurationError,
    ManifestError,
    UnsupportedOperationError,
)
from .image import Image, from_reference
from .reference import ImageDestination, ImageReference, ImageSource, ImageTransport, image_name
from .storage import make_filename
from .types import BlobInfo, LayerCompression, SystemContext, VariantKind

__all__ = [
    "BlobCache",
    "new_blob_cache",
    "Config",
    "BlobCacheError",
    "BlobNotFoundError",
    "CacheIOError",
    "ClearCacheError",
    "ConfigurationError",
    "ManifestError",
    "UnsupportedOperationError",
    "Image",
    "from_reference",
    "ImageDestination",
    "ImageReference",
    "ImageSource",
    "ImageTransport",
    "image_name",
    "make_filename",
    "BlobInfo",
    "LayerCompression",
    "SystemContext",
    "VariantKind",
]
