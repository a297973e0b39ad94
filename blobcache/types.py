"""
Shared value types for the blob cache.
"""

from dataclasses import dataclass, field, replace
from enum import Enum


# OCI and Docker layer media types, with their gzip-compressed counterparts
MEDIA_TYPE_OCI_LAYER = "application/vnd.oci.image.layer.v1.tar"
MEDIA_TYPE_OCI_LAYER_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"
MEDIA_TYPE_DOCKER_LAYER = "application/vnd.docker.image.rootfs.diff.tar"
MEDIA_TYPE_DOCKER_LAYER_GZIP = "application/vnd.docker.image.rootfs.diff.tar.gzip"

COMPRESSED_MEDIA_TYPES = {
    MEDIA_TYPE_OCI_LAYER: MEDIA_TYPE_OCI_LAYER_GZIP,
    MEDIA_TYPE_DOCKER_LAYER: MEDIA_TYPE_DOCKER_LAYER_GZIP,
}
DECOMPRESSED_MEDIA_TYPES = {v: k for k, v in COMPRESSED_MEDIA_TYPES.items()}


class LayerCompression(Enum):
    """Which representation of a layer readers should prefer."""

    COMPRESS = "compress"
    DECOMPRESS = "decompress"
    PRESERVE_ORIGINAL = "preserve"

    @classmethod
    def from_string(cls, value: str) -> "LayerCompression":
        """
        Parse a policy name as used in configuration.

        Raises:
            ValueError: if the name is not one of compress, decompress, preserve
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown layer compression {value!r}: expected one of "
                f"{', '.join(member.value for member in cls)}"
            ) from None


class VariantKind(Enum):
    """Kind of alternate representation a variant link points at."""

    COMPRESSED = ".compressed"
    DECOMPRESSED = ".decompressed"

    @property
    def suffix(self) -> str:
        return self.value


@dataclass(frozen=True)
class BlobInfo:
    """
    Identifies a logical blob.

    Attributes:
        digest: Canonical digest string ("sha256:<hex>"); empty when unknown
        size: Size in bytes, -1 when unknown
        is_config: Whether the blob is an image config object
        media_type: Optional media type carried through from the manifest
    """

    digest: str
    size: int = -1
    is_config: bool = False
    media_type: str | None = None

    def with_digest(self, digest: str, size: int, media_type: str | None = None) -> "BlobInfo":
        return replace(self, digest=digest, size=size, media_type=media_type or self.media_type)


@dataclass
class SystemContext:
    """
    Host-level settings threaded through delegated endpoint operations.

    The cache itself never reads these; they exist so endpoints can receive
    whatever the host configured.
    """

    tmp_dir: str | None = None
    extra: dict = field(default_factory=dict)
