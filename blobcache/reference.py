"""
Capability interfaces for image endpoints.

The blob cache wraps an ``ImageReference`` supplied by the host and itself
implements ``ImageReference``, so it can be used anywhere the wrapped
reference could. Sources and destinations opened from a reference move
manifests and blobs.

Operations that may block on the network take ``ctx``, an opaque
cancellation token (a ``threading.Event`` or anything the endpoint
understands), and ``sys``, an optional ``SystemContext``. Neither is
interpreted by the cache; they are passed through to the endpoint.
"""

from abc import ABC, abstractmethod
from typing import Any, BinaryIO

from .types import BlobInfo, SystemContext


class ImageTransport(ABC):
    """A named family of image references (e.g. "docker", "tarball")."""

    @abstractmethod
    def name(self) -> str:
        ...


class ImageSource(ABC):
    """Read side of an image endpoint."""

    @abstractmethod
    def reference(self) -> "ImageReference":
        ...

    @abstractmethod
    def get_manifest(self, ctx: Any, instance_digest: str | None = None) -> tuple[bytes, str]:
        """Return the manifest bytes and their media type."""

    @abstractmethod
    def get_blob(self, ctx: Any, blobinfo: BlobInfo) -> tuple[BinaryIO, int]:
        """Return an open binary stream for the blob and its size (-1 if unknown)."""

    def layer_infos_for_copy(self, ctx: Any) -> list[BlobInfo] | None:
        """Return layer infos to use instead of the manifest's, or None to use the manifest's."""
        return None

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class ImageDestination(ABC):
    """Write side of an image endpoint."""

    @abstractmethod
    def reference(self) -> "ImageReference":
        ...

    @abstractmethod
    def put_blob(self, ctx: Any, stream: BinaryIO, blobinfo: BlobInfo, is_config: bool) -> BlobInfo:
        """Upload a blob, returning the info actually stored."""

    def try_reusing_blob(self, ctx: Any, blobinfo: BlobInfo) -> tuple[bool, BlobInfo]:
        """Check whether the blob is already present at the destination."""
        return False, blobinfo

    @abstractmethod
    def put_manifest(self, ctx: Any, manifest: bytes, instance_digest: str | None = None) -> None:
        ...

    def commit(self, ctx: Any) -> None:
        pass

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class ImageReference(ABC):
    """An image location within some transport."""

    @abstractmethod
    def transport(self) -> ImageTransport:
        ...

    @abstractmethod
    def string_within_transport(self) -> str:
        ...

    @abstractmethod
    def docker_reference(self) -> str | None:
        """Canonical registry name of the image, or None if it has none."""

    @abstractmethod
    def policy_configuration_identity(self) -> str:
        ...

    @abstractmethod
    def policy_configuration_namespaces(self) -> list[str]:
        ...

    @abstractmethod
    def new_image(self, ctx: Any, sys: SystemContext | None = None):
        ...

    @abstractmethod
    def new_image_source(self, ctx: Any, sys: SystemContext | None = None) -> ImageSource:
        ...

    @abstractmethod
    def new_image_destination(self, ctx: Any, sys: SystemContext | None = None) -> ImageDestination:
        ...

    @abstractmethod
    def delete_image(self, ctx: Any, sys: SystemContext | None = None) -> None:
        ...


def image_name(ref: ImageReference) -> str:
    """Return the "transport:name" form of a reference, for messages."""
    return f"{ref.transport().name()}:{ref.string_within_transport()}"
