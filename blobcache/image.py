"""
Image handle module for the blob cache.

Provides a minimal view of an image opened from any ``ImageReference``:
its manifest, config blob and layer list. Only OCI and Docker schema 2
manifests are understood.
"""

import json
import logging
from typing import Any

from .errors import ManifestError
from .reference import ImageReference, ImageSource
from .types import BlobInfo, SystemContext

logger = logging.getLogger(__name__)

MEDIA_TYPE_OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_TYPE_OCI_CONFIG = "application/vnd.oci.image.config.v1+json"
MEDIA_TYPE_DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"

SUPPORTED_MANIFEST_TYPES = (MEDIA_TYPE_OCI_MANIFEST, MEDIA_TYPE_DOCKER_MANIFEST)


def _parse(manifest: bytes) -> dict:
    try:
        parsed = json.loads(manifest)
    except (ValueError, UnicodeDecodeError) as e:
        raise ManifestError(f"manifest is not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise ManifestError("manifest is not a JSON object")
    return parsed


def guess_manifest_type(manifest: bytes) -> str:
    """
    Return the media type of a manifest from its content.

    Uses the "mediaType" field when present; a schema 2 manifest without one
    is assumed to be OCI. Returns "" when nothing fits.
    """
    try:
        parsed = _parse(manifest)
    except ManifestError:
        return ""
    if parsed.get("mediaType"):
        return parsed["mediaType"]
    if parsed.get("schemaVersion") == 2 and "config" in parsed:
        return MEDIA_TYPE_OCI_MANIFEST
    return ""


def _descriptor_info(descriptor: Any, is_config: bool) -> BlobInfo:
    if not isinstance(descriptor, dict) or not descriptor.get("digest"):
        raise ManifestError(f"invalid descriptor in manifest: {descriptor!r}")
    return BlobInfo(
        digest=descriptor["digest"],
        size=int(descriptor.get("size", -1)),
        is_config=is_config,
        media_type=descriptor.get("mediaType"),
    )


def manifest_config_info(manifest: bytes) -> BlobInfo:
    """Return the config descriptor of a schema 2 manifest."""
    return _descriptor_info(_parse(manifest).get("config"), True)


def manifest_layer_infos(manifest: bytes) -> list[BlobInfo]:
    """Return the layer descriptors of a schema 2 manifest, in order."""
    layers = _parse(manifest).get("layers", [])
    if not isinstance(layers, list):
        raise ManifestError("manifest layers is not a list")
    return [_descriptor_info(layer, False) for layer in layers]


class Image:
    """
    An image opened for reading.

    Blob reads go through the source the image was opened from, so an image
    opened from a BlobCache reads cached blobs first.

    Closing the image closes the source.
    """

    def __init__(self, source: ImageSource, manifest: bytes, media_type: str):
        if media_type not in SUPPORTED_MANIFEST_TYPES:
            raise ManifestError(f"unsupported manifest type {media_type!r}")
        self._source = source
        self.manifest = manifest
        self.manifest_media_type = media_type
        self.config_info = manifest_config_info(manifest)
        self.layer_infos = manifest_layer_infos(manifest)

    def reference(self) -> ImageReference:
        return self._source.reference()

    def config_blob(self, ctx: Any) -> bytes:
        stream, _ = self._source.get_blob(ctx, self.config_info)
        try:
            return stream.read()
        finally:
            stream.close()

    def layer_infos_for_copy(self, ctx: Any) -> list[BlobInfo]:
        """Return the layers a copy should transfer, after any substitution by the source."""
        infos = self._source.layer_infos_for_copy(ctx)
        if infos is None:
            return list(self.layer_infos)
        return infos

    def close(self) -> None:
        self._source.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


def from_reference(ctx: Any, sys: SystemContext | None, ref: ImageReference) -> Image:
    """
    Open the image a reference points at.

    Raises:
        ManifestError: if the manifest is malformed or of an unsupported type
        Whatever the reference's source raises when it cannot be reached
    """
    source = ref.new_image_source(ctx, sys)
    try:
        manifest, media_type = source.get_manifest(ctx)
        if not media_type:
            media_type = guess_manifest_type(manifest)
        img = Image(source, manifest, media_type)
    except Exception:
        source.close()
        raise
    logger.debug(f"Opened image with {len(img.layer_infos)} layers, config {img.config_info.digest}")
    return img
