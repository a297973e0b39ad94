"""
Image tarball endpoint.

A read-only ``ImageReference`` over a ``docker save`` style archive
(``manifest.json`` plus config and layer members, optionally gzipped). It is
the endpoint the HTTP front-end wraps in a BlobCache.
"""

import io
import json
import logging
import os
import tarfile
from functools import lru_cache
from typing import Any, BinaryIO

from . import image
from .config import config
from .errors import BlobNotFoundError, ManifestError, UnsupportedOperationError
from .reference import ImageDestination, ImageReference, ImageSource, ImageTransport
from .types import MEDIA_TYPE_OCI_LAYER, MEDIA_TYPE_OCI_LAYER_GZIP, BlobInfo, SystemContext
from .validation import compute_sha256

logger = logging.getLogger(__name__)

TRANSPORT_NAME = "tarball"


class TarballTransport(ImageTransport):
    def name(self) -> str:
        return TRANSPORT_NAME


TRANSPORT = TarballTransport()


@lru_cache(maxsize=config.CACHE_SIZE)
def _load_archive(tar_path: str, mtime_ns: int) -> dict:
    logger.debug(f"Loading image archive {tar_path}")

    try:
        with tarfile.open(tar_path, "r:*") as tar:
            manifest_member = tar.getmember("manifest.json")
            manifest_data = json.load(tar.extractfile(manifest_member))[0]

            config_name = manifest_data["Config"]
            layer_files = manifest_data["Layers"]
            logger.debug(f"Found config: {config_name}, layers: {len(layer_files)}")

            config_bytes = tar.extractfile(config_name).read()
            config_digest = compute_sha256(config_bytes)

            # Only metadata is kept for layers; their bytes are re-read on demand
            layers = []
            for idx, layer_name in enumerate(layer_files, 1):
                layer_bytes = tar.extractfile(layer_name).read()
                digest = compute_sha256(layer_bytes)
                media_type = MEDIA_TYPE_OCI_LAYER_GZIP if layer_bytes[:2] == b"\x1f\x8b" else MEDIA_TYPE_OCI_LAYER
                logger.debug(f"Layer {idx}/{len(layer_files)}: {digest}, size: {len(layer_bytes)} bytes")
                layers.append({
                    "name": layer_name,
                    "digest": digest,
                    "size": len(layer_bytes),
                    "mediaType": media_type,
                })
    except (KeyError, IndexError, TypeError, ValueError, tarfile.TarError) as e:
        raise ManifestError(f"invalid image archive {tar_path}: {e}") from e

    logger.info(f"Loaded image archive {tar_path}: {len(layers)} layers")
    return {
        "config": {
            "name": config_name,
            "digest": config_digest,
            "size": len(config_bytes),
            "bytes": config_bytes,
        },
        "layers": layers,
    }


def load_archive(tar_path: str) -> dict:
    """
    Load archive metadata: config (with bytes), and digest, size and media type of each layer.

    Results are cached per (path, modification time) with an LRU cache of
    CACHE_SIZE entries.

    Raises:
        FileNotFoundError: if the archive does not exist
        ManifestError: if the archive is not a valid image tarball
    """
    return _load_archive(tar_path, os.stat(tar_path).st_mtime_ns)


def build_manifest(meta: dict) -> bytes:
    """Build the OCI image manifest for archive metadata returned by load_archive."""
    manifest = {
        "schemaVersion": 2,
        "mediaType": image.MEDIA_TYPE_OCI_MANIFEST,
        "config": {
            "mediaType": image.MEDIA_TYPE_OCI_CONFIG,
            "digest": meta["config"]["digest"],
            "size": meta["config"]["size"],
        },
        "layers": [
            {
                "mediaType": layer["mediaType"],
                "digest": layer["digest"],
                "size": layer["size"],
            }
            for layer in meta["layers"]
        ],
    }
    return json.dumps(manifest).encode("utf-8")


class TarballReference(ImageReference):
    """Reference to an image tarball at a filesystem path."""

    def __init__(self, path: str):
        if not path:
            raise ValueError("tarball reference requires a path")
        self.path = path

    def __repr__(self):
        return f"TarballReference({self.path!r})"

    def transport(self) -> ImageTransport:
        return TRANSPORT

    def string_within_transport(self) -> str:
        return self.path

    def docker_reference(self) -> str | None:
        return None

    def policy_configuration_identity(self) -> str:
        return os.path.abspath(self.path)

    def policy_configuration_namespaces(self) -> list[str]:
        """Return the enclosing directories of the archive, innermost first."""
        namespaces = []
        current = os.path.dirname(os.path.abspath(self.path))
        while True:
            namespaces.append(current)
            parent = os.path.dirname(current)
            if parent == current:
                break
            current = parent
        return namespaces

    def new_image(self, ctx: Any, sys: SystemContext | None = None) -> image.Image:
        return image.from_reference(ctx, sys, self)

    def new_image_source(self, ctx: Any, sys: SystemContext | None = None) -> ImageSource:
        return TarballSource(self)

    def new_image_destination(self, ctx: Any, sys: SystemContext | None = None) -> ImageDestination:
        raise UnsupportedOperationError(f"{TRANSPORT_NAME} images are read-only", {"path": self.path})

    def delete_image(self, ctx: Any, sys: SystemContext | None = None) -> None:
        logger.info(f"Deleting image tarball {self.path}")
        os.unlink(self.path)


class TarballSource(ImageSource):
    """Reads the manifest and blobs of an image tarball."""

    def __init__(self, ref: TarballReference):
        self._ref = ref

    def reference(self) -> ImageReference:
        return self._ref

    def get_manifest(self, ctx: Any, instance_digest: str | None = None) -> tuple[bytes, str]:
        manifest = build_manifest(load_archive(self._ref.path))
        if instance_digest and instance_digest != compute_sha256(manifest):
            raise BlobNotFoundError(f"manifest {instance_digest} not found", {"path": self._ref.path})
        return manifest, image.MEDIA_TYPE_OCI_MANIFEST

    def get_blob(self, ctx: Any, blobinfo: BlobInfo) -> tuple[BinaryIO, int]:
        """
        Return a specific blob (config or layer) from the tarball by digest.

        Raises:
            BlobNotFoundError: if no member of the archive has that digest
        """
        meta = load_archive(self._ref.path)
        if meta["config"]["digest"] == blobinfo.digest:
            logger.debug(f"Found config blob: {blobinfo.digest}")
            data = meta["config"]["bytes"]
            return io.BytesIO(data), len(data)

        for layer in meta["layers"]:
            if layer["digest"] == blobinfo.digest:
                with tarfile.open(self._ref.path, "r:*") as tar:
                    data = tar.extractfile(layer["name"]).read()
                logger.debug(f"Found layer blob: {blobinfo.digest}")
                return io.BytesIO(data), len(data)

        logger.debug(f"Blob not found: {blobinfo.digest}")
        raise BlobNotFoundError(f"blob {blobinfo.digest} not found", {"path": self._ref.path})


def parse_reference(reference: str) -> TarballReference:
    """
    Parse "tarball:<path>" into a TarballReference.

    Raises:
        ValueError: for another transport or an empty path
    """
    transport, sep, path = reference.partition(":")
    if not sep or transport != TRANSPORT_NAME:
        raise ValueError(f"not a {TRANSPORT_NAME} reference: {reference!r}")
    return TarballReference(path)
