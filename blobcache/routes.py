"""
Flask application serving cached image blobs.

Implements the read side of the OCI Distribution Specification v1.0 on top of
image tarballs under IMAGE_ROOT, with every blob read going through a
BlobCache, plus two endpoints to inspect and clear the cache.
"""

import json
import logging
import os
from flask import Flask, Response, abort, current_app, jsonify, make_response, request

from .blobcache import BlobCache
from .config import config
from .errors import BlobNotFoundError, CacheIOError, ConfigurationError, ManifestError
from .image import manifest_config_info, manifest_layer_infos
from .storage import CHUNK_SIZE
from .tarball import TarballReference
from .types import BlobInfo, LayerCompression
from .validation import compute_sha256, validate_digest, validate_image_name, validate_tag

logger = logging.getLogger(__name__)

BLOB_MIMETYPE = "application/octet-stream"


def _cache_for(image_name: str) -> BlobCache:
    """Return a BlobCache wrapping the tarball for image_name, or abort with 404."""
    tar_path = os.path.join(current_app.config["IMAGE_ROOT"], f"{image_name}.tar.gz")
    if not os.path.isfile(tar_path):
        logger.warning(f"Image tarball not found: {tar_path}")
        abort(404, f"Image '{image_name}' not found")
    return BlobCache(
        TarballReference(tar_path),
        current_app.config["BLOB_CACHE_DIR"],
        current_app.config["BLOB_CACHE_COMPRESSION"],
    )


def _substitute_layers(manifest: bytes, infos: list[BlobInfo]) -> bytes:
    """Rewrite the layer descriptors of a manifest with the given infos, if any differ."""
    if infos == manifest_layer_infos(manifest):
        return manifest
    parsed = json.loads(manifest)
    parsed["layers"] = [
        {"mediaType": info.media_type, "digest": info.digest, "size": info.size}
        for info in infos
    ]
    return json.dumps(parsed).encode("utf-8")


def _blob_info(cache: BlobCache, digest: str) -> BlobInfo:
    """Build the descriptor for digest, marked as a config blob when the image manifest says so."""
    with cache.new_image_source(None) as src:
        manifest, _ = src.get_manifest(None)
    return BlobInfo(digest=digest, is_config=manifest_config_info(manifest).digest == digest)


def _iter_blob(stream):
    with stream:
        while True:
            chunk = stream.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk


def v2_root():
    """
    OCI Distribution API version check endpoint.

    Headers:
        Docker-Distribution-API-Version: registry/2.0
    """
    logger.info("Registry v2 API root accessed")
    resp = Response(status=200)
    resp.headers["Docker-Distribution-API-Version"] = "registry/2.0"
    return resp


def get_manifest(image_name, tag):
    """
    Get or check an image manifest.

    The manifest is read from the image tarball; when the compression policy
    prefers a cached variant of a layer, the layer descriptor is rewritten to
    point at it.

    Response Headers:
        Content-Type: application/vnd.oci.image.manifest.v1+json
        Content-Length: Size of manifest in bytes
        Docker-Content-Digest: SHA256 digest of manifest

    Raises:
        400: Invalid image_name or tag
        404: Image tarball not found
        500: Unreadable tarball or cache
    """
    validate_image_name(image_name)
    validate_tag(tag)

    logger.info(f"Manifest requested: image='{image_name}', tag='{tag}', method={request.method}")

    cache = _cache_for(image_name)
    try:
        with cache.new_image_source(None) as src:
            manifest, content_type = src.get_manifest(None)
            manifest = _substitute_layers(manifest, src.layer_infos_for_copy(None) or manifest_layer_infos(manifest))
    except (ManifestError, CacheIOError) as e:
        logger.error(f"Failed to load manifest for '{image_name}': {e}")
        abort(500, f"Failed to load manifest for '{image_name}'")

    manifest_digest = compute_sha256(manifest)

    if request.method == "HEAD":
        resp = Response(status=200)
    else:
        resp = make_response(manifest)
    resp.headers["Content-Type"] = content_type
    resp.headers["Content-Length"] = len(manifest)
    resp.headers["Docker-Content-Digest"] = manifest_digest

    logger.info(f"Manifest {request.method}: image='{image_name}', tag='{tag}', digest={manifest_digest}")
    return resp


def get_blob(image_name, digest):
    """
    Get or check a blob (config or layer) by digest.

    Cached blobs are served from the cache directory; others are read from
    the image tarball and saved to the cache while being sent. The image
    config is recognised from the manifest and cached under its config name.

    Response Headers:
        Content-Type: application/octet-stream
        Content-Length: Size of blob in bytes
        Docker-Content-Digest: SHA256 digest (echoed from request)

    Raises:
        400: Invalid image_name or digest format
        404: Blob or image tarball not found
        500: Cache directory unreadable
    """
    validate_image_name(image_name)
    validate_digest(digest)

    logger.info(f"Blob requested: image='{image_name}', digest='{digest}', method={request.method}")

    cache = _cache_for(image_name)

    try:
        blobinfo = _blob_info(cache, digest)
        if request.method == "HEAD":
            present, size = cache.has_blob(blobinfo)
            if not present:
                with cache.wrapped.new_image_source(None) as src:
                    stream, size = src.get_blob(None, blobinfo)
                    stream.close()
            resp = Response(status=200)
            resp.headers["Content-Type"] = BLOB_MIMETYPE
            resp.headers["Content-Length"] = size
            resp.headers["Docker-Content-Digest"] = digest
            logger.info(f"Blob HEAD: image='{image_name}', digest='{digest}', cached={present}")
            return resp

        with cache.new_image_source(None) as src:
            stream, size = src.get_blob(None, blobinfo)
    except BlobNotFoundError:
        logger.warning(f"Blob not found: image='{image_name}', digest='{digest}'")
        abort(404)
    except (ManifestError, CacheIOError) as e:
        logger.error(f"Failed to read blob {digest}: {e}")
        abort(500, f"Failed to read blob {digest}")

    resp = Response(_iter_blob(stream), mimetype=BLOB_MIMETYPE, direct_passthrough=True)
    if size >= 0:
        resp.headers["Content-Length"] = size
    resp.headers["Docker-Content-Digest"] = digest
    logger.info(f"Blob sent: image='{image_name}', digest='{digest}'")
    return resp


def cache_info():
    """Report the cache directory and compression policy."""
    return jsonify({
        "directory": current_app.config["BLOB_CACHE_DIR"],
        "compression": current_app.config["BLOB_CACHE_COMPRESSION"].value,
    })


def clear_cache(image_name):
    """
    Remove every entry from the cache directory.

    The directory is shared by all images; image_name only selects the
    reference named in errors.

    Returns:
        204 on success

    Raises:
        500: The directory could not be listed or an entry could not be removed;
            some entries may already have been removed
    """
    validate_image_name(image_name)
    cache = _cache_for(image_name)
    logger.info(f"Clearing cache directory {cache.directory()} for '{image_name}'")
    try:
        cache.clear_cache()
    except CacheIOError as e:
        logger.error(f"Failed to clear cache: {e}")
        abort(500, "Failed to clear cache")
    return Response(status=204)


def create_app(cache_dir: str | None = None, image_root: str | None = None,
               compress: LayerCompression | None = None) -> Flask:
    """
    Create the Flask application.

    Arguments default to BLOB_CACHE_DIR, IMAGE_ROOT and BLOB_CACHE_COMPRESSION.

    Raises:
        ConfigurationError: if no cache directory is configured, or the
            configured compression policy is unknown
    """
    cache_dir = cache_dir or config.BLOB_CACHE_DIR
    if not cache_dir:
        raise ConfigurationError("BLOB_CACHE_DIR must be set")
    if compress is None:
        try:
            compress = LayerCompression.from_string(config.BLOB_CACHE_COMPRESSION)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

    app = Flask(__name__)
    app.config["BLOB_CACHE_DIR"] = cache_dir
    app.config["IMAGE_ROOT"] = image_root or config.IMAGE_ROOT
    app.config["BLOB_CACHE_COMPRESSION"] = compress

    app.add_url_rule("/v2/", view_func=v2_root)
    app.add_url_rule("/v2/<path:image_name>/manifests/<tag>", view_func=get_manifest, methods=["GET", "HEAD"])
    app.add_url_rule("/v2/<path:image_name>/blobs/<digest>", view_func=get_blob, methods=["GET", "HEAD"])
    app.add_url_rule("/cache", view_func=cache_info, methods=["GET"])
    app.add_url_rule("/v2/<path:image_name>/cache", view_func=clear_cache, methods=["DELETE"])

    logger.debug(f"Created app: cache={cache_dir}, images={app.config['IMAGE_ROOT']}, compression={compress.name}")
    return app
