"""
Pull-through OCI registry backed by a write-through blob cache.

Serves image tarballs found under IMAGE_ROOT over the OCI Distribution API.
Every blob read goes through a BlobCache in BLOB_CACHE_DIR: cached blobs are
served from disk, others are read from the tarball and saved on the way out.

Endpoints:
    - GET /v2/ - Version check
    - GET/HEAD /v2/<name>/manifests/<tag> - Get/check manifest
    - GET/HEAD /v2/<name>/blobs/<digest> - Get/check blob
    - DELETE /v2/<name>/cache - Clear the cache directory
    - GET /cache - Cache directory and compression policy

Environment Variables:
    LOG_LEVEL, FLASK_HOST, FLASK_PORT, BLOB_CACHE_DIR, BLOB_CACHE_COMPRESSION,
    IMAGE_ROOT, CACHE_SIZE, MAX_IMAGE_NAME_LENGTH, MAX_TAG_LENGTH

Example:
    $ BLOB_CACHE_DIR=/var/cache/blobs IMAGE_ROOT=./images LOG_LEVEL=DEBUG python app.py
    $ podman pull --tls-verify=false localhost:6443/library/alpine:latest
"""

import logging

from blobcache.config import config
from blobcache.routes import create_app

# Configure logging
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def main():
    """Main entry point for the registry application."""
    debug_mode = logger.getEffectiveLevel() == logging.DEBUG
    app = create_app()
    logger.info(f"Starting blob cache registry on {config.FLASK_HOST}:{config.FLASK_PORT}")
    logger.info(f"Configuration: {config}")
    logger.info(f"Log level: {logging.getLevelName(logger.getEffectiveLevel())}")
    if debug_mode:
        logger.info("Flask debug mode enabled")
    app.run(host=config.FLASK_HOST, port=config.FLASK_PORT, debug=debug_mode)


if __name__ == "__main__":
    main()
