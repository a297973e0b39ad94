"""
Digest and input validation module for the blob cache.

Provides digest helpers used by the cache itself, and request validation
functions used by the HTTP front-end.
"""

import hashlib
import logging
import re
from flask import abort

from .config import config

logger = logging.getLogger(__name__)

DIGEST_RE = re.compile(r'^sha256:[a-f0-9]{64}$')


def compute_sha256(data: bytes) -> str:
    """
    Compute SHA256 digest in OCI/Docker format.

    Args:
        data: Bytes to hash

    Returns:
        String in format "sha256:<64 hex chars>"

    Example:
        >>> compute_sha256(b"hello")
        'sha256:2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824'
    """
    h = hashlib.sha256()
    h.update(data)
    return "sha256:" + h.hexdigest()


def is_valid_digest(digest: str) -> bool:
    """Return True if digest is a well-formed sha256:<64 lowercase hex> string."""
    return bool(digest) and DIGEST_RE.match(digest) is not None


def validate_image_name(name: str) -> None:
    """
    Validate image name to prevent path traversal.

    Args:
        name: Image name to validate (e.g., "library/alpine")

    Raises:
        HTTPException: 400 Bad Request if name is invalid

    Validation Rules:
        - Must be 1-{MAX_IMAGE_NAME_LENGTH} characters (configurable)
        - Only alphanumeric characters, dots (.), hyphens (-), underscores (_), and slashes (/)
        - No ".." path components and no leading slash, since names map onto IMAGE_ROOT
    """
    if not name or len(name) > config.MAX_IMAGE_NAME_LENGTH:
        logger.warning(f"Invalid image name length: {len(name)}")
        abort(400, f"Invalid image name: must be 1-{config.MAX_IMAGE_NAME_LENGTH} characters")

    if not re.match(r'^[a-zA-Z0-9._/-]+$', name):
        logger.warning(f"Invalid image name format: {name}")
        abort(400, "Invalid image name: only alphanumeric, dots, hyphens, underscores, and slashes allowed")

    if name.startswith("/") or ".." in name.split("/"):
        logger.warning(f"Invalid image name path: {name}")
        abort(400, "Invalid image name: must be a relative path without '..' components")

    logger.debug(f"Image name validated: {name}")


def validate_tag(tag: str) -> None:
    """
    Validate container image tag.

    Raises:
        HTTPException: 400 Bad Request if tag is invalid
    """
    if not tag or len(tag) > config.MAX_TAG_LENGTH:
        logger.warning(f"Invalid tag length: {len(tag)}")
        abort(400, f"Invalid tag: must be 1-{config.MAX_TAG_LENGTH} characters")

    if not re.match(r'^[a-zA-Z0-9._-]+$', tag):
        logger.warning(f"Invalid tag format: {tag}")
        abort(400, "Invalid tag: only alphanumeric, dots, hyphens, and underscores allowed")

    logger.debug(f"Tag validated: {tag}")


def validate_digest(digest: str) -> None:
    """
    Validate SHA256 digest format per OCI specification.

    Raises:
        HTTPException: 400 Bad Request if digest is invalid

    Format:
        Must match: sha256:<64 lowercase hex characters>
    """
    if not is_valid_digest(digest):
        logger.warning(f"Invalid digest format: {digest}")
        abort(400, "Invalid digest: must be sha256:<64 hex characters>")

    logger.debug(f"Digest validated: {digest}")
