"""
Configuration module for the blob cache.

Loads all configuration from environment variables with sensible defaults.
"""

import os


class Config:
    """
    Blob cache configuration from environment variables.

    Loads all configuration values from environment variables with sensible defaults.
    All settings can be overridden by setting the corresponding environment variable.
    """

    def __init__(self):
        """
        Initialize configuration from environment variables.

        Environment Variables:
            LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO
            FLASK_HOST: Server bind address. Default: 0.0.0.0
            FLASK_PORT: Server bind port. Default: 6443
            BLOB_CACHE_DIR: Directory holding cached blobs. No default.
            BLOB_CACHE_COMPRESSION: compress, decompress or preserve. Default: preserve
            IMAGE_ROOT: Directory searched for <name>.tar.gz image tarballs. Default: .
            CACHE_SIZE: Number of tarball manifests kept in memory. Default: 50
            MAX_IMAGE_NAME_LENGTH: Maximum image name length. Default: 255
            MAX_TAG_LENGTH: Maximum tag length. Default: 128
        """
        # Logging
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

        # Server
        self.FLASK_HOST = os.getenv("FLASK_HOST", "0.0.0.0")
        self.FLASK_PORT = int(os.getenv("FLASK_PORT", "6443"))

        # Blob cache
        self.BLOB_CACHE_DIR = os.getenv("BLOB_CACHE_DIR", "")
        self.BLOB_CACHE_COMPRESSION = os.getenv("BLOB_CACHE_COMPRESSION", "preserve")
        self.IMAGE_ROOT = os.getenv("IMAGE_ROOT", ".")

        # Tarball metadata cache
        self.CACHE_SIZE = int(os.getenv("CACHE_SIZE", "50"))

        # Validation limits
        self.MAX_IMAGE_NAME_LENGTH = int(os.getenv("MAX_IMAGE_NAME_LENGTH", "255"))
        self.MAX_TAG_LENGTH = int(os.getenv("MAX_TAG_LENGTH", "128"))

    def __repr__(self):
        """String representation for logging."""
        return (
            f"Config(LOG_LEVEL={self.LOG_LEVEL}, "
            f"FLASK_HOST={self.FLASK_HOST}, "
            f"FLASK_PORT={self.FLASK_PORT}, "
            f"BLOB_CACHE_DIR={self.BLOB_CACHE_DIR}, "
            f"BLOB_CACHE_COMPRESSION={self.BLOB_CACHE_COMPRESSION}, "
            f"IMAGE_ROOT={self.IMAGE_ROOT})"
        )


# Global config instance
config = Config()
