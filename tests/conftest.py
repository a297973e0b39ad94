"""
Pytest configuration and fixtures for blob cache tests.
"""

import os

import pytest

from blobcache.blobcache import BlobCache
from blobcache.types import LayerCompression

from tests.fakes import FakeReference, gzip_bytes, make_image_tarball, make_layer_tar


@pytest.fixture
def cache_dir(tmp_path):
    """An empty, existing cache directory."""
    path = tmp_path / "cache"
    path.mkdir()
    return str(path)


@pytest.fixture
def fake_ref():
    return FakeReference()


@pytest.fixture
def make_cache(fake_ref, cache_dir):
    """Build a BlobCache around fake_ref with the given policy."""

    def _make(compress=LayerCompression.PRESERVE_ORIGINAL, ref=None):
        return BlobCache(ref or fake_ref, cache_dir, compress)

    return _make


@pytest.fixture
def cache(make_cache):
    return make_cache()


@pytest.fixture
def layer_tar():
    return make_layer_tar({"etc/hostname": b"blobcache\n", "bin/hello": b"#!/bin/sh\necho hello\n"})


@pytest.fixture
def image_root(tmp_path, layer_tar):
    """Directory holding library/app.tar.gz with one uncompressed and one gzipped layer."""
    root = tmp_path / "images"
    (root / "library").mkdir(parents=True)
    config_bytes = b'{"architecture": "amd64", "os": "linux"}'
    second = gzip_bytes(make_layer_tar({"usr/share/doc/README": b"docs\n"}))
    make_image_tarball(os.path.join(root, "library", "app.tar.gz"), config_bytes, [layer_tar, second])
    return str(root)
