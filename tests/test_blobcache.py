"""
Tests for the BlobCache store: construction, delegation, existence checks,
policy selection and clearing.
"""

import gzip
import os
import threading

import pytest

import blobcache.blobcache as blobcache_module
from blobcache.blobcache import BlobCache, new_blob_cache
from blobcache.errors import CacheIOError, ClearCacheError, ConfigurationError
from blobcache.image import Image
from blobcache.reference import ImageReference, image_name
from blobcache.source import BlobCacheSource
from blobcache.storage import make_filename
from blobcache.types import (
    MEDIA_TYPE_OCI_LAYER,
    MEDIA_TYPE_OCI_LAYER_GZIP,
    BlobInfo,
    LayerCompression,
    SystemContext,
    VariantKind,
)
from blobcache.validation import compute_sha256

from tests.fakes import FakeReference, gzip_bytes


def store(cache, data, is_config=False):
    digest = compute_sha256(data)
    with open(cache.blob_path(digest, is_config), "wb") as f:
        f.write(data)
    return digest


class TestConstruction:
    def test_implements_image_reference(self):
        assert issubclass(BlobCache, ImageReference)
        assert not BlobCache.__abstractmethods__

    def test_keeps_arguments(self, fake_ref, cache_dir):
        cache = BlobCache(fake_ref, cache_dir, LayerCompression.COMPRESS)
        assert cache.directory() == cache_dir
        assert cache.compress is LayerCompression.COMPRESS
        assert cache.wrapped is fake_ref

    def test_empty_directory_is_rejected(self, fake_ref):
        with pytest.raises(ConfigurationError) as exc_info:
            new_blob_cache(fake_ref, "", LayerCompression.PRESERVE_ORIGINAL)
        assert "fake:example/app" in str(exc_info.value)

    @pytest.mark.parametrize("compress", [999, "compress", None])
    def test_unknown_policy_is_rejected(self, fake_ref, compress):
        with pytest.raises(ConfigurationError):
            BlobCache(fake_ref, "/tmp/x", compress)

    def test_no_io_at_construction(self, fake_ref, tmp_path):
        missing = tmp_path / "does-not-exist"
        BlobCache(fake_ref, str(missing), LayerCompression.PRESERVE_ORIGINAL)
        assert not missing.exists()


class TestDelegation:
    def test_identity_is_forwarded(self, cache, fake_ref):
        assert cache.transport() is fake_ref.transport()
        assert cache.string_within_transport() == "example/app"
        assert cache.docker_reference() == "docker.io/example/app:latest"
        assert cache.policy_configuration_identity() == fake_ref.policy_configuration_identity()
        assert cache.policy_configuration_namespaces() == fake_ref.policy_configuration_namespaces()
        assert image_name(cache) == image_name(fake_ref)

    def test_delete_is_forwarded_with_context(self, cache, fake_ref):
        ctx = threading.Event()
        sys = SystemContext(tmp_dir="/var/tmp")
        cache.delete_image(ctx, sys)
        assert fake_ref.calls == [("delete_image", ctx, sys)]

    def test_new_image_reads_through_cache(self, cache, fake_ref):
        with cache.new_image(None) as img:
            assert isinstance(img, Image)
            assert isinstance(img._source, BlobCacheSource)
            assert img.reference() is cache
            assert img.config_blob(None) == fake_ref.config_bytes
        assert fake_ref.sources_closed == 1


class TestHasBlob:
    def test_exact_size_matches(self, cache):
        digest = store(cache, b"12345")
        assert cache.has_blob(BlobInfo(digest, 5)) == (True, 5)

    def test_wrong_size_does_not_match(self, cache):
        digest = store(cache, b"12345")
        assert cache.has_blob(BlobInfo(digest, 6)) == (False, -1)

    def test_unknown_size_matches_any(self, cache):
        digest = store(cache, b"1234567890")
        assert cache.has_blob(BlobInfo(digest, -1)) == (True, 10)

    @pytest.mark.parametrize("size", [-1, 0, 5])
    @pytest.mark.parametrize("is_config", [False, True])
    def test_empty_digest_is_never_found(self, cache, size, is_config):
        store(cache, b"")
        assert cache.has_blob(BlobInfo("", size, is_config)) == (False, -1)

    def test_config_form_is_found(self, cache):
        digest = store(cache, b'{"os": "linux"}', is_config=True)
        assert cache.has_blob(BlobInfo(digest)) == (True, 15)

    def test_both_forms_are_tried(self, cache):
        digest = compute_sha256(b"x")
        with open(cache.blob_path(digest, False), "wb") as f:
            f.write(b"xx")
        with open(cache.blob_path(digest, True), "wb") as f:
            f.write(b"xxx")
        assert cache.has_blob(BlobInfo(digest, 3)) == (True, 3)
        assert cache.has_blob(BlobInfo(digest, 2)) == (True, 2)

    def test_absent(self, cache):
        assert cache.has_blob(BlobInfo(compute_sha256(b"nothing"))) == (False, -1)

    def test_stat_failure_is_not_absence(self, fake_ref, tmp_path):
        # A regular file where the directory should be makes stat fail with ENOTDIR
        not_a_dir = tmp_path / "cache"
        not_a_dir.write_bytes(b"")
        cache = BlobCache(fake_ref, str(not_a_dir), LayerCompression.PRESERVE_ORIGINAL)

        with pytest.raises(CacheIOError) as exc_info:
            cache.has_blob(BlobInfo(compute_sha256(b"x")))
        assert exc_info.value.operation == "checking size"


class TestOpenBlob:
    def test_returns_file_size_and_form(self, cache):
        digest = store(cache, b"config", is_config=True)
        f, size, is_config = cache.open_blob(BlobInfo(digest))
        with f:
            assert f.read() == b"config"
        assert size == 6
        assert is_config

    def test_missing(self, cache):
        assert cache.open_blob(BlobInfo(compute_sha256(b"missing"))) is None
        assert cache.open_blob(BlobInfo("")) is None

    def test_wrong_size_is_not_opened(self, cache):
        digest = store(cache, b"12345")
        assert cache.open_blob(BlobInfo(digest, 4)) is None

    def test_opens_the_form_whose_size_matches(self, cache):
        digest = compute_sha256(b"x")
        with open(cache.blob_path(digest, False), "wb") as f:
            f.write(b"xx")
        with open(cache.blob_path(digest, True), "wb") as f:
            f.write(b"xxx")

        f, size, is_config = cache.open_blob(BlobInfo(digest, 3))
        with f:
            assert f.read() == b"xxx"
        assert (size, is_config) == (3, True)


class TestSelectBlob:
    @pytest.fixture
    def linked(self, make_cache):
        """A stored blob A with a stored compressed variant B."""
        cache = make_cache(LayerCompression.COMPRESS)
        original = b"uncompressed layer"
        a = store(cache, original)
        b = store(cache, gzip_bytes(original))
        cache.record_variant(a, VariantKind.COMPRESSED, b)
        cache.record_variant(b, VariantKind.DECOMPRESSED, a)
        return a, b

    def test_compress_prefers_compressed_variant(self, make_cache, linked):
        a, b = linked
        cache = make_cache(LayerCompression.COMPRESS)
        info = cache.select_blob(BlobInfo(a, media_type=MEDIA_TYPE_OCI_LAYER))
        assert info.digest == b
        assert info.size == os.path.getsize(cache.blob_path(b))
        assert info.media_type == MEDIA_TYPE_OCI_LAYER_GZIP
        with open(cache.blob_path(info.digest), "rb") as f:
            assert gzip.decompress(f.read()) == b"uncompressed layer"

    def test_decompress_prefers_decompressed_variant(self, make_cache, linked):
        a, b = linked
        cache = make_cache(LayerCompression.DECOMPRESS)
        info = cache.select_blob(BlobInfo(b, media_type=MEDIA_TYPE_OCI_LAYER_GZIP))
        assert info.digest == a
        assert info.media_type == MEDIA_TYPE_OCI_LAYER

    def test_preserve_never_substitutes(self, make_cache, linked):
        a, _ = linked
        cache = make_cache(LayerCompression.PRESERVE_ORIGINAL)
        assert cache.select_blob(BlobInfo(a)) == BlobInfo(a)

    def test_stale_link_falls_back_to_original(self, make_cache, linked):
        a, b = linked
        cache = make_cache(LayerCompression.COMPRESS)
        os.unlink(cache.blob_path(b))
        assert cache.select_blob(BlobInfo(a, 18)) == BlobInfo(a, 18)

    def test_no_link(self, make_cache):
        cache = make_cache(LayerCompression.COMPRESS)
        a = store(cache, b"alone")
        assert cache.select_blob(BlobInfo(a)) == BlobInfo(a)


class TestStoreVariant:
    def test_compress_gzips_uncompressed_layer(self, make_cache):
        cache = make_cache(LayerCompression.COMPRESS)
        a = store(cache, b"plain layer content" * 100)

        b = cache.store_variant(a)

        assert b is not None and b != a
        with open(cache.blob_path(b), "rb") as f:
            assert gzip.decompress(f.read()) == b"plain layer content" * 100
        assert cache.resolve_variant(a, VariantKind.COMPRESSED) == (b, True)
        assert cache.resolve_variant(b, VariantKind.DECOMPRESSED) == (a, True)

    def test_compress_is_deterministic(self, make_cache):
        cache = make_cache(LayerCompression.COMPRESS)
        a = store(cache, b"same content")
        assert cache.store_variant(a) == cache.store_variant(a)

    def test_compress_leaves_gzip_layer_alone(self, make_cache):
        cache = make_cache(LayerCompression.COMPRESS)
        a = store(cache, gzip_bytes(b"already compressed"))
        assert cache.store_variant(a) is None
        assert os.listdir(cache.directory()) == [a]

    def test_decompress_gunzips_layer(self, make_cache):
        cache = make_cache(LayerCompression.DECOMPRESS)
        a = store(cache, gzip_bytes(b"payload"))

        b = cache.store_variant(a)

        assert b == compute_sha256(b"payload")
        assert cache.resolve_variant(a, VariantKind.DECOMPRESSED) == (b, True)
        assert cache.resolve_variant(b, VariantKind.COMPRESSED) == (a, True)

    def test_preserve_writes_nothing(self, make_cache):
        cache = make_cache(LayerCompression.PRESERVE_ORIGINAL)
        a = store(cache, b"payload")
        assert cache.store_variant(a) is None
        assert os.listdir(cache.directory()) == [a]

    def test_corrupt_gzip_is_logged_not_raised(self, make_cache):
        cache = make_cache(LayerCompression.DECOMPRESS)
        a = store(cache, b"\x1f\x8bnot really gzip")
        assert cache.store_variant(a) is None
        assert cache.resolve_variant(a, VariantKind.DECOMPRESSED) == (None, False)
        assert not [n for n in os.listdir(cache.directory()) if n.startswith(".tmp-")]


class TestClearCache:
    def test_removes_files_and_nested_paths(self, cache):
        digests = [store(cache, data) for data in (b"one", b"two")]
        config_digest = store(cache, b"{}", is_config=True)
        cache.record_variant(digests[0], VariantKind.COMPRESSED, digests[1])
        nested = os.path.join(cache.directory(), "nested", "deeper")
        os.makedirs(nested)
        open(os.path.join(nested, "file"), "w").close()

        cache.clear_cache()

        assert os.listdir(cache.directory()) == []
        for digest in digests + [config_digest]:
            assert cache.has_blob(BlobInfo(digest)) == (False, -1)

    def test_empty_directory(self, cache):
        cache.clear_cache()
        assert os.listdir(cache.directory()) == []

    def test_missing_directory_raises(self, fake_ref, tmp_path):
        cache = BlobCache(fake_ref, str(tmp_path / "missing"), LayerCompression.PRESERVE_ORIGINAL)
        with pytest.raises(CacheIOError) as exc_info:
            cache.clear_cache()
        assert not isinstance(exc_info.value, ClearCacheError)
        assert exc_info.value.operation == "listing"

    def test_first_failure_aborts_and_keeps_earlier_removals(self, cache, monkeypatch):
        for data in (b"a", b"b", b"c"):
            store(cache, data)
        real_unlink = os.unlink
        removed = []

        def flaky_unlink(path, *args, **kwargs):
            if removed:
                raise PermissionError(13, "Permission denied", path)
            real_unlink(path, *args, **kwargs)
            removed.append(path)

        monkeypatch.setattr(blobcache_module.os, "unlink", flaky_unlink)

        with pytest.raises(ClearCacheError) as exc_info:
            cache.clear_cache()
        monkeypatch.undo()

        assert "fake:example/app" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, PermissionError)
        assert len(removed) == 1
        assert not os.path.exists(removed[0])
        assert len(os.listdir(cache.directory())) == 2


def test_blob_path_uses_filename_scheme(cache):
    digest = compute_sha256(b"x")
    assert cache.blob_path(digest, True) == os.path.join(cache.directory(), make_filename(digest, True))


def test_repr_names_wrapped_reference(cache):
    assert "fake:example/app" in repr(cache)


def test_other_reference_is_independent(cache_dir):
    a = BlobCache(FakeReference(name="a"), cache_dir, LayerCompression.PRESERVE_ORIGINAL)
    b = BlobCache(FakeReference(name="b"), cache_dir, LayerCompression.PRESERVE_ORIGINAL)
    digest = store(a, b"shared")
    assert b.has_blob(BlobInfo(digest)) == (True, 6)
