"""Tests for the two-tier KernelCache."""

import os
from pathlib import Path
import tempfile

from attrs import evolve
import pytest

from jitcache._utils import PACKAGE_DIR
from jitcache.cache import (
    DEFAULT_CACHE_FILENAME,
    KernelCache,
    sys_cache_path,
    user_cache_paths,
)
from jitcache.config import CacheSettings
from jitcache.store import PersistentStore


def _seed(path, key, code):
    """Write one entry to a store file and close it."""
    store = PersistentStore.open(path)
    store.put(key, code)
    store.close()


# --- location helpers ---


def test_sys_cache_path_override(tmp_path):
    settings = CacheSettings(sys_cache_path=tmp_path / "sys.db")
    assert sys_cache_path(settings) == tmp_path / "sys.db"


def test_sys_cache_path_default():
    """Without an override the file lives next to the package."""
    assert sys_cache_path(CacheSettings()) == (
        PACKAGE_DIR / DEFAULT_CACHE_FILENAME
    )


def test_user_cache_paths_override(tmp_path):
    settings = CacheSettings(user_cache_path=tmp_path / "user.db")
    assert user_cache_paths(settings) == [tmp_path / "user.db", None]


@pytest.mark.skipif(os.name == "nt", reason="XDG layout is POSIX only")
class TestUserPathSearch:
    """Candidate search when no user path is configured."""

    def test_platform_dir_first(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "xdg"))
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        paths = user_cache_paths(CacheSettings())

        expected = tmp_path / "xdg" / "jitcache" / DEFAULT_CACHE_FILENAME
        assert paths == [
            expected,
            Path(tempfile.gettempdir()) / DEFAULT_CACHE_FILENAME,
            None,
        ]
        assert expected.parent.is_dir()

    def test_home_used_without_platform_dir(self, tmp_path, monkeypatch):
        monkeypatch.delenv("XDG_CACHE_HOME", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        paths = user_cache_paths(CacheSettings())
        assert paths[0] == (
            tmp_path / "home" / ".cache" / "jitcache" / DEFAULT_CACHE_FILENAME
        )
        assert paths[-1] is None

    def test_uncreatable_platform_dir_skipped(self, tmp_path, monkeypatch):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("")
        monkeypatch.setenv("XDG_CACHE_HOME", str(blocker))
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        paths = user_cache_paths(CacheSettings())
        assert paths[0].is_relative_to(tmp_path / "home")

    def test_temp_and_memory_last(self, monkeypatch):
        monkeypatch.delenv("XDG_CACHE_HOME", raising=False)
        monkeypatch.delenv("HOME", raising=False)
        paths = user_cache_paths(CacheSettings())
        assert paths == [
            Path(tempfile.gettempdir()) / DEFAULT_CACHE_FILENAME,
            None,
        ]


# --- tier behaviour ---


class TestTiers:
    """Opening tiers and lookup precedence."""

    def test_user_tier_opened_at_configured_path(
        self, kernel_cache, user_db
    ):
        store = kernel_cache.get_user_store()
        assert store.path == user_db
        assert not store.readonly

    def test_missing_sys_tier_is_absent(self, kernel_cache):
        assert kernel_cache.get_sys_store() is None

    def test_corrupt_sys_tier_is_absent(self, cache_settings, sys_db, key):
        sys_db.write_bytes(b"garbage" * 512)
        cache = KernelCache(cache_settings)
        assert cache.get_sys_store() is None
        assert cache.lookup(key) is None
        cache.close()

    def test_sys_tier_is_readonly(self, cache_settings, sys_db, key):
        _seed(sys_db, key, b"shipped")
        cache = KernelCache(cache_settings)
        assert cache.get_sys_store().readonly
        cache.close()

    def test_unusable_user_path_falls_back_to_memory(self, tmp_path, key):
        settings = CacheSettings(
            user_cache_path=tmp_path / "missing" / "user.db",
            sys_cache_path=tmp_path / "absent.db",
        )
        cache = KernelCache(settings)
        assert cache.get_user_store().in_memory
        assert cache.store(key, b"code")
        assert cache.lookup(key) == b"code"
        cache.close()

    @pytest.mark.skipif(
        os.name == "nt" or os.geteuid() == 0,
        reason="file permissions do not restrict this user",
    )
    def test_write_protected_user_file_falls_back(self, tmp_path, key):
        user_db = tmp_path / "user.db"
        PersistentStore.open(user_db).close()
        user_db.chmod(0o444)
        settings = CacheSettings(
            user_cache_path=user_db,
            sys_cache_path=tmp_path / "absent.db",
        )
        cache = KernelCache(settings)
        try:
            assert cache.get_user_store().in_memory
            assert cache.store(key, b"code")
            assert cache.lookup(key) == b"code"
        finally:
            cache.close()
            user_db.chmod(0o644)

    def test_store_then_lookup(self, kernel_cache, key):
        assert kernel_cache.lookup(key) is None
        assert kernel_cache.store(key, b"compiled")
        assert kernel_cache.lookup(key) == b"compiled"

    def test_sys_tier_hit(self, cache_settings, sys_db, key):
        _seed(sys_db, key, b"shipped")
        cache = KernelCache(cache_settings)
        assert cache.lookup(key) == b"shipped"
        cache.close()

    def test_user_tier_wins(self, cache_settings, sys_db, key):
        _seed(sys_db, key, b"shipped")
        cache = KernelCache(cache_settings)
        cache.store(key, b"local")
        assert cache.lookup(key) == b"local"
        cache.close()

    def test_store_never_touches_sys_tier(self, cache_settings, sys_db, key,
                                          make_key):
        _seed(sys_db, make_key(kernel_name="other"), b"x")
        cache = KernelCache(cache_settings)
        cache.store(key, b"local")
        assert cache.get_sys_store().get(key) is None
        cache.close()

    def test_broken_user_tier_reads_as_miss(
        self, cache_settings, sys_db, key
    ):
        _seed(sys_db, key, b"shipped")
        cache = KernelCache(cache_settings)
        cache.get_user_store()._conn.execute("DROP TABLE cache_v1")
        assert cache.lookup(key) == b"shipped"
        assert cache.store(key, b"local") is False
        cache.close()

    def test_close_reopens(self, kernel_cache, key):
        kernel_cache.store(key, b"code")
        kernel_cache.close()
        assert kernel_cache.lookup(key) == b"code"

    def test_aliases(self, kernel_cache, key):
        assert kernel_cache.store_code_object(key, b"code")
        assert kernel_cache.get_code_object(key) == b"code"


class TestSwitches:
    """Read and write disable switches."""

    def test_read_disabled(self, cache_settings, key):
        settings = evolve(cache_settings, read_disabled=True)
        cache = KernelCache(settings)
        assert cache.store(key, b"code")
        assert cache.lookup(key) is None
        assert cache.get_user_store().get(key) == b"code"
        cache.close()

    def test_write_disabled(self, cache_settings, key):
        settings = evolve(cache_settings, write_disabled=True)
        cache = KernelCache(settings)
        assert cache.store(key, b"code") is False
        assert cache.lookup(key) is None
        assert len(cache.get_user_store()) == 0
        cache.close()

    def test_switches_from_environment(self, monkeypatch, cache_settings,
                                       key):
        monkeypatch.setenv("JITCACHE_CACHE_PATH",
                           str(cache_settings.user_cache_path))
        monkeypatch.setenv("JITCACHE_CACHE_WRITE_DISABLE", "1")
        cache = KernelCache()
        assert cache.store(key, b"code") is False
        cache.close()


def test_serialize_deserialize(tmp_path, make_key):
    """A snapshot merged into a fresh cache serves the same entries."""
    source = KernelCache(CacheSettings(
        user_cache_path=tmp_path / "source.db",
        sys_cache_path=tmp_path / "none.db",
    ))
    k1 = make_key(kernel_name="k1")
    k2 = make_key(kernel_name="k2")
    source.store(k1, b"one")
    source.store(k2, b"two")

    target = KernelCache(CacheSettings(
        user_cache_path=tmp_path / "target.db",
        sys_cache_path=tmp_path / "none.db",
    ))
    target.store(make_key(kernel_name="k3"), b"three")
    assert target.deserialize(source.serialize())
    assert target.lookup(k1) == b"one"
    assert target.lookup(k2) == b"two"
    assert target.lookup(make_key(kernel_name="k3")) == b"three"
    source.close()
    target.close()


def test_deserialize_garbage(kernel_cache):
    assert kernel_cache.deserialize(b"garbage" * 100) is False
