"""Two-tier cache of compiled kernels.

A :class:`KernelCache` owns up to two :class:`~jitcache.store.PersistentStore`
handles:

``sys``
    Read-only, optional, shared between users (for example a cache
    shipped with an installation). Absent when no usable file exists.
``user``
    Writable, per user or per machine. Located by searching candidate
    directories; falls back to an in-memory store so that a writable tier
    always exists.

Handles are opened lazily on first use and kept open for the lifetime of
the cache object. The embedding application constructs one
:class:`KernelCache` per process and passes it to the compile
orchestrator.
"""

import os
from pathlib import Path
import sqlite3
import tempfile
import threading
from typing import List, Optional

from jitcache._utils import PACKAGE_DIR
from jitcache.cache_key import CacheKey
from jitcache.config import CacheSettings
from jitcache.store import PersistentStore
from jitcache.time_logger import default_timelogger


DEFAULT_CACHE_FILENAME = "jitcache_kernel_cache.db"
CACHE_DIRNAME = "jitcache"


def sys_cache_path(settings: CacheSettings) -> Optional[Path]:
    """Return the system-tier path, or None if none can be derived.

    An explicit setting wins; otherwise the file is expected next to the
    installed package.
    """
    if settings.sys_cache_path is not None:
        return settings.sys_cache_path
    if PACKAGE_DIR.is_dir():
        return PACKAGE_DIR / DEFAULT_CACHE_FILENAME
    return None


def _cache_dir_candidate(directory: Path) -> Optional[Path]:
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError:
        return None
    return directory / DEFAULT_CACHE_FILENAME


def user_cache_paths(settings: CacheSettings) -> List[Optional[Path]]:
    """Return candidate user-tier paths in decreasing order of preference.

    The final candidate is always None, meaning an in-memory store.
    """
    paths: List[Optional[Path]] = []
    if settings.user_cache_path is not None:
        paths.append(settings.user_cache_path)
    else:
        if os.name == "nt":
            platform_root = os.environ.get("LOCALAPPDATA", "")
        else:
            platform_root = os.environ.get("XDG_CACHE_HOME", "")
        if platform_root:
            candidate = _cache_dir_candidate(
                Path(platform_root) / CACHE_DIRNAME
            )
            if candidate is not None:
                paths.append(candidate)

        home = os.environ.get("HOME", "")
        # persistent home directory location if no platform cache dir
        if not paths and home:
            candidate = _cache_dir_candidate(
                Path(home) / ".cache" / CACHE_DIRNAME
            )
            if candidate is not None:
                paths.append(candidate)

        # less persistent, but still usable
        paths.append(Path(tempfile.gettempdir()) / DEFAULT_CACHE_FILENAME)

    paths.append(None)
    return paths


class KernelCache:
    """Lookup and storage of compiled kernels across the cache tiers.

    Parameters
    ----------
    settings
        Cache configuration. Defaults to :meth:`CacheSettings.from_environ`.

    Notes
    -----
    Lookups consult the user tier first, then the system tier. Stores
    always go to the user tier. Errors from either tier are reported and
    treated as misses; they never propagate to the caller.
    """

    def __init__(self, settings: Optional[CacheSettings] = None) -> None:
        if settings is None:
            settings = CacheSettings.from_environ()
        self._settings = settings
        self._open_lock = threading.Lock()
        self._opened = False
        self._sys_store: Optional[PersistentStore] = None
        self._user_store: Optional[PersistentStore] = None

    @property
    def settings(self) -> CacheSettings:
        return self._settings

    def _ensure_open(self) -> None:
        if self._opened:
            return
        with self._open_lock:
            if self._opened:
                return
            timeout = self._settings.busy_timeout
            sys_path = sys_cache_path(self._settings)
            if sys_path is not None:
                self._sys_store = PersistentStore.open(
                    sys_path, readonly=True, busy_timeout=timeout
                )
            for path in user_cache_paths(self._settings):
                store = PersistentStore.open(
                    path, readonly=False, busy_timeout=timeout
                )
                if store is not None:
                    self._user_store = store
                    break
            self._opened = True

    def get_user_store(self) -> PersistentStore:
        """Return the writable tier, opening it if necessary."""
        self._ensure_open()
        if self._user_store is None:
            # Even ":memory:" failed to open; nothing else can work.
            raise RuntimeError("Unable to open any writable kernel cache")
        return self._user_store

    def get_sys_store(self) -> Optional[PersistentStore]:
        """Return the read-only tier, or None when it is unavailable."""
        self._ensure_open()
        return self._sys_store

    def _tier_get(
        self, store: Optional[PersistentStore], key: CacheKey, tier: str
    ) -> Optional[bytes]:
        if store is None:
            return None
        try:
            return store.get(key)
        except sqlite3.Error as e:
            default_timelogger.print_message(
                f"Cache read from {tier} tier failed for "
                f"{key.kernel_name}: {e}"
            )
            return None

    def lookup(self, key: CacheKey) -> Optional[bytes]:
        """Return cached bytes for ``key``, or None on a miss.

        Parameters
        ----------
        key
            Identity of the requested kernel.

        Returns
        -------
        bytes or None
            The user tier's entry if present, else the system tier's.
            Always None when cache reads are disabled.
        """
        if self._settings.read_disabled:
            return None
        self._ensure_open()
        code = self._tier_get(self._user_store, key, "user")
        if not code:
            code = self._tier_get(self._sys_store, key, "system")
        return code or None

    def store(self, key: CacheKey, code: bytes) -> bool:
        """Store ``code`` under ``key`` in the user tier (best effort).

        Returns
        -------
        bool
            True if the entry was written.
        """
        if self._settings.write_disabled:
            return False
        return self.get_user_store().put(key, code)

    # Names used by the embedding library
    get_code_object = lookup
    store_code_object = store

    def serialize(self) -> bytes:
        """Return a snapshot of the user tier."""
        return self.get_user_store().snapshot()

    def deserialize(self, image: bytes) -> bool:
        """Merge a snapshot produced by :meth:`serialize` into the user tier.

        Returns
        -------
        bool
            False if the snapshot could not be used.
        """
        return self.get_user_store().merge(image)

    def close(self) -> None:
        """Close both tiers. A later call reopens them."""
        with self._open_lock:
            for store in (self._user_store, self._sys_store):
                if store is not None:
                    store.close()
            self._user_store = None
            self._sys_store = None
            self._opened = False

    def __repr__(self) -> str:
        return (
            f"KernelCache(user={self._user_store!r}, "
            f"sys={self._sys_store!r})"
        )
