"""Single-file SQLite store for compiled kernel binaries.

One :class:`PersistentStore` wraps one connection to one backing file (or
an in-memory database). Lookups and writes on a store are serialised by a
per-store lock; separate stores, such as the user and system tiers, are
independent. Cross-process contention on the same file is handled by
SQLite's busy timeout.

Notes
-----
Stored binaries are assumed correct for their key; only the shape of the
key is validated.
"""

from contextlib import suppress
from pathlib import Path
import sqlite3
import threading
from typing import Iterator, Optional, Tuple, Union

from jitcache.cache_key import CacheKey, CodeObject
from jitcache.config import DEFAULT_BUSY_TIMEOUT
from jitcache.time_logger import default_timelogger


_CREATE_TABLE = (
    "CREATE TABLE IF NOT EXISTS cache_v1 ("
    "  kernel_name TEXT NOT NULL,"
    "  arch TEXT NOT NULL,"
    "  runtime_version INTEGER NOT NULL,"
    "  generator_sum BLOB NOT NULL,"
    "  code BLOB NOT NULL,"
    "  timestamp INTEGER NOT NULL,"
    "  PRIMARY KEY (kernel_name, arch, runtime_version, generator_sum)"
    ")"
)

_CHECK_TABLE = "SELECT code FROM cache_v1 LIMIT 0"

_GET = (
    "SELECT code FROM cache_v1 "
    "WHERE kernel_name = ? AND arch = ? "
    "AND runtime_version = ? AND generator_sum = ?"
)

_PUT = (
    "INSERT OR REPLACE INTO cache_v1 ("
    "  kernel_name, arch, runtime_version, generator_sum, code, timestamp"
    ") VALUES ("
    "  ?, ?, ?, ?, ?, CAST(STRFTIME('%s','now') AS INTEGER)"
    ")"
)

_MERGE = (
    "INSERT OR REPLACE INTO cache_v1 ("
    "  kernel_name, arch, runtime_version, generator_sum, timestamp, code"
    ") SELECT"
    "  kernel_name, arch, runtime_version, generator_sum, timestamp, code "
    "FROM deserialized.cache_v1"
)

_ENTRIES = (
    "SELECT kernel_name, arch, runtime_version, generator_sum, code, "
    "timestamp FROM cache_v1"
)

_COUNT = "SELECT COUNT(*) FROM cache_v1"


def _connect(
    path: Optional[Path], readonly: bool, busy_timeout: float
) -> sqlite3.Connection:
    kwargs = dict(
        timeout=busy_timeout,
        check_same_thread=False,
        isolation_level=None,
    )
    if path is None:
        return sqlite3.connect(":memory:", **kwargs)
    if readonly:
        uri = path.resolve().as_uri() + "?mode=ro"
        return sqlite3.connect(uri, uri=True, **kwargs)
    return sqlite3.connect(str(path), **kwargs)


def _check_writable(conn: sqlite3.Connection) -> None:
    """Raise if a read-write open silently fell back to read-only.

    SQLite opens a write-protected file read-only without complaint, and
    ``CREATE TABLE IF NOT EXISTS`` succeeds on it when the table exists.
    A lock held by another connection still counts as writable.
    """
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.OperationalError as e:
        if e.sqlite_errorcode != sqlite3.SQLITE_BUSY:
            raise
        return
    conn.execute("ROLLBACK")


class PersistentStore:
    """Transactional key-value store of compiled kernels.

    Use :meth:`open` rather than the constructor; it returns ``None``
    when the backing file cannot be used so that callers can fall back
    to another location.

    Parameters
    ----------
    connection
        Open SQLite connection with the cache table available.
    path
        Backing file, or None for an in-memory store.
    readonly
        Whether the store refuses writes.
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        path: Optional[Path] = None,
        readonly: bool = False,
    ) -> None:
        self._conn = connection
        self._path = path
        self._readonly = readonly
        self._lock = threading.Lock()
        self._merge_lock = threading.Lock()

    @classmethod
    def open(
        cls,
        path: Optional[Union[str, Path]] = None,
        readonly: bool = False,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT,
    ) -> Optional["PersistentStore"]:
        """Open or create a store.

        Parameters
        ----------
        path
            Backing file. None or an empty string opens an in-memory
            store.
        readonly
            Open without write access. Read-only opens never create the
            file, and require the cache table to be readable.
        busy_timeout
            Seconds to wait for another connection's write lock.

        Returns
        -------
        PersistentStore or None
            None if the file could not be opened, is not a database,
            the schema could not be created or read, or a read-write
            open found the file write-protected.
        """
        path = Path(path) if path not in (None, "") else None
        try:
            conn = _connect(path, readonly, busy_timeout)
        except (sqlite3.Error, OSError):
            return None
        try:
            if readonly:
                conn.execute(_CHECK_TABLE).fetchall()
            else:
                conn.execute(_CREATE_TABLE)
                _check_writable(conn)
        except sqlite3.Error:
            conn.close()
            return None
        return cls(conn, path=path, readonly=readonly)

    @property
    def path(self) -> Optional[Path]:
        """Backing file, or None for an in-memory store."""
        return self._path

    @property
    def readonly(self) -> bool:
        return self._readonly

    @property
    def in_memory(self) -> bool:
        return self._path is None

    def get(self, key: CacheKey) -> Optional[bytes]:
        """Return the binary stored under ``key``, or None.

        Raises
        ------
        sqlite3.Error
            If the backing database cannot be queried.
        """
        with self._lock:
            row = self._conn.execute(_GET, key.as_row()).fetchone()
        if row is None:
            return None
        return bytes(row[0])

    def put(self, key: CacheKey, code: bytes) -> bool:
        """Insert or replace the binary stored under ``key``.

        Failures are reported and swallowed; a failed write must never
        fail the compilation that produced ``code``.

        Returns
        -------
        bool
            True when the entry was written.
        """
        if self._readonly:
            default_timelogger.print_message(
                f"Cache store skipped for {key.kernel_name}: "
                "store is read-only"
            )
            return False
        try:
            with self._lock:
                self._conn.execute(_PUT, key.as_row() + (bytes(code),))
        except sqlite3.Error as e:
            default_timelogger.print_message(
                f"Error: failed to store code object for "
                f"{key.kernel_name}: {e}"
            )
            return False
        return True

    def snapshot(self) -> bytes:
        """Return a self-contained image of the whole store."""
        with self._lock:
            return self._conn.serialize()

    def merge(self, image: bytes) -> bool:
        """Upsert every entry of a snapshot image into this store.

        Entries not present in ``image`` are left untouched.

        Parameters
        ----------
        image
            Bytes produced by :meth:`snapshot`, possibly in another
            process or on another machine.

        Returns
        -------
        bool
            False if the image was unusable or the store is read-only.
        """
        if self._readonly:
            default_timelogger.print_message(
                "Cache merge skipped: store is read-only"
            )
            return False
        with self._merge_lock, self._lock:
            # A leftover attachment from an interrupted merge is reused
            with suppress(sqlite3.OperationalError):
                self._conn.execute(
                    "ATTACH DATABASE ':memory:' AS deserialized"
                )
            try:
                self._conn.deserialize(bytes(image), name="deserialized")
                self._conn.execute(_MERGE)
            except sqlite3.Error as e:
                default_timelogger.print_message(
                    f"Cache merge failed: {e}"
                )
                return False
            finally:
                with suppress(sqlite3.Error):
                    self._conn.execute("DETACH DATABASE deserialized")
        return True

    def entries(self) -> Iterator[Tuple[CacheKey, CodeObject]]:
        """Yield every ``(CacheKey, CodeObject)`` pair in the store."""
        with self._lock:
            rows = self._conn.execute(_ENTRIES).fetchall()
        for name, arch, version, signature, code, timestamp in rows:
            key = CacheKey(name, arch, version, signature)
            yield key, CodeObject(code, timestamp)

    def count(self) -> int:
        """Return the number of stored entries."""
        with self._lock:
            return self._conn.execute(_COUNT).fetchone()[0]

    def __len__(self) -> int:
        return self.count()

    def close(self) -> None:
        """Close the connection. The store is unusable afterwards."""
        with self._lock:
            self._conn.close()

    def __repr__(self) -> str:
        location = "memory" if self.in_memory else str(self._path)
        mode = "ro" if self._readonly else "rw"
        return f"PersistentStore({location}, {mode})"
