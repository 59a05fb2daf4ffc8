"""Ordered bucket store on top of SQLite.

One store file holds any number of named buckets. Inside a bucket, keys are
raw bytes kept in byte-lexicographic order, and a cursor can seek to the first
key at or after a given one and walk forward from there.

Transactions come in two flavours:
- read: deferred ``BEGIN``, always rolled back, sees one consistent snapshot
- write: ``BEGIN IMMEDIATE`` so only one writer runs at a time; commit on success

Connections are thread-local, the same way the rest of the project talks to
SQLite, so one handle can be shared by several threads. A thread's connection
is closed when the thread exits, so long-lived handles used from a changing
set of pool threads do not pile up connections.
"""

import logging
import os
import sqlite3
import threading
import weakref
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

from .schema import get_init_schema
from ..core.exceptions import InvalidKeyError, StoreError

logger = logging.getLogger(__name__)

Key = Union[bytes, bytearray, memoryview, str]


def to_bytes(value: Key) -> bytes:
    """Normalise a key to bytes; ``str`` keys are UTF-8 encoded.

    Lone surrogates map back to raw bytes, so keys listed with
    ``surrogateescape`` decoding can be passed straight back in.
    """
    if isinstance(value, str):
        return value.encode("utf-8", "surrogateescape")
    return bytes(value)


class _ThreadConnection:
    # lives in thread-local storage; its finalizer closes the connection on thread exit

    __slots__ = ("connection", "__weakref__")

    def __init__(self, connection):
        self.connection = connection


def _discard_connection(lock, connections, conn):
    with lock:
        if conn in connections:
            connections.remove(conn)
    try:
        conn.close()
    except sqlite3.Error as e:
        logger.warning("error closing thread connection: %s", e)


class StoreHandle:
    """An open store file."""

    __slots__ = ("path", "timeout", "_local", "_lock", "_connections", "_closed")

    def __init__(self, path, timeout=5.0):
        """Initialize connection state."""
        self.path = Path(path)
        self.timeout = timeout
        self._local = threading.local()
        self._lock = threading.Lock()
        self._connections: List[sqlite3.Connection] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def open_connections(self) -> int:
        """Number of live per-thread connections."""
        with self._lock:
            return len(self._connections)

    def initialize(self):
        """Switch on WAL journalling and install the schema."""
        try:
            conn = self._get_connection()
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("BEGIN IMMEDIATE")
            try:
                for statement in get_init_schema():
                    conn.execute(statement)
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
        except sqlite3.Error as e:
            raise StoreError(f"Failed to initialize store {self.path}: {e}", operation="open")

    def _get_connection(self):
        """Get or create a thread-local SQLite connection."""
        if self._closed:
            raise StoreError(f"store {self.path} is closed")

        holder = getattr(self._local, "holder", None)
        if holder is None:
            try:
                conn = sqlite3.connect(
                    str(self.path),
                    timeout=self.timeout,
                    check_same_thread=False,
                    isolation_level=None,
                )
                conn.execute("PRAGMA foreign_keys = ON")
            except sqlite3.Error as e:
                raise StoreError(f"cannot connect to store {self.path}: {e}", operation="open")
            with self._lock:
                self._connections.append(conn)
            holder = _ThreadConnection(conn)
            weakref.finalize(holder, _discard_connection, self._lock, self._connections, conn)
            self._local.holder = holder

        return holder.connection

    def read_transaction(self):
        """Return a read-only transaction context manager."""
        return TransactionContext(self._get_connection(), writable=False)

    def write_transaction(self):
        """Return a read-write transaction context manager (BEGIN IMMEDIATE/COMMIT/ROLLBACK)."""
        return TransactionContext(self._get_connection(), writable=True)

    def close(self):
        """Close every connection this handle opened, from any thread."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            connections, self._connections = self._connections, []

        for conn in connections:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning("error closing connection to %s: %s", self.path, e)
        logger.debug("closed store %s", self.path)


def open_store(path, mode=0o600, timeout=5.0) -> StoreHandle:
    """
    Open the store file at ``path``, creating it with ``mode`` permissions when absent.

    Raises:
        StoreError: the file cannot be created or is not a usable store
    """
    path = Path(path)
    if not path.exists():
        try:
            fd = os.open(path, os.O_CREAT | os.O_RDWR, mode)
            os.close(fd)
        except OSError as e:
            raise StoreError(f"cannot create store file {path}: {e}", operation="open")
        logger.debug("created store file %s", path)

    handle = StoreHandle(path, timeout=timeout)
    try:
        handle.initialize()
    except StoreError:
        handle.close()
        raise
    logger.debug("opened store %s", path)
    return handle


class TransactionContext:
    """Context manager for one transaction on one connection."""

    __slots__ = ("connection", "writable", "transaction")

    def __init__(self, connection, writable):
        """Initialize with a SQLite connection."""
        self.connection = connection
        self.writable = writable
        self.transaction = None

    def __enter__(self):
        """Begin the transaction and return a ``Transaction``."""
        try:
            self.connection.execute("BEGIN IMMEDIATE" if self.writable else "BEGIN")
        except sqlite3.Error as e:
            raise StoreError(f"cannot begin transaction: {e}")
        self.transaction = Transaction(self.connection, self.writable)
        return self.transaction

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Commit a successful write, roll back everything else."""
        try:
            self.transaction.close()
            if self.writable and exc_type is None:
                self.connection.execute("COMMIT")
            else:
                self.connection.execute("ROLLBACK")
        except StoreError as e:
            if exc_type is None:
                raise
            logger.warning("cursor cleanup failed after %s: %s", exc_type.__name__, e)
        except sqlite3.Error as e:
            if exc_type is None:
                raise StoreError(f"cannot finish transaction: {e}")
            logger.warning("rollback failed after %s: %s", exc_type.__name__, e)
        return False


class Transaction:
    """Bucket access inside an open transaction."""

    __slots__ = ("connection", "writable", "_cursors")

    def __init__(self, connection, writable):
        self.connection = connection
        self.writable = writable
        self._cursors = []

    def execute(self, query, params=()):
        """Run one statement and return the SQLite cursor."""
        try:
            return self.connection.execute(query, params)
        except sqlite3.Error as e:
            raise StoreError(f"store query failed: {e}")

    def require_writable(self, operation):
        if not self.writable:
            raise StoreError("transaction not writable", operation=operation)

    def bucket(self, name: str) -> Optional["Bucket"]:
        """Return the bucket called ``name`` or None when it does not exist."""
        row = self.execute("SELECT 1 FROM buckets WHERE name = ?", (name,)).fetchone()
        if row is None:
            return None
        return Bucket(self, name)

    def create_bucket_if_not_exists(self, name: str) -> "Bucket":
        self.require_writable("create_bucket")
        if not name:
            raise StoreError("bucket name required", operation="create_bucket")
        self.execute("INSERT OR IGNORE INTO buckets (name) VALUES (?)", (name,))
        return Bucket(self, name)

    def delete_bucket(self, name: str) -> None:
        """Drop a bucket and every record in it."""
        self.require_writable("delete_bucket")
        self.execute("DELETE FROM records WHERE bucket = ?", (name,))
        self.execute("DELETE FROM buckets WHERE name = ?", (name,))

    def bucket_names(self) -> List[str]:
        rows = self.execute("SELECT name FROM buckets ORDER BY name").fetchall()
        return [row[0] for row in rows]

    def register_cursor(self, cursor):
        self._cursors.append(cursor)

    def close(self):
        for cursor in self._cursors:
            cursor.close()
        self._cursors = []


class Bucket:
    """A named, ordered key/value namespace."""

    __slots__ = ("transaction", "name")

    def __init__(self, transaction: Transaction, name: str):
        self.transaction = transaction
        self.name = name

    def cursor(self) -> "Cursor":
        cursor = Cursor(self)
        self.transaction.register_cursor(cursor)
        return cursor

    def get(self, key: Key) -> Optional[bytes]:
        """Exact-match lookup."""
        row = self.transaction.execute(
            "SELECT value FROM records WHERE bucket = ? AND key = ?",
            (self.name, to_bytes(key)),
        ).fetchone()
        return bytes(row[0]) if row else None

    def put(self, key: Key, value: bytes) -> None:
        """Insert or overwrite ``key``."""
        self.transaction.require_writable("put")
        key = to_bytes(key)
        if not key:
            raise InvalidKeyError("key required", operation="put", bucket=self.name)
        self.transaction.execute(
            "INSERT OR REPLACE INTO records (bucket, key, value) VALUES (?, ?, ?)",
            (self.name, key, bytes(value)),
        )

    def delete(self, key: Key) -> None:
        """Remove ``key``; missing keys are fine."""
        self.transaction.require_writable("delete")
        self.transaction.execute(
            "DELETE FROM records WHERE bucket = ? AND key = ?",
            (self.name, to_bytes(key)),
        )

    def __iter__(self) -> Iterator[Tuple[bytes, bytes]]:
        cursor = self.cursor()
        k, v = cursor.first()
        while k is not None:
            yield k, v
            k, v = cursor.next()


class Cursor:
    """Forward iterator over a bucket in key order."""

    __slots__ = ("bucket", "_rows")

    def __init__(self, bucket: Bucket):
        self.bucket = bucket
        self._rows = None

    def seek(self, key: Key) -> Tuple[Optional[bytes], Optional[bytes]]:
        """Move to the first key >= ``key`` and return ``(key, value)``, or ``(None, None)``."""
        self.close()
        self._rows = self.bucket.transaction.execute(
            "SELECT key, value FROM records WHERE bucket = ? AND key >= ? ORDER BY key",
            (self.bucket.name, to_bytes(key)),
        )
        return self.next()

    def first(self) -> Tuple[Optional[bytes], Optional[bytes]]:
        return self.seek(b"")

    def next(self) -> Tuple[Optional[bytes], Optional[bytes]]:
        if self._rows is None:
            return None, None
        try:
            row = self._rows.fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"cursor read failed: {e}", bucket=self.bucket.name)
        if row is None:
            self.close()
            return None, None
        return bytes(row[0]), bytes(row[1])

    def close(self):
        if self._rows is not None:
            rows, self._rows = self._rows, None
            try:
                rows.close()
            except sqlite3.Error as e:
                raise StoreError(f"cursor close failed: {e}", bucket=self.bucket.name)
