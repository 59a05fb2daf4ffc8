"""Unit tests covering the SQLite-backed bucket store."""

import gc
import os
import sqlite3
import threading
import time
from pathlib import Path
from typing import Generator
from unittest.mock import MagicMock

import pytest

from cryptstore.core.exceptions import InvalidKeyError, StoreError
from cryptstore.database.engine import StoreHandle, open_store, to_bytes
from cryptstore.database.schema import SCHEMA_VERSION, get_drop_schema


@pytest.fixture()
def handle(tmp_path: Path) -> Generator[StoreHandle, None, None]:
    """Provide an open store with one bucket called ``items``."""
    h = open_store(tmp_path / "store.db")
    with h.write_transaction() as txn:
        txn.create_bucket_if_not_exists("items")
    try:
        yield h
    finally:
        h.close()


def _fill(handle: StoreHandle, *keys: bytes) -> None:
    with handle.write_transaction() as txn:
        bucket = txn.bucket("items")
        for key in keys:
            bucket.put(key, b"v:" + key)


def test_to_bytes_encodes_str() -> None:
    assert to_bytes("a-1") == b"a-1"
    assert to_bytes(bytearray(b"x")) == b"x"
    assert to_bytes("\udcffkey") == b"\xffkey"


def test_open_creates_file_with_owner_only_permissions(tmp_path: Path) -> None:
    path = tmp_path / "new.db"
    h = open_store(path)
    h.close()

    assert path.is_file()
    if os.name != "nt":
        assert path.stat().st_mode & 0o777 == 0o600


def test_open_installs_schema_version(handle: StoreHandle) -> None:
    with handle.read_transaction() as txn:
        row = txn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    assert row[0] == SCHEMA_VERSION


def test_open_rejects_non_store_file(tmp_path: Path) -> None:
    path = tmp_path / "garbage.db"
    path.write_bytes(b"definitely not a database " * 100)

    with pytest.raises(StoreError):
        open_store(path)


def test_closed_handle_raises(handle: StoreHandle) -> None:
    handle.close()
    assert handle.closed
    with pytest.raises(StoreError, match="closed"):
        handle.read_transaction()
    # closing twice is harmless
    handle.close()


def test_bucket_lookup_and_creation_is_idempotent(handle: StoreHandle) -> None:
    with handle.write_transaction() as txn:
        txn.create_bucket_if_not_exists("items")
        txn.create_bucket_if_not_exists("other")

    with handle.read_transaction() as txn:
        assert txn.bucket("missing") is None
        assert txn.bucket("items").name == "items"
        assert txn.bucket_names() == ["items", "other"]


def test_delete_bucket_drops_records(handle: StoreHandle) -> None:
    _fill(handle, b"a")
    with handle.write_transaction() as txn:
        txn.delete_bucket("items")

    with handle.read_transaction() as txn:
        assert txn.bucket("items") is None
        assert txn.execute("SELECT COUNT(*) FROM records").fetchone()[0] == 0


def test_put_overwrites_and_get_is_exact(handle: StoreHandle) -> None:
    with handle.write_transaction() as txn:
        bucket = txn.bucket("items")
        bucket.put(b"k", b"first")
        bucket.put("k", b"second")

    with handle.read_transaction() as txn:
        bucket = txn.bucket("items")
        assert bucket.get(b"k") == b"second"
        assert bucket.get(b"") is None
        assert bucket.get(b"k2") is None


def test_put_rejects_empty_key(handle: StoreHandle) -> None:
    with pytest.raises(InvalidKeyError):
        with handle.write_transaction() as txn:
            txn.bucket("items").put(b"", b"value")


def test_delete_is_idempotent(handle: StoreHandle) -> None:
    _fill(handle, b"k")
    with handle.write_transaction() as txn:
        txn.bucket("items").delete(b"k")
        txn.bucket("items").delete(b"k")

    with handle.read_transaction() as txn:
        assert txn.bucket("items").get(b"k") is None


def test_read_transaction_is_not_writable(handle: StoreHandle) -> None:
    with handle.read_transaction() as txn:
        assert txn.writable is False
        with pytest.raises(StoreError, match="not writable"):
            txn.bucket("items").put(b"k", b"v")
        with pytest.raises(StoreError, match="not writable"):
            txn.bucket("items").delete(b"k")
        with pytest.raises(StoreError, match="not writable"):
            txn.create_bucket_if_not_exists("new")


def test_write_transaction_rolls_back_on_error(handle: StoreHandle) -> None:
    with pytest.raises(RuntimeError):
        with handle.write_transaction() as txn:
            txn.bucket("items").put(b"k", b"v")
            raise RuntimeError("boom")

    with handle.read_transaction() as txn:
        assert txn.bucket("items").get(b"k") is None


def test_cursor_orders_keys_bytewise(handle: StoreHandle) -> None:
    _fill(handle, b"b", b"\xff", b"a-2", b"\x00", b"a-10", b"a-1")

    with handle.read_transaction() as txn:
        keys = [k for k, _ in txn.bucket("items")]

    assert keys == [b"\x00", b"a-1", b"a-10", b"a-2", b"b", b"\xff"]


def test_cursor_seek_and_next(handle: StoreHandle) -> None:
    _fill(handle, b"a-1", b"a-2", b"c-1")

    with handle.read_transaction() as txn:
        cursor = txn.bucket("items").cursor()

        assert cursor.seek(b"b") == (b"c-1", b"v:c-1")
        assert cursor.next() == (None, None)
        assert cursor.next() == (None, None)

        assert cursor.seek(b"a-") == (b"a-1", b"v:a-1")
        assert cursor.next() == (b"a-2", b"v:a-2")

        assert cursor.first() == (b"a-1", b"v:a-1")
        assert cursor.seek(b"d") == (None, None)


def test_cursor_stays_inside_its_bucket(handle: StoreHandle) -> None:
    _fill(handle, b"a")
    with handle.write_transaction() as txn:
        txn.create_bucket_if_not_exists("other").put(b"b", b"other-b")

    with handle.read_transaction() as txn:
        assert list(txn.bucket("items")) == [(b"a", b"v:a")]
        assert list(txn.bucket("other")) == [(b"b", b"other-b")]


def test_data_survives_reopen(tmp_path: Path) -> None:
    path = tmp_path / "store.db"
    h = open_store(path)
    with h.write_transaction() as txn:
        txn.create_bucket_if_not_exists("items").put(b"k", b"v")
    h.close()

    h = open_store(path)
    try:
        with h.read_transaction() as txn:
            assert txn.bucket("items").get(b"k") == b"v"
    finally:
        h.close()


def test_drop_schema(handle: StoreHandle) -> None:
    with handle.write_transaction() as txn:
        for statement in get_drop_schema():
            txn.execute(statement)
        remaining = txn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table'"
        ).fetchall()
    assert remaining == []


def test_cursor_close_failure_raises_store_error(handle: StoreHandle) -> None:
    _fill(handle, b"a", b"b")

    with handle.read_transaction() as txn:
        cursor = txn.bucket("items").cursor()
        cursor.first()
        rows = cursor._rows
        cursor._rows = MagicMock()
        cursor._rows.close.side_effect = sqlite3.ProgrammingError("Cannot operate on a closed database.")
        with pytest.raises(StoreError, match="cursor close failed"):
            cursor.close()
        rows.close()


def test_thread_connection_closed_when_thread_exits(handle: StoreHandle) -> None:
    assert handle.open_connections == 1

    def work() -> None:
        with handle.read_transaction() as txn:
            assert txn.bucket("items") is not None

    for _ in range(3):
        worker = threading.Thread(target=work)
        worker.start()
        worker.join()

    deadline = time.monotonic() + 5
    while handle.open_connections > 1 and time.monotonic() < deadline:
        gc.collect()
        time.sleep(0.01)

    assert handle.open_connections == 1
    with handle.read_transaction() as txn:
        assert txn.bucket("items") is not None
