"""Unit tests for the TransactionWrapper adapter."""

from unittest.mock import MagicMock

import pytest

from cryptstore.core.exceptions import StoreError
from cryptstore.database.engine import open_store
from cryptstore.database.transaction import TransactionWrapper


@pytest.fixture
def wrapper(tmp_path):
    handle = open_store(tmp_path / "tx.db")
    yield TransactionWrapper(handle)
    handle.close()


def test_update_returns_callback_result(wrapper):
    result = wrapper.update(lambda txn: txn.create_bucket_if_not_exists("b").name)
    assert result == "b"


def test_view_sees_committed_update(wrapper):
    wrapper.update(lambda txn: txn.create_bucket_if_not_exists("b").put(b"k", b"v"))
    assert wrapper.view(lambda txn: txn.bucket("b").get(b"k")) == b"v"


def test_view_is_read_only(wrapper):
    assert wrapper.view(lambda txn: txn.writable) is False
    assert wrapper.update(lambda txn: txn.writable) is True


def test_callback_error_propagates_unchanged(wrapper):
    err = StoreError("from callback", bucket="b")

    def fail(txn):
        txn.create_bucket_if_not_exists("b")
        raise err

    with pytest.raises(StoreError) as excinfo:
        wrapper.update(fail)

    assert excinfo.value is err
    assert wrapper.view(lambda txn: txn.bucket("b")) is None


def test_uses_handle_transactions():
    handle = MagicMock()
    wrapper = TransactionWrapper(handle)

    wrapper.view(lambda txn: None)
    wrapper.update(lambda txn: None)

    handle.read_transaction.assert_called_once_with()
    handle.write_transaction.assert_called_once_with()
