"""Run callbacks inside store transactions."""

from typing import Callable, TypeVar

from .engine import StoreHandle, Transaction

T = TypeVar("T")


class TransactionWrapper:
    """Adapter giving ``view`` / ``update`` over a ``StoreHandle``.

    The callback receives the open ``Transaction`` and its return value is
    handed back. Whatever it raises is re-raised as is, after the
    transaction has been rolled back.
    """

    __slots__ = ("handle",)

    def __init__(self, handle: StoreHandle):
        self.handle = handle

    def view(self, fn: Callable[[Transaction], T]) -> T:
        """Run ``fn`` in a read-only transaction."""
        with self.handle.read_transaction() as txn:
            return fn(txn)

    def update(self, fn: Callable[[Transaction], T]) -> T:
        """Run ``fn`` in a read-write transaction; only one runs at a time."""
        with self.handle.write_transaction() as txn:
            return fn(txn)
