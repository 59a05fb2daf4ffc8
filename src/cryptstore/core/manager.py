"""
Encrypted access layer over the bucket store

Every public operation follows the same shape:
  open the store file (unless batch mode already holds it open)
  -> run one transaction against a bucket
  -> encrypt / decrypt values crossing the boundary when a secret is set
  -> close the store file again (unless batch mode)

Batch mode exists because an open store file cannot be moved, copied or
replaced safely while the program runs. With batch mode off, the file is
only open for the duration of a call; turn it on around a burst of calls to
skip the reopen cost, then turn it off (or call close()) to release the file.

On disk a value is either the serialized payload, or, with a secret,
``iv(16) || AES-256-CFB(payload)``. There is no integrity check.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Union
import logging
import threading

from .codec import Codec, JsonCodec
from .exceptions import (
    BucketNotFoundError,
    CryptStoreError,
    InvalidFileNameError,
    InvalidKeyError,
    InvalidPathError,
    SerializationError,
    TruncatedInputError,
)
from ..database.engine import StoreHandle, open_store, to_bytes
from ..database.transaction import TransactionWrapper
from ..security.cipher import CipherBox

Opener = Callable[[Path], StoreHandle]


class StoreManager:
    """Owns one store file and exposes get / save / delete / prefix scans over it."""

    def __init__(
        self,
        name: str,
        path: Union[str, Path] = "",
        secret: Union[str, bytes] = "",
        batch_mode: bool = False,
        buckets: Optional[Sequence[str]] = None,
        codec: Optional[Codec] = None,
        opener: Optional[Opener] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Validate the location, set up encryption and make sure the buckets exist.

        Args:
            name: store file name, e.g. ``articles.db``
            path: directory holding the file; ``""`` means the working directory
            secret: encrypt values with this secret; ``""`` stores them in clear
            batch_mode: keep the file open between calls
            buckets: bucket names created (if missing) every time the file is opened
            codec: turns non-bytes payloads into bytes, JSON by default
            opener: callable ``path -> StoreHandle``, ``open_store`` by default
            logger: where diagnostics go, this module's logger by default

        Raises:
            InvalidPathError: ``path`` is given but is not an existing directory
            InvalidFileNameError: ``path/name`` exists and is not a regular file
            StoreError: the file cannot be opened or initialised
        """
        self.logger = logger or logging.getLogger(__name__)

        if path:
            directory = Path(path)
            if not directory.is_dir():
                raise InvalidPathError(f"invalid path name: {path}", operation="init")
            full_path = directory / name
        else:
            full_path = Path(name)

        if full_path.exists() and not full_path.is_file():
            raise InvalidFileNameError(f"invalid file name: {full_path}", operation="init")
        if not full_path.exists():
            self.logger.debug("store file %s does not exist, will be created", full_path)

        self.name = name
        self.path = str(path)
        self.full_path = full_path
        self.codec: Codec = codec or JsonCodec()

        self._buckets = list(buckets or [])
        self._batch_mode = batch_mode
        self._opener: Opener = opener or open_store
        self._cipher: Optional[CipherBox] = None
        self._handle: Optional[StoreHandle] = None
        self._users = 0
        self._close_pending = False
        self._lock = threading.RLock()

        self.set_secret(secret)

        # one-shot open to create the file and buckets; never left open
        with self._lock:
            self._acquire()
            self._users -= 1
            self._close_handle()

    def __repr__(self):
        return (
            f"StoreManager(full_path={str(self.full_path)!r}, buckets={self._buckets!r}, "
            f"batch_mode={self._batch_mode}, encrypted={self.encrypted})"
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    @property
    def buckets(self) -> List[str]:
        return list(self._buckets)

    @property
    def batch_mode(self) -> bool:
        return self._batch_mode

    @property
    def encrypted(self) -> bool:
        return self._cipher is not None

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._handle is not None

    def set_secret(self, secret: Union[str, bytes]) -> None:
        """Replace the encryption secret; an empty secret turns encryption off."""
        cipher = CipherBox(secret) if secret else None
        with self._lock:
            self._cipher = cipher

    def set_batch_mode(self, mode: bool) -> None:
        """
        Keep the store file open across calls (``True``) or not (``False``).

        Turning batch mode off closes the file straight away, or as soon as
        the calls currently running on other threads finish.
        """
        with self._lock:
            self._batch_mode = mode
            if not mode and self._users == 0:
                self._close_handle()

    def close(self) -> None:
        """
        Close the store file whatever the batch mode.

        Calls already running on other threads keep the file until they
        finish; the last one out closes it.
        """
        with self._lock:
            if self._users == 0:
                self._close_handle()
            else:
                self._close_pending = True

    # ------------------------------------------------------------------
    # Handle lifecycle
    # ------------------------------------------------------------------

    def _acquire(self) -> StoreHandle:
        # caller holds self._lock
        if self._handle is None or self._handle.closed:
            handle = self._opener(self.full_path)
            try:
                TransactionWrapper(handle).update(self._init_buckets)
            except Exception:
                handle.close()
                raise
            self._handle = handle
            self.logger.debug("opened %s", self.full_path)
        self._users += 1
        return self._handle

    def _init_buckets(self, txn):
        for bucket in self._buckets:
            txn.create_bucket_if_not_exists(bucket)

    def _release(self) -> None:
        with self._lock:
            self._users -= 1
            if self._users == 0 and (self._close_pending or not self._batch_mode):
                self._close_handle()

    def _close_handle(self) -> None:
        # caller holds self._lock
        self._close_pending = False
        if self._handle is not None:
            self._handle.close()
            self._handle = None
            self.logger.debug("closed %s", self.full_path)

    @contextmanager
    def _opened(self):
        with self._lock:
            handle = self._acquire()
        try:
            yield TransactionWrapper(handle)
        finally:
            self._release()

    def _run(self, operation, fn, write=False, bucket=None, key=None):
        try:
            with self._opened() as tx:
                return tx.update(fn) if write else tx.view(fn)
        except CryptStoreError as e:
            if e.operation is None:
                e.operation = operation
            if e.bucket is None:
                e.bucket = bucket
            if e.key is None:
                e.key = key
            self.logger.warning("%s failed: %s", operation, e)
            raise

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _bucket(txn, bucket, operation, key=None):
        bkt = txn.bucket(bucket)
        if bkt is None:
            raise BucketNotFoundError(
                "bucket not found", operation=operation, bucket=bucket, key=key
            )
        return bkt

    def _open_value(self, cipher, value, operation, bucket, key):
        if cipher is None:
            return value
        try:
            return cipher.decrypt(value)
        except TruncatedInputError as e:
            raise TruncatedInputError(
                "stored value is too short to decrypt",
                operation=operation,
                bucket=bucket,
                key=key,
            ) from e

    def _serialize(self, data, bucket, key) -> bytes:
        if data is None:
            raise SerializationError("data is None", operation="save", bucket=bucket, key=key)
        if isinstance(data, (bytes, bytearray, memoryview)):
            return bytes(data)
        try:
            return self.codec.encode(data)
        except SerializationError as e:
            e.operation, e.bucket, e.key = "save", bucket, key
            raise

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def get_one(self, bucket: str, key: str) -> Optional[bytes]:
        """
        Return the value of the first key in ``bucket`` that starts with ``key``.

        This is a prefix seek, not an exact match: with ``"a-10"`` stored,
        ``get_one(bucket, "a-1")`` returns its value. Returns None when no
        key starts with ``key``.
        """
        if not key:
            raise InvalidKeyError("invalid key or key is empty", operation="get_one", bucket=bucket)

        prefix = to_bytes(key)
        cipher = self._cipher

        def seek(txn):
            k, v = self._bucket(txn, bucket, "get_one", key).cursor().seek(prefix)
            if k is None or not k.startswith(prefix):
                return None
            return self._open_value(cipher, v, "get_one", bucket, k.decode("utf-8", "surrogateescape"))

        return self._run("get_one", seek, bucket=bucket, key=key)

    def get_by_prefix(self, bucket: str, prefix: str) -> List[bytes]:
        """Return every value whose key starts with ``prefix``, in key order."""
        prefix_b = to_bytes(prefix)
        cipher = self._cipher

        def scan(txn):
            results = []
            cursor = self._bucket(txn, bucket, "get_by_prefix").cursor()
            k, v = cursor.seek(prefix_b)
            while k is not None and k.startswith(prefix_b):
                results.append(
                    self._open_value(
                        cipher, v, "get_by_prefix", bucket, k.decode("utf-8", "surrogateescape")
                    )
                )
                k, v = cursor.next()
            return results

        return self._run("get_by_prefix", scan, bucket=bucket)

    def get_key_list(self, bucket: str, prefix: str = "") -> List[str]:
        """Return the keys starting with ``prefix``, in key order. Values are not read."""
        prefix_b = to_bytes(prefix)

        def scan(txn):
            keys = []
            cursor = self._bucket(txn, bucket, "get_key_list").cursor()
            k, _ = cursor.seek(prefix_b)
            while k is not None and k.startswith(prefix_b):
                keys.append(k.decode("utf-8", "surrogateescape"))
                k, _ = cursor.next()
            return keys

        return self._run("get_key_list", scan, bucket=bucket)

    def save(self, bucket: str, key: str, data: Any) -> None:
        """
        Store ``data`` under ``key``, replacing any previous value.

        ``bytes`` are written as given; anything else goes through the codec
        first. With a secret set, the bytes are encrypted before the write.
        """
        if not key:
            raise InvalidKeyError("invalid key or key is empty", operation="save", bucket=bucket)

        value = self._serialize(data, bucket, key)
        cipher = self._cipher
        if cipher is not None:
            value = cipher.encrypt(value)

        def put(txn):
            self._bucket(txn, bucket, "save", key).put(key, value)

        self._run("save", put, write=True, bucket=bucket, key=key)

    def delete(self, bucket: str, key: str) -> None:
        """Remove ``key`` from ``bucket``. Deleting a missing key is not an error."""
        if not key:
            raise InvalidKeyError("cannot delete, key is empty", operation="delete", bucket=bucket)

        def remove(txn):
            self._bucket(txn, bucket, "delete", key).delete(key)

        self._run("delete", remove, write=True, bucket=bucket, key=key)

    def get_object(self, bucket: str, key: str) -> Any:
        """``get_one`` followed by the codec's decode; None when absent."""
        raw = self.get_one(bucket, key)
        if raw is None:
            return None
        try:
            return self.codec.decode(raw)
        except SerializationError as e:
            e.operation, e.bucket, e.key = "get_object", bucket, key
            raise

    def get_objects_by_prefix(self, bucket: str, prefix: str) -> List[Any]:
        """``get_by_prefix`` with every value decoded by the codec."""
        try:
            return [self.codec.decode(raw) for raw in self.get_by_prefix(bucket, prefix)]
        except SerializationError as e:
            e.operation, e.bucket = "get_objects_by_prefix", bucket
            raise

    def list_buckets(self) -> List[str]:
        """Names of all buckets currently in the store file."""
        return self._run("list_buckets", lambda txn: txn.bucket_names())
