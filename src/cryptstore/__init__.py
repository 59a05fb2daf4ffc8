"""cryptstore: transparent value encryption over an ordered, bucketed store file."""

import logging

from .core.codec import Codec, JsonCodec, RawCodec
from .core.exceptions import (
    BucketNotFoundError,
    CipherError,
    CipherInitError,
    ConfigError,
    CryptStoreError,
    InvalidFileNameError,
    InvalidKeyError,
    InvalidPathError,
    KeystoreError,
    RandomSourceError,
    SerializationError,
    StoreError,
    TruncatedInputError,
)
from .core.manager import StoreManager
from .security.cipher import CipherBox

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"

__all__ = [
    "StoreManager",
    "CipherBox",
    "Codec",
    "JsonCodec",
    "RawCodec",
    "CryptStoreError",
    "ConfigError",
    "InvalidPathError",
    "InvalidFileNameError",
    "KeystoreError",
    "InvalidKeyError",
    "BucketNotFoundError",
    "CipherError",
    "CipherInitError",
    "RandomSourceError",
    "TruncatedInputError",
    "SerializationError",
    "StoreError",
]
