"""Security helpers: value encryption and optional keyring storage for store secrets.

- ``CipherBox``: AES-256-CFB with a SHA-256 derived key and a random IV per value
- keyring helpers to keep the secret out of config files and shell history
"""

from .cipher import BLOCK_SIZE, KEY_SIZE, CipherBox
from .keystore import (
    DEFAULT_SERVICE,
    BackendAssessment,
    assess_keyring_backend,
    delete_secret,
    load_secret,
    save_secret,
)

__all__ = [
    "BLOCK_SIZE",
    "KEY_SIZE",
    "CipherBox",
    "DEFAULT_SERVICE",
    "BackendAssessment",
    "assess_keyring_backend",
    "save_secret",
    "load_secret",
    "delete_secret",
]
