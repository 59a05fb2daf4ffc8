"""Environment-driven settings for building a ``StoreManager``."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Union
import getpass
import os

from .core.manager import StoreManager
from .security.keystore import load_secret

ENV_PREFIX = "CRYPTSTORE_"
DEFAULT_NAME = "cryptstore.db"

_TRUE = {"1", "true", "yes", "on"}


def _split_buckets(raw: str) -> List[str]:
    return [b.strip() for b in raw.split(",") if b.strip()]


@dataclass
class StoreConfig:
    """Everything needed to construct a manager."""

    name: str = DEFAULT_NAME
    directory: str = ""
    secret: Union[str, bytes] = field(default="", repr=False)
    batch_mode: bool = False
    buckets: List[str] = field(default_factory=list)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "StoreConfig":
        """
        Read settings from ``CRYPTSTORE_*`` environment variables.

        - ``CRYPTSTORE_NAME``: store file name (default ``cryptstore.db``)
        - ``CRYPTSTORE_DIR``: directory holding the file
        - ``CRYPTSTORE_SECRET``: encryption secret; empty means no encryption
        - ``CRYPTSTORE_BATCH``: ``1/true/yes/on`` keeps the file open between calls
        - ``CRYPTSTORE_BUCKETS``: comma separated bucket names
        - ``CRYPTSTORE_KEYRING_SERVICE`` / ``CRYPTSTORE_KEYRING_ACCOUNT``: when no
          secret is set, look it up in the OS keyring instead (account defaults
          to the current user)
        """
        env = os.environ if environ is None else environ

        secret: Union[str, bytes] = env.get(f"{ENV_PREFIX}SECRET", "")
        service = env.get(f"{ENV_PREFIX}KEYRING_SERVICE")
        if not secret and service:
            account = env.get(f"{ENV_PREFIX}KEYRING_ACCOUNT") or getpass.getuser()
            secret = load_secret(service, account) or ""

        return cls(
            name=env.get(f"{ENV_PREFIX}NAME") or DEFAULT_NAME,
            directory=env.get(f"{ENV_PREFIX}DIR", ""),
            secret=secret,
            batch_mode=env.get(f"{ENV_PREFIX}BATCH", "").strip().lower() in _TRUE,
            buckets=_split_buckets(env.get(f"{ENV_PREFIX}BUCKETS", "")),
        )

    def build_manager(self, **kwargs) -> StoreManager:
        """Construct a ``StoreManager``; extra kwargs (codec, opener, logger) are passed on."""
        return StoreManager(
            self.name,
            self.directory,
            self.secret,
            self.batch_mode,
            self.buckets,
            **kwargs,
        )
