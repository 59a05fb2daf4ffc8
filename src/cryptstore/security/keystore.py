"""Keep a store secret in the OS keyring instead of config files or shell history.

Secrets live under a (service, account) pair, base64-encoded so binary
secrets survive backends that only hold text. Whether that is actually safe
depends on the backend keyring picked for this machine; ``assess_keyring_backend``
tells the plaintext/disabled ones apart from the OS-protected ones.
"""
import base64
import binascii
import logging
from typing import NamedTuple, Optional, Union

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from ..core.exceptions import KeystoreError

logger = logging.getLogger(__name__)

DEFAULT_SERVICE = "cryptstore"

# lowercased fragments of backend class paths that keep secrets unprotected or not at all
_INSECURE_MARKERS = ("fail", "null", "plaintext", "uncrypted")


class BackendAssessment(NamedTuple):
    secure: bool
    backend: str
    detail: str


def _backend_name(backend) -> str:
    cls = type(backend)
    return f"{cls.__module__}.{cls.__qualname__}"


def save_secret(service: str, account: str, secret: Union[bytes, str]) -> None:
    """Store ``secret`` under (service, account), replacing any previous one."""
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    if not secret:
        raise KeystoreError("refusing to store an empty secret", operation="save_secret")
    try:
        keyring.set_password(service, account, base64.b64encode(secret).decode("ascii"))
    except KeyringError as e:
        raise KeystoreError(f"keyring rejected the secret for {service}/{account}: {e}", operation="save_secret")
    logger.debug("stored secret for %s/%s", service, account)


def load_secret(service: str, account: str) -> Optional[bytes]:
    """Return the secret stored under (service, account), or None when there is none."""
    try:
        stored = keyring.get_password(service, account)
    except KeyringError as e:
        raise KeystoreError(f"cannot read secret for {service}/{account}: {e}", operation="load_secret")
    if stored is None:
        return None
    try:
        return base64.b64decode(stored, validate=True)
    except (binascii.Error, ValueError):
        logger.warning("keyring entry %s/%s is not base64, ignoring it", service, account)
        return None


def delete_secret(service: str, account: str) -> bool:
    """Remove the secret under (service, account); returns False when nothing was stored."""
    try:
        keyring.delete_password(service, account)
    except PasswordDeleteError:
        return False
    except KeyringError as e:
        raise KeystoreError(f"cannot delete secret for {service}/{account}: {e}", operation="delete_secret")
    return True


def assess_keyring_backend(backend=None) -> BackendAssessment:
    """
    Judge whether ``backend`` (the active keyring backend by default) protects secrets.

    A chaining backend is secure when at least one backend behind it is.
    Otherwise plaintext, fail and null backends are insecure, as is anything
    keyring itself disabled (priority <= 0).
    """
    if backend is None:
        try:
            backend = keyring.get_keyring()
        except KeyringError as e:
            return BackendAssessment(False, "unknown", f"cannot load keyring backend: {e}")

    name = _backend_name(backend)

    chained = getattr(backend, "backends", None)
    if chained is not None:
        usable = [_backend_name(b) for b in chained if assess_keyring_backend(b).secure]
        if not usable:
            return BackendAssessment(False, name, "no secure backend behind the chainer")
        return BackendAssessment(True, name, f"chains {', '.join(usable)}")

    lowered = name.lower()
    for marker in _INSECURE_MARKERS:
        if marker in lowered:
            return BackendAssessment(False, name, f"{marker} backend does not protect secrets")

    priority = getattr(backend, "priority", 0)
    if priority <= 0:
        return BackendAssessment(False, name, f"backend is disabled (priority {priority})")
    return BackendAssessment(True, name, f"priority {priority}")
