"""AES-CFB stream encryption for stored values.

Record layout (what ends up in the store):
- 16 bytes: random IV, fresh for every call to ``encrypt``
- N bytes: AES-256-CFB ciphertext, same length as the plaintext (no padding)

The key is SHA-256 of the secret, so the same secret always gives the same
cipher. There is no MAC: a flipped ciphertext bit decrypts to a flipped
plaintext bit and nothing here notices.
"""
from __future__ import annotations

import hashlib
import os
from typing import Union

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms

try:
    # newer cryptography releases only keep CFB under decrepit
    from cryptography.hazmat.decrepit.ciphers.modes import CFB
except ImportError:
    from cryptography.hazmat.primitives.ciphers.modes import CFB

from ..core.exceptions import CipherInitError, RandomSourceError, TruncatedInputError


BLOCK_SIZE = 16
KEY_SIZE = 32

Secret = Union[bytes, str]


class CipherBox:
    """Symmetric stream cipher bound to one secret.

    The key and the AES algorithm object are built once in the constructor
    and reused by every ``encrypt`` / ``decrypt`` call.
    """

    __slots__ = ("_key", "_algorithm")

    block_size = BLOCK_SIZE
    key_size = KEY_SIZE

    def __init__(self, secret: Secret):
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        if not secret:
            raise CipherInitError("secret is empty", operation="cipher_init")

        self._key = self.derive_key(secret)
        try:
            self._algorithm = algorithms.AES(self._key)
        except ValueError as e:
            raise CipherInitError(f"cannot initialise AES: {e}", operation="cipher_init")

    @staticmethod
    def derive_key(secret: Secret) -> bytes:
        """Return the 32-byte AES key for ``secret``."""
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        return hashlib.sha256(secret).digest()

    def _cipher(self, iv: bytes) -> Cipher:
        return Cipher(self._algorithm, CFB(iv))

    def encrypt(self, plaintext: bytes) -> bytes:
        """Encrypt ``plaintext`` and return ``iv || ciphertext``."""
        try:
            iv = os.urandom(BLOCK_SIZE)
        except OSError as e:
            raise RandomSourceError(f"cannot read IV from random source: {e}", operation="encrypt")

        encryptor = self._cipher(iv).encryptor()
        output = bytearray(iv)
        output += encryptor.update(bytes(plaintext))
        output += encryptor.finalize()
        return bytes(output)

    def decrypt(self, data: bytes) -> bytes:
        """
        Decrypt ``iv || ciphertext`` into a new bytes object.

        The input is left untouched, so it is safe to pass buffers owned by
        somebody else (e.g. rows straight from the store).
        """
        if len(data) < BLOCK_SIZE:
            raise TruncatedInputError("ciphertext too short", operation="decrypt")

        view = memoryview(data)
        decryptor = self._cipher(bytes(view[:BLOCK_SIZE])).decryptor()
        return decryptor.update(bytes(view[BLOCK_SIZE:])) + decryptor.finalize()

    def decrypt_in_place(self, buffer: bytearray) -> memoryview:
        """
        Decrypt ``buffer`` by overwriting its ciphertext body with plaintext.

        Returns a view over ``buffer[BLOCK_SIZE:]``; the original ciphertext is
        gone afterwards. Copy first if you still need it.
        """
        if len(buffer) < BLOCK_SIZE:
            raise TruncatedInputError("ciphertext too short", operation="decrypt")
        if not isinstance(buffer, bytearray):
            raise TypeError("decrypt_in_place needs a bytearray")

        view = memoryview(buffer)
        decryptor = self._cipher(bytes(view[:BLOCK_SIZE])).decryptor()
        body = view[BLOCK_SIZE:]
        body[:] = decryptor.update(body) + decryptor.finalize()
        return body
