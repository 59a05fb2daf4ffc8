"""
Exceptions for the cryptstore package
Every public operation fails with one of these, so callers can catch CryptStoreError
"""


class CryptStoreError(Exception):
    # general container for errors, carries where it happened

    def __init__(self, message, operation=None, bucket=None, key=None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.bucket = bucket
        self.key = key

    def __str__(self):
        parts = [
            f"{name}={value!r}"
            for name, value in (
                ("operation", self.operation),
                ("bucket", self.bucket),
                ("key", self.key),
            )
            if value is not None
        ]
        if not parts:
            return self.message
        return f"{self.message} ({', '.join(parts)})"


class ConfigError(CryptStoreError):
    # raised when a manager cannot be constructed from its settings
    pass


class InvalidPathError(ConfigError):
    # raised if the store directory DNE or is not a directory
    pass


class InvalidFileNameError(ConfigError):
    # raised if the store path exists but is not a regular file
    pass


class KeystoreError(ConfigError):
    # raised when the OS keyring cannot store, read or remove a secret
    pass


class InvalidKeyError(CryptStoreError):
    # raised on an empty key
    pass


class BucketNotFoundError(CryptStoreError):
    # raised when the bucket is missing at access time
    pass


class CipherError(CryptStoreError):
    # general container for encryption failures
    pass


class CipherInitError(CipherError):
    # raised when the cipher cannot be built from the secret
    pass


class RandomSourceError(CipherError):
    # raised when the OS random source fails to produce an IV
    pass


class TruncatedInputError(CipherError):
    # raised when ciphertext is shorter than one block
    pass


class SerializationError(CryptStoreError):
    # raised if a payload cannot be encoded / decoded
    pass


class StoreError(CryptStoreError):
    # raised for any failure coming out of the storage engine (I/O, locking, closed handle)
    pass
