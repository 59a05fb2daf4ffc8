"""Value codecs used by the store manager to turn objects into bytes and back."""

from __future__ import annotations

import dataclasses
import json
from typing import Any, Protocol

from .exceptions import SerializationError


class Codec(Protocol):
    def encode(self, value: Any) -> bytes: ...

    def decode(self, data: bytes) -> Any: ...


def _default(obj):
    # dataclasses (e.g. records models) go out as plain dicts
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class JsonCodec:
    """Canonical JSON: sorted keys, no whitespace, UTF-8."""

    def encode(self, value: Any) -> bytes:
        try:
            return json.dumps(
                value,
                ensure_ascii=False,
                sort_keys=True,
                separators=(",", ":"),
                default=_default,
            ).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SerializationError(f"cannot encode value: {e}", operation="encode")

    def decode(self, data: bytes) -> Any:
        try:
            return json.loads(bytes(data).decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise SerializationError(f"cannot decode value: {e}", operation="decode")


class RawCodec:
    """Bytes pass straight through."""

    def encode(self, value: Any) -> bytes:
        if isinstance(value, (bytes, bytearray, memoryview)):
            return bytes(value)
        if isinstance(value, str):
            return value.encode("utf-8")
        raise SerializationError(
            f"RawCodec cannot encode {type(value).__name__}", operation="encode"
        )

    def decode(self, data: bytes) -> bytes:
        return bytes(data)
