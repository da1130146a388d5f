"""Conversion between GraphQL scalar values and raw JSON bytes."""

from __future__ import annotations

import base64
import json
from typing import Any, BinaryIO, Callable, Optional

_HTML_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def _default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, (set, frozenset)):
        raise TypeError(f"object of type {type(value).__name__} is not JSON serializable")
    raise TypeError(f"object of type {type(value).__name__} is not JSON serializable")


def _encode(value: Any) -> bytes:
    text = json.dumps(
        value,
        separators=(",", ":"),
        sort_keys=True,
        ensure_ascii=False,
        allow_nan=False,
        default=_default,
    )
    for char, escape in _HTML_ESCAPES.items():
        text = text.replace(char, escape)
    return text.encode("utf-8")


def marshal_raw_message(raw: Optional[bytes]) -> Callable[[BinaryIO], None]:
    """Return a writer that emits the raw JSON bytes (``null`` when absent)."""
    payload = b"null" if raw is None else bytes(raw)

    def write(stream: BinaryIO) -> None:
        stream.write(payload)

    return write


def unmarshal_raw_message(value: Any) -> bytes:
    """Turn a GraphQL input value into raw JSON bytes.

    Bytes are taken as already-encoded JSON; anything else is serialised.
    Raises TypeError or ValueError when the value cannot be encoded.
    """
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    return _encode(value)