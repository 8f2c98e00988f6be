"""Binary-safe JSON codec for credential material.

Signal keys, identity keys and app-state blobs are raw bytes nested anywhere
inside ordinary dicts and lists. Before a value reaches the database every
bytes-like node is replaced by ``{"kind": "bytes", "data": "<base64>"}``;
decoding restores the bytes. ``decode(encode(v)) == v`` for any nesting of
dicts, lists, bytes, scalars and ``None``, with two exceptions: tuples come
back as lists, and a caller dict that is itself exactly
``{"kind": "bytes", "data": <str>}`` comes back as bytes.
"""

from __future__ import annotations

import base64
import json
from typing import Any

BYTES_KIND = "bytes"


def encode_binary(value: Any) -> Any:
    """Recursively wrap bytes-like nodes in the tagged base64 form."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"kind": BYTES_KIND, "data": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, (list, tuple)):
        return [encode_binary(item) for item in value]
    if isinstance(value, dict):
        return {key: encode_binary(item) for key, item in value.items()}
    return value


def _is_bytes_tag(value: dict) -> bool:
    return (
        len(value) == 2
        and value.get("kind") == BYTES_KIND
        and isinstance(value.get("data"), str)
    )


def decode_binary(value: Any) -> Any:
    """Exact inverse of :func:`encode_binary`."""
    if isinstance(value, dict):
        if _is_bytes_tag(value):
            return base64.b64decode(value["data"])
        return {key: decode_binary(item) for key, item in value.items()}
    if isinstance(value, list):
        return [decode_binary(item) for item in value]
    return value


def dumps(value: Any) -> str:
    """Serialize a credential value for a ``Text`` column."""
    return json.dumps(encode_binary(value), separators=(",", ":"))


def loads(raw: str | None) -> Any:
    if raw is None:
        return None
    return decode_binary(json.loads(raw))
