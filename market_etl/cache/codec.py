"""
Payload envelope for persisted cache entries.

Upstream payloads are JSON values, plain text or raw bytes. They are
stored in a JSONB column wrapped as ``{"format": ..., "data": ...}`` so
that text and bytes survive the round trip unchanged.
"""

import base64
import binascii
from typing import Any

from market_etl.errors import CacheCorruptionError

FORMAT_JSON = "json"
FORMAT_TEXT = "text"
FORMAT_BYTES = "bytes"


def encode_payload(payload: Any) -> dict[str, Any]:
    if isinstance(payload, (bytes, bytearray)):
        return {
            "format": FORMAT_BYTES,
            "data": base64.b64encode(bytes(payload)).decode("ascii"),
        }
    if isinstance(payload, str):
        return {"format": FORMAT_TEXT, "data": payload}
    return {"format": FORMAT_JSON, "data": payload}


def decode_payload(envelope: Any, source: str, cache_key: str) -> Any:
    """
    Unwrap a stored envelope.

    Raises:
        CacheCorruptionError: If the envelope is malformed
    """
    if not isinstance(envelope, dict) or "format" not in envelope or "data" not in envelope:
        raise CacheCorruptionError(source, cache_key, "missing payload envelope")

    fmt = envelope["format"]
    data = envelope["data"]

    if fmt == FORMAT_JSON:
        return data
    if fmt == FORMAT_TEXT:
        if not isinstance(data, str):
            raise CacheCorruptionError(source, cache_key, "text payload is not a string")
        return data
    if fmt == FORMAT_BYTES:
        if not isinstance(data, str):
            raise CacheCorruptionError(source, cache_key, "bytes payload is not base64 text")
        try:
            return base64.b64decode(data.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as e:
            raise CacheCorruptionError(source, cache_key, f"invalid base64: {e}") from e

    raise CacheCorruptionError(source, cache_key, f"unknown payload format {fmt!r}")
