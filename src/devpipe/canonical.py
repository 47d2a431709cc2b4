"""Canonical JSON (RFC 8785) for opaque payloads and stable fingerprints."""

from __future__ import annotations

import hashlib
from datetime import date, datetime, time
from enum import Enum
from pathlib import PurePath
from typing import Any
from uuid import UUID

import rfc8785
from pydantic import BaseModel

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert Python/pydantic values into JSON primitives.

    Models are dumped in JSON mode; enums collapse to their value; temporal
    values, UUIDs and paths become strings. Sets are sorted so the output
    does not depend on hash order.

    Raises:
        TypeError: If value contains a type that has no JSON representation.
    """
    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_normalize_for_jcs(item) for item in value), key=repr)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (UUID, PurePath)):
        return str(value)
    if isinstance(value, bytes):
        raise TypeError(
            f"Cannot serialize bytes to canonical JSON. "
            f"Encode to base64 or hex string first: {value!r:.64}"
        )
    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_bytes(value: Any) -> bytes:
    """Serialize ``value`` to RFC 8785 canonical JSON bytes.

    Raises:
        TypeError: If value contains an unsupported type.
        rfc8785.CanonicalizationError: If rfc8785 rejects the normalized value.
    """
    return rfc8785.dumps(_normalize_for_jcs(value))


def to_canonical_json(value: Any) -> str:
    return to_canonical_bytes(value).decode("utf-8")


def fingerprint(value: Any) -> str:
    """Short sha256 digest of the canonical form, used to name records."""
    return hashlib.sha256(to_canonical_bytes(value)).hexdigest()[:12]
