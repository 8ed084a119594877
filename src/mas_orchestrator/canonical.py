from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel


def _normalize(value: Any) -> Any:
    """Recursively convert Pydantic models, datetimes, UUIDs and enums into JSON primitives."""
    if isinstance(value, (bool, int, float, str, type(None))):
        return value
    if isinstance(value, BaseModel):
        return _normalize(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    if isinstance(value, Enum):
        return _normalize(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        "Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to a deterministic JSON string.

    Keys are sorted and insignificant whitespace is removed, so equal values
    always produce identical text. Used for checkpoint records and for
    content fingerprints.

    Raises:
        TypeError: If value contains an unsupported type.
    """
    return json.dumps(_normalize(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def fingerprint(value: Any, *, length: int = 12) -> str:
    """Return a short sha256 digest of the canonical JSON form of ``value``."""
    digest = hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
    return digest[:length]
