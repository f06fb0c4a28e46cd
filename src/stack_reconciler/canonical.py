"""RFC 8785 canonical form for configurations and persisted state.

Two configurations are equal when their canonical JSON is equal, so key order
and ``1`` vs ``1.0`` never register as drift. Snapshot checksums are the sha256
of the same form.
"""

from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

from .models import OutputRef, SecretRef

_SCALARS = (bool, int, float, str, type(None))


def _jcs_value(value: Any) -> Any:
    """Reduce *value* to the bool/int/float/str/None/list/dict subset rfc8785 accepts.

    Raises:
        TypeError: For values with no JSON rendering (bytes, sets, arbitrary objects).
    """
    if isinstance(value, _SCALARS):
        return value
    if isinstance(value, (OutputRef, SecretRef)):
        # Parsed and wire-form declarations must fingerprint identically.
        return value.to_wire()
    if isinstance(value, dict):
        return {str(key): _jcs_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jcs_value(item) for item in value]
    if isinstance(value, BaseModel):
        return _jcs_value(value.model_dump(mode="json"))
    if isinstance(value, Enum):
        return _jcs_value(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"{type(value).__name__} has no canonical JSON form: {value!r:.64}")


def to_canonical_json(value: Any) -> str:
    return rfc8785.dumps(_jcs_value(value)).decode("utf-8")


def fingerprint(value: Any) -> str:
    """sha256 hex digest of the canonical JSON of *value*."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()


def canonical_equal(left: Any, right: Any) -> bool:
    return to_canonical_json(left) == to_canonical_json(right)
