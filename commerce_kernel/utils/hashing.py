"""
Stable fingerprints for configuration payloads.

The config loader hashes the resolved settings and logs the digest next to
every priced quarter, so two processes agree on a fingerprint exactly when
they priced with equal settings.  Equal means equal in value: key order,
whitespace, and trailing zeros on decimals ("0.50" vs "0.5") do not count.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID


def _encode_value(obj: Any) -> str:
    if isinstance(obj, Decimal):
        return str(obj.normalize())
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    raise TypeError(f"Cannot fingerprint value of type {type(obj).__name__}")


def canonicalize_json(data: Any) -> str:
    """Compact JSON with sorted keys; raises TypeError on unsupported values."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_encode_value)


def hash_payload(payload: dict) -> str:
    return hashlib.sha256(canonicalize_json(payload).encode("utf-8")).hexdigest()
