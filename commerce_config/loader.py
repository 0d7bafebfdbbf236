"""
Configuration Loader (``commerce_config.loader``).

Responsibility
--------------
Loads a YAML configuration set and parses it into the frozen
``commerce_config.schema`` dataclasses.  The public runtime entrypoint is
``commerce_config.get_active_config()``.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; unknown keys are rejected rather than ignored.
* Monetary and percentage values are parsed to ``Decimal`` through their
  string form, never through float arithmetic.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the parsed
  settings, so two files that differ only in formatting share a checksum.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing ``config_id``  -> ``KeyError`` propagates.
"""

from __future__ import annotations

from dataclasses import asdict, fields, replace
from pathlib import Path
from typing import Any

import yaml

from commerce_config.schema import (
    BillingSettings,
    CommerceConfig,
    DocumentSettings,
    PersistenceSettings,
)
from commerce_kernel.db.types import to_decimal
from commerce_kernel.utils.hashing import hash_payload


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at top level")
    return data


def _check_keys(section: str, data: dict[str, Any], cls: type) -> None:
    allowed = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ValueError(f"Unknown keys in '{section}': {', '.join(unknown)}")


def _decimal(section: str, key: str, value: Any):
    return to_decimal(value, field=f"{section}.{key}")


def parse_billing(data: dict[str, Any]) -> BillingSettings:
    """Parse the ``billing`` section."""
    _check_keys("billing", data, BillingSettings)
    kwargs = dict(data)
    for key in ("domestic_fee_percent", "import_export_fee_percent"):
        if key in kwargs:
            kwargs[key] = _decimal("billing", key, kwargs[key])
    if "onboarding_duration_days" in kwargs:
        kwargs["onboarding_duration_days"] = int(kwargs["onboarding_duration_days"])
    if "default_timezone" in kwargs:
        kwargs["default_timezone"] = str(kwargs["default_timezone"])
    return BillingSettings(**kwargs)


def parse_persistence(data: dict[str, Any]) -> PersistenceSettings:
    """Parse the ``persistence`` section."""
    _check_keys("persistence", data, PersistenceSettings)
    kwargs = dict(data)
    if "max_attempts" in kwargs:
        kwargs["max_attempts"] = int(kwargs["max_attempts"])
    for key in ("backoff_seconds", "backoff_multiplier"):
        if key in kwargs:
            kwargs[key] = float(kwargs[key])
    if kwargs.get("timeout_seconds") is not None:
        kwargs["timeout_seconds"] = float(kwargs["timeout_seconds"])
    return PersistenceSettings(**kwargs)


def parse_documents(data: dict[str, Any]) -> DocumentSettings:
    """Parse the ``documents`` section."""
    _check_keys("documents", data, DocumentSettings)
    kwargs = dict(data)
    if "money_places" in kwargs:
        kwargs["money_places"] = int(kwargs["money_places"])
    if "default_tax_rate" in kwargs:
        kwargs["default_tax_rate"] = _decimal(
            "documents", "default_tax_rate", kwargs["default_tax_rate"]
        )
    return DocumentSettings(**kwargs)


def parse_config(data: dict[str, Any]) -> CommerceConfig:
    """
    Parse a whole configuration set.

    Sections that are absent take their schema defaults.

    Raises:
        KeyError: if ``config_id`` is missing.
        ValueError: on unknown keys or invalid values.
    """
    unknown = sorted(set(data) - {"config_id", "version", "billing", "persistence", "documents"})
    if unknown:
        raise ValueError(f"Unknown top-level keys: {', '.join(unknown)}")

    config = CommerceConfig(
        config_id=str(data["config_id"]),
        version=int(data.get("version", 1)),
        billing=parse_billing(data.get("billing") or {}),
        persistence=parse_persistence(data.get("persistence") or {}),
        documents=parse_documents(data.get("documents") or {}),
    )
    return replace(config, checksum=compute_checksum(config))


def compute_checksum(config: CommerceConfig) -> str:
    """SHA-256 over every setting except the checksum itself."""
    payload = asdict(config)
    payload.pop("checksum", None)
    return hash_payload(payload)


def load_config_file(path: Path) -> CommerceConfig:
    """Load and parse one YAML configuration set."""
    return parse_config(load_yaml_file(path))
