"""
commerce_config -- single public entrypoint for commerce configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  Services receive the returned settings by
    injection; no other component reads configuration files or
    environment variables.

Architecture position:
    Configuration.  Sits above ``commerce_kernel`` and below
    ``commerce_modules``.  The kernel MUST NEVER import from
    ``commerce_config``.

Failure modes:
    - ``FileNotFoundError`` -- the requested file does not exist.
    - ``ValueError`` / ``KeyError`` -- schema validation failures.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``COMMERCE_CONFIG_TRACE`` log entry with the config id, version and
    checksum, tying each priced quarter to the settings that priced it.
"""

from __future__ import annotations

from pathlib import Path

from commerce_config.loader import load_config_file
from commerce_config.schema import (
    BillingSettings,
    CommerceConfig,
    DocumentSettings,
    PersistenceSettings,
)
from commerce_kernel.logging_config import get_logger

_logger = get_logger("config")

_DEFAULT_CONFIG_FILE = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(path: Path | str | None = None) -> CommerceConfig:
    """The ONLY public configuration entrypoint.

    Args:
        path: YAML configuration set to load.  Defaults to
            ``commerce_config/sets/default.yaml``.

    Returns:
        A frozen ``CommerceConfig`` with its checksum populated.
    """
    config_file = Path(path) if path is not None else _DEFAULT_CONFIG_FILE
    config = load_config_file(config_file)

    _logger.info(
        "COMMERCE_CONFIG_TRACE",
        extra={
            "trace_type": "COMMERCE_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "source": str(config_file),
        },
    )
    return config


__all__ = [
    "BillingSettings",
    "CommerceConfig",
    "DocumentSettings",
    "PersistenceSettings",
    "get_active_config",
]
