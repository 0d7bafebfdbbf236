"""
Commerce configuration schema.

Frozen dataclasses that YAML configuration sets are parsed into by
``commerce_config.loader``.  Each section validates itself in
``__post_init__`` so an invalid file fails at load time, never at the
first priced quarter.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from commerce_kernel.db.types import HUNDRED


@dataclass(frozen=True)
class BillingSettings:
    """Quarterly governance fee settings.

    Fee percents are percentages of transacted volume (0.5 means 0.5%).
    """

    onboarding_duration_days: int = 90
    domestic_fee_percent: Decimal = Decimal("0.5")
    import_export_fee_percent: Decimal = Decimal("2.0")
    default_timezone: str = "UTC"

    def __post_init__(self) -> None:
        if self.onboarding_duration_days < 0:
            raise ValueError("onboarding_duration_days cannot be negative")
        for name in ("domestic_fee_percent", "import_export_fee_percent"):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                raise ValueError(f"{name} must be a Decimal, got {type(value).__name__}")
            if value < 0 or value > HUNDRED:
                raise ValueError(f"{name} must be between 0 and 100, got {value}")
        try:
            ZoneInfo(self.default_timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {self.default_timezone!r}") from e


@dataclass(frozen=True)
class PersistenceSettings:
    """Retry and timeout budget for store writes."""

    max_attempts: int = 3
    backoff_seconds: float = 0.05
    backoff_multiplier: float = 2.0
    timeout_seconds: float | None = 10.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds cannot be negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")


@dataclass(frozen=True)
class DocumentSettings:
    money_places: int = 2
    default_unit: str = "units"
    default_tax_rate: Decimal = Decimal("18")

    def __post_init__(self) -> None:
        if self.money_places < 0:
            raise ValueError("money_places cannot be negative")
        if not self.default_unit.strip():
            raise ValueError("default_unit cannot be empty")
        if self.default_tax_rate < 0 or self.default_tax_rate > HUNDRED:
            raise ValueError(
                f"default_tax_rate must be between 0 and 100, got {self.default_tax_rate}"
            )


@dataclass(frozen=True)
class CommerceConfig:
    """The loaded configuration set.

    ``checksum`` is the SHA-256 of the canonical settings and identifies
    the configuration in log records.
    """

    config_id: str
    version: int
    billing: BillingSettings = field(default_factory=BillingSettings)
    persistence: PersistenceSettings = field(default_factory=PersistenceSettings)
    documents: DocumentSettings = field(default_factory=DocumentSettings)
    checksum: str = ""
