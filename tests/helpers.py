"""Shared constants and small helpers for the commerce test suite."""

from datetime import datetime, timezone

ISSUER_ID = "org-acme"
OTHER_ISSUER_ID = "org-globex"

FIXED_NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def no_sleep(_seconds: float) -> None:
    """Retry backoff replacement so tests never wait."""
