"""
Calendar quarter placement in an org's timezone.

Quarter boundaries are local midnights in the org's IANA timezone, so an
instant near midnight on a quarter edge can belong to different quarters
for orgs in different zones.
"""

from __future__ import annotations

from datetime import datetime, time
from zoneinfo import ZoneInfo

from commerce_modules.billing.models import QuarterKey


def zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def local_date(at: datetime, tz: str):
    if at.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return at.astimezone(zone(tz)).date()


def quarter_key_for(at: datetime, tz: str = "UTC") -> QuarterKey:
    """The calendar quarter containing instant ``at`` in timezone ``tz``."""
    return QuarterKey.containing(local_date(at, tz))


def quarter_span(key: QuarterKey, tz: str = "UTC") -> tuple[datetime, datetime]:
    """
    Half-open span ``[start 00:00, end+1 00:00)`` of a quarter, org-local.

    Both bounds are timezone-aware and compare correctly with UTC instants.
    """
    tzinfo = zone(tz)
    start = datetime.combine(key.start, time.min, tzinfo=tzinfo)
    end = datetime.combine(key.next().start, time.min, tzinfo=tzinfo)
    return start, end
