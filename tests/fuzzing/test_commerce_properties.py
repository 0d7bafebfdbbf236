"""
Property-based tests for document totals and quarter billing.

Properties checked:
- Totals identity: total == subtotal + tax - discount, all at money places
- Item order never changes document totals
- Repricing a quarter is idempotent and fees never exceed the configured rate
- Volume recorded in pieces prices the same as one settlement of the sum
- The quarter containing the end of the onboarding window is never free
  unless it is the activation quarter
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from hypothesis import HealthCheck, assume, given, settings
from hypothesis import strategies as st

from commerce_config.schema import BillingSettings, PersistenceSettings
from commerce_kernel.domain.clock import DeterministicClock
from commerce_modules.billing.calendar import quarter_key_for
from commerce_modules.billing.engine import BillingQuarterEngine
from commerce_modules.billing.models import BillingQuarter, OrgBillingProfile, QuarterKey
from commerce_modules.billing.service import BillingService
from commerce_modules.billing.store import InMemoryBillingStore
from commerce_modules.documents.calculator import compute_totals, price_line_item
from commerce_modules.documents.models import LineItemInput

from tests.helpers import no_sleep

CENT = Decimal("0.01")

money = st.decimals(
    min_value=Decimal("0.01"), max_value=Decimal("1000000"),
    places=2, allow_nan=False, allow_infinity=False,
)
quantities = st.decimals(
    min_value=Decimal("0.01"), max_value=Decimal("10000"),
    places=3, allow_nan=False, allow_infinity=False,
)
percents = st.decimals(
    min_value=Decimal("0"), max_value=Decimal("100"),
    places=2, allow_nan=False, allow_infinity=False,
)
timezones = st.sampled_from(["UTC", "Asia/Kolkata", "America/New_York", "Pacific/Auckland"])
instants = st.datetimes(
    min_value=datetime(2000, 1, 1), max_value=datetime(2090, 1, 1),
    timezones=st.just(timezone.utc),
)


@st.composite
def line_items(draw):
    return price_line_item(
        LineItemInput(
            description=draw(st.text(min_size=1, max_size=20).filter(str.strip)),
            quantity=draw(quantities),
            unit_price=draw(money),
            tax_rate=draw(percents),
        )
    )


class TestDocumentTotalsProperties:

    @given(items=st.lists(line_items(), max_size=12), discount=percents)
    @settings(max_examples=200)
    def test_totals_identity(self, items, discount):
        totals = compute_totals(items, discount)
        assert totals.total_amount == (
            totals.subtotal + totals.tax_amount - totals.discount_amount
        )
        for amount in (totals.subtotal, totals.tax_amount, totals.discount_amount):
            assert amount == amount.quantize(CENT)
            assert amount >= 0
        assert totals.discount_amount <= totals.subtotal

    @given(data=st.data(), items=st.lists(line_items(), min_size=2, max_size=10), discount=percents)
    @settings(max_examples=100)
    def test_item_order_irrelevant(self, data, items, discount):
        shuffled = data.draw(st.permutations(items))
        assert compute_totals(shuffled, discount) == compute_totals(items, discount)

    @given(items=st.lists(line_items(), max_size=8))
    def test_full_discount_leaves_tax(self, items):
        totals = compute_totals(items, Decimal("100"))
        assert totals.discount_amount == totals.subtotal
        assert totals.total_amount == totals.tax_amount


class TestBillingProperties:

    @given(domestic=money, import_export=money)
    def test_fee_components_bounded_by_rate(self, domestic, import_export):
        engine = BillingQuarterEngine()
        fees = engine.compute_fees(QuarterKey(2030, 1), domestic, import_export, is_onboarding=False)
        assert abs(fees.domestic_fee - domestic * Decimal("0.005")) <= Decimal("0.005")
        assert abs(fees.import_export_fee - import_export * Decimal("0.02")) <= Decimal("0.005")
        assert fees.total_fee == fees.domestic_fee + fees.import_export_fee

    @given(activated_at=instants, tz=timezones, domestic=money, import_export=money)
    def test_repricing_is_idempotent(self, activated_at, tz, domestic, import_export):
        engine = BillingQuarterEngine()
        profile = OrgBillingProfile("org-1", activated_at, timezone=tz)
        key = engine.activation_quarter(profile).next().next()
        quarter = BillingQuarter(
            id=BillingQuarter.blank("org-1", key).id,
            org_id="org-1",
            quarter_key=key,
            domestic_volume=domestic,
            import_export_volume=import_export,
        )
        once = engine.price_quarter(profile, quarter)
        assert engine.price_quarter(profile, once) == once

    @given(activated_at=instants, tz=timezones, days=st.integers(min_value=0, max_value=800))
    def test_window_end_quarter_is_billed(self, activated_at, tz, days):
        engine = BillingQuarterEngine(BillingSettings(onboarding_duration_days=days))
        profile = OrgBillingProfile("org-1", activated_at, timezone=tz)
        window_end = activated_at + timedelta(days=days)
        key = quarter_key_for(window_end, tz)
        assume(key > engine.activation_quarter(profile))
        assert not engine.is_onboarding_quarter(profile, key)
        assert engine.is_onboarding_quarter(profile, engine.activation_quarter(profile))

    @given(amounts=st.lists(money, min_size=1, max_size=10))
    @settings(suppress_health_check=[HealthCheck.too_slow])
    def test_split_settlements_price_like_one(self, amounts):
        clock = DeterministicClock(datetime(2024, 1, 1, 12, tzinfo=timezone.utc))
        settled_at = datetime(2024, 5, 10, tzinfo=timezone.utc)

        def service():
            billing = BillingService(
                InMemoryBillingStore(),
                clock,
                persistence=PersistenceSettings(backoff_seconds=0.0),
                sleep=no_sleep,
            )
            billing.activate_org("org-1")
            return billing

        split = service()
        for amount in amounts:
            pieces = split.record_settlement("org-1", amount, settled_at=settled_at)
        whole = service().record_settlement("org-1", sum(amounts), settled_at=settled_at)

        assert pieces.domestic_volume == whole.domestic_volume
        assert pieces.total_fee == whole.total_fee
