"""
Pytest fixtures for the commerce engine test suite.

Provides:
- Structured log capture
- A deterministic clock
- In-memory stores and services wired with a no-op retry sleep
- A SQLite-backed session factory for integration tests

Environment Variables:
- COMMERCE_TEST_DATABASE_URL: run the SQL integration tests against this
  URL (e.g. PostgreSQL) instead of a temporary SQLite file.
"""

import json
import logging
import os
from io import StringIO

import pytest

from commerce_config.schema import BillingSettings, PersistenceSettings
from commerce_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from commerce_kernel.domain.clock import DeterministicClock
from commerce_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from commerce_modules.billing.service import BillingService
from commerce_modules.billing.store import InMemoryBillingStore
from commerce_modules.documents.models import Counterparty, LineItemInput
from commerce_modules.documents.service import DocumentPersistenceCoordinator
from commerce_modules.documents.store import InMemoryDocumentStore
from commerce_modules.governance.service import GovernanceService
from commerce_modules.governance.store import InMemoryGovernanceRuleStore

from tests.helpers import FIXED_NOW, no_sleep


@pytest.fixture(autouse=True, scope="session")
def _warm_hypothesis_caches():
    """Build Hypothesis's one-time character table before any test runs.

    On a fresh checkout the first text() strategy builds (and caches on disk)
    the table of encodable characters; that cost trips Hypothesis's too_slow
    health check in whichever property test draws text first.
    """
    from hypothesis import strategies as st

    st.text().validate()
    yield


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture commerce_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, coordinator):
            coordinator.create_document(...)
            logs = captured_logs()
            assert any(r["message"] == "document_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("commerce_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Clock and sample data
# =============================================================================


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(FIXED_NOW)


@pytest.fixture
def counterparty() -> Counterparty:
    return Counterparty(
        name="Acme Traders",
        address="12 Market Road",
        tax_id="27AAAPL1234C1ZV",
        email="accounts@acme.example",
    )


@pytest.fixture
def sample_items() -> list[LineItemInput]:
    """Two items: 2 x 100 @ 18% and 1 x 50 @ 5%."""
    return [
        LineItemInput("Steel rods", "2", "100", "18", unit="pcs", hsn_code="7214"),
        LineItemInput("Packing", "1", "50", "5"),
    ]


# =============================================================================
# In-memory services
# =============================================================================


@pytest.fixture
def persistence_settings() -> PersistenceSettings:
    return PersistenceSettings(max_attempts=3, backoff_seconds=0.0, timeout_seconds=5.0)


@pytest.fixture
def document_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def audit_records() -> list:
    return []


@pytest.fixture
def coordinator(document_store, clock, persistence_settings, audit_records):
    return DocumentPersistenceCoordinator(
        document_store,
        clock,
        settings=persistence_settings,
        audit_sink=audit_records.append,
        sleep=no_sleep,
    )


@pytest.fixture
def billing_settings() -> BillingSettings:
    return BillingSettings()


@pytest.fixture
def billing_store() -> InMemoryBillingStore:
    return InMemoryBillingStore()


@pytest.fixture
def governance_service(clock) -> GovernanceService:
    return GovernanceService(InMemoryGovernanceRuleStore(), clock)


@pytest.fixture
def billing_service(billing_store, clock, billing_settings, persistence_settings, governance_service):
    return BillingService(
        billing_store,
        clock,
        settings=billing_settings,
        persistence=persistence_settings,
        governance=governance_service,
        sleep=no_sleep,
    )


# =============================================================================
# SQL infrastructure
# =============================================================================


@pytest.fixture
def session_factory(tmp_path):
    """
    Fresh schema per test.

    SQLite by default; set COMMERCE_TEST_DATABASE_URL to run against a
    real server.
    """
    url = os.environ.get(
        "COMMERCE_TEST_DATABASE_URL",
        f"sqlite+pysqlite:///{tmp_path / 'commerce_test.db'}",
    )
    init_engine_from_url(url, pool_size=5, max_overflow=5)
    drop_tables()
    create_tables()
    yield get_session_factory()
    drop_tables()
    reset_engine()
