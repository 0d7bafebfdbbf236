"""
Kernel primitive tests: Deadline, RetryPolicy / call_with_retry, KeyedLock,
Workflow definitions and money helpers.
"""

import threading
from decimal import Decimal

import pytest

from commerce_kernel.db.types import round_money, to_decimal
from commerce_kernel.domain.deadline import Deadline
from commerce_kernel.domain.workflow import Transition, Workflow
from commerce_kernel.exceptions import PersistenceTimeoutError, TransientPersistenceError
from commerce_kernel.utils.locks import KeyedLock
from commerce_kernel.utils.retry import RetryExhausted, RetryPolicy, call_with_retry


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestDeadline:

    def test_budget_counts_down(self):
        monotonic = FakeMonotonic()
        deadline = Deadline(2.0, monotonic=monotonic)
        monotonic.now += 0.5
        assert deadline.remaining() == pytest.approx(1.5)
        deadline.check("op")

    def test_expired_deadline_fails_closed(self):
        monotonic = FakeMonotonic()
        deadline = Deadline(1.0, monotonic=monotonic)
        monotonic.now += 1.0
        with pytest.raises(PersistenceTimeoutError) as exc_info:
            deadline.check("save_document")
        assert exc_info.value.operation == "save_document"
        assert exc_info.value.cancelled is False
        assert deadline.remaining() == 0.0

    def test_cancel_wins_over_budget(self):
        deadline = Deadline(60.0)
        deadline.cancel()
        assert deadline.expired()
        with pytest.raises(PersistenceTimeoutError) as exc_info:
            deadline.check("op")
        assert exc_info.value.cancelled is True

    def test_unbounded(self):
        deadline = Deadline.unbounded()
        assert deadline.remaining() is None
        assert not deadline.expired()
        deadline.check("op")

    @pytest.mark.parametrize("timeout", [0, -1])
    def test_non_positive_timeout_rejected(self, timeout):
        with pytest.raises(ValueError):
            Deadline(timeout)


class TestRetry:

    def test_backoff_schedule(self):
        policy = RetryPolicy(max_attempts=4, backoff_seconds=0.1, backoff_multiplier=2.0)
        assert [policy.delay_before(n) for n in (1, 2, 3, 4)] == pytest.approx(
            [0.0, 0.1, 0.2, 0.4]
        )

    def test_succeeds_after_transient_failures(self):
        calls = []
        sleeps = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransientPersistenceError("busy")
            return "ok"

        result = call_with_retry(
            flaky,
            policy=RetryPolicy(max_attempts=3, backoff_seconds=0.01),
            retry_on=(TransientPersistenceError,),
            operation="test",
            sleep=sleeps.append,
        )
        assert result == "ok"
        assert len(calls) == 3
        assert sleeps == pytest.approx([0.01, 0.02])

    def test_exhaustion_carries_last_error(self):
        def always_busy():
            raise TransientPersistenceError("busy")

        with pytest.raises(RetryExhausted) as exc_info:
            call_with_retry(
                always_busy,
                policy=RetryPolicy(max_attempts=2, backoff_seconds=0),
                retry_on=(TransientPersistenceError,),
                operation="test",
            )
        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.last_error, TransientPersistenceError)

    def test_non_transient_errors_propagate_immediately(self):
        calls = []

        def broken():
            calls.append(1)
            raise KeyError("boom")

        with pytest.raises(KeyError):
            call_with_retry(
                broken,
                policy=RetryPolicy(max_attempts=5),
                retry_on=(TransientPersistenceError,),
                operation="test",
            )
        assert len(calls) == 1

    def test_before_attempt_can_abort(self):
        deadline = Deadline(10.0)
        deadline.cancel()
        with pytest.raises(PersistenceTimeoutError):
            call_with_retry(
                lambda: "never",
                policy=RetryPolicy(),
                retry_on=(TransientPersistenceError,),
                operation="test",
                before_attempt=lambda _n: deadline.check("test"),
            )

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_attempts": 0}, {"backoff_seconds": -1}, {"backoff_multiplier": 0.5}],
    )
    def test_invalid_policy_rejected(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestKeyedLock:

    def test_same_key_times_out_while_held(self):
        locks = KeyedLock()
        held = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold("doc-1"):
                held.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(5)
        try:
            with pytest.raises(TimeoutError):
                with locks.hold("doc-1", timeout=0.05):
                    pass
            with locks.hold("doc-2", timeout=0.05):
                pass
        finally:
            release.set()
            thread.join(5)

    def test_entries_are_released(self):
        locks = KeyedLock()
        with locks.hold("a"):
            with locks.hold("a"):
                assert locks.active_keys() == 1
        assert locks.active_keys() == 0


class TestWorkflowDefinition:

    def test_unknown_state_rejected(self):
        with pytest.raises(ValueError):
            Workflow(
                name="bad",
                description="",
                initial_state="a",
                states=("a", "b"),
                transitions=(Transition("a", "c", action="go"),),
            )

    def test_terminal_state_with_outgoing_transition_rejected(self):
        with pytest.raises(ValueError):
            Workflow(
                name="bad",
                description="",
                initial_state="a",
                states=("a", "b"),
                transitions=(Transition("a", "b", action="go"), Transition("b", "a", action="back")),
                terminal_states=("b",),
            )


class TestMoneyHelpers:

    def test_round_half_up(self):
        assert round_money(Decimal("2.345")) == Decimal("2.35")
        assert round_money(Decimal("-2.345")) == Decimal("-2.35")

    @pytest.mark.parametrize("value, expected", [("1.50", Decimal("1.50")), (3, Decimal("3")), (0.1, Decimal("0.1"))])
    def test_to_decimal(self, value, expected):
        assert to_decimal(value) == expected

    @pytest.mark.parametrize("value", [None, True, "x", "NaN", [1]])
    def test_to_decimal_rejects(self, value):
        with pytest.raises(ValueError):
            to_decimal(value, field="amount")
