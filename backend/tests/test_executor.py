"""
Tests for the Consequence Executor.

Test Coverage:
1. Dispatch by stake kind with the record id as idempotency key
2. Idempotent re-execution (crash-retry) -> one external side effect
3. Lease exclusion between executors
4. Retryable failures: backoff, then escalation to FAILED
5. Permanent failures: FAILED immediately, never retried
6. Push publication of finished records
"""
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

from conftest import (
    MONETARY_STAKE, CONTENT_STAKE, SOCIAL_STAKE,
    FakePaymentProcessor, always, run_concurrently,
)


def _executed_record(db, make_unit, clock, stakes=None, **unit_kwargs):
    """A FAILED unit evaluated with a forced EXECUTED roll; returns its first record."""
    from app.services.enforcement import ConsequenceDecisionEngine
    from app.models.db_models import UnitStatus, ConsequenceRecordDB

    unit = make_unit(status=UnitStatus.FAILED, stakes=stakes or [MONETARY_STAKE], **unit_kwargs)
    ConsequenceDecisionEngine(db, randbelow=always(0), clock=clock).evaluate(unit)
    return db.query(ConsequenceRecordDB).filter(ConsequenceRecordDB.deadline_unit_id == unit.id).first()


def _executor(db, collaborators, clock, **kwargs):
    from app.services.enforcement import ConsequenceExecutor

    return ConsequenceExecutor(db, collaborators, clock=clock, **kwargs)


# =============================================================================
# TEST: DISPATCH
# =============================================================================

class TestDispatch:

    def test_monetary_charge(self, db, make_unit, clock, collaborators):
        from app.models.db_models import ExecutionStatus

        record = _executed_record(db, make_unit, clock)
        outcome = _executor(db, collaborators, clock).execute(record.id)
        db.expire_all()

        assert outcome.status == ExecutionStatus.COMPLETED
        assert collaborators.payment.calls == [(record.id, Decimal("10"), "doctors_without_borders")]
        assert record.execution_status == ExecutionStatus.COMPLETED
        assert record.execution_details == {
            "kind": "monetary",
            "triggered": True,
            "transaction_id": "tr_1",
            "amount": "10",
            "destination": "doctors_without_borders",
        }
        assert record.executed_at == clock.now
        assert record.claim_token is None

    def test_content_release(self, db, make_unit, clock, collaborators):
        record = _executed_record(db, make_unit, clock, stakes=[CONTENT_STAKE])
        _executor(db, collaborators, clock).execute(record.id)
        db.expire_all()

        assert collaborators.content.calls == [(record.id, "uploads/photo-1.jpg", "random_contact", "minor")]
        assert record.execution_details["delivery_id"] == f"dl_{record.id[:8]}"
        assert record.execution_details["recipient_id"] == "contact_7"

    def test_social_post_uses_default_text(self, db, make_unit, clock, collaborators):
        record = _executed_record(db, make_unit, clock, stakes=[SOCIAL_STAKE], title="Run a 5k")
        _executor(db, collaborators, clock).execute(record.id)
        db.expire_all()

        key, account, content = collaborators.social.calls[0]
        assert key == record.id
        assert account == "twitter:owner"
        assert '"Run a 5k"' in content
        assert record.execution_details["post_url"] == "https://twitter.com/owner/status/1500"

    def test_social_post_length_capped(self):
        from app.services.enforcement.executor import post_content, MAX_POST_LENGTH

        assert len(post_content("x" * 500)) == MAX_POST_LENGTH
        assert "a deadline" in post_content(None)

    def test_spared_record_is_not_dispatched(self, db, make_unit, clock, collaborators):
        from app.services.enforcement import ConsequenceDecisionEngine
        from app.models.db_models import UnitStatus, ConsequenceRecordDB

        unit = make_unit(status=UnitStatus.FAILED)
        ConsequenceDecisionEngine(db, randbelow=always(1), clock=clock).evaluate(unit)
        record = db.query(ConsequenceRecordDB).first()

        outcome = _executor(db, collaborators, clock).execute(record.id)

        assert outcome.skipped
        assert collaborators.payment.call_count == 0


# =============================================================================
# TEST: IDEMPOTENCY & LEASES
# =============================================================================

class TestIdempotency:

    def test_executing_twice_has_one_side_effect(self, db, make_unit, clock, collaborators):
        from app.services.collaborators import PaymentProcessor, ChargeResult

        collaborators.payment = MagicMock(spec=PaymentProcessor)
        collaborators.payment.charge.return_value = ChargeResult(transaction_id="tr_abc")
        record = _executed_record(db, make_unit, clock)
        executor = _executor(db, collaborators, clock)

        executor.execute(record.id)
        second = executor.execute(record.id)
        db.expire_all()

        assert second.skipped
        assert collaborators.payment.charge.call_count == 1
        collaborators.payment.charge.assert_called_once_with(record.id, Decimal("10"), "doctors_without_borders")
        assert record.execution_details["transaction_id"] == "tr_abc"

    def test_crash_after_effect_reuses_key(self, db, make_unit, clock, collaborators):
        """Connection drops after the processor committed; the retry gets the same transfer."""
        from app.models.db_models import ExecutionStatus

        collaborators.payment = FakePaymentProcessor(crash_after_effect=True)
        record = _executed_record(db, make_unit, clock)
        executor = _executor(db, collaborators, clock)

        first = executor.execute(record.id)
        assert first.status == ExecutionStatus.PENDING
        assert "connection reset" in first.error

        clock.advance(seconds=5)
        second = executor.execute(record.id)
        db.expire_all()

        assert second.status == ExecutionStatus.COMPLETED
        assert [call[0] for call in collaborators.payment.calls] == [record.id, record.id]
        assert len(collaborators.payment.transfers) == 1
        assert record.execution_details["transaction_id"] == "tr_1"
        assert record.attempt_count == 2

    def test_live_lease_excludes_second_claim(self, db, make_unit, clock, collaborators):
        record = _executed_record(db, make_unit, clock)
        executor = _executor(db, collaborators, clock, lease_sec=60)

        assert executor.claim(record.id) is not None
        assert executor.claim(record.id) is None

        clock.advance(seconds=61)
        assert executor.claim(record.id) is not None

    def test_concurrent_executors_charge_once(self, session_factory, db, make_unit, clock, collaborators):
        from app.services.enforcement import ConsequenceExecutor
        from app.models.db_models import ExecutionStatus

        collaborators.payment = FakePaymentProcessor(delay=0.2)
        record_id = _executed_record(db, make_unit, clock).id

        def execute(i):
            session = session_factory()
            try:
                return ConsequenceExecutor(session, collaborators, clock=clock).execute(record_id)
            finally:
                session.close()

        outcomes = run_concurrently(execute, 4)

        assert collaborators.payment.call_count == 1
        assert [o.status for o in outcomes if not o.skipped] == [ExecutionStatus.COMPLETED]


# =============================================================================
# TEST: FAILURES
# =============================================================================

class TestFailures:

    def test_backoff_schedule(self):
        from app.services.enforcement import backoff_delay

        assert [backoff_delay(n, 1, 2, 10) for n in range(1, 6)] == [1, 2, 4, 8, 10]

    def test_retryable_failure_backs_off(self, db, make_unit, clock, collaborators):
        from app.services.enforcement import RetryableCollaboratorError
        from app.models.db_models import ExecutionStatus

        collaborators.payment = FakePaymentProcessor(failures=[RetryableCollaboratorError("Stripe error 503")])
        record = _executed_record(db, make_unit, clock)
        executor = _executor(db, collaborators, clock, backoff_base=1, backoff_factor=2)

        outcome = executor.execute(record.id)
        db.expire_all()

        assert outcome.status == ExecutionStatus.PENDING
        assert record.execution_status == ExecutionStatus.PENDING
        assert record.attempt_count == 1
        assert record.next_attempt_at == clock.now + timedelta(seconds=1)
        assert record.last_error == "Stripe error 503"
        assert executor.get_due_records() == []

        clock.advance(seconds=1)
        assert executor.get_due_records() == [record.id]

    def test_retries_exhausted_escalates(self, db, make_unit, clock, collaborators):
        from app.services.enforcement import RetryableCollaboratorError
        from app.models.db_models import ExecutionStatus, FailureReason

        collaborators.payment = FakePaymentProcessor(
            failures=[RetryableCollaboratorError(f"timeout {n}") for n in range(5)]
        )
        record = _executed_record(db, make_unit, clock)
        executor = _executor(db, collaborators, clock, max_attempts=3)

        for _ in range(3):
            executor.execute(record.id)
            clock.advance(seconds=30)
        db.expire_all()

        assert collaborators.payment.call_count == 3
        assert record.execution_status == ExecutionStatus.FAILED
        assert record.failure_reason == FailureReason.RETRIES_EXHAUSTED
        assert record.execution_details["kind"] == "failed"
        assert record.execution_details["retryable"] is True
        assert record.execution_details["attempts"] == 3
        assert len(record.execution_details["history"]) == 2

        # Never picked up again
        assert executor.execute(record.id).skipped
        assert executor.get_due_records() == []
        assert collaborators.payment.call_count == 3
        assert [r.id for r in executor.get_failed_executions()] == [record.id]

    def test_permanent_failure_is_immediate(self, db, make_unit, clock, collaborators):
        from app.services.enforcement import PermanentCollaboratorError
        from app.models.db_models import ExecutionStatus, FailureReason

        collaborators.payment = FakePaymentProcessor(failures=[PermanentCollaboratorError("Unknown charity: nowhere")])
        record = _executed_record(db, make_unit, clock)
        outcome = _executor(db, collaborators, clock).execute(record.id)
        db.expire_all()

        assert outcome.status == ExecutionStatus.FAILED
        assert record.failure_reason == FailureReason.PERMANENT
        assert record.attempt_count == 1
        assert record.execution_details["retryable"] is False
        assert record.execution_details["error"] == "Unknown charity: nowhere"

    def test_abandoned_final_attempt_escalates(self, db, make_unit, clock, collaborators):
        """An executor died holding the last attempt; once the lease lapses the record fails."""
        from app.models.db_models import ExecutionStatus, FailureReason

        record = _executed_record(db, make_unit, clock)
        executor = _executor(db, collaborators, clock, max_attempts=1, lease_sec=60)
        assert executor.claim(record.id) is not None

        assert executor.execute(record.id).skipped

        clock.advance(seconds=61)
        outcome = executor.execute(record.id)
        db.expire_all()

        assert outcome.status == ExecutionStatus.FAILED
        assert record.failure_reason == FailureReason.RETRIES_EXHAUSTED
        assert collaborators.payment.call_count == 0


# =============================================================================
# TEST: BATCH RUN & PUSH
# =============================================================================

class TestRunDue:

    def test_run_due_summary(self, db, make_unit, clock, collaborators):
        from app.services.enforcement import PermanentCollaboratorError

        collaborators.social.failures = [PermanentCollaboratorError("access revoked")]
        _executed_record(db, make_unit, clock, stakes=[MONETARY_STAKE, SOCIAL_STAKE])

        summary = _executor(db, collaborators, clock).run_due()

        assert summary["attempted"] == 2
        assert summary["completed"] == 1
        assert summary["failed"] == 1
        assert summary["retry_scheduled"] == 0
        assert summary["errors"] == 0

    def test_finished_records_are_pushed(self, db, make_unit, clock, collaborators, user):
        from app.services.enforcement import PushChannel

        channel = PushChannel()
        record = _executed_record(db, make_unit, clock)

        with channel.subscribe(user.id) as subscription:
            _executor(db, collaborators, clock, push_channel=channel).execute(record.id)
            assert subscription.drain() == [record.id]
