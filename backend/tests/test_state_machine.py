"""
Tests for the deadline unit lifecycle.

Test Coverage:
1. Transition table (terminal states, allowed edges)
2. Conditional transitions (stale reads lose)
3. Submissions (late, post-terminal, resubmission)
4. Grading callbacks (idempotent, newest submission decides)
5. Audit trail entries
"""
import pytest
from datetime import datetime, timedelta


# =============================================================================
# TEST: TRANSITION TABLE
# =============================================================================

class TestTransitionTable:
    """Tests for STATE_CONFIG rules."""

    def test_terminal_states_have_no_exits(self, db):
        from app.services.enforcement.state_machine import UnitStateMachine
        from app.models.db_models import UnitStatus

        sm = UnitStateMachine(db)
        for state in (UnitStatus.PASSED, UnitStatus.FAILED):
            assert sm.is_terminal_state(state)
            assert sm.get_next_states(state) == []
            for target in UnitStatus:
                allowed, _ = sm.can_transition(state, target)
                assert not allowed

    def test_pending_can_submit_or_fail(self, db):
        from app.services.enforcement.state_machine import UnitStateMachine
        from app.models.db_models import UnitStatus

        sm = UnitStateMachine(db)
        assert sm.can_transition(UnitStatus.PENDING, UnitStatus.SUBMITTED)[0]
        assert sm.can_transition(UnitStatus.PENDING, UnitStatus.FAILED)[0]
        assert not sm.can_transition(UnitStatus.PENDING, UnitStatus.PASSED)[0]

    def test_submitted_cannot_reopen(self, db):
        from app.services.enforcement.state_machine import UnitStateMachine
        from app.models.db_models import UnitStatus

        allowed, reason = UnitStateMachine(db).can_transition(UnitStatus.SUBMITTED, UnitStatus.PENDING)
        assert not allowed
        assert "submitted" in reason

    def test_overdue_is_computed(self, make_unit):
        from app.services.enforcement.state_machine import is_overdue
        from app.models.db_models import UnitStatus

        unit = make_unit(deadline=datetime(2024, 1, 1))
        assert is_overdue(unit, datetime(2024, 1, 1, 0, 1))
        assert not is_overdue(unit, datetime(2023, 12, 31, 23, 59))

        submitted = make_unit(deadline=datetime(2024, 1, 1), status=UnitStatus.SUBMITTED)
        assert not is_overdue(submitted, datetime(2024, 1, 2))


# =============================================================================
# TEST: CONDITIONAL TRANSITIONS
# =============================================================================

class TestConditionalTransition:
    """A transition only applies while the row still holds the state we read."""

    def test_transition_sets_failed_at_and_audits(self, db, make_unit, clock):
        from app.services.enforcement.state_machine import UnitStateMachine
        from app.services.enforcement.audit_trail import get_events
        from app.models.db_models import UnitStatus, ActorType

        unit = make_unit()
        sm = UnitStateMachine(db, clock=clock)

        success, _ = sm.transition(unit, UnitStatus.FAILED, trigger="deadline_elapsed", actor=ActorType.SYSTEM)
        db.commit()

        assert success
        assert unit.status == UnitStatus.FAILED
        assert unit.failed_at == clock.now

        events = get_events(db, deadline_unit_id=unit.id)
        assert [e.event_type for e in events] == ["unit_transition"]
        assert events[0].event_metadata["trigger"] == "deadline_elapsed"

    def test_stale_reader_loses(self, session_factory, make_unit):
        """Two sessions read PENDING; only the first writer moves the unit."""
        from app.services.enforcement.state_machine import UnitStateMachine
        from app.models.db_models import DeadlineUnitDB, UnitStatus, ActorType

        unit_id = make_unit().id
        first, second = session_factory(), session_factory()
        try:
            unit_a = first.get(DeadlineUnitDB, unit_id)
            unit_b = second.get(DeadlineUnitDB, unit_id)

            ok_a, _ = UnitStateMachine(first).transition(
                unit_a, UnitStatus.FAILED, trigger="deadline_elapsed", actor=ActorType.SYSTEM)
            first.commit()

            ok_b, message = UnitStateMachine(second).transition(
                unit_b, UnitStatus.SUBMITTED, trigger="proof_submitted", actor=ActorType.USER)
            second.commit()

            assert ok_a
            assert not ok_b
            assert "no longer pending" in message
            second.expire_all()
            assert second.get(DeadlineUnitDB, unit_id).status == UnitStatus.FAILED
        finally:
            first.close()
            second.close()


# =============================================================================
# TEST: SUBMISSIONS & GRADING
# =============================================================================

class TestSubmissions:
    """Tests for record_submission and apply_grading."""

    def _submit(self, db, unit, clock, ref="https://example.com/proof"):
        from app.services.enforcement.state_machine import UnitStateMachine
        from app.models.db_models import SubmissionType

        submission = UnitStateMachine(db, clock=clock).record_submission(unit, SubmissionType.URL, ref)
        db.commit()
        return submission

    def test_submission_moves_pending_to_submitted(self, db, make_unit, clock):
        from app.models.db_models import UnitStatus, SubmissionStatus

        unit = make_unit(deadline=clock.now + timedelta(days=1))
        submission = self._submit(db, unit, clock)

        assert unit.status == UnitStatus.SUBMITTED
        assert submission.status == SubmissionStatus.PENDING

    def test_late_submission_rejected(self, db, make_unit, clock):
        from app.services.enforcement.errors import InvalidTransitionError
        from app.models.db_models import UnitStatus

        unit = make_unit(deadline=clock.now - timedelta(minutes=1))
        with pytest.raises(InvalidTransitionError):
            self._submit(db, unit, clock)
        db.rollback()
        assert unit.status == UnitStatus.PENDING

    def test_submission_after_terminal_rejected(self, db, make_unit, clock):
        from app.services.enforcement.errors import InvalidTransitionError
        from app.models.db_models import UnitStatus

        unit = make_unit(deadline=clock.now + timedelta(days=1), status=UnitStatus.PASSED)
        with pytest.raises(InvalidTransitionError):
            self._submit(db, unit, clock)

    def test_passing_grade_passes_unit(self, db, make_unit, clock):
        from app.services.enforcement.state_machine import UnitStateMachine
        from app.models.db_models import UnitStatus, SubmissionStatus

        unit = make_unit(deadline=clock.now + timedelta(days=1))
        submission = self._submit(db, unit, clock)

        changed, _ = UnitStateMachine(db, clock=clock).apply_grading(submission.id, passed=True, feedback="Nice")
        db.commit()
        db.expire_all()

        assert changed
        assert unit.status == UnitStatus.PASSED
        assert submission.status == SubmissionStatus.PASSED
        assert submission.feedback == "Nice"

    def test_repeated_grading_callback_is_noop(self, db, make_unit, clock):
        from app.services.enforcement.state_machine import UnitStateMachine
        from app.services.enforcement.audit_trail import get_events
        from app.models.db_models import UnitStatus

        unit = make_unit(deadline=clock.now + timedelta(days=1))
        submission = self._submit(db, unit, clock)
        sm = UnitStateMachine(db, clock=clock)

        assert sm.apply_grading(submission.id, passed=False)[0]
        db.commit()
        changed, message = sm.apply_grading(submission.id, passed=True)
        db.commit()
        db.expire_all()

        assert not changed
        assert "already graded" in message
        assert unit.status == UnitStatus.FAILED
        graded = [e for e in get_events(db, deadline_unit_id=unit.id) if e.event_type == "submission_graded"]
        assert len(graded) == 1

    def test_newest_submission_decides(self, db, make_unit, clock):
        """Grading an older submission never moves the unit."""
        from app.services.enforcement.state_machine import UnitStateMachine
        from app.models.db_models import UnitStatus

        unit = make_unit(deadline=clock.now + timedelta(days=1))
        older = self._submit(db, unit, clock, ref="draft")
        clock.advance(minutes=10)
        newer = self._submit(db, unit, clock, ref="final")
        sm = UnitStateMachine(db, clock=clock)

        changed, message = sm.apply_grading(older.id, passed=False)
        db.commit()
        db.expire_all()
        assert changed
        assert "newer submission" in message
        assert unit.status == UnitStatus.SUBMITTED

        sm.apply_grading(newer.id, passed=True)
        db.commit()
        db.expire_all()
        assert unit.status == UnitStatus.PASSED

    def test_unknown_submission(self, db):
        from app.services.enforcement.state_machine import UnitStateMachine
        from app.services.enforcement.errors import RecordNotFoundError

        with pytest.raises(RecordNotFoundError):
            UnitStateMachine(db).apply_grading("missing", passed=True)
