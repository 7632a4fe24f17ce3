"""
Deadline Unit Lifecycle State Machine

Deterministic state machine for goals and checkpoints.
Terminal states are never left once reached.
All transitions are conditional writes and are logged to the audit trail.

    pending -> submitted -> {passed, failed}
    pending -> (overdue) -> failed

OVERDUE is a computed view (status == pending and deadline < now), consumed
only by the deadline monitor. It is never stored.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, Any, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import (
    UnitStatus, SubmissionStatus, SubmissionType, ActorType,
    DeadlineUnitDB, SubmissionDB,
)
from .audit_trail import record_event
from .errors import InvalidTransitionError, RecordNotFoundError

logger = logging.getLogger(__name__)


# =============================================================================
# STATE CONFIGURATION
# =============================================================================
#
# AUTHORITY MODEL:
# - USER: submits proof (pending -> submitted)
# - COLLABORATOR: the grader decides submitted -> passed|failed
# - SYSTEM: the deadline monitor decides pending -> failed
#
# =============================================================================

STATE_CONFIG = {
    UnitStatus.PENDING: {
        "description": "Deadline not yet reached, no proof submitted",
        "allowed_transitions": [UnitStatus.SUBMITTED, UnitStatus.FAILED],
        "entry_authority": "SYSTEM",
    },
    UnitStatus.SUBMITTED: {
        "description": "Proof submitted, awaiting grading",
        "allowed_transitions": [UnitStatus.PASSED, UnitStatus.FAILED],
        "entry_authority": "USER",
    },
    UnitStatus.PASSED: {
        "description": "Most recent submission graded as passing",
        "allowed_transitions": [],  # Terminal state
        "entry_authority": "COLLABORATOR",
    },
    UnitStatus.FAILED: {
        "description": "Graded as failing, or deadline elapsed with no submission",
        "allowed_transitions": [],  # Terminal state
        "entry_authority": "SYSTEM",
    },
}

TERMINAL_STATES = frozenset({UnitStatus.PASSED, UnitStatus.FAILED})


def is_overdue(unit: DeadlineUnitDB, now: datetime) -> bool:
    """The computed OVERDUE view."""
    return unit.status == UnitStatus.PENDING and unit.deadline < now


# =============================================================================
# STATE MACHINE
# =============================================================================

class UnitStateMachine:
    """
    Lifecycle rules for deadline units and their submissions.

    Core Principles:
    - A unit's outcome is its most recent submission's grading outcome
    - A deadline elapsing with no submission is a failure
    - Grading callbacks may be repeated; repeats are no-ops
    - Two concurrent writers can never both move the same unit
    """

    def __init__(self, db_session: Session, clock: Optional[Callable[[], datetime]] = None):
        """Initialize with database session."""
        self.db = db_session
        self.clock = clock or datetime.utcnow

    def get_state_config(self, state: UnitStatus) -> Dict[str, Any]:
        """Get configuration for a state."""
        return STATE_CONFIG.get(state, {})

    def can_transition(
        self,
        from_state: UnitStatus,
        to_state: UnitStatus
    ) -> Tuple[bool, str]:
        """
        Check if a state transition is allowed.

        Returns (allowed, reason)
        """
        config = self.get_state_config(from_state)
        allowed_transitions = config.get("allowed_transitions", [])

        if to_state in allowed_transitions:
            return True, "Transition allowed"

        return False, f"Cannot transition from {from_state.value} to {to_state.value}"

    def is_terminal_state(self, state: UnitStatus) -> bool:
        """Check if a state is terminal (no further transitions)."""
        return state in TERMINAL_STATES

    def get_next_states(self, state: UnitStatus) -> List[UnitStatus]:
        """Get possible next states from current state."""
        config = self.get_state_config(state)
        return config.get("allowed_transitions", [])

    def transition(
        self,
        unit: DeadlineUnitDB,
        to_state: UnitStatus,
        trigger: str,
        actor: ActorType,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, str]:
        """
        Execute a state transition as a conditional update.

        The UPDATE only matches while the row still holds the status we
        read, so a concurrent writer that got there first makes this call
        return (False, ...) instead of double-transitioning.
        Does not commit.

        Returns (success, message)
        """
        from_state = unit.status

        allowed, reason = self.can_transition(from_state, to_state)
        if not allowed:
            return False, reason

        now = self.clock()
        values = {
            DeadlineUnitDB.status: to_state,
            DeadlineUnitDB.updated_at: now,
        }
        if to_state == UnitStatus.FAILED:
            values[DeadlineUnitDB.failed_at] = now

        updated = self.db.query(DeadlineUnitDB).filter(
            DeadlineUnitDB.id == unit.id,
            DeadlineUnitDB.status == from_state,
        ).update(values, synchronize_session=False)

        if updated == 0:
            self.db.expire(unit)
            return False, f"Unit {unit.id} is no longer {from_state.value}"

        record_event(
            self.db,
            event_type="unit_transition",
            actor=actor,
            description=f"Status changed from {from_state.value} to {to_state.value}. Trigger: {trigger}",
            owner_id=unit.owner_id,
            deadline_unit_id=unit.id,
            metadata={
                "from_state": from_state.value,
                "to_state": to_state.value,
                "trigger": trigger,
                **(metadata or {}),
            },
            created_at=now,
        )

        self.db.expire(unit)
        logger.info(f"Unit {unit.id}: {from_state.value} -> {to_state.value} ({trigger})")
        return True, f"Transitioned to {to_state.value}"

    # =========================================================================
    # SUBMISSIONS
    # =========================================================================

    def record_submission(
        self,
        unit: DeadlineUnitDB,
        submission_type: SubmissionType,
        content_ref: str,
    ) -> SubmissionDB:
        """
        Record proof against a unit and move it to SUBMITTED.

        A unit already in SUBMITTED accepts a newer submission; the newest
        one decides the outcome. Late and post-terminal submissions are
        rejected. Does not commit.
        """
        now = self.clock()

        if self.is_terminal_state(unit.status):
            raise InvalidTransitionError(
                f"Unit {unit.id} is already {unit.status.value}"
            )
        if unit.deadline < now:
            raise InvalidTransitionError(
                f"Deadline for unit {unit.id} passed at {unit.deadline.isoformat()}"
            )

        if unit.status == UnitStatus.PENDING:
            success, message = self.transition(
                unit,
                UnitStatus.SUBMITTED,
                trigger="proof_submitted",
                actor=ActorType.USER,
            )
            if not success:
                raise InvalidTransitionError(message)

        submission = SubmissionDB(
            id=str(uuid4()),
            deadline_unit_id=unit.id,
            owner_id=unit.owner_id,
            type=submission_type,
            content_ref=content_ref,
            status=SubmissionStatus.PENDING,
            submitted_at=now,
        )
        self.db.add(submission)
        return submission

    def latest_submission(self, unit_id: str) -> Optional[SubmissionDB]:
        """Most recent submission for a unit."""
        return self.db.query(SubmissionDB).filter(
            SubmissionDB.deadline_unit_id == unit_id
        ).order_by(SubmissionDB.submitted_at.desc(), SubmissionDB.id.desc()).first()

    def apply_grading(
        self,
        submission_id: str,
        passed: bool,
        feedback: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """
        Apply the grading collaborator's verdict.

        Idempotent: a repeated callback for an already-graded submission,
        or for a unit that is already terminal, is a no-op.
        Only the unit's most recent submission moves the unit.
        Does not commit.

        Returns (changed, message)
        """
        submission = self.db.query(SubmissionDB).filter(
            SubmissionDB.id == submission_id
        ).first()
        if submission is None:
            raise RecordNotFoundError(f"Submission {submission_id} not found")

        if submission.status != SubmissionStatus.PENDING:
            return False, f"Submission {submission_id} already graded"

        now = self.clock()
        verdict = SubmissionStatus.PASSED if passed else SubmissionStatus.FAILED

        graded = self.db.query(SubmissionDB).filter(
            SubmissionDB.id == submission_id,
            SubmissionDB.status == SubmissionStatus.PENDING,
        ).update({
            SubmissionDB.status: verdict,
            SubmissionDB.feedback: feedback,
            SubmissionDB.graded_at: now,
        }, synchronize_session=False)
        if graded == 0:
            return False, f"Submission {submission_id} already graded"

        unit = self.db.query(DeadlineUnitDB).filter(
            DeadlineUnitDB.id == submission.deadline_unit_id
        ).first()

        record_event(
            self.db,
            event_type="submission_graded",
            actor=ActorType.COLLABORATOR,
            description=f"Submission graded {verdict.value}",
            owner_id=submission.owner_id,
            deadline_unit_id=submission.deadline_unit_id,
            metadata={"submission_id": submission_id, "verdict": verdict.value},
            created_at=now,
        )

        if self.is_terminal_state(unit.status):
            return True, f"Submission graded; unit already {unit.status.value}"

        latest = self.latest_submission(unit.id)
        if latest is None or latest.id != submission_id:
            return True, "Submission graded; a newer submission decides the unit"

        to_state = UnitStatus.PASSED if passed else UnitStatus.FAILED
        success, message = self.transition(
            unit,
            to_state,
            trigger="submission_graded",
            actor=ActorType.COLLABORATOR,
            metadata={"submission_id": submission_id},
        )
        return True, message
