"""
Consequence Executor

AUTHORITY: SYSTEM
Carries out EXECUTED consequences against exactly one external collaborator.

Key behaviors:
- The record id is the idempotency token on every outbound call, so a
  crash after a successful-but-unrecorded call cannot double-charge,
  double-release or double-post when the record is retried
- A record is claimed with a lease (conditional update) before dispatch;
  a second executor instance skips it while the lease holds
- The attempt counter is bumped at claim time, so crashes count too
- Retryable failures back off exponentially up to a bounded attempt count,
  then the record is FAILED for operator reconciliation
- Permanent failures are FAILED immediately
- FAILED is terminal: nothing here ever picks a failed record up again
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...config import (
    EXECUTOR_MAX_ATTEMPTS, EXECUTOR_BACKOFF_BASE_SEC, EXECUTOR_BACKOFF_FACTOR,
    EXECUTOR_BACKOFF_MAX_SEC, EXECUTOR_LEASE_SEC,
)
from ...models.db_models import (
    ConsequenceRecordDB, DeadlineUnitDB,
    ExecutionStatus, FailureReason, ActorType,
)
from ...models.stakes import (
    MonetaryStake, ContentReleaseStake, SocialPostStake,
    MonetaryDetails, ContentReleaseDetails, SocialPostDetails, FailedDetails,
    ExecutionDetails, stake_from_dict,
)
from .audit_trail import record_event, get_events
from .errors import (
    RecordNotFoundError, RetryableCollaboratorError, PermanentCollaboratorError,
)

logger = logging.getLogger(__name__)

MAX_POST_LENGTH = 280


def backoff_delay(
    attempt: int,
    base: float = EXECUTOR_BACKOFF_BASE_SEC,
    factor: float = EXECUTOR_BACKOFF_FACTOR,
    maximum: float = EXECUTOR_BACKOFF_MAX_SEC,
) -> float:
    """Seconds to wait after failed attempt number `attempt` (1-based)."""
    return min(base * (factor ** (attempt - 1)), maximum)


def post_content(unit_title: Optional[str]) -> str:
    """Default social post text when the stake does not carry its own."""
    subject = f'"{unit_title}"' if unit_title else "a deadline"
    return f"I committed to {subject} and missed it. This post is my penalty."[:MAX_POST_LENGTH]


@dataclass
class ExecutionOutcome:
    record_id: str
    status: ExecutionStatus
    skipped: bool = False
    error: Optional[str] = None


class ConsequenceExecutor:
    """
    Dispatches pending consequence records to their collaborator.

    `collaborators` is anything with `payment`, `content` and `social`
    attributes implementing the collaborator interfaces.
    """

    def __init__(
        self,
        db_session: Session,
        collaborators,
        push_channel=None,
        max_attempts: int = EXECUTOR_MAX_ATTEMPTS,
        backoff_base: float = EXECUTOR_BACKOFF_BASE_SEC,
        backoff_factor: float = EXECUTOR_BACKOFF_FACTOR,
        backoff_max: float = EXECUTOR_BACKOFF_MAX_SEC,
        lease_sec: int = EXECUTOR_LEASE_SEC,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db_session
        self.collaborators = collaborators
        self.push_channel = push_channel
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_factor = backoff_factor
        self.backoff_max = backoff_max
        self.lease_sec = lease_sec
        self.clock = clock or datetime.utcnow

    # =========================================================================
    # CLAIMING
    # =========================================================================

    def claim(self, record_id: str) -> Optional[str]:
        """
        Take the execution lease on a pending record.

        Returns the claim token, or None if the record is not pending or
        another executor holds a live lease.
        """
        now = self.clock()
        token = str(uuid4())
        claimed = self.db.query(ConsequenceRecordDB).filter(
            ConsequenceRecordDB.id == record_id,
            ConsequenceRecordDB.execution_status == ExecutionStatus.PENDING,
            or_(
                ConsequenceRecordDB.claimed_until.is_(None),
                ConsequenceRecordDB.claimed_until < now,
            ),
        ).update({
            ConsequenceRecordDB.claimed_until: now + timedelta(seconds=self.lease_sec),
            ConsequenceRecordDB.claim_token: token,
            ConsequenceRecordDB.attempt_count: ConsequenceRecordDB.attempt_count + 1,
        }, synchronize_session=False)
        self.db.commit()
        return token if claimed else None

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def execute(self, record_id: str) -> ExecutionOutcome:
        """
        Run one attempt for a record.

        COMPLETED and FAILED records are left untouched, which makes a
        repeated call after a crash a no-op.
        """
        record = self._get(record_id)
        if record.execution_status != ExecutionStatus.PENDING:
            return ExecutionOutcome(record_id, record.execution_status, skipped=True)

        if record.attempt_count >= self.max_attempts:
            # The last attempt was claimed and never reported back
            return self._escalate_abandoned(record)

        token = self.claim(record_id)
        if token is None:
            logger.debug(f"Consequence {record_id} is claimed elsewhere, skipping")
            self.db.expire(record)
            return ExecutionOutcome(record_id, record.execution_status, skipped=True)

        self.db.refresh(record)
        attempt = record.attempt_count

        try:
            stake = stake_from_dict(record.stake)
        except ValueError as e:
            return self._record_permanent(record, token, attempt, f"Malformed stake: {e}")

        logger.info(
            f"Executing consequence {record_id} ({stake.kind.value}), "
            f"attempt {attempt}/{self.max_attempts}"
        )

        try:
            details = self._dispatch(record, stake)
        except PermanentCollaboratorError as e:
            return self._record_permanent(record, token, attempt, str(e))
        except RetryableCollaboratorError as e:
            return self._record_retryable(record, token, attempt, str(e))
        except Exception as e:
            # Unknown failures are treated as transient but still count
            logger.exception(f"Unexpected error executing consequence {record_id}")
            return self._record_retryable(record, token, attempt, f"Unexpected error: {e}")

        return self._record_success(record, token, attempt, details)

    def _dispatch(self, record: ConsequenceRecordDB, stake) -> ExecutionDetails:
        """Call exactly one collaborator, keyed by the record id."""
        if isinstance(stake, MonetaryStake):
            result = self.collaborators.payment.charge(record.id, stake.amount, stake.destination)
            return MonetaryDetails(
                transaction_id=result.transaction_id,
                amount=str(stake.amount),
                destination=stake.destination,
            )

        if isinstance(stake, ContentReleaseStake):
            result = self.collaborators.content.release(
                record.id,
                stake.content_ref,
                stake.recipient_selection,
                severity=stake.severity.value if stake.severity else None,
            )
            return ContentReleaseDetails(
                delivery_id=result.delivery_id,
                recipient_id=result.recipient_id,
            )

        if isinstance(stake, SocialPostStake):
            content = stake.content or post_content(self._unit_title(record.deadline_unit_id))
            result = self.collaborators.social.post(record.id, stake.platform_account_ref, content)
            return SocialPostDetails(post_id=result.post_id, post_url=result.post_url)

        raise PermanentCollaboratorError(f"No collaborator for stake {stake!r}")

    # =========================================================================
    # RESULT RECORDING
    # =========================================================================

    def _record_success(self, record, token, attempt, details: ExecutionDetails) -> ExecutionOutcome:
        now = self.clock()
        finished = self._finish(record, token, {
            ConsequenceRecordDB.execution_status: ExecutionStatus.COMPLETED,
            ConsequenceRecordDB.execution_details: details.to_dict(),
            ConsequenceRecordDB.executed_at: now,
            ConsequenceRecordDB.last_error: None,
            ConsequenceRecordDB.next_attempt_at: None,
        }, event_type="execution_completed",
            description=f"{record.stake_kind.value} consequence executed on attempt {attempt}",
            metadata=details.to_dict())
        if not finished:
            return ExecutionOutcome(record.id, ExecutionStatus.PENDING, skipped=True)

        logger.info(f"Consequence {record.id} completed: {details.to_dict()}")
        self._publish(record)
        return ExecutionOutcome(record.id, ExecutionStatus.COMPLETED)

    def _record_retryable(self, record, token, attempt, error: str) -> ExecutionOutcome:
        if attempt >= self.max_attempts:
            logger.error(
                f"Consequence {record.id} failed after {attempt} attempt(s), "
                f"escalating for manual reconciliation: {error}"
            )
            return self._record_failed(
                record, token, attempt, error,
                retryable=True, reason=FailureReason.RETRIES_EXHAUSTED,
            )

        delay = backoff_delay(attempt, self.backoff_base, self.backoff_factor, self.backoff_max)
        next_attempt = self.clock() + timedelta(seconds=delay)
        finished = self._finish(record, token, {
            ConsequenceRecordDB.last_error: error,
            ConsequenceRecordDB.next_attempt_at: next_attempt,
        }, event_type="execution_attempt",
            description=f"Attempt {attempt} failed (retryable): {error}",
            metadata={"attempt": attempt, "error": error, "next_attempt_at": next_attempt.isoformat()})
        logger.warning(
            f"Consequence {record.id} attempt {attempt}/{self.max_attempts} failed, "
            f"retrying in {delay:.1f}s: {error}"
        )
        return ExecutionOutcome(record.id, ExecutionStatus.PENDING, skipped=not finished, error=error)

    def _record_permanent(self, record, token, attempt, error: str) -> ExecutionOutcome:
        logger.error(f"Consequence {record.id} failed permanently, needs operator attention: {error}")
        return self._record_failed(
            record, token, attempt, error,
            retryable=False, reason=FailureReason.PERMANENT,
        )

    def _record_failed(self, record, token, attempt, error, retryable, reason) -> ExecutionOutcome:
        history = [
            e.description for e in get_events(self.db, consequence_id=record.id)
            if e.event_type == "execution_attempt"
        ]
        details = FailedDetails(error=error, retryable=retryable, attempts=attempt, history=history)
        finished = self._finish(record, token, {
            ConsequenceRecordDB.execution_status: ExecutionStatus.FAILED,
            ConsequenceRecordDB.execution_details: details.to_dict(),
            ConsequenceRecordDB.failure_reason: reason,
            ConsequenceRecordDB.last_error: error,
            ConsequenceRecordDB.next_attempt_at: None,
        }, event_type="execution_failed",
            description=f"{record.stake_kind.value} consequence failed ({reason.value}): {error}",
            metadata=details.to_dict())
        if not finished:
            return ExecutionOutcome(record.id, ExecutionStatus.PENDING, skipped=True, error=error)

        self._publish(record)
        return ExecutionOutcome(record.id, ExecutionStatus.FAILED, error=error)

    def _escalate_abandoned(self, record: ConsequenceRecordDB) -> ExecutionOutcome:
        """Final attempt was claimed but its executor never reported back."""
        now = self.clock()
        if record.claimed_until is not None and record.claimed_until >= now:
            return ExecutionOutcome(record.id, ExecutionStatus.PENDING, skipped=True)

        error = record.last_error or "Final attempt abandoned without a result"
        logger.error(f"Consequence {record.id} exhausted {record.attempt_count} attempt(s): {error}")
        return self._record_failed(
            record, record.claim_token, record.attempt_count, error,
            retryable=True, reason=FailureReason.RETRIES_EXHAUSTED,
        )

    def _finish(self, record, token, values: Dict[Any, Any], event_type, description, metadata) -> bool:
        """
        Write an attempt's result and release the lease.

        Matches only while we still own the lease; if it expired and another
        executor claimed the record, that executor's result wins.
        """
        now = self.clock()
        values = dict(values)
        values[ConsequenceRecordDB.claimed_until] = None
        values[ConsequenceRecordDB.claim_token] = None

        query = self.db.query(ConsequenceRecordDB).filter(
            ConsequenceRecordDB.id == record.id,
            ConsequenceRecordDB.execution_status == ExecutionStatus.PENDING,
        )
        if token is None:
            query = query.filter(ConsequenceRecordDB.claim_token.is_(None))
        else:
            query = query.filter(ConsequenceRecordDB.claim_token == token)

        updated = query.update(values, synchronize_session=False)
        if updated == 0:
            self.db.rollback()
            logger.warning(f"Lost the lease on consequence {record.id}; result not recorded")
            return False

        record_event(
            self.db,
            event_type=event_type,
            actor=ActorType.SYSTEM,
            description=description,
            owner_id=record.owner_id,
            deadline_unit_id=record.deadline_unit_id,
            consequence_id=record.id,
            metadata=metadata,
            created_at=now,
        )
        self.db.commit()
        return True

    def _publish(self, record: ConsequenceRecordDB) -> None:
        if self.push_channel is not None:
            self.push_channel.publish(record.owner_id, record.id)

    # =========================================================================
    # BATCH & READ
    # =========================================================================

    def get_due_records(self, limit: int = 100) -> List[str]:
        """Ids of pending records whose backoff has elapsed and that nobody holds."""
        now = self.clock()
        rows = self.db.query(ConsequenceRecordDB.id).filter(
            ConsequenceRecordDB.execution_status == ExecutionStatus.PENDING,
            or_(
                ConsequenceRecordDB.next_attempt_at.is_(None),
                ConsequenceRecordDB.next_attempt_at <= now,
            ),
            or_(
                ConsequenceRecordDB.claimed_until.is_(None),
                ConsequenceRecordDB.claimed_until < now,
            ),
        ).order_by(
            ConsequenceRecordDB.triggered_at, ConsequenceRecordDB.id
        ).limit(limit).all()
        return [row[0] for row in rows]

    def run_due(self, limit: int = 100) -> Dict[str, Any]:
        """
        Execute every due record once.

        AUTHORITY: SYSTEM - Called by the executor worker.
        """
        outcomes = []
        errors = []

        for record_id in self.get_due_records(limit):
            try:
                outcomes.append(self.execute(record_id))
            except Exception as e:
                self.db.rollback()
                logger.exception(f"Executor failed on consequence {record_id}")
                errors.append({"consequence_id": record_id, "error": str(e)})

        return {
            "run_date": self.clock().isoformat(),
            "attempted": len([o for o in outcomes if not o.skipped]),
            "completed": len([o for o in outcomes if o.status == ExecutionStatus.COMPLETED]),
            "failed": len([o for o in outcomes if o.status == ExecutionStatus.FAILED]),
            "retry_scheduled": len([
                o for o in outcomes
                if o.status == ExecutionStatus.PENDING and not o.skipped
            ]),
            "errors": len(errors),
            "details": {"errors": errors},
        }

    def get_failed_executions(self, owner_id: Optional[str] = None) -> List[ConsequenceRecordDB]:
        """FAILED records awaiting manual reconciliation, oldest first."""
        query = self.db.query(ConsequenceRecordDB).filter(
            ConsequenceRecordDB.execution_status == ExecutionStatus.FAILED
        )
        if owner_id:
            query = query.filter(ConsequenceRecordDB.owner_id == owner_id)
        return query.order_by(ConsequenceRecordDB.triggered_at).all()

    def _get(self, record_id: str) -> ConsequenceRecordDB:
        record = self.db.query(ConsequenceRecordDB).filter(
            ConsequenceRecordDB.id == record_id
        ).first()
        if record is None:
            raise RecordNotFoundError(f"Consequence {record_id} not found")
        return record

    def _unit_title(self, unit_id: str) -> Optional[str]:
        row = self.db.query(DeadlineUnitDB.title).filter(DeadlineUnitDB.id == unit_id).first()
        return row[0] if row else None
