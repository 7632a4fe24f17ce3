"""
Deadline Engine

AUTHORITY: SYSTEM
Detects missed deadlines and hands the failed units to the decision engine.
Runs WITHOUT user confirmation.

Key behaviors:
- Scan the computed OVERDUE view (status == pending and deadline < now)
- Flip each overdue unit pending -> failed with a conditional update, so two
  concurrent monitor runs never double-transition a unit
- Evaluate every failed unit that has not been evaluated yet, in the same
  run; this also recovers units failed by grading, and units whose
  evaluation was interrupted by a crash
- Duplicate evaluation is harmless: the consequence uniqueness constraint
  absorbs it

User cannot extend or override deadlines once they have passed.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ...config import MONITOR_BATCH_SIZE
from ...models.db_models import DeadlineUnitDB, UnitStatus, ActorType
from .decision_engine import ConsequenceDecisionEngine
from .state_machine import UnitStateMachine

logger = logging.getLogger(__name__)


class DeadlineMonitor:
    """
    Periodic scan for missed deadlines.

    Core Responsibilities:
    - Read the overdue view
    - Transition overdue units to FAILED
    - Enqueue failed units for evaluation (synchronously)
    """

    def __init__(
        self,
        db_session: Session,
        decision_engine: Optional[ConsequenceDecisionEngine] = None,
        batch_size: int = MONITOR_BATCH_SIZE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize with database session."""
        self.db = db_session
        self.clock = clock or datetime.utcnow
        self.batch_size = batch_size
        self.state_machine = UnitStateMachine(db_session, clock=self.clock)
        self.decision_engine = decision_engine or ConsequenceDecisionEngine(
            db_session, clock=self.clock
        )

    def get_overdue_units(self, now: Optional[datetime] = None) -> List[DeadlineUnitDB]:
        """The OVERDUE view: pending units whose deadline has passed."""
        now = now or self.clock()
        return self.db.query(DeadlineUnitDB).filter(
            DeadlineUnitDB.status == UnitStatus.PENDING,
            DeadlineUnitDB.deadline < now,
        ).order_by(DeadlineUnitDB.deadline, DeadlineUnitDB.id).limit(self.batch_size).all()

    def get_unevaluated_failures(self) -> List[DeadlineUnitDB]:
        """Failed units whose stakes have not all been decided."""
        return self.db.query(DeadlineUnitDB).filter(
            DeadlineUnitDB.status == UnitStatus.FAILED,
            DeadlineUnitDB.evaluated_at.is_(None),
        ).order_by(DeadlineUnitDB.failed_at, DeadlineUnitDB.id).limit(self.batch_size).all()

    def mark_failed(self, unit: DeadlineUnitDB, now: datetime) -> bool:
        """
        Resolve an overdue unit to FAILED.

        Returns False when a concurrent run (or a last-second submission)
        moved the unit first.
        """
        days_overdue = (now - unit.deadline).days
        success, message = self.state_machine.transition(
            unit,
            UnitStatus.FAILED,
            trigger="deadline_elapsed",
            actor=ActorType.SYSTEM,
            metadata={
                "deadline": unit.deadline.isoformat(),
                "detected_at": now.isoformat(),
                "days_overdue": days_overdue,
            },
        )
        if success:
            self.db.commit()
        else:
            self.db.rollback()
            logger.debug(f"Skipped overdue unit {unit.id}: {message}")
        return success

    def run(self) -> Dict[str, Any]:
        """
        One monitor pass.

        AUTHORITY: SYSTEM - Called by the monitor worker or the scheduler
        endpoint. Errors on one unit are collected and do not stop the run.
        """
        now = self.clock()
        overdue_found = []
        transitioned = []
        evaluated = []
        errors = []
        records_created = 0

        for unit in self.get_overdue_units(now):
            unit_id = unit.id
            overdue_found.append(unit_id)
            try:
                if self.mark_failed(unit, now):
                    transitioned.append(unit_id)
            except Exception as e:
                self.db.rollback()
                logger.exception(f"Failed to transition overdue unit {unit_id}")
                errors.append({"deadline_unit_id": unit_id, "error": str(e)})

        for unit in self.get_unevaluated_failures():
            unit_id = unit.id
            try:
                decisions = self.decision_engine.evaluate(unit)
                evaluated.append(unit_id)
                records_created += sum(1 for d in decisions if d.created)
            except Exception as e:
                self.db.rollback()
                logger.exception(f"Failed to evaluate unit {unit_id}")
                errors.append({"deadline_unit_id": unit_id, "error": str(e)})

        if overdue_found or errors:
            logger.info(
                f"Deadline check: {len(overdue_found)} overdue, {len(transitioned)} failed, "
                f"{len(evaluated)} evaluated, {records_created} consequence(s), {len(errors)} error(s)"
            )

        return {
            "run_date": now.isoformat(),
            "overdue_found": len(overdue_found),
            "transitioned": len(transitioned),
            "evaluated": len(evaluated),
            "records_created": records_created,
            "errors": len(errors),
            "details": {
                "transitioned": transitioned,
                "evaluated": evaluated,
                "errors": errors,
            },
        }

    def get_upcoming_deadlines(
        self,
        days_ahead: int = 7,
        owner_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Pending units with deadlines in the next N days."""
        now = self.clock()
        horizon = now + timedelta(days=days_ahead)

        query = self.db.query(DeadlineUnitDB).filter(
            DeadlineUnitDB.status.in_([UnitStatus.PENDING, UnitStatus.SUBMITTED]),
            DeadlineUnitDB.deadline >= now,
            DeadlineUnitDB.deadline <= horizon,
        )
        if owner_id:
            query = query.filter(DeadlineUnitDB.owner_id == owner_id)

        return [
            {
                "deadline_unit_id": u.id,
                "owner_id": u.owner_id,
                "title": u.title,
                "kind": u.kind.value,
                "status": u.status.value,
                "deadline": u.deadline.isoformat(),
                "hours_remaining": round((u.deadline - now).total_seconds() / 3600, 1),
                "stake_kinds": [s.get("kind") for s in (u.stakes or [])],
            }
            for u in query.order_by(DeadlineUnitDB.deadline).all()
        ]
