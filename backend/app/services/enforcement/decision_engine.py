"""
Consequence Decision Engine

AUTHORITY: SYSTEM
Turns a FAILED deadline unit into one consequence record per stake.

Key behaviors:
- One INSERT per (unit, stake kind); the storage layer's unique constraint
  decides the winner, never a read-then-write check
- A losing INSERT is contention: the stake was already handled, skip it
- The mercy gate is drawn before the INSERT so the roll, the outcome and
  the initial execution status land in the same single write
- SPARED records are born COMPLETED with {triggered: false}
- EXECUTED records are born PENDING and picked up by the executor
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import FINAL_DEADLINE_GUARANTEED
from ...models.db_models import (
    DeadlineUnitDB, ConsequenceRecordDB,
    UnitStatus, MercyOutcome, ExecutionStatus, ContentSeverity, ActorType,
)
from ...models.stakes import (
    StakeDescriptor, ContentReleaseStake, SparedDetails, parse_stakes,
)
from . import mercy_gate
from .audit_trail import record_event
from .errors import UnitNotFailedError

logger = logging.getLogger(__name__)


@dataclass
class StakeDecision:
    """Result of evaluating one stake of a failed unit."""
    stake_kind: str
    created: bool                       # False -> another evaluation won the insert
    record_id: Optional[str] = None
    outcome: Optional[MercyOutcome] = None
    mercy_roll: Optional[int] = None


class ConsequenceDecisionEngine:
    """
    Decides, exactly once per (unit, stake kind), whether a penalty fires.

    Safe to run concurrently against the same unit from any number of
    workers: exactly one record per pair survives.
    """

    def __init__(
        self,
        db_session: Session,
        randbelow: Optional[mercy_gate.RandBelow] = None,
        final_deadline_guaranteed: bool = FINAL_DEADLINE_GUARANTEED,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db_session
        self.randbelow = randbelow
        self.final_deadline_guaranteed = final_deadline_guaranteed
        self.clock = clock or datetime.utcnow

    def evaluate(self, unit: DeadlineUnitDB) -> List[StakeDecision]:
        """
        Evaluate every stake of a FAILED unit.

        Commits once per stake. Marks the unit evaluated once every stake
        has a record, whoever created it.
        """
        if unit.status != UnitStatus.FAILED:
            raise UnitNotFailedError(
                f"Unit {unit.id} is {unit.status.value}, not failed"
            )

        unit_id = unit.id
        owner_id = unit.owner_id
        is_final = bool(unit.is_final)
        stakes = parse_stakes(unit.stakes)

        decisions = [
            self._decide_stake(unit_id, owner_id, is_final, stake)
            for stake in stakes
        ]

        self._mark_evaluated(unit_id)

        created = [d for d in decisions if d.created]
        logger.info(
            f"Evaluated unit {unit_id}: {len(stakes)} stake(s), "
            f"{len(created)} new record(s), "
            f"{sum(1 for d in created if d.outcome == MercyOutcome.EXECUTED)} executed"
        )
        return decisions

    def _decide_stake(
        self,
        unit_id: str,
        owner_id: str,
        is_final: bool,
        stake: StakeDescriptor,
    ) -> StakeDecision:
        now = self.clock()

        if self.final_deadline_guaranteed and is_final:
            roll, outcome = None, MercyOutcome.EXECUTED
        else:
            roll, outcome = mercy_gate.roll_mercy(self.randbelow)

        stake = self._resolve_stake(stake, is_final)

        record_id = str(uuid4())
        record = ConsequenceRecordDB(
            id=record_id,
            owner_id=owner_id,
            deadline_unit_id=unit_id,
            stake_kind=stake.kind,
            stake=stake.to_dict(),
            triggered_at=now,
            mercy_roll_outcome=outcome,
            mercy_roll=roll,
            attempt_count=0,
        )
        if outcome == MercyOutcome.SPARED:
            record.execution_status = ExecutionStatus.COMPLETED
            record.execution_details = SparedDetails().to_dict()
        else:
            record.execution_status = ExecutionStatus.PENDING
            record.next_attempt_at = now

        self.db.add(record)
        record_event(
            self.db,
            event_type="consequence_decided",
            actor=ActorType.SYSTEM,
            description=f"{stake.kind.value} stake {outcome.value} (roll={roll})",
            owner_id=owner_id,
            deadline_unit_id=unit_id,
            consequence_id=record_id,
            metadata={"stake_kind": stake.kind.value, "outcome": outcome.value, "roll": roll},
            created_at=now,
        )

        try:
            self.db.commit()
        except IntegrityError:
            # Contention: another evaluation already inserted this pair
            self.db.rollback()
            logger.debug(f"Consequence for ({unit_id}, {stake.kind.value}) already exists, skipping")
            existing = self.db.query(ConsequenceRecordDB.id).filter(
                ConsequenceRecordDB.deadline_unit_id == unit_id,
                ConsequenceRecordDB.stake_kind == stake.kind,
            ).first()
            return StakeDecision(
                stake_kind=stake.kind.value,
                created=False,
                record_id=existing[0] if existing else None,
            )

        return StakeDecision(
            stake_kind=stake.kind.value,
            created=True,
            record_id=record_id,
            outcome=outcome,
            mercy_roll=roll,
        )

    def _resolve_stake(self, stake: StakeDescriptor, is_final: bool) -> StakeDescriptor:
        """Content release without a fixed severity: major for final units, minor otherwise."""
        if isinstance(stake, ContentReleaseStake) and stake.severity is None:
            return ContentReleaseStake(
                content_ref=stake.content_ref,
                severity=ContentSeverity.MAJOR if is_final else ContentSeverity.MINOR,
                recipient_selection=stake.recipient_selection,
            )
        return stake

    def _mark_evaluated(self, unit_id: str) -> None:
        self.db.query(DeadlineUnitDB).filter(
            DeadlineUnitDB.id == unit_id,
            DeadlineUnitDB.evaluated_at.is_(None),
        ).update({DeadlineUnitDB.evaluated_at: self.clock()}, synchronize_session=False)
        self.db.commit()
