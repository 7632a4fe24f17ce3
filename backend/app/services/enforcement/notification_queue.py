"""
Notification Delivery Queue

Server-side queue that shows every finished consequence to its owner
exactly once, however many client sessions are open.

Core Principles:
- The queue lives in the consequence_records table, not in any client
- Catch-up read on (re)connect is the source of truth; push is advisory
- Display is won by a conditional write on notification_shown_at; the
  losing session discards its copy silently
- Only acknowledgment retires a record
- Failed executions are shown too, never hidden

A live session renews notification_shown_at on the records it holds every
time it polls. A record whose holder stopped renewing (its session died
mid-display) becomes claimable again once NOTIFICATION_REDISPLAY_AFTER_SEC
has passed. The re-claim is conditional on the shown-at value we read, so
two sessions still cannot both win it, and the old holder drops the record
on its next renewal.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...config import NOTIFICATION_REDISPLAY_AFTER_SEC
from ...models.db_models import (
    ConsequenceRecordDB, DeadlineUnitDB, ExecutionStatus, ActorType,
)
from .audit_trail import record_event
from .errors import RecordNotFoundError, NotificationNotShownError

logger = logging.getLogger(__name__)

VISIBLE_STATUSES = (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


@dataclass
class ConsequenceNotification:
    """What a client renders for one consequence."""
    id: str
    deadline_unit_id: str
    unit_title: Optional[str]
    unit_kind: Optional[str]
    stake_kind: str
    triggered_at: datetime
    mercy_roll_outcome: str
    execution_status: str
    execution_details: Dict[str, Any] = field(default_factory=dict)
    failure_reason: Optional[str] = None
    shown_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "deadline_unit_id": self.deadline_unit_id,
            "unit_title": self.unit_title,
            "unit_kind": self.unit_kind,
            "stake_kind": self.stake_kind,
            "triggered_at": self.triggered_at.isoformat(),
            "mercy_roll_outcome": self.mercy_roll_outcome,
            "execution_status": self.execution_status,
            "execution_details": self.execution_details,
            "failure_reason": self.failure_reason,
            "shown_at": self.shown_at.isoformat() if self.shown_at else None,
        }


class NotificationQueue:
    """Catch-up, claim and acknowledge operations over consequence records."""

    def __init__(
        self,
        db_session: Session,
        redisplay_after_sec: int = NOTIFICATION_REDISPLAY_AFTER_SEC,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db_session
        self.redisplay_after = timedelta(seconds=redisplay_after_sec)
        self.clock = clock or datetime.utcnow

    def _inbox(self, owner_id: str):
        return self.db.query(ConsequenceRecordDB).filter(
            ConsequenceRecordDB.owner_id == owner_id,
            ConsequenceRecordDB.acknowledged_at.is_(None),
            ConsequenceRecordDB.execution_status.in_(VISIBLE_STATUSES),
        )

    def catch_up(self, owner_id: str, session_id: str) -> List[ConsequenceNotification]:
        """
        Claim every unshown finished record of the owner for this session.

        Returns only the records this session won, oldest first.
        """
        now = self.clock()
        stale_before = now - self.redisplay_after

        candidates = self._inbox(owner_id).filter(
            or_(
                ConsequenceRecordDB.notification_shown_at.is_(None),
                ConsequenceRecordDB.notification_shown_at < stale_before,
            )
        ).order_by(
            ConsequenceRecordDB.triggered_at, ConsequenceRecordDB.id
        ).all()

        won = []
        for record in candidates:
            if self._claim_display(record, session_id, now):
                won.append(record.id)

        self.db.commit()

        if won:
            logger.info(f"Session {session_id} caught up {len(won)} consequence(s) for owner {owner_id}")
        return self._load(won)

    def claim(self, owner_id: str, record_id: str, session_id: str) -> Optional[ConsequenceNotification]:
        """
        Claim one record announced by a push event.

        Returns None when another session already showed it, or it is not
        (yet) displayable; the caller discards its local copy.
        """
        now = self.clock()
        won = self._inbox(owner_id).filter(
            ConsequenceRecordDB.id == record_id,
            ConsequenceRecordDB.notification_shown_at.is_(None),
        ).update({
            ConsequenceRecordDB.notification_shown_at: now,
            ConsequenceRecordDB.notification_session_id: session_id,
        }, synchronize_session=False)

        if not won:
            self.db.rollback()
            logger.debug(f"Session {session_id} lost display of {record_id}")
            return None

        self._audit_shown(owner_id, record_id, session_id, now)
        self.db.commit()
        notifications = self._load([record_id])
        return notifications[0] if notifications else None

    def renew(self, owner_id: str, session_id: str, record_ids: List[str]) -> List[str]:
        """
        Keep this session's display claims alive.

        Returns the ids the session still holds. Anything missing was
        acknowledged or taken over after the session went quiet; the
        caller drops it.
        """
        if not record_ids:
            return []

        held = self.db.query(ConsequenceRecordDB).filter(
            ConsequenceRecordDB.id.in_(record_ids),
            ConsequenceRecordDB.owner_id == owner_id,
            ConsequenceRecordDB.notification_session_id == session_id,
            ConsequenceRecordDB.acknowledged_at.is_(None),
        )
        held.update(
            {ConsequenceRecordDB.notification_shown_at: self.clock()},
            synchronize_session=False,
        )
        self.db.commit()

        still_held = {row.id for row in held.with_entities(ConsequenceRecordDB.id).all()}
        lost = [record_id for record_id in record_ids if record_id not in still_held]
        if lost:
            logger.info(f"Session {session_id} lost display of {len(lost)} consequence(s)")
        return [record_id for record_id in record_ids if record_id in still_held]

    def acknowledge(self, owner_id: str, record_id: str) -> ConsequenceRecordDB:
        """
        Dismiss a shown record for good. Repeating it is harmless.

        Raises NotificationNotShownError for a record that has not finished
        executing or was never shown: acknowledging it early would hide a
        later failure.
        """
        record = self.db.query(ConsequenceRecordDB).filter(
            ConsequenceRecordDB.id == record_id,
            ConsequenceRecordDB.owner_id == owner_id,
        ).first()
        if record is None:
            raise RecordNotFoundError(f"Consequence {record_id} not found")

        if record.acknowledged_at is not None:
            return record

        if record.execution_status not in VISIBLE_STATUSES or record.notification_shown_at is None:
            raise NotificationNotShownError(f"Consequence {record_id} has not been shown")

        now = self.clock()
        updated = self.db.query(ConsequenceRecordDB).filter(
            ConsequenceRecordDB.id == record_id,
            ConsequenceRecordDB.acknowledged_at.is_(None),
            ConsequenceRecordDB.execution_status.in_(VISIBLE_STATUSES),
            ConsequenceRecordDB.notification_shown_at.isnot(None),
        ).update({ConsequenceRecordDB.acknowledged_at: now}, synchronize_session=False)

        if updated:
            record_event(
                self.db,
                event_type="notification_acknowledged",
                actor=ActorType.USER,
                description="Consequence notification dismissed",
                owner_id=owner_id,
                deadline_unit_id=record.deadline_unit_id,
                consequence_id=record_id,
                created_at=now,
            )
        self.db.commit()
        self.db.refresh(record)
        return record

    def _claim_display(self, record: ConsequenceRecordDB, session_id, now) -> bool:
        observed_shown_at = record.notification_shown_at
        query = self.db.query(ConsequenceRecordDB).filter(
            ConsequenceRecordDB.id == record.id,
            ConsequenceRecordDB.acknowledged_at.is_(None),
        )
        if observed_shown_at is None:
            query = query.filter(ConsequenceRecordDB.notification_shown_at.is_(None))
        else:
            query = query.filter(ConsequenceRecordDB.notification_shown_at == observed_shown_at)

        won = query.update({
            ConsequenceRecordDB.notification_shown_at: now,
            ConsequenceRecordDB.notification_session_id: session_id,
        }, synchronize_session=False)

        if won:
            self._audit_shown(record.owner_id, record.id, session_id, now)
        return bool(won)

    def _audit_shown(self, owner_id, record_id, session_id, now) -> None:
        record_event(
            self.db,
            event_type="notification_shown",
            actor=ActorType.SYSTEM,
            description=f"Consequence shown to session {session_id}",
            owner_id=owner_id,
            consequence_id=record_id,
            metadata={"session_id": session_id},
            created_at=now,
        )

    def _load(self, record_ids: List[str]) -> List[ConsequenceNotification]:
        if not record_ids:
            return []

        rows = self.db.query(ConsequenceRecordDB, DeadlineUnitDB).outerjoin(
            DeadlineUnitDB, DeadlineUnitDB.id == ConsequenceRecordDB.deadline_unit_id
        ).filter(
            ConsequenceRecordDB.id.in_(record_ids)
        ).order_by(
            ConsequenceRecordDB.triggered_at, ConsequenceRecordDB.id
        ).all()

        return [
            ConsequenceNotification(
                id=record.id,
                deadline_unit_id=record.deadline_unit_id,
                unit_title=unit.title if unit else None,
                unit_kind=unit.kind.value if unit else None,
                stake_kind=record.stake_kind.value,
                triggered_at=record.triggered_at,
                mercy_roll_outcome=record.mercy_roll_outcome.value,
                execution_status=record.execution_status.value,
                execution_details=record.execution_details or {},
                failure_reason=record.failure_reason.value if record.failure_reason else None,
                shown_at=record.notification_shown_at,
            )
            for record, unit in rows
        ]


# =============================================================================
# CLIENT SESSION
# =============================================================================

class ClientSession:
    """
    One connected client surface.

    Owns its push subscription for exactly as long as it is connected, and
    renders strictly one consequence at a time, oldest first. The local
    display queue survives reconnects; the server decides what is new.
    Every poll renews the display claims it holds; a record taken over by
    another session leaves the local queue.

    `session_factory` opens a fresh database session per operation, so a
    ClientSession can be driven from any thread.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        push_channel,
        owner_id: str,
        session_id: Optional[str] = None,
        queue_options: Optional[Dict[str, Any]] = None,
    ):
        self.session_factory = session_factory
        self.push_channel = push_channel
        self.owner_id = owner_id
        self.session_id = session_id or str(uuid4())
        self.queue_options = queue_options or {}
        self.subscription = None
        self._pending: "OrderedDict[str, ConsequenceNotification]" = OrderedDict()

    @property
    def connected(self) -> bool:
        return self.subscription is not None and self.subscription.active

    def _with_queue(self, fn):
        db = self.session_factory()
        try:
            return fn(NotificationQueue(db, **self.queue_options))
        finally:
            db.close()

    def connect(self) -> List[ConsequenceNotification]:
        """
        Subscribe, then catch up.

        Subscribing first means an event published during the catch-up is
        buffered; claiming it later simply loses to our own catch-up claim.
        """
        if self.push_channel is not None and not self.connected:
            self.subscription = self.push_channel.subscribe(self.owner_id).start()

        self.heartbeat()
        caught_up = self._with_queue(lambda q: q.catch_up(self.owner_id, self.session_id))
        self._enqueue(caught_up)
        return caught_up

    def disconnect(self) -> None:
        if self.subscription is not None:
            self.subscription.stop()
            self.subscription = None

    def reconnect(self) -> List[ConsequenceNotification]:
        self.disconnect()
        return self.connect()

    def heartbeat(self) -> List[str]:
        """
        Renew the claims on everything queued here.

        Records this session no longer holds leave the local queue, even the
        one on screen. Returns the dropped ids.
        """
        if not self._pending:
            return []

        held = set(self._with_queue(
            lambda q: q.renew(self.owner_id, self.session_id, list(self._pending))
        ))
        dropped = [record_id for record_id in self._pending if record_id not in held]
        for record_id in dropped:
            del self._pending[record_id]
        return dropped

    def poll_push(self) -> List[ConsequenceNotification]:
        """Renew held claims, then claim every buffered push event; lost races are dropped."""
        if not self.connected:
            return []

        self.heartbeat()
        won = []
        for record_id in self.subscription.drain():
            if record_id in self._pending:
                continue
            notification = self._with_queue(
                lambda q: q.claim(self.owner_id, record_id, self.session_id)
            )
            if notification is not None:
                won.append(notification)
        self._enqueue(won)
        return won

    @property
    def current(self) -> Optional[ConsequenceNotification]:
        """The one consequence on screen, if any."""
        return next(iter(self._pending.values()), None)

    @property
    def pending(self) -> List[ConsequenceNotification]:
        return list(self._pending.values())

    def dismiss(self) -> Optional[str]:
        """Acknowledge the consequence on screen and advance."""
        notification = self.current
        if notification is None:
            return None
        self._with_queue(lambda q: q.acknowledge(self.owner_id, notification.id))
        del self._pending[notification.id]
        return notification.id

    def _enqueue(self, notifications: List[ConsequenceNotification]) -> None:
        # The consequence on screen stays put; everything behind it is oldest first
        head = self.current
        for n in notifications:
            self._pending.setdefault(n.id, n)
        rest = sorted(
            (n for n in self._pending.values() if head is None or n.id != head.id),
            key=lambda n: (n.triggered_at, n.id),
        )
        ordered = ([head] if head is not None else []) + rest
        self._pending = OrderedDict((n.id, n) for n in ordered)

    def __enter__(self) -> "ClientSession":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.disconnect()
