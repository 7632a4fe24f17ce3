"""
Audit Trail

Append-only log of every state change in the enforcement pipeline.
Entries are added to the caller's session and committed with the change
they describe, so a rolled-back change leaves no trail.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import AuditTrailDB, ActorType


def record_event(
    db: Session,
    event_type: str,
    actor: ActorType,
    description: str,
    owner_id: Optional[str] = None,
    deadline_unit_id: Optional[str] = None,
    consequence_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    created_at: Optional[datetime] = None,
) -> AuditTrailDB:
    """Stage an audit entry in the current transaction."""
    entry = AuditTrailDB(
        id=str(uuid4()),
        owner_id=owner_id,
        deadline_unit_id=deadline_unit_id,
        consequence_id=consequence_id,
        event_type=event_type,
        actor=actor,
        description=description,
        event_metadata=metadata or {},
        created_at=created_at or datetime.utcnow(),
    )
    db.add(entry)
    return entry


def get_events(
    db: Session,
    deadline_unit_id: Optional[str] = None,
    consequence_id: Optional[str] = None,
) -> List[AuditTrailDB]:
    """Read the trail for a unit or a consequence, oldest first."""
    query = db.query(AuditTrailDB)
    if deadline_unit_id:
        query = query.filter(AuditTrailDB.deadline_unit_id == deadline_unit_id)
    if consequence_id:
        query = query.filter(AuditTrailDB.consequence_id == consequence_id)
    return query.order_by(AuditTrailDB.created_at, AuditTrailDB.id).all()
