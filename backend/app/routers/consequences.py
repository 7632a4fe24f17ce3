"""
Consequence Notification API Routes

Client-facing surface of the notification delivery queue.

- Catch-up read on connect/reconnect (source of truth)
- Claim for push-announced records (first session wins)
- Renew display claims while the session is alive
- Acknowledge (the only way a record leaves the queue)
- Server-sent event stream of push announcements (advisory)
"""
import asyncio
import json
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Header, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..dependencies import get_push_channel
from ..models.db_models import UserDB
from ..services.enforcement import NotificationQueue, RecordNotFoundError, NotificationNotShownError


router = APIRouter(prefix="/consequences", tags=["consequences"])

STREAM_POLL_SEC = 15


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class ConsequenceNotificationResponse(BaseModel):
    """One consequence as rendered by a client."""
    id: str
    deadline_unit_id: str
    unit_title: Optional[str]
    unit_kind: Optional[str]
    stake_kind: str
    triggered_at: str
    mercy_roll_outcome: str
    execution_status: str
    execution_details: Dict[str, Any]
    failure_reason: Optional[str]
    shown_at: Optional[str]


class CatchUpResponse(BaseModel):
    """Records this session won, oldest first."""
    session_id: str
    consequences: List[ConsequenceNotificationResponse]
    total: int


class ClaimResponse(BaseModel):
    """won=False means another session is showing it; discard the local copy."""
    session_id: str
    won: bool
    consequence: Optional[ConsequenceNotificationResponse] = None


class RenewRequest(BaseModel):
    consequence_ids: List[str]


class RenewResponse(BaseModel):
    """held lists what this session may keep on screen; drop the rest."""
    session_id: str
    held: List[str]


class AcknowledgeResponse(BaseModel):
    id: str
    acknowledged_at: str


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.get("/unacknowledged", response_model=CatchUpResponse)
async def catch_up(
    x_client_session: Optional[str] = Header(None),
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Catch-up read. Call on connect and after every reconnect.

    Marks every returned record as shown to this session, so other
    sessions of the same user will not receive it.
    """
    session_id = x_client_session or str(uuid4())
    notifications = NotificationQueue(db).catch_up(current_user.id, session_id)

    return CatchUpResponse(
        session_id=session_id,
        consequences=[ConsequenceNotificationResponse(**n.to_dict()) for n in notifications],
        total=len(notifications),
    )


@router.post("/{consequence_id}/claim", response_model=ClaimResponse)
async def claim_consequence(
    consequence_id: str,
    x_client_session: Optional[str] = Header(None),
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Claim display of a record announced over the push stream."""
    session_id = x_client_session or str(uuid4())
    notification = NotificationQueue(db).claim(current_user.id, consequence_id, session_id)

    return ClaimResponse(
        session_id=session_id,
        won=notification is not None,
        consequence=ConsequenceNotificationResponse(**notification.to_dict()) if notification else None,
    )


@router.post("/renew", response_model=RenewResponse)
async def renew_claims(
    request: RenewRequest,
    x_client_session: str = Header(...),
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Heartbeat for the records this session has on screen or queued.

    Claims that are not renewed expire and may be shown elsewhere.
    """
    held = NotificationQueue(db).renew(current_user.id, x_client_session, request.consequence_ids)

    return RenewResponse(session_id=x_client_session, held=held)


@router.post("/{consequence_id}/acknowledge", response_model=AcknowledgeResponse)
async def acknowledge_consequence(
    consequence_id: str,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Dismiss a shown consequence. Idempotent."""
    try:
        record = NotificationQueue(db).acknowledge(current_user.id, consequence_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Consequence not found")
    except NotificationNotShownError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return AcknowledgeResponse(
        id=record.id,
        acknowledged_at=record.acknowledged_at.isoformat(),
    )


@router.get("/stream")
async def stream_consequences(
    request: Request,
    current_user: UserDB = Depends(get_current_user),
    push_channel=Depends(get_push_channel),
):
    """
    Server-sent events announcing newly finished consequences.

    Advisory only: each event carries a record id the client must claim.
    Missed events are recovered by the next catch-up read.
    """
    if push_channel is None:
        raise HTTPException(status_code=503, detail="Push channel unavailable")

    subscription = push_channel.subscribe(current_user.id).start()

    async def events():
        try:
            yield ": connected\n\n"
            while not await request.is_disconnected():
                record_id = await asyncio.to_thread(subscription.get, STREAM_POLL_SEC)
                if record_id is None:
                    yield ": keepalive\n\n"
                    continue
                yield f"event: consequence\ndata: {json.dumps({'id': record_id})}\n\n"
        finally:
            subscription.stop()

    return StreamingResponse(events(), media_type="text/event-stream")
