"""
Scheduler API Routes

Internal endpoints for system-automatic tasks and collaborator callbacks.
Deadline checks, consequence execution, grading intake, operator views.
"""
import hmac
from datetime import datetime, timezone
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Header
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..config import INTERNAL_API_KEY
from ..database import get_db
from ..dependencies import get_collaborators, get_push_channel
from ..models.db_models import DeadlineUnitDB, SubmissionType
from ..services.enforcement import (
    DeadlineMonitor,
    ConsequenceExecutor,
    UnitStateMachine,
    InvalidTransitionError,
    RecordNotFoundError,
)


router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# INTERNAL API KEY VALIDATION
# =============================================================================

async def verify_internal_key(x_internal_key: str = Header(...)):
    """Only the scheduler and collaborator callbacks hold the internal key."""
    if not hmac.compare_digest(x_internal_key.encode(), INTERNAL_API_KEY.encode()):
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class SubmissionRequest(BaseModel):
    """Proof intake from the upload surface."""
    deadline_unit_id: str
    type: str  # file, url, text
    content_ref: str


class GradingRequest(BaseModel):
    """Verdict from the grading collaborator."""
    passed: bool
    feedback: Optional[str] = None


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/deadline-check", response_model=dict)
async def run_deadline_check(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Run one deadline monitor pass.

    System-automatic - no user confirmation required.
    Fails overdue units and decides their consequences.
    """
    monitor = DeadlineMonitor(db)

    return monitor.run()


@router.post("/execute-pending", response_model=dict)
def run_executor(
    db: Session = Depends(get_db),
    collaborators=Depends(get_collaborators),
    push_channel=Depends(get_push_channel),
    _: bool = Depends(verify_internal_key),
):
    """
    Execute every due consequence once.

    System-automatic - penalties cannot be cancelled once decided.
    Collaborator calls block; FastAPI runs this in its threadpool.
    """
    executor = ConsequenceExecutor(db, collaborators, push_channel)

    return executor.run_due()


@router.post("/trigger-all", response_model=dict)
def trigger_all_tasks(
    db: Session = Depends(get_db),
    collaborators=Depends(get_collaborators),
    push_channel=Depends(get_push_channel),
    _: bool = Depends(verify_internal_key),
):
    """
    Run the monitor, then the executor.

    For testing/manual intervention only.
    """
    results = {
        "deadline_check": DeadlineMonitor(db).run(),
        "execution": ConsequenceExecutor(db, collaborators, push_channel).run_due(),
    }

    return {
        "run_date": datetime.now(timezone.utc).isoformat(),
        "results": results,
    }


# =============================================================================
# COLLABORATOR CALLBACKS
# =============================================================================

@router.post("/submissions", response_model=dict)
async def record_submission(
    request: SubmissionRequest,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Record proof against a unit (pending -> submitted)."""
    try:
        submission_type = SubmissionType(request.type)
    except ValueError:
        valid_types = [t.value for t in SubmissionType]
        raise HTTPException(
            status_code=400,
            detail=f"Invalid type. Must be one of: {valid_types}",
        )

    unit = db.query(DeadlineUnitDB).filter(DeadlineUnitDB.id == request.deadline_unit_id).first()
    if unit is None:
        raise HTTPException(status_code=404, detail="Deadline unit not found")

    state_machine = UnitStateMachine(db)
    try:
        submission = state_machine.record_submission(unit, submission_type, request.content_ref)
    except InvalidTransitionError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))

    submission_id = submission.id
    db.commit()

    return {
        "submission_id": submission_id,
        "deadline_unit_id": request.deadline_unit_id,
        "status": "pending",
    }


@router.post("/grading/{submission_id}", response_model=dict)
async def apply_grading(
    submission_id: str,
    request: GradingRequest,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Grading callback. Repeated callbacks are no-ops.

    A failing grade is picked up by the next deadline monitor pass.
    """
    state_machine = UnitStateMachine(db)
    try:
        changed, message = state_machine.apply_grading(submission_id, request.passed, request.feedback)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Submission not found")

    db.commit()

    return {
        "submission_id": submission_id,
        "changed": changed,
        "message": message,
    }


# =============================================================================
# STATUS ENDPOINTS (READ-ONLY)
# =============================================================================

@router.get("/deadlines", response_model=dict)
async def get_upcoming_deadlines(
    days_ahead: int = 7,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Get upcoming deadlines for monitoring and reminders.
    """
    monitor = DeadlineMonitor(db)
    deadlines = monitor.get_upcoming_deadlines(days_ahead)

    return {
        "days_ahead": days_ahead,
        "count": len(deadlines),
        "deadlines": deadlines,
    }


@router.get("/failed-executions", response_model=dict)
async def get_failed_executions(
    owner_id: Optional[str] = None,
    db: Session = Depends(get_db),
    collaborators=Depends(get_collaborators),
    _: bool = Depends(verify_internal_key),
):
    """
    Consequences that failed to execute and need manual reconciliation.

    These are never retried automatically.
    """
    executor = ConsequenceExecutor(db, collaborators)
    records = executor.get_failed_executions(owner_id)

    return {
        "count": len(records),
        "failed_executions": [
            {
                "id": r.id,
                "owner_id": r.owner_id,
                "deadline_unit_id": r.deadline_unit_id,
                "stake_kind": r.stake_kind.value,
                "stake": r.stake,
                "triggered_at": r.triggered_at.isoformat(),
                "attempt_count": r.attempt_count,
                "failure_reason": r.failure_reason.value if r.failure_reason else None,
                "last_error": r.last_error,
                "execution_details": r.execution_details,
            }
            for r in records
        ],
    }
