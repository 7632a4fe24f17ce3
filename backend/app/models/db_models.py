"""
Deadline Enforcer - SQLAlchemy ORM Models
PostgreSQL database models for persistent storage
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, DateTime, Text, JSON, ForeignKey, Boolean,
    Enum as SQLEnum, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship
from ..database import Base


# =============================================================================
# ENUMS FOR THE ENFORCEMENT PIPELINE
# =============================================================================

class UnitKind(str, Enum):
    """A deadline unit is either a whole goal or one of its checkpoints."""
    GOAL = "goal"
    CHECKPOINT = "checkpoint"


class UnitStatus(str, Enum):
    """
    Stored lifecycle states of a deadline unit.

    OVERDUE is not stored: it is computed as
    status == PENDING and deadline < now.
    """
    PENDING = "pending"
    SUBMITTED = "submitted"
    PASSED = "passed"
    FAILED = "failed"


class SubmissionType(str, Enum):
    FILE = "file"
    URL = "url"
    TEXT = "text"


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


class StakeKind(str, Enum):
    """Penalty types that can be bound to a deadline unit."""
    MONETARY = "monetary"
    CONTENT_RELEASE = "content_release"
    SOCIAL_POST = "social_post"


class ContentSeverity(str, Enum):
    MINOR = "minor"
    MAJOR = "major"


class MercyOutcome(str, Enum):
    SPARED = "spared"
    EXECUTED = "executed"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Why a consequence ended in FAILED. Both require operator reconciliation."""
    RETRIES_EXHAUSTED = "retries_exhausted"
    PERMANENT = "permanent"


class ActorType(str, Enum):
    """Actor types for the audit trail."""
    USER = "USER"
    SYSTEM = "SYSTEM"
    COLLABORATOR = "COLLABORATOR"


# =============================================================================
# OWNERS
# =============================================================================

class UserDB(Base):
    """Owner of deadline units and consequence records."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)  # UUID
    email = Column(String(255), unique=True, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    units = relationship("DeadlineUnitDB", back_populates="owner")


# =============================================================================
# DEADLINE UNITS & SUBMISSIONS
# =============================================================================

class DeadlineUnitDB(Base):
    """
    A goal or checkpoint carrying a deadline and zero or more stakes.

    Goals and checkpoints share one table; checkpoints point at their goal
    and carry an order position.
    """
    __tablename__ = "deadline_units"

    id = Column(String(36), primary_key=True)  # UUID
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    kind = Column(SQLEnum(UnitKind), nullable=False, default=UnitKind.GOAL)
    goal_id = Column(String(36), ForeignKey("deadline_units.id"), nullable=True, index=True)
    title = Column(String(255), nullable=True)

    deadline = Column(DateTime, nullable=False, index=True)
    status = Column(SQLEnum(UnitStatus), nullable=False, default=UnitStatus.PENDING, index=True)
    order_position = Column(Integer, nullable=True)  # Checkpoints only
    is_final = Column(Boolean, nullable=False, default=False)

    # List of StakeDescriptor dicts, see models/stakes.py
    stakes = Column(JSON, nullable=False, default=list)

    failed_at = Column(DateTime, nullable=True)
    evaluated_at = Column(DateTime, nullable=True)  # Set once every stake has a record
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    owner = relationship("UserDB", back_populates="units")
    submissions = relationship(
        "SubmissionDB",
        back_populates="unit",
        order_by="SubmissionDB.submitted_at",
    )

    __table_args__ = (
        Index("idx_units_status_deadline", "status", "deadline"),
    )


class SubmissionDB(Base):
    """Proof submitted against a deadline unit, graded externally."""
    __tablename__ = "submissions"

    id = Column(String(36), primary_key=True)  # UUID
    deadline_unit_id = Column(String(36), ForeignKey("deadline_units.id"), nullable=False, index=True)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    type = Column(SQLEnum(SubmissionType), nullable=False)
    content_ref = Column(Text, nullable=False)
    status = Column(SQLEnum(SubmissionStatus), nullable=False, default=SubmissionStatus.PENDING)
    feedback = Column(Text, nullable=True)
    submitted_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    graded_at = Column(DateTime, nullable=True)

    unit = relationship("DeadlineUnitDB", back_populates="submissions")


# =============================================================================
# CONSEQUENCE RECORDS
# =============================================================================

class ConsequenceRecordDB(Base):
    """
    One decided penalty for one (deadline unit, stake kind) pair.

    The unique constraint on (deadline_unit_id, stake_kind) is the
    exactly-once guarantee of the whole pipeline. Rows are never deleted.
    The unit reference is lookup-only; history outlives the unit.
    """
    __tablename__ = "consequence_records"

    id = Column(String(36), primary_key=True)  # UUID, also the idempotency token
    owner_id = Column(String(36), nullable=False, index=True)
    deadline_unit_id = Column(String(36), nullable=False, index=True)
    stake_kind = Column(SQLEnum(StakeKind), nullable=False)
    stake = Column(JSON, nullable=False)  # Snapshot of the StakeDescriptor
    triggered_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Decision
    mercy_roll_outcome = Column(SQLEnum(MercyOutcome), nullable=False)
    mercy_roll = Column(Integer, nullable=True)  # None when the gate was bypassed

    # Execution
    execution_status = Column(SQLEnum(ExecutionStatus), nullable=False)
    execution_details = Column(JSON, nullable=True)  # ExecutionDetails dict, tagged by kind
    attempt_count = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime, nullable=True)
    claimed_until = Column(DateTime, nullable=True)
    claim_token = Column(String(36), nullable=True)
    last_error = Column(Text, nullable=True)
    failure_reason = Column(SQLEnum(FailureReason), nullable=True)
    executed_at = Column(DateTime, nullable=True)

    # Notification
    notification_shown_at = Column(DateTime, nullable=True)
    notification_session_id = Column(String(64), nullable=True)
    acknowledged_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("deadline_unit_id", "stake_kind", name="uq_consequence_unit_stake"),
        Index("idx_consequence_execution", "execution_status", "next_attempt_at"),
        Index("idx_consequence_inbox", "owner_id", "acknowledged_at", "notification_shown_at"),
    )


# =============================================================================
# AUDIT TRAIL
# =============================================================================

class AuditTrailDB(Base):
    """
    Append-only record of every state change in the pipeline.

    Operators reconcile failed executions from here.
    """
    __tablename__ = "audit_trail"

    id = Column(String(36), primary_key=True)  # UUID
    owner_id = Column(String(36), nullable=True, index=True)
    deadline_unit_id = Column(String(36), nullable=True, index=True)
    consequence_id = Column(String(36), nullable=True, index=True)
    event_type = Column(String(50), nullable=False)
    actor = Column(SQLEnum(ActorType), nullable=False)
    description = Column(Text, nullable=True)
    event_metadata = Column(JSON, nullable=True)  # Additional context
    created_at = Column(DateTime, default=datetime.utcnow)
