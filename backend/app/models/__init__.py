"""Deadline Enforcer - Data Models"""
from .db_models import (
    # Enums
    UnitKind, UnitStatus, SubmissionType, SubmissionStatus, StakeKind,
    ContentSeverity, MercyOutcome, ExecutionStatus, FailureReason, ActorType,
    # Tables
    UserDB, DeadlineUnitDB, SubmissionDB, ConsequenceRecordDB, AuditTrailDB,
)
from .stakes import (
    MonetaryStake, ContentReleaseStake, SocialPostStake, StakeDescriptor,
    SparedDetails, MonetaryDetails, ContentReleaseDetails, SocialPostDetails,
    FailedDetails, ExecutionDetails,
    stake_from_dict, parse_stakes, details_from_dict,
)

__all__ = [
    "UnitKind", "UnitStatus", "SubmissionType", "SubmissionStatus", "StakeKind",
    "ContentSeverity", "MercyOutcome", "ExecutionStatus", "FailureReason", "ActorType",
    "UserDB", "DeadlineUnitDB", "SubmissionDB", "ConsequenceRecordDB", "AuditTrailDB",
    "MonetaryStake", "ContentReleaseStake", "SocialPostStake", "StakeDescriptor",
    "SparedDetails", "MonetaryDetails", "ContentReleaseDetails", "SocialPostDetails",
    "FailedDetails", "ExecutionDetails",
    "stake_from_dict", "parse_stakes", "details_from_dict",
]
