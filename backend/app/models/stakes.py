"""
Stake Descriptors and Execution Details

Tagged variants stored as JSON on deadline units and consequence records.
Every payload carries a "kind" key; from_dict() dispatches on it and
rejects anything it does not recognise.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, ClassVar, Dict, List, Optional, Union

from .db_models import StakeKind, ContentSeverity


# =============================================================================
# STAKE DESCRIPTORS
# =============================================================================

@dataclass(frozen=True)
class MonetaryStake:
    """Transfer `amount` (major currency units) to `destination`."""
    kind: ClassVar[StakeKind] = StakeKind.MONETARY

    amount: Decimal
    destination: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "amount": str(self.amount),
            "destination": self.destination,
        }


@dataclass(frozen=True)
class ContentReleaseStake:
    """
    Release uploaded sensitive material to one of the owner's contacts.

    severity=None lets the decision engine pick by unit finality.
    """
    kind: ClassVar[StakeKind] = StakeKind.CONTENT_RELEASE

    content_ref: str
    severity: Optional[ContentSeverity] = None
    recipient_selection: str = "random_contact"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "content_ref": self.content_ref,
            "severity": self.severity.value if self.severity else None,
            "recipient_selection": self.recipient_selection,
        }


@dataclass(frozen=True)
class SocialPostStake:
    """Publish a post on the owner's connected social account."""
    kind: ClassVar[StakeKind] = StakeKind.SOCIAL_POST

    platform_account_ref: str
    content: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "platform_account_ref": self.platform_account_ref,
            "content": self.content,
        }


StakeDescriptor = Union[MonetaryStake, ContentReleaseStake, SocialPostStake]


def stake_from_dict(data: Dict[str, Any]) -> StakeDescriptor:
    """Build a StakeDescriptor from its stored JSON form."""
    try:
        kind = StakeKind(data.get("kind"))
    except ValueError:
        raise ValueError(f"Unknown stake kind: {data.get('kind')!r}")

    if kind == StakeKind.MONETARY:
        try:
            amount = Decimal(str(data["amount"]))
        except (KeyError, InvalidOperation):
            raise ValueError(f"Monetary stake needs a numeric amount: {data.get('amount')!r}")
        if amount <= 0:
            raise ValueError(f"Monetary stake amount must be positive: {amount}")
        if not data.get("destination"):
            raise ValueError("Monetary stake needs a destination")
        return MonetaryStake(amount=amount, destination=data["destination"])

    if kind == StakeKind.CONTENT_RELEASE:
        if not data.get("content_ref"):
            raise ValueError("Content release stake needs a content_ref")
        severity = data.get("severity")
        return ContentReleaseStake(
            content_ref=data["content_ref"],
            severity=ContentSeverity(severity) if severity else None,
            recipient_selection=data.get("recipient_selection") or "random_contact",
        )

    if not data.get("platform_account_ref"):
        raise ValueError("Social post stake needs a platform_account_ref")
    return SocialPostStake(
        platform_account_ref=data["platform_account_ref"],
        content=data.get("content"),
    )


def parse_stakes(items: Optional[List[Dict[str, Any]]]) -> List[StakeDescriptor]:
    """
    Parse a unit's stake list.

    A unit carries at most one stake per kind, since consequence records
    are keyed by (unit, stake kind).
    """
    stakes = [stake_from_dict(item) for item in (items or [])]
    kinds = [s.kind for s in stakes]
    if len(kinds) != len(set(kinds)):
        raise ValueError(f"Duplicate stake kinds on one unit: {[k.value for k in kinds]}")
    return stakes


# =============================================================================
# EXECUTION DETAILS
# =============================================================================

@dataclass(frozen=True)
class SparedDetails:
    """The mercy gate spared the owner; nothing was sent anywhere."""
    kind: ClassVar[str] = "spared"

    triggered: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "triggered": False}


@dataclass(frozen=True)
class MonetaryDetails:
    kind: ClassVar[str] = StakeKind.MONETARY.value

    transaction_id: str
    amount: str
    destination: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "triggered": True,
            "transaction_id": self.transaction_id,
            "amount": self.amount,
            "destination": self.destination,
        }


@dataclass(frozen=True)
class ContentReleaseDetails:
    kind: ClassVar[str] = StakeKind.CONTENT_RELEASE.value

    delivery_id: str
    recipient_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "triggered": True,
            "delivery_id": self.delivery_id,
            "recipient_id": self.recipient_id,
        }


@dataclass(frozen=True)
class SocialPostDetails:
    kind: ClassVar[str] = StakeKind.SOCIAL_POST.value

    post_id: str
    post_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "triggered": True,
            "post_id": self.post_id,
            "post_url": self.post_url,
        }


@dataclass(frozen=True)
class FailedDetails:
    """Context kept for manual reconciliation of a failed execution."""
    kind: ClassVar[str] = "failed"

    error: str
    retryable: bool
    attempts: int
    history: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "triggered": True,
            "error": self.error,
            "retryable": self.retryable,
            "attempts": self.attempts,
            "history": list(self.history),
        }


ExecutionDetails = Union[
    SparedDetails, MonetaryDetails, ContentReleaseDetails, SocialPostDetails, FailedDetails
]

_DETAILS_BY_KIND = {
    SparedDetails.kind: SparedDetails,
    MonetaryDetails.kind: MonetaryDetails,
    ContentReleaseDetails.kind: ContentReleaseDetails,
    SocialPostDetails.kind: SocialPostDetails,
    FailedDetails.kind: FailedDetails,
}


def details_from_dict(data: Optional[Dict[str, Any]]) -> Optional[ExecutionDetails]:
    """Rebuild typed execution details from a record's JSON column."""
    if data is None:
        return None
    cls = _DETAILS_BY_KIND.get(data.get("kind"))
    if cls is None:
        raise ValueError(f"Unknown execution details kind: {data.get('kind')!r}")
    fields = {k: v for k, v in data.items() if k not in ("kind", "triggered")}
    return cls(**fields)
