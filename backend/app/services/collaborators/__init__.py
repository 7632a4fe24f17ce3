"""
External penalty collaborators.

Payment processor, content-release service and social connector, each
behind an abstract interface so the executor never sees HTTP.
"""
from dataclasses import dataclass
from typing import Optional

from .base import (
    PaymentProcessor, ContentReleaseService, SocialConnector,
    ChargeResult, ReleaseResult, PostResult,
)
from .stripe_client import StripePaymentProcessor, CHARITY_ACCOUNTS, is_valid_charity
from .content_release import HttpContentReleaseService
from .social import (
    TwitterConnector, SocialTokens, SocialTokenStore, InMemoryTokenStore,
)


@dataclass
class Collaborators:
    """The three collaborators the executor dispatches to."""
    payment: PaymentProcessor
    content: ContentReleaseService
    social: SocialConnector


def build_collaborators(token_store: Optional[SocialTokenStore] = None) -> Collaborators:
    """Collaborators configured from the environment."""
    return Collaborators(
        payment=StripePaymentProcessor(),
        content=HttpContentReleaseService(),
        social=TwitterConnector(token_store or InMemoryTokenStore()),
    )


__all__ = [
    "PaymentProcessor", "ContentReleaseService", "SocialConnector",
    "ChargeResult", "ReleaseResult", "PostResult",
    "StripePaymentProcessor", "CHARITY_ACCOUNTS", "is_valid_charity",
    "HttpContentReleaseService",
    "TwitterConnector", "SocialTokens", "SocialTokenStore", "InMemoryTokenStore",
    "Collaborators", "build_collaborators",
]
