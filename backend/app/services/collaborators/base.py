"""
Collaborator Boundary

Abstract interfaces for the three penalty collaborators, and the shared
httpx error classification used by the bundled adapters.

Every call carries an idempotency key. Implementations must make a repeated
call with the same key produce the same result and no second side effect.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from ..enforcement.errors import (
    RetryableCollaboratorError, PermanentCollaboratorError,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


# =============================================================================
# RESULTS
# =============================================================================

@dataclass(frozen=True)
class ChargeResult:
    transaction_id: str


@dataclass(frozen=True)
class ReleaseResult:
    delivery_id: str
    recipient_id: Optional[str] = None


@dataclass(frozen=True)
class PostResult:
    post_id: str
    post_url: Optional[str] = None


# =============================================================================
# INTERFACES
# =============================================================================

class PaymentProcessor(ABC):
    @abstractmethod
    def charge(self, idempotency_key: str, amount: Decimal, destination: str) -> ChargeResult:
        """Move `amount` to `destination`. Raises a CollaboratorError subclass on failure."""


class ContentReleaseService(ABC):
    @abstractmethod
    def release(
        self,
        idempotency_key: str,
        content_ref: str,
        recipient_selection: str,
        severity: Optional[str] = None,
    ) -> ReleaseResult:
        """Deliver stored content to a recipient picked by `recipient_selection`."""


class SocialConnector(ABC):
    @abstractmethod
    def post(self, idempotency_key: str, account_ref: str, content: str) -> PostResult:
        """Publish `content` on the account. Handles its own token refresh."""


# =============================================================================
# HTTP HELPERS
# =============================================================================

def raise_for_collaborator(response: httpx.Response, service: str) -> None:
    """Classify a non-2xx response as retryable or permanent."""
    if response.is_success:
        return

    message = f"{service} error {response.status_code}: {response.text[:200]}"
    if response.status_code in RETRYABLE_STATUS_CODES:
        raise RetryableCollaboratorError(message, status_code=response.status_code)
    raise PermanentCollaboratorError(message, status_code=response.status_code)


def send_request(client: httpx.Client, service: str, method: str, url: str, **kwargs) -> Dict[str, Any]:
    """
    Send one request and return its JSON body.

    Timeouts and transport failures are retryable: the call may or may not
    have reached the collaborator, and the idempotency key covers both.
    """
    try:
        response = client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        logger.warning(f"{service} request timed out: {e}")
        raise RetryableCollaboratorError(f"{service} timeout: {e}")
    except httpx.TransportError as e:
        logger.warning(f"{service} transport error: {e}")
        raise RetryableCollaboratorError(f"{service} transport error: {e}")

    raise_for_collaborator(response, service)

    try:
        return response.json()
    except ValueError:
        # 2xx with an unreadable body: the effect happened, the reference is lost.
        # Retrying with the same key returns the stored result.
        raise RetryableCollaboratorError(f"{service} returned a non-JSON body")
