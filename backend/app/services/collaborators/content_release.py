"""
Content Release Service client

Sensitive material is stored and delivered by a separate release service.
This client asks it to deliver one stored item to one of the owner's
contacts. Recipient choice and email composition happen on that side.
"""
import logging
from typing import Optional

import httpx

from ...config import CONTENT_RELEASE_URL, CONTENT_RELEASE_TOKEN, COLLABORATOR_TIMEOUT_SEC
from ..enforcement.errors import PermanentCollaboratorError
from .base import ContentReleaseService, ReleaseResult, send_request

logger = logging.getLogger(__name__)


class HttpContentReleaseService(ContentReleaseService):
    """Release service reached over HTTP."""

    SERVICE = "Content release"

    def __init__(
        self,
        base_url: Optional[str] = CONTENT_RELEASE_URL,
        token: Optional[str] = CONTENT_RELEASE_TOKEN,
        timeout: float = COLLABORATOR_TIMEOUT_SEC,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.token = token
        self.client = client or httpx.Client(timeout=timeout)

    def release(
        self,
        idempotency_key: str,
        content_ref: str,
        recipient_selection: str,
        severity: Optional[str] = None,
    ) -> ReleaseResult:
        if not self.base_url:
            raise PermanentCollaboratorError("Content release service not configured")

        headers = {"Idempotency-Key": idempotency_key}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        data = send_request(
            self.client,
            self.SERVICE,
            "POST",
            f"{self.base_url}/releases",
            headers=headers,
            json={
                "content_ref": content_ref,
                "recipient_selection": recipient_selection,
                "severity": severity,
            },
        )

        delivery_id = data.get("delivery_id")
        if not delivery_id:
            raise PermanentCollaboratorError("Release response carried no delivery id")

        logger.info(f"Content {content_ref} released, delivery {delivery_id}")
        return ReleaseResult(delivery_id=delivery_id, recipient_id=data.get("recipient_id"))
