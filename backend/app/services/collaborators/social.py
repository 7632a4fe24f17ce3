"""
X/Twitter Social Connector

Posts public consequences on the owner's connected account (API v2).
Access tokens expire; on a 401 the connector refreshes once through the
OAuth2 refresh grant, stores the new pair and retries the post once.
A refresh that is refused means the user revoked access: permanent.

The v2 tweet endpoint has no server-side idempotency, so the key is sent
as a header for tracing only. Duplicate protection for posts comes from
the executor's lease and the record's terminal status.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from ...config import TWITTER_API_BASE, TWITTER_CLIENT_ID, COLLABORATOR_TIMEOUT_SEC
from ..enforcement.errors import PermanentCollaboratorError
from .base import SocialConnector, PostResult, send_request

logger = logging.getLogger(__name__)

MAX_POST_LENGTH = 280


@dataclass
class SocialTokens:
    access_token: str
    refresh_token: Optional[str] = None
    username: Optional[str] = None


class SocialTokenStore(ABC):
    """Where the OAuth handshake left the account's tokens."""

    @abstractmethod
    def get(self, account_ref: str) -> Optional[SocialTokens]:
        ...

    @abstractmethod
    def save(self, account_ref: str, tokens: SocialTokens) -> None:
        ...


class InMemoryTokenStore(SocialTokenStore):
    def __init__(self, tokens: Optional[Dict[str, SocialTokens]] = None):
        self._tokens = dict(tokens or {})

    def get(self, account_ref: str) -> Optional[SocialTokens]:
        return self._tokens.get(account_ref)

    def save(self, account_ref: str, tokens: SocialTokens) -> None:
        self._tokens[account_ref] = tokens


class TwitterConnector(SocialConnector):
    SERVICE = "Twitter"

    def __init__(
        self,
        token_store: SocialTokenStore,
        client_id: Optional[str] = TWITTER_CLIENT_ID,
        api_base: str = TWITTER_API_BASE,
        timeout: float = COLLABORATOR_TIMEOUT_SEC,
        client: Optional[httpx.Client] = None,
    ):
        self.token_store = token_store
        self.client_id = client_id
        self.api_base = api_base.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout)

    def post(self, idempotency_key: str, account_ref: str, content: str) -> PostResult:
        tokens = self.token_store.get(account_ref)
        if tokens is None or not tokens.access_token:
            raise PermanentCollaboratorError(f"No Twitter access token for account {account_ref}")

        data = self._post_with_refresh(idempotency_key, account_ref, tokens, content[:MAX_POST_LENGTH])

        post_id = (data.get("data") or {}).get("id")
        if not post_id:
            raise PermanentCollaboratorError("Twitter response carried no post id")

        if tokens.username:
            post_url = f"https://twitter.com/{tokens.username}/status/{post_id}"
        else:
            post_url = f"https://twitter.com/i/status/{post_id}"

        logger.info(f"Posted consequence tweet {post_id} for account {account_ref}")
        return PostResult(post_id=post_id, post_url=post_url)

    def _post_with_refresh(self, idempotency_key, account_ref, tokens, text):
        try:
            return self._send_post(idempotency_key, tokens.access_token, text)
        except PermanentCollaboratorError as e:
            if e.status_code != 401 or not tokens.refresh_token:
                raise

        logger.info(f"Access token for account {account_ref} expired, refreshing")
        refreshed = self._refresh(account_ref, tokens)
        return self._send_post(idempotency_key, refreshed.access_token, text)

    def _send_post(self, idempotency_key: str, access_token: str, text: str):
        return send_request(
            self.client,
            self.SERVICE,
            "POST",
            f"{self.api_base}/tweets",
            headers={
                "Authorization": f"Bearer {access_token}",
                "Idempotency-Key": idempotency_key,
            },
            json={"text": text},
        )

    def _refresh(self, account_ref: str, tokens: SocialTokens) -> SocialTokens:
        if not self.client_id:
            raise PermanentCollaboratorError("Twitter client id not configured")

        try:
            data = send_request(
                self.client,
                self.SERVICE,
                "POST",
                f"{self.api_base}/oauth2/token",
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": tokens.refresh_token,
                    "client_id": self.client_id,
                },
            )
        except PermanentCollaboratorError as e:
            raise PermanentCollaboratorError(
                f"Twitter token refresh refused, access revoked: {e}",
                status_code=e.status_code,
            )

        refreshed = SocialTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", tokens.refresh_token),
            username=tokens.username,
        )
        self.token_store.save(account_ref, refreshed)
        return refreshed
