"""
Stripe Payment Processor

Monetary consequences are Stripe Connect transfers to a charity's
connected account. Stripe deduplicates on the Idempotency-Key header.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

import httpx

from ...config import (
    STRIPE_SECRET_KEY, STRIPE_API_BASE, STRIPE_CHARITY_ACCOUNTS, COLLABORATOR_TIMEOUT_SEC,
)
from ..enforcement.errors import PermanentCollaboratorError
from .base import PaymentProcessor, ChargeResult, send_request

logger = logging.getLogger(__name__)


# Charity key -> Stripe Connect account id (None until configured)
CHARITY_ACCOUNTS = dict(STRIPE_CHARITY_ACCOUNTS)

CHARITY_DISPLAY_NAMES = {
    "doctors_without_borders": "Doctors Without Borders",
    "red_cross": "American Red Cross",
    "unicef": "UNICEF",
}


def is_valid_charity(destination: str) -> bool:
    return destination in CHARITY_DISPLAY_NAMES


def to_cents(amount: Decimal) -> int:
    """Stripe amounts are in the smallest currency unit."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripePaymentProcessor(PaymentProcessor):
    """Transfers penalty amounts to charities through the Stripe API."""

    SERVICE = "Stripe"

    def __init__(
        self,
        secret_key: Optional[str] = STRIPE_SECRET_KEY,
        api_base: str = STRIPE_API_BASE,
        timeout: float = COLLABORATOR_TIMEOUT_SEC,
        charity_accounts: Optional[Dict[str, str]] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")
        self.charity_accounts = charity_accounts or CHARITY_ACCOUNTS
        self.client = client or httpx.Client(timeout=timeout)

    def charge(self, idempotency_key: str, amount: Decimal, destination: str) -> ChargeResult:
        if not self.secret_key:
            raise PermanentCollaboratorError("Stripe not configured")

        if not is_valid_charity(destination):
            raise PermanentCollaboratorError(f"Unknown charity: {destination}")

        account_id = self.charity_accounts.get(destination)
        if not account_id:
            raise PermanentCollaboratorError(f"No Stripe account configured for {destination}")

        cents = to_cents(amount)
        if cents <= 0:
            raise PermanentCollaboratorError(f"Invalid transfer amount: {amount}")

        logger.info(f"Initiating Stripe transfer: ${amount} ({cents} cents) to {destination}")

        data = send_request(
            self.client,
            self.SERVICE,
            "POST",
            f"{self.api_base}/transfers",
            headers={
                "Authorization": f"Bearer {self.secret_key}",
                "Idempotency-Key": idempotency_key,
            },
            data={
                "amount": str(cents),
                "currency": "usd",
                "destination": account_id,
                "description": f"Missed deadline consequence - donation to {CHARITY_DISPLAY_NAMES.get(destination, destination)}",
                "metadata[consequence_id]": idempotency_key,
                "metadata[charity]": destination,
            },
        )

        transfer_id = data.get("id")
        if not transfer_id:
            raise PermanentCollaboratorError("Stripe response carried no transfer id")

        logger.info(f"Stripe transfer successful: {transfer_id}")
        return ChargeResult(transaction_id=transfer_id)
