from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import stripe

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StripeClient:
    """Card payments through the Stripe SDK, scoped to one secret key."""

    secret_key: str

    @classmethod
    def from_config(cls, config: dict) -> "StripeClient | None":
        key = (config.get("STRIPE_SECRET_KEY") or "").strip()
        if not key:
            return None
        return cls(secret_key=key)

    def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        metadata: dict[str, Any],
        description: str | None = None,
        receipt_email: str | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        """Raises stripe.StripeError on any provider or network failure."""
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "metadata": {k: str(v) for k, v in metadata.items()},
            "automatic_payment_methods": {"enabled": True},
        }
        if description:
            params["description"] = description
        if receipt_email:
            params["receipt_email"] = receipt_email
        intent = stripe.PaymentIntent.create(api_key=self.secret_key, idempotency_key=idempotency_key, **params)
        logger.info("Created payment intent %s amount=%s %s", getattr(intent, "id", None), amount, currency)
        return intent


def verify_webhook_signature(payload: bytes, sig_header: str | None, secret: str) -> None:
    """
    Check the Stripe-Signature header against the raw request body.

    Raises stripe.SignatureVerificationError on a missing, stale or wrong
    signature, and ValueError when the body is not UTF-8.
    """
    if not sig_header:
        raise stripe.SignatureVerificationError("Missing Stripe-Signature header.", sig_header, http_body=payload)
    stripe.WebhookSignature.verify_header(
        payload.decode("utf-8"), sig_header, secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
    )
