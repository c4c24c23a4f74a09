from __future__ import annotations

import json
import logging
import secrets
from datetime import datetime
from typing import TYPE_CHECKING, Any

import stripe

from app.portal.audit import record_event
from app.portal.errors import ConflictError, PaymentProviderError, ServiceUnavailable, ValidationError
from app.portal.modules.payments.stripe_client import StripeClient
from app.portal.modules.workshops.pricing import PricingBreakdown, format_cents, invoice_number_prefix
from app.portal.utils import iso

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.portal.models import User
    from app.portal.modules.payments.models import Invoice, Payment
    from app.portal.modules.workshops.models import WorkshopRegistration

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("stripe_card", "interac_transfer", "bank_transfer")
OPEN_PAYMENT_STATUSES = ("initiated", "requires_action", "pending_settlement")


def serialize_payment(p: "Payment") -> dict:
    return {
        "id": p.id,
        "registration_id": p.registration_id,
        "method": p.method,
        "amount_cad": p.amount_cad,
        "currency": p.currency,
        "stripe_payment_intent_id": p.stripe_payment_intent_id,
        "status": p.status,
        "metadata": json.loads(p.metadata_json) if p.metadata_json else {},
        "settled_at": iso(p.settled_at),
        "created_at": iso(p.created_at),
    }


def serialize_invoice(inv: "Invoice") -> dict:
    return {
        "id": inv.id,
        "registration_id": inv.registration_id,
        "invoice_number": inv.invoice_number,
        "subtotal_cad": inv.subtotal_cad,
        "tax_cad": inv.tax_cad,
        "total_cad": inv.total_cad,
        "tax_rate": float(inv.tax_rate),
        "tax_type": inv.tax_type,
        "status": inv.status,
        "issued_at": iso(inv.issued_at),
        "paid_at": iso(inv.paid_at),
    }


def generate_invoice_number(s: "Session") -> str:
    from app.portal.modules.payments.models import Invoice

    prefix = invoice_number_prefix()
    while True:
        candidate = f"{prefix}{secrets.randbelow(1_000_000):06d}"
        if s.query(Invoice.id).filter(Invoice.invoice_number == candidate).first() is None:
            return candidate


def invoice_for_registration(s: "Session", registration_id: int) -> "Invoice | None":
    from app.portal.modules.payments.models import Invoice

    return s.query(Invoice).filter(Invoice.registration_id == registration_id).one_or_none()


def upsert_invoice(s: "Session", reg: "WorkshopRegistration", pricing: PricingBreakdown, *, status: str) -> "Invoice":
    """One invoice per registration; amounts follow the latest pricing until it is paid."""
    from app.portal.modules.payments.models import Invoice

    inv = invoice_for_registration(s, reg.id)
    now = datetime.utcnow()
    if inv is None:
        inv = Invoice(registration_id=reg.id, invoice_number=generate_invoice_number(s), issued_at=now, created_at=now)
        s.add(inv)
    elif inv.status == "paid":
        return inv
    inv.subtotal_cad = pricing.subtotal
    inv.tax_cad = pricing.tax_amount
    inv.total_cad = pricing.total
    inv.tax_rate = pricing.tax_rate
    inv.tax_type = pricing.tax_type
    inv.status = status
    inv.updated_at = now
    s.flush()
    return inv


def payments_for_registration(s: "Session", registration_id: int) -> list["Payment"]:
    from app.portal.modules.payments.models import Payment

    return (
        s.query(Payment)
        .filter(Payment.registration_id == registration_id)
        .order_by(Payment.created_at.asc(), Payment.id.asc())
        .all()
    )


def create_payment_intent(
    s: "Session",
    reg: "WorkshopRegistration",
    method: str,
    user: "User",
    *,
    config: dict,
    client: StripeClient | None = None,
) -> dict[str, Any]:
    """
    Start a payment for a registration.

    Card payments create a provider payment intent and return its client
    secret. Interac and bank transfers are recorded as pending settlement and
    return payment instructions; an administrator confirms them later.
    """
    from app.portal.modules.payments.models import Payment
    from app.portal.modules.workshops.service import price_for_user

    if method not in PAYMENT_METHODS:
        raise ValidationError(f"Invalid payment_method. Must be one of: {', '.join(PAYMENT_METHODS)}")
    workshop = reg.workshop
    if workshop.is_free:
        raise ValidationError("This workshop is free; no payment is required.")
    if reg.payment_status == "paid":
        raise ConflictError("This registration is already paid.")

    pricing = price_for_user(s, workshop, reg.user)
    currency = (config.get("PAYMENT_CURRENCY") or "cad").lower()
    now = datetime.utcnow()

    if method == "stripe_card":
        if client is None:
            client = StripeClient.from_config(config)
        if client is None:
            raise ServiceUnavailable("Card payments are not configured.")
        inv = upsert_invoice(s, reg, pricing, status="draft")
        try:
            intent = client.create_payment_intent(
                amount=pricing.total,
                currency=currency,
                description=f"Workshop registration: {workshop.title}",
                receipt_email=reg.user.email,
                metadata={
                    "registration_id": reg.id,
                    "workshop_id": workshop.id,
                    "user_id": reg.user_id,
                    "invoice_number": inv.invoice_number,
                },
                idempotency_key=f"registration-{reg.id}-{inv.invoice_number}-{pricing.total}",
            )
        except stripe.StripeError as e:
            logger.error("Payment intent creation failed for registration %s: %s", reg.id, e)
            raise PaymentProviderError("The payment provider could not start this payment. Please try again.") from e
        intent_id = getattr(intent, "id", None)
        client_secret = getattr(intent, "client_secret", None)
        if not intent_id or not client_secret:
            logger.error("Payment intent for registration %s came back without an id or client secret", reg.id)
            raise PaymentProviderError("The payment provider returned an incomplete response. Please try again.")

        payment = Payment(
            registration_id=reg.id,
            method=method,
            amount_cad=pricing.total,
            currency=currency.upper(),
            stripe_payment_intent_id=intent_id,
            status="initiated",
            metadata_json=json.dumps({"pricing": pricing.to_dict(), "invoice_number": inv.invoice_number}, default=str),
            created_at=now,
            updated_at=now,
        )
        s.add(payment)
        reg.payment_status = "pending"
        s.flush()
        record_event(
            s,
            actor=user,
            action="payment.intent_created",
            entity_type="Payment",
            entity_id=str(payment.id),
            metadata={"registration_id": reg.id, "amount_cad": pricing.total, "intent_id": intent_id},
        )
        return {
            "payment": serialize_payment(payment),
            "invoice": serialize_invoice(inv),
            "pricing": pricing.to_dict(),
            "client_secret": client_secret,
        }

    inv = upsert_invoice(s, reg, pricing, status="sent")
    instructions = {
        "method": method,
        "amount": format_cents(pricing.total),
        "reference": inv.invoice_number,
    }
    if method == "interac_transfer":
        instructions["send_to"] = config.get("INTERAC_EMAIL") or ""
        instructions["message"] = f"Send an Interac e-Transfer and include {inv.invoice_number} in the message."
    else:
        instructions["message"] = f"Pay by bank transfer quoting {inv.invoice_number} as the reference."

    payment = Payment(
        registration_id=reg.id,
        method=method,
        amount_cad=pricing.total,
        currency=currency.upper(),
        status="pending_settlement",
        metadata_json=json.dumps({"pricing": pricing.to_dict(), "instructions": instructions}, default=str),
        created_at=now,
        updated_at=now,
    )
    s.add(payment)
    reg.payment_status = "pending"
    s.flush()
    record_event(
        s,
        actor=user,
        action="payment.manual_initiated",
        entity_type="Payment",
        entity_id=str(payment.id),
        metadata={"registration_id": reg.id, "amount_cad": pricing.total, "method": method},
    )
    return {
        "payment": serialize_payment(payment),
        "invoice": serialize_invoice(inv),
        "pricing": pricing.to_dict(),
        "instructions": instructions,
    }


def mark_registration_paid(
    s: "Session",
    reg: "WorkshopRegistration",
    *,
    actor: "User | None",
    approve: bool,
    source: str,
    payment: "Payment | None" = None,
) -> None:
    """
    Settle a registration: the given payment (or every open payment) becomes
    succeeded, the invoice paid, and the registration paid.
    """
    now = datetime.utcnow()
    targets = [payment] if payment is not None else [
        p for p in payments_for_registration(s, reg.id) if p.status in OPEN_PAYMENT_STATUSES
    ]
    for p in targets:
        p.status = "succeeded"
        p.settled_at = now
        p.updated_at = now

    inv = invoice_for_registration(s, reg.id)
    if inv is not None and inv.status != "paid":
        inv.status = "paid"
        inv.paid_at = now
        inv.updated_at = now

    reg.payment_status = "paid"
    reg.payment_confirmed_at = now
    reg.payment_confirmed_by_user_id = actor.id if actor else None
    if approve and not reg.is_approved:
        reg.is_approved = True
        reg.approved_at = now
    s.flush()

    record_event(
        s,
        actor=actor,
        action="payment.settled",
        entity_type="WorkshopRegistration",
        entity_id=str(reg.id),
        metadata={"source": source, "payment_ids": [p.id for p in targets], "invoice": inv.invoice_number if inv else None},
    )


def _payment_by_intent(s: "Session", intent_id: str | None) -> "Payment | None":
    from app.portal.modules.payments.models import Payment

    if not intent_id:
        return None
    return s.query(Payment).filter(Payment.stripe_payment_intent_id == intent_id).order_by(Payment.id.desc()).first()


def handle_webhook_event(s: "Session", event: dict) -> str:
    """Apply a provider event. Returns a short outcome string for the response/logs."""
    event_type = str(event.get("type") or "")
    data = event.get("data") or {}
    if not isinstance(data, dict):
        raise ValidationError("Invalid event.")
    obj = data.get("object") or {}
    if not isinstance(obj, dict):
        raise ValidationError("Invalid event.")
    intent_id = obj.get("id")

    if event_type == "payment_intent.succeeded":
        payment = _payment_by_intent(s, intent_id)
        if payment is None:
            logger.warning("Webhook %s for unknown payment intent %s", event_type, intent_id)
            return "unknown_payment"
        if payment.status == "succeeded":
            return "already_processed"
        mark_registration_paid(s, payment.registration, actor=None, approve=True, source="stripe_webhook", payment=payment)
        return "payment_succeeded"

    if event_type == "payment_intent.payment_failed":
        payment = _payment_by_intent(s, intent_id)
        if payment is None:
            logger.warning("Webhook %s for unknown payment intent %s", event_type, intent_id)
            return "unknown_payment"
        err = obj.get("last_payment_error") or {}
        if not isinstance(err, dict):
            err = {}
        meta = json.loads(payment.metadata_json) if payment.metadata_json else {}
        meta["error"] = {"code": err.get("code"), "message": err.get("message"), "decline_code": err.get("decline_code")}
        payment.metadata_json = json.dumps(meta, default=str)
        payment.status = "failed"
        payment.updated_at = datetime.utcnow()
        reg = payment.registration
        if reg is not None and reg.payment_status == "pending":
            reg.payment_status = "unpaid"
        s.flush()
        record_event(
            s,
            actor=None,
            action="payment.failed",
            entity_type="Payment",
            entity_id=str(payment.id),
            metadata={"intent_id": intent_id, "error": err.get("message")},
        )
        return "payment_failed"

    logger.info("Webhook event %s acknowledged without action", event_type)
    return "ignored"
