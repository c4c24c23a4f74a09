from __future__ import annotations

import json

import stripe
from flask import Blueprint, abort, current_app, jsonify, request

from app.portal.db import db_session
from app.portal.errors import ValidationError
from app.portal.modules.payments.service import (
    create_payment_intent,
    handle_webhook_event,
    invoice_for_registration,
    payments_for_registration,
    serialize_invoice,
    serialize_payment,
)
from app.portal.modules.payments.stripe_client import verify_webhook_signature
from app.portal.modules.workshops.models import WorkshopRegistration
from app.portal.rbac import current_user, require_login, user_has_permission
from app.portal.utils import json_body, parse_int

bp = Blueprint("payments", __name__)


@bp.post("/payments/create-intent")
@require_login
def payments_create_intent():
    body = json_body()
    registration_id = parse_int(body.get("registration_id"), "registration_id")
    method = str(body.get("payment_method") or "").strip()
    if registration_id is None or not method:
        raise ValidationError("registration_id and payment_method are required.")

    s = db_session()
    user = current_user()
    reg = s.get(WorkshopRegistration, registration_id)
    if not reg:
        abort(404)
    if reg.user_id != user.id:
        abort(403)

    result = create_payment_intent(s, reg, method, user, config=current_app.config)
    s.commit()
    return jsonify(result), 201


@bp.post("/webhooks/stripe")
def stripe_webhook():
    payload = request.get_data(cache=False)
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET") or ""
    if secret:
        try:
            verify_webhook_signature(payload, request.headers.get("Stripe-Signature"), secret)
        except stripe.SignatureVerificationError as e:
            current_app.logger.warning("Rejected Stripe webhook: %s", e)
            return jsonify({"error": "Invalid signature."}), 400
        except ValueError:
            return jsonify({"error": "Invalid JSON payload."}), 400

    try:
        event = json.loads(payload.decode("utf-8"))
    except ValueError:
        return jsonify({"error": "Invalid JSON payload."}), 400
    if not isinstance(event, dict):
        return jsonify({"error": "Invalid event."}), 400

    s = db_session()
    outcome = handle_webhook_event(s, event)
    s.commit()
    current_app.logger.info("Stripe webhook %s (%s): %s", event.get("id"), event.get("type"), outcome)
    return jsonify({"received": True, "outcome": outcome})


@bp.get("/registrations/<int:registration_id>/payments")
@require_login
def registration_payments(registration_id: int):
    s = db_session()
    user = current_user()
    reg = s.get(WorkshopRegistration, registration_id)
    if not reg:
        abort(404)
    if reg.user_id != user.id and not user_has_permission(user, "payments.manage"):
        abort(403)
    inv = invoice_for_registration(s, reg.id)
    return jsonify(
        {
            "registration_id": reg.id,
            "payment_status": reg.payment_status,
            "payments": [serialize_payment(p) for p in payments_for_registration(s, reg.id)],
            "invoice": serialize_invoice(inv) if inv else None,
        }
    )
