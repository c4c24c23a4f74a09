import hashlib
import hmac
import json
import time
from datetime import date, timedelta
from urllib.parse import parse_qs

import pytest
import stripe

from app.portal.modules.payments.stripe_client import verify_webhook_signature

WEBHOOK_SECRET = "whsec_test"


class RecordingHTTPClient(stripe.HTTPClient):
    """Answers Stripe API calls locally and keeps what was sent."""

    name = "recording"

    def __init__(self):
        super().__init__()
        self.requests = []
        self.replies = []

    def request(self, method, url, headers, post_data=None, **kwargs):
        if isinstance(post_data, bytes):
            post_data = post_data.decode("utf-8")
        self.requests.append(
            {
                "method": method.lower(),
                "url": url,
                "params": {k: v[0] for k, v in parse_qs(post_data or "").items()},
                "headers": {k.lower(): v for k, v in headers.items()},
            }
        )
        n = len(self.requests)
        if self.replies:
            status, body = self.replies.pop(0)
        else:
            status, body = 200, {"id": f"pi_{n}", "object": "payment_intent", "client_secret": f"pi_{n}_secret"}
        return json.dumps(body), status, {"request-id": f"req_{n}"}


@pytest.fixture()
def fake_stripe(app, monkeypatch):
    app.config["STRIPE_SECRET_KEY"] = "sk_test_123"
    http = RecordingHTTPClient()
    monkeypatch.setattr(stripe, "default_http_client", http)
    return http


def _paid_workshop_registration(client, login_as, **workshop):
    login_as("admin")
    payload = {
        "title": "Paid class",
        "date": (date.today() + timedelta(days=14)).isoformat(),
        "capacity": 10,
        "is_paid": True,
        "base_cost": 10000,
        "visible_to_general_members": True,
    }
    payload.update(workshop)
    w = client.post("/api/workshops", json=payload).json["workshop"]
    login_as("member")
    reg = client.post(f"/api/workshops/{w['id']}/register").json["registration"]
    return w, reg


def _signature(payload: bytes, secret: str, ts: int) -> str:
    return hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + payload, hashlib.sha256).hexdigest()


def _signed(payload: bytes, secret: str = WEBHOOK_SECRET, ts: int | None = None) -> dict:
    ts = int(time.time()) if ts is None else ts
    return {"Stripe-Signature": f"t={ts},v1={_signature(payload, secret, ts)}", "Content-Type": "application/json"}


def test_card_intent_and_webhook_success(app, client, login_as, fake_stripe):
    w, reg = _paid_workshop_registration(client, login_as)

    r = client.post("/api/payments/create-intent", json={"registration_id": reg["id"], "payment_method": "stripe_card"})
    assert r.status_code == 201, r.json
    assert r.json["client_secret"] == "pi_1_secret"
    assert r.json["payment"]["status"] == "initiated"
    assert r.json["payment"]["stripe_payment_intent_id"] == "pi_1"
    assert r.json["invoice"]["status"] == "draft"
    assert r.json["invoice"]["total_cad"] == 6300

    app.config["STRIPE_WEBHOOK_SECRET"] = WEBHOOK_SECRET
    event = json.dumps({"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}}).encode()
    r = client.post("/api/webhooks/stripe", data=event, headers=_signed(event))
    assert r.status_code == 200
    assert r.json["outcome"] == "payment_succeeded"

    r = client.post("/api/webhooks/stripe", data=event, headers=_signed(event))
    assert r.json["outcome"] == "already_processed"

    detail = client.get(f"/api/registrations/{reg['id']}/payments").json
    assert detail["payment_status"] == "paid"
    assert detail["invoice"]["status"] == "paid"
    assert detail["payments"][0]["settled_at"] is not None

    r = client.post("/api/payments/create-intent", json={"registration_id": reg["id"], "payment_method": "stripe_card"})
    assert r.status_code == 409


def test_payment_intent_request_sent_to_stripe(client, login_as, fake_stripe):
    w, reg = _paid_workshop_registration(client, login_as)

    r = client.post("/api/payments/create-intent", json={"registration_id": reg["id"], "payment_method": "stripe_card"})
    assert r.status_code == 201, r.json
    invoice_number = r.json["invoice"]["invoice_number"]

    [sent] = fake_stripe.requests
    assert sent["method"] == "post"
    assert sent["url"].endswith("/v1/payment_intents")
    assert sent["headers"]["authorization"] == "Bearer sk_test_123"
    assert sent["params"]["amount"] == "6300"
    assert sent["params"]["currency"] == "cad"
    assert sent["params"]["receipt_email"] == "member@example.com"
    assert sent["params"]["metadata[registration_id]"] == str(reg["id"])
    assert sent["params"]["metadata[workshop_id]"] == str(w["id"])
    assert sent["params"]["metadata[invoice_number]"] == invoice_number
    assert sent["params"]["automatic_payment_methods[enabled]"] == "true"
    assert sent["headers"]["idempotency-key"] == f"registration-{reg['id']}-{invoice_number}-6300"


def test_retried_intent_reuses_idempotency_key(client, login_as, fake_stripe):
    _, reg = _paid_workshop_registration(client, login_as)
    body = {"registration_id": reg["id"], "payment_method": "stripe_card"}

    first = client.post("/api/payments/create-intent", json=body)
    time.sleep(1.1)
    second = client.post("/api/payments/create-intent", json=body)
    assert first.status_code == second.status_code == 201
    assert first.json["invoice"]["invoice_number"] == second.json["invoice"]["invoice_number"]

    keys = [req["headers"]["idempotency-key"] for req in fake_stripe.requests]
    assert len(keys) == 2
    assert keys[0] == keys[1]


def test_card_declined_by_provider_is_502(client, login_as, fake_stripe):
    fake_stripe.replies.append(
        (402, {"error": {"type": "card_error", "code": "card_declined", "message": "Your card was declined."}})
    )
    _, reg = _paid_workshop_registration(client, login_as)

    r = client.post("/api/payments/create-intent", json={"registration_id": reg["id"], "payment_method": "stripe_card"})
    assert r.status_code == 502
    assert "payment provider" in r.json["error"]

    detail = client.get(f"/api/registrations/{reg['id']}/payments").json
    assert detail["payments"] == []
    assert detail["payment_status"] == "unpaid"


def test_incomplete_provider_response_is_502(client, login_as, fake_stripe):
    fake_stripe.replies.append((200, {"id": "pi_9", "object": "payment_intent"}))
    _, reg = _paid_workshop_registration(client, login_as)

    r = client.post("/api/payments/create-intent", json={"registration_id": reg["id"], "payment_method": "stripe_card"})
    assert r.status_code == 502
    assert client.get(f"/api/registrations/{reg['id']}/payments").json["payments"] == []


def test_webhook_payment_failed_resets_registration(app, client, login_as, fake_stripe):
    _, reg = _paid_workshop_registration(client, login_as)
    client.post("/api/payments/create-intent", json={"registration_id": reg["id"], "payment_method": "stripe_card"})

    event = json.dumps(
        {
            "type": "payment_intent.payment_failed",
            "data": {"object": {"id": "pi_1", "last_payment_error": {"code": "card_declined", "message": "Declined"}}},
        }
    ).encode()
    r = client.post("/api/webhooks/stripe", data=event, headers={"Content-Type": "application/json"})
    assert r.json["outcome"] == "payment_failed"

    detail = client.get(f"/api/registrations/{reg['id']}/payments").json
    assert detail["payment_status"] == "unpaid"
    assert detail["payments"][0]["status"] == "failed"
    assert detail["payments"][0]["metadata"]["error"]["code"] == "card_declined"


def test_webhook_rejects_bad_signature_and_payloads(app, client):
    app.config["STRIPE_WEBHOOK_SECRET"] = WEBHOOK_SECRET
    event = b'{"type": "payment_intent.succeeded"}'
    r = client.post("/api/webhooks/stripe", data=event, headers=_signed(event, secret="whsec_other"))
    assert r.status_code == 400
    assert r.json["error"] == "Invalid signature."
    assert client.post("/api/webhooks/stripe", data=event).status_code == 400
    stale = _signed(event, ts=int(time.time()) - 600)
    assert client.post("/api/webhooks/stripe", data=event, headers=stale).status_code == 400
    signed_list = b"[1, 2]"
    r = client.post("/api/webhooks/stripe", data=signed_list, headers=_signed(signed_list))
    assert r.status_code == 400
    assert r.json["error"] == "Invalid event."

    app.config["STRIPE_WEBHOOK_SECRET"] = ""
    assert client.post("/api/webhooks/stripe", data=b"not json").status_code == 400
    assert client.post("/api/webhooks/stripe", data=b"[1, 2]").status_code == 400
    r = client.post("/api/webhooks/stripe", data=b'{"type": "charge.refunded"}')
    assert r.json == {"received": True, "outcome": "ignored"}
    r = client.post("/api/webhooks/stripe", data=event)
    assert r.json["outcome"] == "unknown_payment"


@pytest.mark.parametrize(
    "data",
    [
        "pi_1",
        ["pi_1"],
        {"object": "pi_1"},
        {"object": ["pi_1"]},
    ],
)
def test_webhook_with_malformed_data_is_400(app, client, data):
    app.config["STRIPE_WEBHOOK_SECRET"] = WEBHOOK_SECRET
    event = json.dumps({"id": "evt_2", "type": "payment_intent.succeeded", "data": data}).encode()
    r = client.post("/api/webhooks/stripe", data=event, headers=_signed(event))
    assert r.status_code == 400
    assert r.json["error"] == "Invalid event."


def test_card_payment_unconfigured_is_503(client, login_as):
    _, reg = _paid_workshop_registration(client, login_as)
    r = client.post("/api/payments/create-intent", json={"registration_id": reg["id"], "payment_method": "stripe_card"})
    assert r.status_code == 503


def test_interac_transfer_then_manual_confirmation(client, login_as):
    w, reg = _paid_workshop_registration(client, login_as)

    r = client.post("/api/payments/create-intent", json={"registration_id": reg["id"], "payment_method": "interac_transfer"})
    assert r.status_code == 201
    instructions = r.json["instructions"]
    assert instructions["send_to"] == "payments@example.org"
    assert instructions["amount"] == "$63.00"
    assert instructions["reference"] == r.json["invoice"]["invoice_number"]
    assert r.json["payment"]["status"] == "pending_settlement"
    assert r.json["invoice"]["status"] == "sent"

    login_as("admin")
    r = client.post(f"/api/workshops/{w['id']}/registrations/{reg['id']}/confirm-payment")
    assert r.json["registration"]["payment_status"] == "paid"

    detail = client.get(f"/api/registrations/{reg['id']}/payments").json
    assert [p["status"] for p in detail["payments"]] == ["succeeded"]
    assert detail["invoice"]["status"] == "paid"


def test_create_intent_rules(client, login_as):
    w, reg = _paid_workshop_registration(client, login_as)
    assert client.post("/api/payments/create-intent", json={"registration_id": reg["id"], "payment_method": "cash"}).status_code == 400
    assert client.post("/api/payments/create-intent", json={"registration_id": reg["id"]}).status_code == 400
    assert client.post("/api/payments/create-intent", json={"registration_id": 9999, "payment_method": "bank_transfer"}).status_code == 404

    login_as("other")
    assert client.post("/api/payments/create-intent", json={"registration_id": reg["id"], "payment_method": "bank_transfer"}).status_code == 403
    assert client.get(f"/api/registrations/{reg['id']}/payments").status_code == 403


def test_free_workshop_needs_no_payment(client, login_as):
    _, reg = _paid_workshop_registration(client, login_as, is_paid=False, base_cost=None)
    r = client.post("/api/payments/create-intent", json={"registration_id": reg["id"], "payment_method": "bank_transfer"})
    assert r.status_code == 400


def test_verify_signature_tolerance_and_multiple_signatures():
    payload = b'{"id": "evt"}'
    ts = int(time.time())
    good = _signature(payload, "s3cret", ts)

    verify_webhook_signature(payload, f"t={ts},v1=deadbeef,v1={good}", "s3cret")

    old = ts - 400
    with pytest.raises(stripe.SignatureVerificationError):
        verify_webhook_signature(payload, f"t={old},v1={_signature(payload, 's3cret', old)}", "s3cret")
    with pytest.raises(stripe.SignatureVerificationError):
        verify_webhook_signature(payload, f"t={ts},v1={good}", "other")
    with pytest.raises(stripe.SignatureVerificationError):
        verify_webhook_signature(payload, "v1=abc", "s3cret")
    with pytest.raises(stripe.SignatureVerificationError):
        verify_webhook_signature(payload, None, "s3cret")
    with pytest.raises(ValueError):
        verify_webhook_signature(b"\xff\xfe", f"t={ts},v1={good}", "s3cret")
