from datetime import date, timedelta

from app.portal.db import session_scope
from app.portal.modules.workshops.models import MembershipPricingRule

NEXT_MONTH = (date.today() + timedelta(days=30)).isoformat()


def _create(client, **overrides):
    payload = {
        "title": "Lighting Basics",
        "description": "Hands-on",
        "date": NEXT_MONTH,
        "start_time": "10:00",
        "end_time": "12:00",
        "capacity": 2,
        "visible_to_general_members": True,
    }
    payload.update(overrides)
    r = client.post("/api/workshops", json=payload)
    assert r.status_code == 201, r.json
    return r.json["workshop"]


def test_create_validation(client, login_as):
    login_as("admin")
    r = client.post("/api/workshops", json={"title": "", "capacity": 0, "is_paid": True})
    assert r.status_code == 400
    assert "Title is required." in r.json["errors"]
    assert "Date is required." in r.json["errors"]
    assert "Base cost is required for paid workshops." in r.json["errors"]

    r = client.post("/api/workshops", json={"title": "T", "date": NEXT_MONTH, "capacity": 5, "start_time": "12:00", "end_time": "11:00"})
    assert r.status_code == 400


def test_member_cannot_create(client, login_as):
    login_as("member")
    assert client.post("/api/workshops", json={"title": "T", "date": NEXT_MONTH, "capacity": 5}).status_code == 403


def test_hidden_workshop_not_visible_to_members(client, login_as):
    login_as("admin")
    hidden = _create(client, title="Chairs only", visible_to_general_members=False)
    shown = _create(client, title="Everyone")

    login_as("member")
    titles = [w["title"] for w in client.get("/api/workshops").json["workshops"]]
    assert titles == ["Everyone"]
    assert client.get(f"/api/workshops/{hidden['id']}").status_code == 404
    assert client.get(f"/api/workshops/{shown['id']}").status_code == 200


def test_register_duplicate_and_full(client, login_as):
    login_as("admin")
    w = _create(client, capacity=1)

    login_as("member")
    r = client.post(f"/api/workshops/{w['id']}/register")
    assert r.status_code == 201
    assert r.json["registration"]["payment_status"] == "not_required"
    assert r.json["registration"]["is_approved"] is True

    assert client.post(f"/api/workshops/{w['id']}/register").status_code == 409

    login_as("other")
    r = client.post(f"/api/workshops/{w['id']}/register")
    assert r.status_code == 409
    assert "capacity" in r.json["error"]


def test_requires_approval_and_cancel(client, login_as):
    login_as("admin")
    w = _create(client, requires_approval=True)

    login_as("member")
    r = client.post(f"/api/workshops/{w['id']}/register")
    assert r.json["registration"]["is_approved"] is False
    reg_id = r.json["registration"]["id"]

    mine = client.get("/api/me/workshops").json["registrations"]
    assert [m["id"] for m in mine] == [reg_id]

    r = client.delete(f"/api/workshops/{w['id']}/register")
    assert r.status_code == 200
    assert r.json["registered_count"] == 0
    assert client.delete(f"/api/workshops/{w['id']}/register").status_code == 404


def test_admin_manages_registrations(client, login_as, uid):
    login_as("admin")
    w = _create(client, is_paid=True, base_cost=5000, requires_approval=True)

    r = client.post(f"/api/workshops/{w['id']}/registrations", json={"user_id": uid("other"), "notes": " walk-in "})
    assert r.status_code == 201
    added = r.json["registration"]
    assert added["is_approved"] is True
    assert added["payment_status"] == "paid"
    assert added["notes"] == "walk-in"

    login_as("member")
    reg_id = client.post(f"/api/workshops/{w['id']}/register").json["registration"]["id"]

    login_as("admin")
    base = f"/api/workshops/{w['id']}/registrations/{reg_id}"
    assert client.post(f"{base}/approve").json["registration"]["is_approved"] is True
    r = client.post(f"{base}/confirm-payment")
    assert r.status_code == 200
    assert r.json["registration"]["payment_status"] == "paid"
    assert client.post(f"{base}/notes", json={"notes": "Paid at the door"}).json["registration"]["notes"] == "Paid at the door"

    listing = client.get(f"/api/workshops/{w['id']}/registrations").json
    assert len(listing["registrations"]) == 2
    assert listing["workshop"]["spots_left"] == 0

    # Paid registrations can only be removed by staff.
    login_as("member")
    assert client.delete(f"/api/workshops/{w['id']}/register").status_code == 409

    login_as("admin")
    assert client.delete(base).status_code == 200
    assert client.delete(base).status_code == 404


def test_capacity_cannot_drop_below_registrations(client, login_as):
    login_as("admin")
    w = _create(client)
    login_as("member")
    client.post(f"/api/workshops/{w['id']}/register")
    login_as("other")
    client.post(f"/api/workshops/{w['id']}/register")

    login_as("admin")
    assert client.patch(f"/api/workshops/{w['id']}", json={"capacity": 1}).status_code == 409
    assert client.patch(f"/api/workshops/{w['id']}", json={"capacity": 3}).json["workshop"]["spots_left"] == 1


def test_visibility_toggle_and_delete(client, login_as):
    login_as("admin")
    w = _create(client)
    r = client.patch(f"/api/workshops/{w['id']}/visibility", json={"visible_to_general_members": False})
    assert r.json["workshop"]["visible_to_general_members"] is False
    assert client.patch(f"/api/workshops/{w['id']}/visibility", json={}).status_code == 400

    assert client.delete(f"/api/workshops/{w['id']}").status_code == 200
    assert client.get(f"/api/workshops/{w['id']}").status_code == 404


def test_pricing_uses_member_level_and_province(client, login_as):
    login_as("admin")
    w = _create(client, is_paid=True, base_cost=10000)

    login_as("member")  # Student (60%), member record in Alberta (GST 5%)
    p = client.get(f"/api/workshops/{w['id']}/pricing").json["pricing"]
    assert p["subtotal"] == 6000
    assert p["tax_type"] == "GST"
    assert p["total"] == 6300

    login_as("other")  # Full (100%), no member record, profile location ON
    p = client.get(f"/api/workshops/{w['id']}/pricing").json["pricing"]
    assert p["membership_discount_amount"] == 0
    assert p["tax_type"] == "HST"
    assert p["total"] == 11300


def test_pricing_rules(client, login_as):
    login_as("member")
    levels = {r["membership_level"] for r in client.get("/api/membership-pricing-rules").json["rules"]}
    assert {"Full", "Student", "Associate"} <= levels
    assert client.post("/api/membership-pricing-rules", json={"membership_level": "Honorary", "percentage_paid": 0}).status_code == 403

    login_as("admin")
    r = client.post("/api/membership-pricing-rules", json={"membership_level": "Honorary", "percentage_paid": 0})
    assert r.status_code == 201
    r = client.post("/api/membership-pricing-rules", json={"membership_level": "Honorary", "percentage_paid": 10})
    assert r.status_code == 200
    rule_id = r.json["rule"]["id"]

    assert client.patch(f"/api/membership-pricing-rules/{rule_id}", json={"percentage_paid": 101}).status_code == 400
    assert client.patch(f"/api/membership-pricing-rules/{rule_id}", json={"percentage_paid": 50}).json["rule"]["percentage_paid"] == 50

    r = client.post("/api/membership-pricing-rules/seed")
    assert r.json["created"] == 0


def test_pricing_rule_levels_are_case_insensitive(app, client, login_as):
    login_as("admin")
    w = _create(client, is_paid=True, base_cost=10000)
    r = client.post("/api/membership-pricing-rules", json={"membership_level": "full", "percentage_paid": 50})
    assert r.status_code == 200
    assert r.json["rule"]["membership_level"] == "Full"

    with session_scope(app) as s:
        levels = [rule.membership_level.lower() for rule in s.query(MembershipPricingRule).all()]
        assert levels.count("full") == 1

    login_as("other")  # Full, profile location ON
    r = client.get(f"/api/workshops/{w['id']}/pricing")
    assert r.status_code == 200
    assert r.json["pricing"]["subtotal"] == 5000
    assert r.json["pricing"]["total"] == 5650
