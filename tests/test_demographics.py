from app.portal.db import session_scope
from app.portal.modules.members.models import Member

BASE = "/api/demographic-change-requests"


def _mia(app) -> Member:
    with session_scope(app) as s:
        m = s.query(Member).filter(Member.member_number == "1001").one()
        s.expunge(m)
        return m


def test_request_and_approve(app, client, login_as):
    login_as("member")
    r = client.post(
        BASE,
        json={
            "requested_changes": {"gender": "Non-binary", "languages_spoken": "English, Cree"},
            "reason_for_change": "Out of date",
        },
    )
    assert r.status_code == 201
    req = r.json["request"]
    assert req["status"] == "pending"
    assert req["current_values"] == {"gender": "Woman", "languages_spoken": None}
    assert req["requested_changes"]["languages_spoken"] == ["English", "Cree"]

    assert [x["id"] for x in client.get(f"{BASE}/mine").json["requests"]] == [req["id"]]
    assert client.get(f"{BASE}/{req['id']}").status_code == 200
    assert client.get(f"{BASE}/pending").status_code == 403
    assert client.patch(f"{BASE}/{req['id']}", json={"status": "approved"}).status_code == 403

    login_as("admin")
    assert [x["id"] for x in client.get(f"{BASE}/pending").json["requests"]] == [req["id"]]
    assert client.patch(f"{BASE}/{req['id']}", json={"status": "maybe"}).status_code == 400

    r = client.patch(f"{BASE}/{req['id']}", json={"status": "approved", "review_notes": "Thanks"})
    assert r.status_code == 200
    assert r.json["request"]["status"] == "approved"
    assert r.json["request"]["reviewed_at"] is not None

    mia = _mia(app)
    assert mia.gender == "Non-binary"
    assert mia.languages_spoken == ["English", "Cree"]

    assert client.patch(f"{BASE}/{req['id']}", json={"status": "rejected"}).status_code == 409
    assert client.get(f"{BASE}/pending").json["requests"] == []


def test_rejected_request_leaves_member_unchanged(app, client, login_as):
    login_as("member")
    req = client.post(BASE, json={"requested_changes": {"province_territory": "BC"}}).json["request"]

    login_as("admin")
    r = client.patch(f"{BASE}/{req['id']}", json={"status": "rejected", "review_notes": "Need proof"})
    assert r.json["request"]["status"] == "rejected"
    assert _mia(app).province_territory is None


def test_request_validation(client, login_as):
    login_as("member")
    assert client.post(BASE, json={}).status_code == 400
    assert client.post(BASE, json={"requested_changes": {"email": "x@y.z"}}).status_code == 400
    # Same as the current value
    assert client.post(BASE, json={"requested_changes": {"gender": "Woman"}}).status_code == 400


def test_no_member_record_and_other_members(app, client, login_as):
    login_as("other")
    assert client.post(BASE, json={"requested_changes": {"gender": "Man"}}).status_code == 404

    mia_id = _mia(app).id
    assert client.post(BASE, json={"member_id": mia_id, "requested_changes": {"gender": "Man"}}).status_code == 403

    login_as("admin")
    r = client.post(BASE, json={"member_id": mia_id, "requested_changes": {"gender": "Man"}})
    assert r.status_code == 201

    login_as("other")
    assert client.get(f"{BASE}/{r.json['request']['id']}").status_code == 403
