from datetime import date, timedelta

SOON = (date.today() + timedelta(days=10)).isoformat()


def test_admin_dashboard_counts(client, login_as):
    login_as("admin")
    w = client.post(
        "/api/workshops",
        json={"title": "Soon", "date": SOON, "capacity": 5, "requires_approval": True, "visible_to_general_members": True},
    ).json["workshop"]

    login_as("member")
    client.post(f"/api/workshops/{w['id']}/register")

    login_as("admin")
    r = client.get("/api/dashboard")
    assert r.status_code == 200
    body = r.json
    assert body["dashboard"] == "admin"
    summary = body["summary"]
    assert summary["members"] == {"total": 1, "active": 1, "with_portal_access": 1}
    assert summary["users"] == 3
    assert summary["workshops"] == {"total": 1, "upcoming": 1}
    assert summary["pending_approvals"] == 1
    assert summary["pending_demographic_requests"] == 0


def test_member_dashboard(client, login_as, uid):
    login_as("admin")
    w = client.post("/api/workshops", json={"title": "Soon", "date": SOON, "capacity": 5, "visible_to_general_members": True}).json["workshop"]
    client.post("/api/messages", json={"to_user_id": uid("member"), "content": "Welcome!"})

    login_as("member")
    client.post(f"/api/workshops/{w['id']}/register")
    body = client.get("/api/dashboard").json
    assert body["dashboard"] == "member"
    assert body["unread_messages"] == 1
    assert [r["workshop"]["title"] for r in body["summary"]["upcoming_registrations"]] == ["Soon"]


def test_chair_dashboard(client, login_as, uid):
    login_as("admin")
    roles = {r["name"]: r["id"] for r in client.get("/api/committee-roles").json["roles"]}
    c = client.post("/api/committees", json={"name": "Events", "members": [{"user_id": uid("other"), "role_id": roles["Co-Chair"]}]}).json["committee"]
    client.post("/api/workshops", json={"title": "Committee night", "date": SOON, "capacity": 5, "committee_id": c["id"]})

    login_as("other")
    body = client.get("/api/dashboard").json
    assert body["dashboard"] == "committee_chair"
    assert body["summary"]["committees"][0]["role"] == "Co-Chair"
    assert [w["title"] for w in body["summary"]["upcoming_workshops"]] == ["Committee night"]
    assert body["summary"]["upcoming_registrations"] == []


def test_user_management(client, login_as, uid):
    login_as("admin")
    r = client.post("/api/users", json={"email": "New@Example.com", "password": "long-enough", "first_name": "Nel"})
    assert r.status_code == 201
    new = r.json["user"]
    assert new["email"] == "new@example.com"
    assert new["roles"] == ["member"]

    assert client.post("/api/users", json={"email": "new@example.com", "password": "long-enough"}).status_code == 409
    assert client.post("/api/users", json={"email": "bad", "password": "x"}).status_code == 400
    assert client.post("/api/users", json={"email": "a@b.c", "password": "long-enough", "roles": ["wizard"]}).status_code == 400

    r = client.patch(f"/api/users/{new['id']}", json={"roles": ["member", "workshop_manager"], "location": "NS"})
    assert r.json["user"]["roles"] == ["member", "workshop_manager"]
    assert r.json["user"]["location"] == "NS"

    r = client.patch(f"/api/users/{new['id']}", json={"is_active": False})
    assert r.json["user"]["is_active"] is False
    assert client.post("/api/auth/login", json={"email": "new@example.com", "password": "long-enough"}).status_code == 401

    login_as("admin")
    listing = client.get("/api/users?role=member").json
    assert listing["pagination"]["total"] == 3
    assert [u["email"] for u in client.get("/api/users?q=otto").json["users"]] == ["other@example.com"]


def test_admin_cannot_lock_themselves_out(client, login_as, uid):
    login_as("admin")
    me = uid("admin")
    assert client.patch(f"/api/users/{me}", json={"is_active": False}).status_code == 400
    assert client.patch(f"/api/users/{me}", json={"roles": ["member"]}).status_code == 400
    assert client.patch("/api/users/9999", json={"first_name": "Ghost"}).status_code == 404


def test_user_search_and_permissions(client, login_as):
    login_as("member")
    assert client.get("/api/users").status_code == 403
    assert client.get("/api/users/search?q=o").json["users"] == []
    found = client.get("/api/users/search?q=other").json["users"]
    assert [u["email"] for u in found] == ["other@example.com"]


def test_audit_log(client, login_as):
    login_as("admin")
    client.post("/api/members", json={"first_name": "Audit", "last_name": "Trail"})
    events = client.get("/api/audit?action=member.create").json["events"]
    assert len(events) == 1
    assert events[0]["actor_user_email"] == "admin@example.com"

    login_as("member")
    assert client.get("/api/audit").status_code == 403
