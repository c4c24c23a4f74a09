def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True


def test_healthz_plain(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_anonymous_api_is_unauthorized(client):
    r = client.get("/api/members")
    assert r.status_code == 401
    assert "error" in r.json


def test_login_and_me(client, login_as):
    body = login_as("admin")
    assert body["user"]["email"] == "admin@example.com"
    assert "members.view" in body["permissions"]

    r = client.get("/api/auth/me")
    assert r.status_code == 200
    assert r.json["user"]["roles"] == ["admin"]
    assert r.json["csrf_token"] == body["csrf_token"]


def test_member_forbidden_from_admin_endpoints(client, login_as):
    login_as("member")
    r = client.get("/api/members")
    assert r.status_code == 403
    assert r.json["missing_permission"] == "members.view"


def test_mutation_without_csrf_token_rejected(client):
    r = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "password123"})
    assert r.status_code == 200

    r = client.post("/api/members", json={"first_name": "No", "last_name": "Token"})
    assert r.status_code == 400
    assert "CSRF" in r.json["error"]

    r = client.post(
        "/api/members",
        json={"first_name": "With", "last_name": "Token"},
        headers={"X-CSRF-Token": client.get("/api/auth/csrf").json["csrf_token"]},
    )
    assert r.status_code == 201


def test_logout_clears_session(client, login_as):
    login_as("admin")
    assert client.post("/api/auth/logout").status_code == 200
    assert client.get("/api/auth/me").status_code == 401


def test_unknown_route_is_json_404(client):
    r = client.get("/api/does-not-exist")
    assert r.status_code == 404
    assert "error" in r.json
