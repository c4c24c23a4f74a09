from datetime import datetime, timedelta

from app.portal import mail
from app.portal.db import session_scope
from app.portal.models import User
from app.portal.modules.members.models import Member, VerificationCode


def _add_member(app, **kw):
    with session_scope(app) as s:
        m = Member(is_active=True, has_portal_access=False, **kw)
        s.add(m)
        s.flush()
        return m.id


def _last_code(app, email: str, purpose: str = "registration") -> str:
    with session_scope(app) as s:
        rec = (
            s.query(VerificationCode)
            .filter(VerificationCode.email == email, VerificationCode.purpose == purpose)
            .order_by(VerificationCode.id.desc())
            .first()
        )
        return rec.code


def test_bad_credentials_401(client):
    r = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "wrong"})
    assert r.status_code == 401


def test_login_rate_limited_after_five_attempts(client):
    for _ in range(5):
        assert client.post("/api/auth/login", json={"email": "x@example.com", "password": "nope"}).status_code == 401
    r = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "password123"})
    assert r.status_code == 429


def test_verify_member_and_register(app, client):
    member_id = _add_member(
        app, first_name="Nora", last_name="Newcomer", email="nora@example.com", category="Associate", province_territory="BC"
    )

    r = client.post("/api/auth/verify-member", json={"email": "NORA@example.com", "first_name": "nora", "last_name": "NEWCOMER"})
    assert r.status_code == 200
    assert r.json["member_level"] == "Associate"
    assert r.json["expires_in_minutes"] == 10
    assert mail.OUTBOX and mail.OUTBOX[-1].to == "nora@example.com"

    code = _last_code(app, "nora@example.com")
    assert len(code) == 7 and code in mail.OUTBOX[-1].body

    r = client.post("/api/auth/register", json={"email": "nora@example.com", "code": code, "password": "longenough"})
    assert r.status_code == 201
    assert r.json["user"]["roles"] == ["member"]
    assert r.json["user"]["member_level"] == "Associate"
    assert r.json["user"]["location"] == "BC"

    with session_scope(app) as s:
        assert s.get(Member, member_id).has_portal_access is True

    # Logged in right away.
    assert client.get("/api/auth/me").json["user"]["email"] == "nora@example.com"


def test_verify_member_no_match_404(client):
    r = client.post("/api/auth/verify-member", json={"email": "ghost@example.com", "first_name": "G", "last_name": "H"})
    assert r.status_code == 404


def test_verify_member_with_existing_access_409(client):
    r = client.post("/api/auth/verify-member", json={"email": "member@example.com", "first_name": "Mia", "last_name": "Member"})
    assert r.status_code == 409


def test_register_with_wrong_or_expired_code(app, client):
    _add_member(app, first_name="Eve", last_name="Late", email="eve@example.com")
    client.post("/api/auth/verify-member", json={"email": "eve@example.com", "first_name": "Eve", "last_name": "Late"})

    r = client.post("/api/auth/register", json={"email": "eve@example.com", "code": "0000000", "password": "longenough"})
    assert r.status_code == 400

    with session_scope(app) as s:
        rec = s.query(VerificationCode).filter(VerificationCode.email == "eve@example.com").one()
        rec.expires_at = datetime.utcnow() - timedelta(minutes=1)
        code = rec.code
    r = client.post("/api/auth/register", json={"email": "eve@example.com", "code": code, "password": "longenough"})
    assert r.status_code == 400


def test_register_short_password_and_duplicate(client):
    r = client.post("/api/auth/register", json={"email": "member@example.com", "code": "1234567", "password": "short"})
    assert r.status_code == 400

    r = client.post("/api/auth/register", json={"email": "member@example.com", "code": "1234567", "password": "longenough"})
    assert r.status_code == 409


def test_update_own_profile(client, login_as):
    login_as("member")
    r = client.patch("/api/auth/me", json={"first_name": "Mira", "location": "QC", "has_completed_onboarding": True, "email": "x@y.z"})
    assert r.status_code == 200
    assert r.json["user"]["first_name"] == "Mira"
    assert r.json["user"]["location"] == "QC"
    assert r.json["user"]["has_completed_onboarding"] is True
    assert r.json["user"]["email"] == "member@example.com"


def test_password_reset_flow(app, client):
    r = client.post("/api/auth/password-reset/request", json={"email": "nobody@example.com"})
    assert r.status_code == 200
    assert mail.OUTBOX == []

    r = client.post("/api/auth/password-reset/request", json={"email": "member@example.com"})
    assert r.status_code == 200
    code = _last_code(app, "member@example.com", purpose="password_reset")

    r = client.post("/api/auth/password-reset/complete", json={"email": "member@example.com", "code": code, "password": "brand-new-pw"})
    assert r.status_code == 200

    assert client.post("/api/auth/login", json={"email": "member@example.com", "password": "brand-new-pw"}).status_code == 200


def test_registration_code_cannot_reset_password(app, client):
    _add_member(app, first_name="Rex", last_name="Reg", email="rex@example.com")
    client.post("/api/auth/verify-member", json={"email": "rex@example.com", "first_name": "Rex", "last_name": "Reg"})
    code = _last_code(app, "rex@example.com")
    with session_scope(app) as s:
        s.add(User(email="rex@example.com", password_hash="x", is_active=True))

    r = client.post("/api/auth/password-reset/complete", json={"email": "rex@example.com", "code": code, "password": "whatever123"})
    assert r.status_code == 400


def test_login_throttle_window_expires(monkeypatch):
    from app.portal import auth

    clock = [1000.0]
    monkeypatch.setattr(auth.time, "monotonic", lambda: clock[0])
    throttle = auth.LoginThrottle(limit=2, window_seconds=60)
    throttle.hit("1.2.3.4")
    throttle.hit("1.2.3.4")
    assert throttle.blocked("1.2.3.4")
    assert not throttle.blocked("5.6.7.8")

    clock[0] += 61
    assert not throttle.blocked("1.2.3.4")

    throttle.hit("1.2.3.4")
    throttle.forget("1.2.3.4")
    assert not throttle.blocked("1.2.3.4")


def test_register_code_guesses_are_limited_per_email(app, client):
    _add_member(app, first_name="Gus", last_name="Guess", email="gus@example.com")
    client.post("/api/auth/verify-member", json={"email": "gus@example.com", "first_name": "Gus", "last_name": "Guess"})
    code = _last_code(app, "gus@example.com")

    for _ in range(5):
        r = client.post("/api/auth/register", json={"email": "gus@example.com", "code": "0000000", "password": "longenough"})
        assert r.status_code == 400

    r = client.post("/api/auth/register", json={"email": "GUS@example.com", "code": code, "password": "longenough"})
    assert r.status_code == 429
    with session_scope(app) as s:
        assert s.query(User).filter(User.email == "gus@example.com").one_or_none() is None


def test_password_reset_code_guesses_are_limited_per_email(app, client):
    client.post("/api/auth/password-reset/request", json={"email": "member@example.com"})
    code = _last_code(app, "member@example.com", purpose="password_reset")

    for _ in range(5):
        r = client.post(
            "/api/auth/password-reset/complete", json={"email": "member@example.com", "code": "0000000", "password": "brand-new-pw"}
        )
        assert r.status_code == 400

    r = client.post("/api/auth/password-reset/complete", json={"email": "member@example.com", "code": code, "password": "brand-new-pw"})
    assert r.status_code == 429

    # Other accounts are unaffected.
    r = client.post("/api/auth/password-reset/complete", json={"email": "other@example.com", "code": "0000000", "password": "brand-new-pw"})
    assert r.status_code == 400


def test_correct_code_clears_earlier_misses(app, client):
    client.post("/api/auth/password-reset/request", json={"email": "member@example.com"})
    for _ in range(4):
        client.post("/api/auth/password-reset/complete", json={"email": "member@example.com", "code": "0000000", "password": "brand-new-pw"})
    code = _last_code(app, "member@example.com", purpose="password_reset")
    r = client.post("/api/auth/password-reset/complete", json={"email": "member@example.com", "code": code, "password": "brand-new-pw"})
    assert r.status_code == 200

    from app.portal.auth import code_throttle

    assert not code_throttle.blocked("password_reset:member@example.com")
