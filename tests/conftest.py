import pytest
from werkzeug.security import generate_password_hash

from app.portal import create_app
from app.portal import mail
from app.portal.auth import reset_rate_limits
from app.portal.db import session_scope
from app.portal.models import Base, User
from app.portal.modules.members.models import Member
from app.portal.seed import ensure_committee_roles, ensure_pricing_rules, ensure_rbac

PASSWORD = "password123"

USERS = {
    "admin": ("admin@example.com", ["admin"], {"first_name": "Ada", "last_name": "Admin", "location": "ON"}),
    "member": ("member@example.com", ["member"], {"first_name": "Mia", "last_name": "Member", "member_level": "Student", "location": "AB"}),
    "other": ("other@example.com", ["member"], {"first_name": "Otto", "last_name": "Other", "member_level": "Full", "location": "ON"}),
}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    for k in (
        "S3_ENDPOINT",
        "S3_REGION",
        "S3_BUCKET",
        "S3_ACCESS_KEY_ID",
        "S3_SECRET_ACCESS_KEY",
        "SMTP_SERVER",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ):
        monkeypatch.delenv(k, raising=False)
    monkeypatch.setenv("INTERAC_EMAIL", "payments@example.org")

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        roles = ensure_rbac(s)
        ensure_committee_roles(s)
        ensure_pricing_rules(s)
        for email, role_keys, profile in USERS.values():
            u = User(email=email, password_hash=generate_password_hash(PASSWORD), is_active=True, **profile)
            for key in role_keys:
                u.roles.append(roles[key])
            s.add(u)
        s.add(
            Member(
                member_number="1001",
                category="Student",
                first_name="Mia",
                last_name="Member",
                email="member@example.com",
                province="Alberta",
                gender="Woman",
                is_active=True,
                has_portal_access=True,
            )
        )

    reset_rate_limits()
    mail.OUTBOX.clear()
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def login(client, who: str = "admin", *, email: str | None = None, password: str = PASSWORD):
    """Log in through the API and send the CSRF token on every following request."""
    if email is None:
        email = USERS[who][0]
    r = client.post("/api/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.json
    client.environ_base["HTTP_X_CSRF_TOKEN"] = r.json["csrf_token"]
    return r.json


def user_id(app, who: str) -> int:
    with session_scope(app) as s:
        return s.query(User).filter(User.email == USERS[who][0]).one().id


@pytest.fixture()
def login_as(client):
    def _login(who: str = "admin", **kwargs):
        return login(client, who, **kwargs)

    return _login


@pytest.fixture()
def uid(app):
    def _uid(who: str) -> int:
        return user_id(app, who)

    return _uid
