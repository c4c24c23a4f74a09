from __future__ import annotations

import secrets
import time
import uuid
from collections import defaultdict, deque
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, jsonify, request, session
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash, generate_password_hash

from app.portal.audit import record_event
from app.portal.db import db_session
from app.portal.errors import ConflictError, TooManyRequests, ValidationError
from app.portal.mail import send_email
from app.portal.models import Role, User
from app.portal.rbac import current_user, require_login, user_permission_keys
from app.portal.security import ensure_csrf_token

bp = Blueprint("auth", __name__)

CODE_TTL_MINUTES = 10
MIN_PASSWORD_LENGTH = 8
PROFILE_FIELDS = ("first_name", "last_name", "phone_number", "location")


class LoginThrottle:
    """Sliding-window count of attempts per key, such as a client IP or an email (per process)."""

    def __init__(self, limit: int = 5, window_seconds: int = 300) -> None:
        self.limit = limit
        self.window = window_seconds
        self._attempts: dict[str, deque[float]] = defaultdict(deque)

    def blocked(self, key: str) -> bool:
        attempts = self._attempts[key]
        horizon = time.monotonic() - self.window
        while attempts and attempts[0] <= horizon:
            attempts.popleft()
        return len(attempts) >= self.limit

    def hit(self, key: str) -> None:
        self._attempts[key].append(time.monotonic())

    def forget(self, key: str) -> None:
        self._attempts.pop(key, None)

    def reset(self) -> None:
        self._attempts.clear()


login_throttle = LoginThrottle()
code_throttle = LoginThrottle()


def reset_rate_limits() -> None:
    login_throttle.reset()
    code_throttle.reset()


def load_current_user() -> None:
    """
    Resolve g.current_user from the signed session cookie and tag the request
    with a request_id used by audit events and error logs.
    """
    g.request_id = g.get("request_id") or uuid.uuid4().hex
    g.current_user = None

    user_id = session.get("user_id")
    if not user_id:
        return
    try:
        user = db_session().get(User, int(user_id))
    except (SQLAlchemyError, ValueError) as e:
        current_app.logger.error("load_current_user failed (clearing session): %s", e)
        user = None
    if user is None or not user.is_active:
        session.pop("user_id", None)
        return
    g.current_user = user


def serialize_user(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "display_name": user.display_name,
        "phone_number": user.phone_number,
        "member_level": user.member_level,
        "location": user.location,
        "is_active": user.is_active,
        "has_completed_onboarding": user.has_completed_onboarding,
        "roles": sorted(r.key for r in user.roles or []),
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


def _generate_code() -> str:
    return str(secrets.randbelow(9_000_000) + 1_000_000)


def _issue_code(s, *, email: str, purpose: str, first_name: str | None = None, last_name: str | None = None) -> str:
    from app.portal.modules.members.models import VerificationCode

    code = _generate_code()
    s.add(
        VerificationCode(
            email=email,
            first_name=first_name,
            last_name=last_name,
            purpose=purpose,
            code=code,
            verified=False,
            expires_at=datetime.utcnow() + timedelta(minutes=CODE_TTL_MINUTES),
        )
    )
    s.flush()
    return code


def _consume_code(s, *, email: str, code: str, purpose: str):
    from app.portal.modules.members.models import VerificationCode

    record = (
        s.query(VerificationCode)
        .filter(
            func.lower(VerificationCode.email) == email,
            VerificationCode.code == code,
            VerificationCode.purpose == purpose,
            VerificationCode.verified.is_(False),
        )
        .order_by(VerificationCode.created_at.desc(), VerificationCode.id.desc())
        .first()
    )
    if record is None or record.expires_at < datetime.utcnow():
        raise ValidationError("The verification code is invalid or has expired.")
    record.verified = True
    return record


def _check_code(s, *, email: str, code: str, purpose: str):
    """_consume_code, limited to a handful of wrong guesses per email and purpose."""
    key = f"{purpose}:{email}"
    if code_throttle.blocked(key):
        raise TooManyRequests("Too many verification attempts. Please wait 5 minutes.")
    try:
        record = _consume_code(s, email=email, code=code, purpose=purpose)
    except ValidationError:
        code_throttle.hit(key)
        raise
    code_throttle.forget(key)
    return record


def _login(user: User) -> None:
    session["user_id"] = user.id
    session.permanent = True


@bp.post("/login")
def login():
    body = request.get_json(silent=True) or {}
    email = str(body.get("email") or "").strip().lower()
    password = str(body.get("password") or "")
    ip = request.remote_addr or "unknown"

    if login_throttle.blocked(ip):
        return jsonify({"error": "Too many login attempts. Please wait 5 minutes."}), 429

    login_throttle.hit(ip)

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email},
        )
        s.commit()
        return jsonify({"error": "Invalid credentials."}), 401

    _login(user)
    login_throttle.forget(ip)
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    return jsonify(
        {
            "user": serialize_user(user),
            "permissions": user_permission_keys(user),
            "csrf_token": ensure_csrf_token(),
        }
    )


@bp.post("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop("user_id", None)
    return jsonify({"ok": True})


@bp.get("/me")
@require_login
def me():
    user = current_user()
    return jsonify(
        {
            "user": serialize_user(user),
            "permissions": user_permission_keys(user),
            "csrf_token": ensure_csrf_token(),
        }
    )


@bp.patch("/me")
@require_login
def update_me():
    body = request.get_json(silent=True) or {}
    user = current_user()
    s = db_session()

    changes: dict[str, dict] = {}
    for f in PROFILE_FIELDS:
        if f in body:
            new = str(body[f] or "").strip() or None
            if new != getattr(user, f):
                changes[f] = {"old": getattr(user, f), "new": new}
                setattr(user, f, new)
    if "has_completed_onboarding" in body:
        new_flag = bool(body["has_completed_onboarding"])
        if new_flag != user.has_completed_onboarding:
            changes["has_completed_onboarding"] = {"old": user.has_completed_onboarding, "new": new_flag}
            user.has_completed_onboarding = new_flag

    if changes:
        record_event(s, actor=user, action="user.profile_edit", entity_type="User", entity_id=str(user.id), metadata={"changes": changes})
        s.commit()
    return jsonify({"user": serialize_user(user)})


@bp.get("/csrf")
def csrf():
    return jsonify({"csrf_token": ensure_csrf_token()})


@bp.post("/verify-member")
def verify_member():
    from app.portal.modules.members.models import Member

    body = request.get_json(silent=True) or {}
    email = str(body.get("email") or "").strip().lower()
    first_name = str(body.get("first_name") or "").strip()
    last_name = str(body.get("last_name") or "").strip()
    if not (email and first_name and last_name):
        raise ValidationError("email, first_name and last_name are required.")

    s = db_session()
    member = (
        s.query(Member)
        .filter(
            func.lower(Member.email) == email,
            func.lower(Member.first_name) == first_name.lower(),
            func.lower(Member.last_name) == last_name.lower(),
        )
        .first()
    )
    if member is None:
        return jsonify({"error": "No matching record found for this name and email."}), 404
    if member.has_portal_access or s.query(User).filter(User.email == email).one_or_none():
        raise ConflictError("A portal account already exists for this member.")

    code = _issue_code(s, email=email, purpose="registration", first_name=member.first_name, last_name=member.last_name)
    record_event(s, actor=None, action="auth.verify_member", entity_type="Member", entity_id=str(member.id), metadata={"email": email})
    s.commit()

    sent, err = send_email(
        current_app.config,
        email,
        "Your member portal verification code",
        f"Hello {member.first_name},\n\nYour verification code is {code}. "
        f"It expires in {CODE_TTL_MINUTES} minutes.\n\n"
        "If you did not request this code, you can ignore this email.\n",
    )
    if not sent:
        current_app.logger.warning("Verification email to %s failed: %s", email, err)
    return jsonify(
        {
            "ok": True,
            "email_sent": sent,
            "member_level": member.category,
            "expires_in_minutes": CODE_TTL_MINUTES,
        }
    )


@bp.post("/register")
def register():
    from app.portal.modules.members.service import find_member_by_email

    body = request.get_json(silent=True) or {}
    email = str(body.get("email") or "").strip().lower()
    code = str(body.get("code") or "").strip()
    password = str(body.get("password") or "")

    errors: list[str] = []
    if not email:
        errors.append("Email is required.")
    if not code:
        errors.append("Verification code is required.")
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if errors:
        raise ValidationError(errors)

    s = db_session()
    if s.query(User).filter(User.email == email).one_or_none():
        raise ConflictError("User already exists with this email.")

    record = _check_code(s, email=email, code=code, purpose="registration")
    member = find_member_by_email(s, email)

    user = User(
        email=email,
        password_hash=generate_password_hash(password),
        is_active=True,
        first_name=(member.first_name if member else None) or record.first_name,
        last_name=(member.last_name if member else None) or record.last_name,
        member_level=member.category if member else None,
        location=(member.province_territory or member.province) if member else None,
        has_completed_onboarding=False,
    )
    role_member = s.query(Role).filter(Role.key == "member").one_or_none()
    if role_member:
        user.roles.append(role_member)
    s.add(user)
    if member:
        member.has_portal_access = True
    s.flush()

    record_event(s, actor=user, action="auth.register", entity_type="User", entity_id=str(user.id), metadata={"member_id": member.id if member else None})
    s.commit()
    _login(user)
    return jsonify({"user": serialize_user(user), "csrf_token": ensure_csrf_token()}), 201


@bp.post("/password-reset/request")
def password_reset_request():
    body = request.get_json(silent=True) or {}
    email = str(body.get("email") or "").strip().lower()
    if not email:
        raise ValidationError("Email is required.")

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    # Same response whether or not the account exists.
    if user and user.is_active:
        code = _issue_code(s, email=email, purpose="password_reset", first_name=user.first_name, last_name=user.last_name)
        record_event(s, actor=None, action="auth.password_reset_request", entity_type="User", entity_id=str(user.id))
        s.commit()
        sent, err = send_email(
            current_app.config,
            email,
            "Your member portal password reset code",
            f"Your password reset code is {code}. It expires in {CODE_TTL_MINUTES} minutes.\n",
        )
        if not sent:
            current_app.logger.warning("Password reset email to %s failed: %s", email, err)
    return jsonify({"ok": True})


@bp.post("/password-reset/complete")
def password_reset_complete():
    body = request.get_json(silent=True) or {}
    email = str(body.get("email") or "").strip().lower()
    code = str(body.get("code") or "").strip()
    password = str(body.get("password") or "")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    # An unknown email goes through the same check so the reply does not reveal it.
    _check_code(s, email=email, code=code, purpose="password_reset")
    if not user:
        raise ValidationError("The verification code is invalid or has expired.")
    user.password_hash = generate_password_hash(password)
    record_event(s, actor=user, action="auth.password_reset", entity_type="User", entity_id=str(user.id))
    s.commit()
    return jsonify({"ok": True})
