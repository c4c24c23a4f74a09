from datetime import date

from flask import Blueprint, abort, jsonify, request
from sqlalchemy import func, or_
from werkzeug.security import generate_password_hash

from app.portal.audit import query_events, record_event, serialize_event
from app.portal.auth import MIN_PASSWORD_LENGTH, serialize_user
from app.portal.constants import CHAIR_ROLE_NAME, COCHAIR_ROLE_NAME
from app.portal.db import db_session
from app.portal.errors import ConflictError, ValidationError
from app.portal.models import Role, User
from app.portal.rbac import current_user, require_login, require_permission, user_has_role
from app.portal.utils import json_body, page_args, pagination, parse_bool, parse_date

bp = Blueprint("admin", __name__)

USER_PROFILE_FIELDS = ("first_name", "last_name", "phone_number", "member_level", "location")


def dashboard_kind(user: User) -> str:
    if user_has_role(user, "admin"):
        return "admin"
    if user_has_role(user, "committee_chair") or user_has_role(user, "committee_cochair"):
        return "committee_chair"
    return "member"


def _admin_summary(s) -> dict:
    from app.portal.modules.demographics.models import DemographicChangeRequest
    from app.portal.modules.members.models import Member
    from app.portal.modules.payments.models import Payment
    from app.portal.modules.workshops.models import Workshop, WorkshopRegistration

    today = date.today()
    return {
        "members": {
            "total": s.query(func.count(Member.id)).scalar() or 0,
            "active": s.query(func.count(Member.id)).filter(Member.is_active.is_(True)).scalar() or 0,
            "with_portal_access": s.query(func.count(Member.id)).filter(Member.has_portal_access.is_(True)).scalar() or 0,
        },
        "users": s.query(func.count(User.id)).scalar() or 0,
        "workshops": {
            "total": s.query(func.count(Workshop.id)).scalar() or 0,
            "upcoming": s.query(func.count(Workshop.id)).filter(Workshop.date >= today).scalar() or 0,
        },
        "pending_demographic_requests": s.query(func.count(DemographicChangeRequest.id))
        .filter(DemographicChangeRequest.status == "pending")
        .scalar()
        or 0,
        "pending_payments": {
            "registrations": s.query(func.count(WorkshopRegistration.id))
            .filter(WorkshopRegistration.payment_status == "pending")
            .scalar()
            or 0,
            "awaiting_settlement": s.query(func.count(Payment.id)).filter(Payment.status == "pending_settlement").scalar() or 0,
        },
        "pending_approvals": s.query(func.count(WorkshopRegistration.id))
        .filter(WorkshopRegistration.is_approved.is_(False))
        .scalar()
        or 0,
    }


def _chair_summary(s, user: User) -> dict:
    from app.portal.modules.committees.models import CommitteeMember, CommitteeRole
    from app.portal.modules.committees.service import serialize_committee
    from app.portal.modules.workshops.models import Workshop
    from app.portal.modules.workshops.service import serialize_workshop

    seats = (
        s.query(CommitteeMember)
        .join(CommitteeRole, CommitteeRole.id == CommitteeMember.role_id)
        .filter(
            CommitteeMember.user_id == user.id,
            CommitteeMember.end_date.is_(None),
            CommitteeRole.name.in_((CHAIR_ROLE_NAME, COCHAIR_ROLE_NAME)),
        )
        .all()
    )
    committees = {cm.committee_id: cm.committee for cm in seats}
    workshops = []
    if committees:
        workshops = (
            s.query(Workshop)
            .filter(Workshop.committee_id.in_(list(committees)), Workshop.date >= date.today())
            .order_by(Workshop.date.asc(), Workshop.id.asc())
            .all()
        )
    return {
        "committees": [
            {**serialize_committee(c), "role": next(cm.role.name for cm in seats if cm.committee_id == c.id)}
            for c in committees.values()
        ],
        "upcoming_workshops": [serialize_workshop(w) for w in workshops],
    }


def _member_summary(s, user: User) -> dict:
    from app.portal.modules.workshops.service import my_registrations, serialize_registration, serialize_workshop

    today = date.today()
    regs = [r for r in my_registrations(s, user) if r.workshop and r.workshop.date >= today]
    return {
        "upcoming_registrations": [
            {**serialize_registration(r), "workshop": serialize_workshop(r.workshop)} for r in regs
        ],
    }


@bp.get("/dashboard")
@require_login
def dashboard():
    from app.portal.modules.messaging.service import unread_count

    s = db_session()
    user = current_user()
    kind = dashboard_kind(user)
    if kind == "admin":
        summary = _admin_summary(s)
    elif kind == "committee_chair":
        summary = {**_chair_summary(s, user), **_member_summary(s, user)}
    else:
        summary = _member_summary(s, user)
    return jsonify(
        {
            "dashboard": kind,
            "user": serialize_user(user),
            "unread_messages": unread_count(s, user),
            "summary": summary,
        }
    )


# ---------- Users ----------
def _roles_by_key(s, keys) -> list[Role]:
    if not isinstance(keys, list):
        raise ValidationError("roles must be a list of role keys.")
    wanted = sorted({str(k).strip() for k in keys if str(k).strip()})
    roles = s.query(Role).filter(Role.key.in_(wanted)).all() if wanted else []
    unknown = sorted(set(wanted) - {r.key for r in roles})
    if unknown:
        raise ValidationError(f"Unknown roles: {', '.join(unknown)}")
    return roles


def _get_user_or_404(user_id: int) -> User:
    u = db_session().get(User, user_id)
    if not u:
        abort(404)
    return u


@bp.get("/users")
@require_permission("users.manage")
def users_list():
    s = db_session()
    q = s.query(User)
    search = (request.args.get("q") or "").strip().lower()
    if search:
        like = f"%{search}%"
        q = q.filter(
            or_(
                func.lower(User.email).like(like),
                func.lower(User.first_name).like(like),
                func.lower(User.last_name).like(like),
            )
        )
    role = (request.args.get("role") or "").strip()
    if role:
        q = q.filter(User.roles.any(Role.key == role))
    page, limit = page_args()
    total = q.count()
    users = q.order_by(User.email.asc()).offset((page - 1) * limit).limit(limit).all()
    return jsonify({"users": [serialize_user(u) for u in users], "pagination": pagination(page, limit, total)})


@bp.post("/users")
@require_permission("users.manage")
def users_create():
    s = db_session()
    body = json_body()
    email = str(body.get("email") or "").strip().lower()
    password = str(body.get("password") or "")

    errors: list[str] = []
    if not email or "@" not in email:
        errors.append("A valid email is required.")
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if errors:
        raise ValidationError(errors)
    if s.query(User).filter(User.email == email).one_or_none():
        raise ConflictError("User already exists with this email.")

    user = User(email=email, password_hash=generate_password_hash(password), is_active=parse_bool(body.get("is_active", True)))
    for f in USER_PROFILE_FIELDS:
        if f in body:
            setattr(user, f, str(body[f] or "").strip() or None)
    user.roles = _roles_by_key(s, body.get("roles") or ["member"])
    s.add(user)
    s.flush()
    record_event(
        s,
        actor=current_user(),
        action="user.create",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"email": email, "roles": sorted(r.key for r in user.roles)},
    )
    s.commit()
    return jsonify({"user": serialize_user(user)}), 201


@bp.patch("/users/<int:user_id>")
@require_permission("users.manage")
def users_update(user_id: int):
    s = db_session()
    actor = current_user()
    user = _get_user_or_404(user_id)
    body = json_body()

    changes: dict[str, dict] = {}
    if "is_active" in body:
        active = parse_bool(body["is_active"])
        if not active and user.id == actor.id:
            raise ValidationError("You cannot deactivate your own account.")
        if active != user.is_active:
            changes["is_active"] = {"old": user.is_active, "new": active}
            user.is_active = active
    for f in USER_PROFILE_FIELDS:
        if f in body:
            new = str(body[f] or "").strip() or None
            if new != getattr(user, f):
                changes[f] = {"old": getattr(user, f), "new": new}
                setattr(user, f, new)
    if "roles" in body:
        roles = _roles_by_key(s, body["roles"])
        new_keys = sorted(r.key for r in roles)
        old_keys = sorted(r.key for r in user.roles)
        if user.id == actor.id and "admin" in old_keys and "admin" not in new_keys:
            raise ValidationError("You cannot remove your own admin role.")
        if new_keys != old_keys:
            changes["roles"] = {"old": old_keys, "new": new_keys}
            user.roles = roles
    if "password" in body:
        password = str(body.get("password") or "")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
        user.password_hash = generate_password_hash(password)
        changes["password"] = {"old": "***", "new": "***"}

    if changes:
        record_event(s, actor=actor, action="user.update", entity_type="User", entity_id=str(user.id), metadata={"changes": changes})
        s.commit()
    return jsonify({"user": serialize_user(user)})


@bp.get("/users/search")
@require_login
def users_search():
    """Recipient lookup for messaging: active users by name or email."""
    q = (request.args.get("q") or "").strip().lower()
    if len(q) < 2:
        return jsonify({"users": []})
    like = f"%{q}%"
    users = (
        db_session()
        .query(User)
        .filter(
            User.is_active.is_(True),
            or_(
                func.lower(User.email).like(like),
                func.lower(User.first_name).like(like),
                func.lower(User.last_name).like(like),
            ),
        )
        .order_by(User.email.asc())
        .limit(20)
        .all()
    )
    return jsonify({"users": [{"id": u.id, "email": u.email, "display_name": u.display_name} for u in users]})


# ---------- Audit ----------
@bp.get("/audit")
@require_permission("admin.view")
def audit_list():
    """Last 200 audit events, filtered by action, actor email and date range (YYYY-MM-DD)."""
    events = query_events(
        db_session(),
        action=(request.args.get("action") or "").strip(),
        actor_email=(request.args.get("actor_email") or "").strip(),
        date_from=parse_date(request.args.get("date_from"), "date_from"),
        date_to=parse_date(request.args.get("date_to"), "date_to"),
    )
    return jsonify({"events": [serialize_event(e) for e in events]})
