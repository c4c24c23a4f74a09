from __future__ import annotations

import logging
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.portal.audit import record_event
from app.portal.constants import CHAIR_ROLE_NAME, COCHAIR_ROLE_NAME, COMMITTEE_DERIVED_ROLES
from app.portal.errors import ConflictError, NotFound, PermissionDenied, ValidationError
from app.portal.rbac import user_has_permission, user_has_role
from app.portal.utils import iso, parse_bool, parse_date, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.portal.models import User
    from app.portal.modules.committees.models import Committee, CommitteeMember, CommitteeRole

logger = logging.getLogger(__name__)


def _as_datetime(d: date | None) -> datetime | None:
    if d is None:
        return None
    return datetime(d.year, d.month, d.day)


# ---------- Serializers ----------
def serialize_committee_role(r: "CommitteeRole") -> dict:
    return {
        "id": r.id,
        "name": r.name,
        "description": r.description,
        "can_manage_committee": r.can_manage_committee,
        "can_manage_workshops": r.can_manage_workshops,
    }


def serialize_membership(cm: "CommitteeMember") -> dict:
    u = cm.user
    return {
        "id": cm.id,
        "committee_id": cm.committee_id,
        "committee_name": cm.committee.name if cm.committee else None,
        "user_id": cm.user_id,
        "user_email": u.email if u else None,
        "user_name": u.display_name if u else None,
        "member_id": cm.member_id,
        "role": serialize_committee_role(cm.role) if cm.role else None,
        "start_date": iso(cm.start_date),
        "end_date": iso(cm.end_date),
        "is_active": cm.is_active,
    }


def serialize_committee(c: "Committee", *, include_members: bool = False) -> dict:
    active = [m for m in c.memberships or [] if m.is_active]
    d = {
        "id": c.id,
        "name": c.name,
        "description": c.description,
        "active_member_count": len(active),
        "created_at": iso(c.created_at),
        "updated_at": iso(c.updated_at),
    }
    if include_members:
        d["members"] = [serialize_membership(m) for m in sorted(active, key=lambda m: m.id)]
    return d


# ---------- Derived system roles ----------
def derived_role_keys(memberships: list["CommitteeMember"]) -> set[str]:
    keys: set[str] = set()
    for cm in memberships:
        if not cm.is_active or cm.role is None:
            continue
        keys.add("committee_member")
        if cm.role.name == CHAIR_ROLE_NAME:
            keys.add("committee_chair")
        elif cm.role.name == COCHAIR_ROLE_NAME:
            keys.add("committee_cochair")
        if cm.role.can_manage_committee:
            keys.add("committee_manager")
        if cm.role.can_manage_workshops:
            keys.add("workshop_manager")
    return keys


def sync_user_committee_roles(s: "Session", user: "User") -> dict[str, list[str]]:
    """
    Bring the user's committee-derived system roles in line with their active
    committee memberships. Roles outside COMMITTEE_DERIVED_ROLES (admin, member)
    are left alone.
    """
    from app.portal.models import Role
    from app.portal.modules.committees.models import CommitteeMember

    s.flush()
    memberships = (
        s.query(CommitteeMember)
        .filter(CommitteeMember.user_id == user.id, CommitteeMember.end_date.is_(None))
        .all()
    )
    wanted = derived_role_keys(memberships)
    current = {r.key for r in user.roles if r.key in COMMITTEE_DERIVED_ROLES}

    removed = sorted(current - wanted)
    added = sorted(wanted - current)
    if removed:
        user.roles = [r for r in user.roles if r.key not in removed]
    if added:
        roles = {r.key: r for r in s.query(Role).filter(Role.key.in_(added)).all()}
        for key in added:
            role = roles.get(key)
            if role is None:
                logger.warning("Role %s is not seeded; cannot grant it to user %s", key, user.id)
                continue
            user.roles.append(role)
    if removed or added:
        s.flush()
        logger.info("Synced committee roles for user %s: +%s -%s", user.id, added, removed)
    return {"added": added, "removed": removed}


# ---------- Committees ----------
def validate_committee_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors: list[str] = []
    if not partial or "name" in payload:
        if not str(payload.get("name") or "").strip():
            errors.append("Committee name is required.")
    members = payload.get("members")
    if members is not None and not isinstance(members, list):
        errors.append("members must be a list.")
    return errors


def _assert_committee_name_free(s: "Session", name: str, *, exclude_id: int | None = None) -> None:
    from app.portal.modules.committees.models import Committee

    existing = s.query(Committee).filter(func.lower(Committee.name) == name.lower()).one_or_none()
    if existing is not None and existing.id != exclude_id:
        raise ConflictError("A committee with this name already exists.")


def create_committee(s: "Session", payload: dict, user: "User") -> "Committee":
    from app.portal.modules.committees.models import Committee

    errors = validate_committee_payload(payload)
    if errors:
        raise ValidationError(errors)
    name = str(payload.get("name")).strip()
    _assert_committee_name_free(s, name)

    now = datetime.utcnow()
    c = Committee(name=name, description=(str(payload.get("description") or "").strip() or None), created_at=now, updated_at=now)
    s.add(c)
    s.flush()
    record_event(s, actor=user, action="committee.create", entity_type="Committee", entity_id=str(c.id), metadata={"name": name})

    for entry in payload.get("members") or []:
        if not isinstance(entry, dict):
            raise ValidationError("Each initial member must be an object with user_id and role_id.")
        add_committee_member(s, c, entry, user)
    return c


def update_committee(s: "Session", c: "Committee", payload: dict, user: "User") -> "Committee":
    errors = validate_committee_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)
    changes: dict[str, dict] = {}
    if "name" in payload:
        name = str(payload.get("name")).strip()
        if name != c.name:
            _assert_committee_name_free(s, name, exclude_id=c.id)
            changes["name"] = {"old": c.name, "new": name}
            c.name = name
    if "description" in payload:
        desc = str(payload.get("description") or "").strip() or None
        if desc != c.description:
            changes["description"] = {"old": c.description, "new": desc}
            c.description = desc
    if changes:
        c.updated_at = datetime.utcnow()
        record_event(s, actor=user, action="committee.update", entity_type="Committee", entity_id=str(c.id), metadata={"changes": changes})
    return c


def is_committee_leader(s: "Session", user: "User", committee_id: int) -> bool:
    from app.portal.modules.committees.models import CommitteeMember, CommitteeRole

    seat = (
        s.query(CommitteeMember.id)
        .join(CommitteeRole, CommitteeRole.id == CommitteeMember.role_id)
        .filter(
            CommitteeMember.committee_id == committee_id,
            CommitteeMember.user_id == user.id,
            CommitteeMember.end_date.is_(None),
            CommitteeRole.name.in_((CHAIR_ROLE_NAME, COCHAIR_ROLE_NAME)),
        )
        .first()
    )
    return seat is not None


def update_committee_description(s: "Session", c: "Committee", description: Any, user: "User") -> "Committee":
    """Admins and the committee's own Chair/Co-Chair may edit the description."""
    if not (user_has_role(user, "admin") or user_has_permission(user, "committees.manage") or is_committee_leader(s, user, c.id)):
        raise PermissionDenied("Only an administrator or this committee's Chair/Co-Chair can edit its description.")
    return update_committee(s, c, {"description": description}, user)


def delete_committee(s: "Session", c: "Committee", user: "User") -> None:
    from app.portal.modules.workshops.models import Workshop

    linked = s.query(func.count(Workshop.id)).filter(Workshop.committee_id == c.id).scalar() or 0
    if linked:
        raise ConflictError(
            "This committee has workshops. Reassign or delete them first.", details={"workshop_count": int(linked)}
        )
    affected = {cm.user for cm in c.memberships or [] if cm.is_active and cm.user is not None}
    record_event(s, actor=user, action="committee.delete", entity_type="Committee", entity_id=str(c.id), metadata={"name": c.name})
    s.delete(c)
    s.flush()
    for u in affected:
        sync_user_committee_roles(s, u)


# ---------- Committee roles ----------
def validate_committee_role_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors: list[str] = []
    if not partial or "name" in payload:
        if not str(payload.get("name") or "").strip():
            errors.append("Role name is required.")
    return errors


def _assert_role_name_free(s: "Session", name: str, *, exclude_id: int | None = None) -> None:
    from app.portal.modules.committees.models import CommitteeRole

    existing = s.query(CommitteeRole).filter(func.lower(CommitteeRole.name) == name.lower()).one_or_none()
    if existing is not None and existing.id != exclude_id:
        raise ConflictError("A committee role with this name already exists.")


def create_committee_role(s: "Session", payload: dict, user: "User") -> "CommitteeRole":
    from app.portal.modules.committees.models import CommitteeRole

    errors = validate_committee_role_payload(payload)
    if errors:
        raise ValidationError(errors)
    name = str(payload.get("name")).strip()
    _assert_role_name_free(s, name)
    r = CommitteeRole(
        name=name,
        description=str(payload.get("description") or "").strip() or None,
        can_manage_committee=parse_bool(payload.get("can_manage_committee")),
        can_manage_workshops=parse_bool(payload.get("can_manage_workshops")),
    )
    s.add(r)
    s.flush()
    record_event(s, actor=user, action="committee_role.create", entity_type="CommitteeRole", entity_id=str(r.id), metadata={"name": name})
    return r


def update_committee_role(s: "Session", r: "CommitteeRole", payload: dict, user: "User") -> "CommitteeRole":
    from app.portal.modules.committees.models import CommitteeMember

    errors = validate_committee_role_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)
    changes: dict[str, dict] = {}
    if "name" in payload:
        name = str(payload.get("name")).strip()
        if name != r.name:
            _assert_role_name_free(s, name, exclude_id=r.id)
            changes["name"] = {"old": r.name, "new": name}
            r.name = name
    if "description" in payload:
        desc = str(payload.get("description") or "").strip() or None
        if desc != r.description:
            changes["description"] = {"old": r.description, "new": desc}
            r.description = desc
    for flag in ("can_manage_committee", "can_manage_workshops"):
        if flag in payload:
            new = parse_bool(payload.get(flag))
            if new != getattr(r, flag):
                changes[flag] = {"old": getattr(r, flag), "new": new}
                setattr(r, flag, new)
    if not changes:
        return r
    record_event(s, actor=user, action="committee_role.update", entity_type="CommitteeRole", entity_id=str(r.id), metadata={"changes": changes})

    # Renames and flag changes alter the derived roles of everyone holding this seat.
    holders = s.query(CommitteeMember).filter(CommitteeMember.role_id == r.id, CommitteeMember.end_date.is_(None)).all()
    for u in {cm.user for cm in holders if cm.user is not None}:
        sync_user_committee_roles(s, u)
    return r


def delete_committee_role(s: "Session", r: "CommitteeRole", user: "User") -> None:
    from app.portal.modules.committees.models import CommitteeMember

    in_use = s.query(func.count(CommitteeMember.id)).filter(CommitteeMember.role_id == r.id).scalar() or 0
    if in_use:
        raise ConflictError("This role is assigned to committee members and cannot be deleted.", details={"assignments": int(in_use)})
    record_event(s, actor=user, action="committee_role.delete", entity_type="CommitteeRole", entity_id=str(r.id), metadata={"name": r.name})
    s.delete(r)
    s.flush()


# ---------- Committee members ----------
def can_manage_committee_members(s: "Session", user: "User", committee_id: int) -> bool:
    """committees.manage covers every committee; otherwise a managing seat on this committee is required."""
    from app.portal.modules.committees.models import CommitteeMember, CommitteeRole

    if user_has_permission(user, "committees.manage"):
        return True
    if not user_has_permission(user, "committees.members"):
        return False
    seat = (
        s.query(CommitteeMember.id)
        .join(CommitteeRole, CommitteeRole.id == CommitteeMember.role_id)
        .filter(
            CommitteeMember.committee_id == committee_id,
            CommitteeMember.user_id == user.id,
            CommitteeMember.end_date.is_(None),
            CommitteeRole.can_manage_committee.is_(True),
        )
        .first()
    )
    return seat is not None


def list_committee_members(s: "Session", c: "Committee", *, include_inactive: bool = False) -> list["CommitteeMember"]:
    from app.portal.modules.committees.models import CommitteeMember

    q = s.query(CommitteeMember).filter(CommitteeMember.committee_id == c.id)
    if not include_inactive:
        q = q.filter(CommitteeMember.end_date.is_(None))
    return q.order_by(CommitteeMember.start_date.asc(), CommitteeMember.id.asc()).all()


def get_membership(s: "Session", c: "Committee", membership_id: int) -> "CommitteeMember":
    from app.portal.modules.committees.models import CommitteeMember

    cm = s.get(CommitteeMember, membership_id)
    if cm is None or cm.committee_id != c.id:
        raise NotFound("Committee membership not found.")
    return cm


def _resolve_role(s: "Session", raw: Any) -> "CommitteeRole":
    from app.portal.modules.committees.models import CommitteeRole

    role_id = parse_int(raw, "role_id")
    if role_id is None:
        raise ValidationError("role_id is required.")
    role = s.get(CommitteeRole, role_id)
    if role is None:
        raise ValidationError("Specified committee role does not exist.")
    return role


def add_committee_member(s: "Session", c: "Committee", payload: dict, actor: "User") -> "CommitteeMember":
    from app.portal.models import User
    from app.portal.modules.committees.models import CommitteeMember
    from app.portal.modules.members.service import find_member_by_email

    user_id = parse_int(payload.get("user_id"), "user_id")
    if user_id is None:
        raise ValidationError("user_id is required.")
    target = s.get(User, user_id)
    if target is None:
        raise NotFound("User not found.")
    role = _resolve_role(s, payload.get("role_id"))
    start = _as_datetime(parse_date(payload.get("start_date"), "Start date")) or datetime.utcnow()

    existing = (
        s.query(CommitteeMember)
        .filter(CommitteeMember.committee_id == c.id, CommitteeMember.user_id == target.id)
        .all()
    )
    if any(cm.is_active for cm in existing):
        raise ConflictError("This user is already an active member of the committee.")
    # Most recently ended membership first; it is reactivated instead of adding a row.
    existing.sort(key=lambda cm: (cm.end_date, cm.id), reverse=True)

    member_id = parse_int(payload.get("member_id"), "member_id")
    if member_id is None:
        linked = find_member_by_email(s, target.email)
        member_id = linked.id if linked else None

    if existing:
        cm = existing[0]
        cm.end_date = None
        cm.role_id = role.id
        cm.role = role
        cm.start_date = start
        cm.member_id = member_id
        cm.added_by_user_id = actor.id
        action = "committee_member.reactivate"
    else:
        cm = CommitteeMember(
            committee=c,
            user=target,
            member_id=member_id,
            role=role,
            added_by_user_id=actor.id,
            start_date=start,
        )
        s.add(cm)
        action = "committee_member.add"
    s.flush()

    record_event(
        s,
        actor=actor,
        action=action,
        entity_type="CommitteeMember",
        entity_id=str(cm.id),
        metadata={"committee_id": c.id, "user_id": target.id, "role": role.name},
    )
    sync_user_committee_roles(s, target)
    return cm


def update_committee_member(s: "Session", cm: "CommitteeMember", payload: dict, actor: "User") -> "CommitteeMember":
    changes: dict[str, dict] = {}
    if "role_id" in payload:
        role = _resolve_role(s, payload.get("role_id"))
        if role.id != cm.role_id:
            changes["role"] = {"old": cm.role.name if cm.role else None, "new": role.name}
            cm.role_id = role.id
            cm.role = role
    if "start_date" in payload:
        start = _as_datetime(parse_date(payload.get("start_date"), "Start date"))
        if start is None:
            raise ValidationError("Start date cannot be empty.")
        if start != cm.start_date:
            changes["start_date"] = {"old": cm.start_date, "new": start}
            cm.start_date = start
    if "end_date" in payload:
        end = _as_datetime(parse_date(payload.get("end_date"), "End date"))
        if end != cm.end_date:
            changes["end_date"] = {"old": cm.end_date, "new": end}
            cm.end_date = end
    if cm.end_date is not None and cm.end_date < cm.start_date:
        raise ValidationError("End date cannot be before the start date.")
    if changes:
        s.flush()
        record_event(
            s,
            actor=actor,
            action="committee_member.update",
            entity_type="CommitteeMember",
            entity_id=str(cm.id),
            metadata={"changes": changes},
        )
        sync_user_committee_roles(s, cm.user)
    return cm


def remove_committee_member(s: "Session", cm: "CommitteeMember", actor: "User") -> "CommitteeMember":
    """Soft removal: sets end_date. Removing an ended membership is a no-op."""
    if not cm.is_active:
        return cm
    cm.end_date = datetime.utcnow()
    s.flush()
    record_event(
        s,
        actor=actor,
        action="committee_member.remove",
        entity_type="CommitteeMember",
        entity_id=str(cm.id),
        metadata={"committee_id": cm.committee_id, "user_id": cm.user_id},
    )
    sync_user_committee_roles(s, cm.user)
    return cm


def my_committee_memberships(s: "Session", user: "User") -> list["CommitteeMember"]:
    from app.portal.modules.committees.models import CommitteeMember

    return (
        s.query(CommitteeMember)
        .filter(CommitteeMember.user_id == user.id, CommitteeMember.end_date.is_(None))
        .order_by(CommitteeMember.id.asc())
        .all()
    )
