from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.portal.audit import record_event
from app.portal.constants import DEMOGRAPHIC_FIELDS
from app.portal.errors import ConflictError, NotFound, PermissionDenied, ValidationError
from app.portal.modules.members.service import find_member_by_email, update_member
from app.portal.rbac import user_has_permission
from app.portal.utils import iso, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.portal.models import User
    from app.portal.modules.demographics.models import DemographicChangeRequest
    from app.portal.modules.members.models import Member

REVIEW_DECISIONS = ("approved", "rejected")


def serialize_change_request(r: "DemographicChangeRequest") -> dict:
    member = r.member
    requester = r.requester
    return {
        "id": r.id,
        "member_id": r.member_id,
        "member_name": member.display_name if member else None,
        "requester_id": r.requester_id,
        "requester_email": requester.email if requester else None,
        "requested_changes": r.requested_changes,
        "current_values": r.current_values,
        "status": r.status,
        "reason_for_change": r.reason_for_change,
        "review_notes": r.review_notes,
        "reviewed_by_user_id": r.reviewed_by_user_id,
        "reviewed_at": iso(r.reviewed_at),
        "created_at": iso(r.created_at),
    }


def _normalize_value(field: str, raw: Any) -> Any:
    if field == "languages_spoken":
        if raw in (None, ""):
            return None
        if isinstance(raw, str):
            raw = raw.split(",")
        if not isinstance(raw, list):
            raise ValidationError("languages_spoken must be a list of strings.")
        return [str(v).strip() for v in raw if str(v).strip()] or None
    if raw is None:
        return None
    return str(raw).strip() or None


def _resolve_member(s: "Session", user: "User", raw_member_id: Any) -> "Member":
    from app.portal.modules.members.models import Member

    own = find_member_by_email(s, user.email)
    member_id = parse_int(raw_member_id, "member_id")
    if member_id is None:
        if own is None:
            raise NotFound("No member record matches your account.")
        member = own
    else:
        member = s.get(Member, member_id)
        if member is None:
            raise NotFound("Member not found.")

    is_self = own is not None and own.id == member.id
    if is_self:
        if not (user_has_permission(user, "demographics.request") or user_has_permission(user, "members.edit")):
            raise PermissionDenied("You cannot request demographic changes.")
    elif not user_has_permission(user, "members.edit"):
        raise PermissionDenied("You can only request changes to your own member record.")
    return member


def create_change_request(s: "Session", user: "User", payload: dict) -> "DemographicChangeRequest":
    """
    Record a pending change to a member's demographic fields, with a snapshot
    of the current values of exactly the fields being changed.
    """
    from app.portal.modules.demographics.models import DemographicChangeRequest

    raw_changes = payload.get("requested_changes")
    if not isinstance(raw_changes, dict) or not raw_changes:
        raise ValidationError("requested_changes must be a non-empty object.")
    unknown = sorted(set(raw_changes) - set(DEMOGRAPHIC_FIELDS))
    if unknown:
        raise ValidationError(f"Only demographic fields can be changed. Not allowed: {', '.join(unknown)}")

    member = _resolve_member(s, user, payload.get("member_id"))

    changes = {f: _normalize_value(f, v) for f, v in raw_changes.items()}
    current = {f: getattr(member, f) for f in changes}
    if all(changes[f] == current[f] for f in changes):
        raise ValidationError("The requested values match the current record.")

    now = datetime.utcnow()
    req = DemographicChangeRequest(
        requester_id=user.id,
        member_id=member.id,
        requested_changes=changes,
        current_values=current,
        status="pending",
        reason_for_change=str(payload.get("reason_for_change") or "").strip() or None,
        created_at=now,
        updated_at=now,
    )
    s.add(req)
    s.flush()
    record_event(
        s,
        actor=user,
        action="demographic_request.create",
        entity_type="DemographicChangeRequest",
        entity_id=str(req.id),
        metadata={"member_id": member.id, "fields": sorted(changes)},
    )
    return req


def pending_requests(s: "Session") -> list["DemographicChangeRequest"]:
    from app.portal.modules.demographics.models import DemographicChangeRequest

    return (
        s.query(DemographicChangeRequest)
        .filter(DemographicChangeRequest.status == "pending")
        .order_by(DemographicChangeRequest.created_at.asc(), DemographicChangeRequest.id.asc())
        .all()
    )


def my_requests(s: "Session", user: "User") -> list["DemographicChangeRequest"]:
    from app.portal.modules.demographics.models import DemographicChangeRequest

    return (
        s.query(DemographicChangeRequest)
        .filter(DemographicChangeRequest.requester_id == user.id)
        .order_by(DemographicChangeRequest.created_at.desc(), DemographicChangeRequest.id.desc())
        .all()
    )


def review_change_request(s: "Session", req: "DemographicChangeRequest", payload: dict, reviewer: "User") -> "DemographicChangeRequest":
    decision = str(payload.get("status") or "").strip().lower()
    if decision not in REVIEW_DECISIONS:
        raise ValidationError("status must be 'approved' or 'rejected'.")
    if req.status != "pending":
        raise ConflictError(f"This request has already been {req.status}.")

    if decision == "approved":
        update_member(s, req.member, dict(req.requested_changes or {}), reviewer)

    now = datetime.utcnow()
    req.status = decision
    req.review_notes = str(payload.get("review_notes") or "").strip() or None
    req.reviewed_by_user_id = reviewer.id
    req.reviewed_at = now
    req.updated_at = now
    s.flush()
    record_event(
        s,
        actor=reviewer,
        action=f"demographic_request.{decision}",
        entity_type="DemographicChangeRequest",
        entity_id=str(req.id),
        metadata={"member_id": req.member_id, "fields": sorted(req.requested_changes or {})},
    )
    return req
