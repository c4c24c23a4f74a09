from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.portal.audit import record_event
from app.portal.errors import ConflictError, NotFound, ValidationError
from app.portal.modules.workshops.pricing import PricingBreakdown, calculate_workshop_price
from app.portal.rbac import user_has_permission, user_has_role
from app.portal.utils import iso, parse_bool, parse_date, parse_int, parse_time

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.portal.models import User
    from app.portal.modules.workshops.models import MembershipPricingRule, Workshop, WorkshopRegistration


PAYMENT_STATUSES = ("unpaid", "pending", "paid", "refunded", "not_required")
VISIBILITY_FIELDS = ("visible_to_general_members", "visible_to_committee_chairs", "visible_to_admins")

_TEXT_FIELDS = (
    "title",
    "description",
    "location_address",
    "location_details",
    "materials",
    "sponsored_by",
    "meeting_link",
)
_BOOL_FIELDS = ("is_paid", "is_online", "requires_approval") + VISIBILITY_FIELDS


def validate_workshop_payload(payload: dict, *, partial: bool = False) -> list[str]:
    """Validate workshop create/update payload. Returns list of errors."""
    errors: list[str] = []
    if not partial or "title" in payload:
        if not str(payload.get("title") or "").strip():
            errors.append("Title is required.")
    if not partial or "date" in payload:
        if not payload.get("date"):
            errors.append("Date is required.")
    if not partial or "capacity" in payload:
        try:
            cap = parse_int(payload.get("capacity"), "Capacity", minimum=1)
            if cap is None:
                errors.append("Capacity is required.")
        except ValidationError as e:
            errors.extend(e.errors)
    if "base_cost" in payload:
        try:
            parse_int(payload.get("base_cost"), "Base cost", minimum=0)
        except ValidationError as e:
            errors.extend(e.errors)
    if "global_discount_percentage" in payload:
        try:
            pct = parse_int(payload.get("global_discount_percentage"), "Global discount", minimum=0)
            if pct is not None and pct > 100:
                errors.append("Global discount must be between 0 and 100.")
        except ValidationError as e:
            errors.extend(e.errors)
    if not partial and parse_bool(payload.get("is_paid")) and not payload.get("base_cost"):
        errors.append("Base cost is required for paid workshops.")
    return errors


def _apply_fields(s: "Session", w: "Workshop", payload: dict) -> dict[str, dict]:
    from app.portal.modules.committees.models import Committee

    changes: dict[str, dict] = {}

    def _set(field: str, new: Any) -> None:
        old = getattr(w, field)
        if new != old:
            changes[field] = {"old": old, "new": new}
            setattr(w, field, new)

    for f in _TEXT_FIELDS:
        if f in payload:
            value = str(payload.get(f) or "").strip()
            _set(f, value if f in ("title", "description") else (value or None))
    for f in _BOOL_FIELDS:
        if f in payload:
            _set(f, parse_bool(payload.get(f)))
    if "date" in payload:
        _set("date", parse_date(payload.get("date"), "Date"))
    if "start_time" in payload:
        _set("start_time", parse_time(payload.get("start_time"), "Start time"))
    if "end_time" in payload:
        _set("end_time", parse_time(payload.get("end_time"), "End time"))
    if "capacity" in payload:
        _set("capacity", parse_int(payload.get("capacity"), "Capacity", minimum=1))
    if "base_cost" in payload:
        _set("base_cost", parse_int(payload.get("base_cost"), "Base cost", minimum=0))
    if "global_discount_percentage" in payload:
        _set("global_discount_percentage", parse_int(payload.get("global_discount_percentage"), "Global discount", minimum=0) or 0)
    if "committee_id" in payload:
        committee_id = parse_int(payload.get("committee_id"), "Committee")
        if committee_id is not None and s.get(Committee, committee_id) is None:
            raise ValidationError("Specified committee does not exist.")
        _set("committee_id", committee_id)

    if w.start_time and w.end_time and w.end_time <= w.start_time:
        raise ValidationError("End time must be after start time.")
    return changes


def serialize_workshop(w: "Workshop", *, registered_count: int | None = None, registration: "WorkshopRegistration | None" = None) -> dict:
    count = registered_count if registered_count is not None else len(w.registrations or [])
    d = {
        "id": w.id,
        "title": w.title,
        "description": w.description,
        "date": iso(w.date),
        "start_time": w.start_time.strftime("%H:%M") if w.start_time else None,
        "end_time": w.end_time.strftime("%H:%M") if w.end_time else None,
        "capacity": w.capacity,
        "registered_count": count,
        "spots_left": max(w.capacity - count, 0),
        "committee_id": w.committee_id,
        "committee_name": w.committee.name if w.committee else None,
        "location_address": w.location_address,
        "location_details": w.location_details,
        "materials": w.materials,
        "is_paid": w.is_paid,
        "base_cost": w.base_cost,
        "global_discount_percentage": w.global_discount_percentage,
        "sponsored_by": w.sponsored_by,
        "is_online": w.is_online,
        "meeting_link": w.meeting_link,
        "visible_to_general_members": w.visible_to_general_members,
        "visible_to_committee_chairs": w.visible_to_committee_chairs,
        "visible_to_admins": w.visible_to_admins,
        "requires_approval": w.requires_approval,
        "created_by_user_id": w.created_by_user_id,
    }
    if registration is not None:
        d["registration"] = serialize_registration(registration)
    return d


def serialize_registration(r: "WorkshopRegistration", *, include_user: bool = False) -> dict:
    d = {
        "id": r.id,
        "workshop_id": r.workshop_id,
        "user_id": r.user_id,
        "registered_at": iso(r.registered_at),
        "is_approved": r.is_approved,
        "approved_by_user_id": r.approved_by_user_id,
        "approved_at": iso(r.approved_at),
        "payment_status": r.payment_status,
        "payment_confirmed_by_user_id": r.payment_confirmed_by_user_id,
        "payment_confirmed_at": iso(r.payment_confirmed_at),
        "notes": r.notes,
    }
    if include_user and r.user is not None:
        d["user"] = {
            "id": r.user.id,
            "email": r.user.email,
            "first_name": r.user.first_name,
            "last_name": r.user.last_name,
            "display_name": r.user.display_name,
            "member_level": r.user.member_level,
        }
    return d


def can_manage_workshops(user: "User | None") -> bool:
    return user_has_permission(user, "workshops.manage")


def is_visible_to(w: "Workshop", user: "User | None") -> bool:
    if user is None:
        return False
    if can_manage_workshops(user):
        return True
    if user_has_role(user, "admin") and w.visible_to_admins:
        return True
    if (user_has_role(user, "committee_chair") or user_has_role(user, "committee_cochair")) and w.visible_to_committee_chairs:
        return True
    if w.visible_to_general_members:
        return True
    return any(r.user_id == user.id for r in w.registrations or [])


def registered_count(s: "Session", workshop_id: int) -> int:
    from app.portal.modules.workshops.models import WorkshopRegistration

    return s.query(func.count(WorkshopRegistration.id)).filter(WorkshopRegistration.workshop_id == workshop_id).scalar() or 0


def list_visible_workshops(s: "Session", user: "User", *, upcoming_only: bool = False) -> list["Workshop"]:
    from app.portal.modules.workshops.models import Workshop

    q = s.query(Workshop)
    if upcoming_only:
        q = q.filter(Workshop.date >= date.today())
    workshops = q.order_by(Workshop.date.asc(), Workshop.id.asc()).all()
    return [w for w in workshops if is_visible_to(w, user)]


def create_workshop(s: "Session", payload: dict, user: "User") -> "Workshop":
    from app.portal.modules.workshops.models import Workshop

    errors = validate_workshop_payload(payload)
    if errors:
        raise ValidationError(errors)
    now = datetime.utcnow()
    workshop = Workshop(created_by_user_id=user.id, created_at=now, updated_at=now, description="", global_discount_percentage=0)
    _apply_fields(s, workshop, payload)
    s.add(workshop)
    s.flush()

    record_event(
        s,
        actor=user,
        action="workshop.create",
        entity_type="Workshop",
        entity_id=str(workshop.id),
        metadata={"title": workshop.title, "date": workshop.date, "is_paid": workshop.is_paid},
    )
    return workshop


def update_workshop(s: "Session", workshop: "Workshop", payload: dict, user: "User") -> "Workshop":
    errors = validate_workshop_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)
    changes = _apply_fields(s, workshop, payload)
    if workshop.is_paid and not workshop.base_cost:
        raise ValidationError("Base cost is required for paid workshops.")
    if "capacity" in changes and workshop.capacity < registered_count(s, workshop.id):
        raise ConflictError("Capacity cannot be lower than the number of registrations.")
    if changes:
        workshop.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="workshop.edit",
            entity_type="Workshop",
            entity_id=str(workshop.id),
            metadata={"title": workshop.title, "changes": changes},
        )
    return workshop


def update_visibility(s: "Session", workshop: "Workshop", payload: dict, user: "User") -> "Workshop":
    changes = {}
    for f in VISIBILITY_FIELDS:
        if f in payload:
            new = parse_bool(payload[f])
            if new != getattr(workshop, f):
                changes[f] = {"old": getattr(workshop, f), "new": new}
                setattr(workshop, f, new)
    if not changes:
        raise ValidationError("No visibility fields supplied.")
    workshop.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="workshop.visibility", entity_type="Workshop", entity_id=str(workshop.id), metadata=changes)
    return workshop


def delete_workshop(s: "Session", workshop: "Workshop", user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="workshop.delete",
        entity_type="Workshop",
        entity_id=str(workshop.id),
        metadata={"title": workshop.title, "registrations": len(workshop.registrations or [])},
    )
    s.delete(workshop)
    s.flush()


def get_registration(s: "Session", workshop: "Workshop", registration_id: int) -> "WorkshopRegistration":
    from app.portal.modules.workshops.models import WorkshopRegistration

    reg = s.get(WorkshopRegistration, registration_id)
    if reg is None or reg.workshop_id != workshop.id:
        raise NotFound("Registration not found.")
    return reg


def find_registration(s: "Session", workshop_id: int, user_id: int) -> "WorkshopRegistration | None":
    from app.portal.modules.workshops.models import WorkshopRegistration

    return (
        s.query(WorkshopRegistration)
        .filter(WorkshopRegistration.workshop_id == workshop_id, WorkshopRegistration.user_id == user_id)
        .one_or_none()
    )


def _assert_capacity(s: "Session", workshop: "Workshop") -> None:
    if registered_count(s, workshop.id) >= workshop.capacity:
        raise ConflictError("Workshop is at full capacity.")


def register_for_workshop(s: "Session", workshop: "Workshop", user: "User") -> "WorkshopRegistration":
    from app.portal.modules.workshops.models import WorkshopRegistration

    if find_registration(s, workshop.id, user.id) is not None:
        raise ConflictError("Already registered for this workshop.")
    _assert_capacity(s, workshop)

    reg = WorkshopRegistration(
        workshop_id=workshop.id,
        user_id=user.id,
        registered_at=datetime.utcnow(),
        is_approved=not workshop.requires_approval,
        payment_status="not_required" if workshop.is_free else "unpaid",
    )
    s.add(reg)
    s.flush()
    record_event(
        s,
        actor=user,
        action="workshop.register",
        entity_type="WorkshopRegistration",
        entity_id=str(reg.id),
        metadata={"workshop_id": workshop.id, "payment_status": reg.payment_status, "is_approved": reg.is_approved},
    )
    return reg


def _has_succeeded_payment(s: "Session", reg: "WorkshopRegistration") -> bool:
    from app.portal.modules.payments.models import Payment

    return (
        s.query(Payment.id)
        .filter(Payment.registration_id == reg.id, Payment.status == "succeeded")
        .first()
        is not None
    )


def cancel_registration(s: "Session", workshop: "Workshop", user: "User") -> None:
    reg = find_registration(s, workshop.id, user.id)
    if reg is None:
        raise NotFound("You are not registered for this workshop.")
    if reg.payment_status == "paid" or _has_succeeded_payment(s, reg):
        raise ConflictError("Paid registrations cannot be cancelled online. Please contact an administrator.")
    record_event(
        s,
        actor=user,
        action="workshop.cancel_registration",
        entity_type="WorkshopRegistration",
        entity_id=str(reg.id),
        metadata={"workshop_id": workshop.id},
    )
    s.delete(reg)
    s.flush()


def add_participant(
    s: "Session", workshop: "Workshop", target: "User", actor: "User", *, notes: str | None = None
) -> "WorkshopRegistration":
    """Admin add: auto-approved, and recorded as paid for paid workshops."""
    from app.portal.modules.workshops.models import WorkshopRegistration

    if find_registration(s, workshop.id, target.id) is not None:
        raise ConflictError("User is already registered for this workshop.")
    _assert_capacity(s, workshop)

    now = datetime.utcnow()
    paid = not workshop.is_free
    reg = WorkshopRegistration(
        workshop_id=workshop.id,
        user_id=target.id,
        registered_at=now,
        is_approved=True,
        approved_by_user_id=actor.id,
        approved_at=now,
        payment_status="paid" if paid else "not_required",
        payment_confirmed_by_user_id=actor.id if paid else None,
        payment_confirmed_at=now if paid else None,
        notes=(notes or "").strip() or None,
    )
    s.add(reg)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="workshop.add_participant",
        entity_type="WorkshopRegistration",
        entity_id=str(reg.id),
        metadata={"workshop_id": workshop.id, "user_id": target.id, "payment_status": reg.payment_status},
    )
    return reg


def remove_registration(s: "Session", reg: "WorkshopRegistration", actor: "User") -> None:
    record_event(
        s,
        actor=actor,
        action="workshop.remove_registration",
        entity_type="WorkshopRegistration",
        entity_id=str(reg.id),
        metadata={"workshop_id": reg.workshop_id, "user_id": reg.user_id, "payment_status": reg.payment_status},
    )
    s.delete(reg)
    s.flush()


def approve_registration(s: "Session", reg: "WorkshopRegistration", actor: "User") -> "WorkshopRegistration":
    if reg.is_approved:
        return reg
    reg.is_approved = True
    reg.approved_by_user_id = actor.id
    reg.approved_at = datetime.utcnow()
    record_event(s, actor=actor, action="workshop.approve_registration", entity_type="WorkshopRegistration", entity_id=str(reg.id))
    return reg


def confirm_payment(s: "Session", reg: "WorkshopRegistration", actor: "User") -> "WorkshopRegistration":
    from app.portal.modules.payments.service import mark_registration_paid

    if reg.workshop.is_free:
        raise ValidationError("This workshop does not require payment.")
    mark_registration_paid(s, reg, actor=actor, approve=False, source="manual")
    return reg


def set_registration_notes(s: "Session", reg: "WorkshopRegistration", notes: str | None, actor: "User") -> "WorkshopRegistration":
    reg.notes = (notes or "").strip() or None
    record_event(s, actor=actor, action="workshop.registration_notes", entity_type="WorkshopRegistration", entity_id=str(reg.id))
    return reg


def my_registrations(s: "Session", user: "User") -> list["WorkshopRegistration"]:
    from app.portal.modules.workshops.models import Workshop, WorkshopRegistration

    return (
        s.query(WorkshopRegistration)
        .join(Workshop, Workshop.id == WorkshopRegistration.workshop_id)
        .filter(WorkshopRegistration.user_id == user.id)
        .order_by(Workshop.date.asc(), WorkshopRegistration.id.asc())
        .all()
    )


def find_pricing_rule(s: "Session", level: str) -> "MembershipPricingRule | None":
    """Levels are matched case-insensitively; the stored spelling is kept."""
    from app.portal.modules.workshops.models import MembershipPricingRule

    return (
        s.query(MembershipPricingRule)
        .filter(func.lower(MembershipPricingRule.membership_level) == level.strip().lower())
        .one_or_none()
    )


def membership_percentage(s: "Session", member_level: str | None) -> int | None:
    if not member_level:
        return None
    rule = find_pricing_rule(s, member_level)
    return rule.percentage_paid if rule else None


def pricing_province(s: "Session", user: "User") -> str | None:
    from app.portal.modules.members.service import find_member_by_email

    member = find_member_by_email(s, user.email)
    if member is not None:
        province = member.province_territory or member.province
        if province:
            return province
    return user.location


def price_for_user(s: "Session", workshop: "Workshop", user: "User") -> PricingBreakdown:
    return calculate_workshop_price(
        is_paid=workshop.is_paid,
        base_cost=workshop.base_cost,
        global_discount_percentage=workshop.global_discount_percentage,
        membership_percentage=membership_percentage(s, user.member_level),
        province=pricing_province(s, user),
    )


# ---------- Membership pricing rules ----------


def serialize_pricing_rule(rule: "MembershipPricingRule") -> dict:
    return {
        "id": rule.id,
        "membership_level": rule.membership_level,
        "percentage_paid": rule.percentage_paid,
        "updated_at": iso(rule.updated_at),
    }


def _validate_percentage(raw: Any) -> int:
    pct = parse_int(raw, "percentage_paid", minimum=0)
    if pct is None or pct > 100:
        raise ValidationError("percentage_paid must be between 0 and 100.")
    return pct


def upsert_pricing_rule(s: "Session", payload: dict, user: "User") -> tuple["MembershipPricingRule", bool]:
    from app.portal.modules.workshops.models import MembershipPricingRule

    level = str(payload.get("membership_level") or "").strip()
    if not level:
        raise ValidationError("membership_level is required.")
    pct = _validate_percentage(payload.get("percentage_paid"))

    rule = find_pricing_rule(s, level)
    created = rule is None
    now = datetime.utcnow()
    if created:
        rule = MembershipPricingRule(membership_level=level, percentage_paid=pct, created_at=now, updated_at=now)
        s.add(rule)
    else:
        rule.percentage_paid = pct
        rule.updated_at = now
    s.flush()
    record_event(
        s,
        actor=user,
        action="pricing_rule.create" if created else "pricing_rule.edit",
        entity_type="MembershipPricingRule",
        entity_id=str(rule.id),
        metadata={"membership_level": level, "percentage_paid": pct},
    )
    return rule, created


def update_pricing_rule(s: "Session", rule: "MembershipPricingRule", payload: dict, user: "User") -> "MembershipPricingRule":
    pct = _validate_percentage(payload.get("percentage_paid"))
    old = rule.percentage_paid
    rule.percentage_paid = pct
    rule.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="pricing_rule.edit",
        entity_type="MembershipPricingRule",
        entity_id=str(rule.id),
        metadata={"membership_level": rule.membership_level, "old": old, "new": pct},
    )
    return rule
