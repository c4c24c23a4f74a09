from __future__ import annotations

from flask import Blueprint, abort, jsonify, request

from app.portal.db import db_session
from app.portal.errors import ValidationError
from app.portal.models import User
from app.portal.modules.workshops.models import MembershipPricingRule, Workshop
from app.portal.modules.workshops.service import (
    add_participant,
    approve_registration,
    cancel_registration,
    confirm_payment,
    create_workshop,
    delete_workshop,
    find_registration,
    get_registration,
    is_visible_to,
    list_visible_workshops,
    my_registrations,
    price_for_user,
    register_for_workshop,
    registered_count,
    remove_registration,
    serialize_pricing_rule,
    serialize_registration,
    serialize_workshop,
    set_registration_notes,
    update_pricing_rule,
    update_visibility,
    update_workshop,
    upsert_pricing_rule,
)
from app.portal.rbac import current_user, require_login, require_permission
from app.portal.seed import ensure_pricing_rules
from app.portal.utils import json_body, parse_bool, parse_int

bp = Blueprint("workshops", __name__)


def _get_workshop_or_404(workshop_id: int) -> Workshop:
    w = db_session().get(Workshop, workshop_id)
    if not w:
        abort(404)
    return w


def _get_visible_workshop_or_404(workshop_id: int) -> Workshop:
    w = _get_workshop_or_404(workshop_id)
    if not is_visible_to(w, current_user()):
        abort(404)
    return w


# ---------- Workshops ----------
@bp.get("/workshops")
@require_permission("workshops.view")
def workshops_list():
    s = db_session()
    user = current_user()
    workshops = list_visible_workshops(s, user, upcoming_only=parse_bool(request.args.get("upcoming")))
    return jsonify(
        {
            "workshops": [
                serialize_workshop(w, registration=find_registration(s, w.id, user.id))
                for w in workshops
            ]
        }
    )


@bp.get("/workshops/<int:workshop_id>")
@require_permission("workshops.view")
def workshop_detail(workshop_id: int):
    s = db_session()
    w = _get_visible_workshop_or_404(workshop_id)
    reg = find_registration(s, w.id, current_user().id)
    return jsonify({"workshop": serialize_workshop(w, registered_count=registered_count(s, w.id), registration=reg)})


@bp.post("/workshops")
@require_permission("workshops.manage")
def workshop_create():
    s = db_session()
    w = create_workshop(s, json_body(), current_user())
    s.commit()
    return jsonify({"workshop": serialize_workshop(w, registered_count=0)}), 201


@bp.patch("/workshops/<int:workshop_id>")
@require_permission("workshops.manage")
def workshop_update(workshop_id: int):
    s = db_session()
    w = _get_workshop_or_404(workshop_id)
    update_workshop(s, w, json_body(), current_user())
    s.commit()
    return jsonify({"workshop": serialize_workshop(w, registered_count=registered_count(s, w.id))})


@bp.patch("/workshops/<int:workshop_id>/visibility")
@require_permission("workshops.manage")
def workshop_visibility(workshop_id: int):
    s = db_session()
    w = _get_workshop_or_404(workshop_id)
    update_visibility(s, w, json_body(), current_user())
    s.commit()
    return jsonify({"workshop": serialize_workshop(w, registered_count=registered_count(s, w.id))})


@bp.delete("/workshops/<int:workshop_id>")
@require_permission("workshops.manage")
def workshop_delete(workshop_id: int):
    s = db_session()
    w = _get_workshop_or_404(workshop_id)
    delete_workshop(s, w, current_user())
    s.commit()
    return jsonify({"ok": True})


@bp.get("/workshops/<int:workshop_id>/pricing")
@require_permission("workshops.view")
def workshop_pricing(workshop_id: int):
    s = db_session()
    w = _get_visible_workshop_or_404(workshop_id)
    pricing = price_for_user(s, w, current_user())
    return jsonify({"workshop_id": w.id, "pricing": pricing.to_dict()})


# ---------- Self registration ----------
@bp.post("/workshops/<int:workshop_id>/register")
@require_permission("workshops.register")
def workshop_register(workshop_id: int):
    s = db_session()
    w = _get_visible_workshop_or_404(workshop_id)
    reg = register_for_workshop(s, w, current_user())
    s.commit()
    return jsonify({"registration": serialize_registration(reg)}), 201


@bp.delete("/workshops/<int:workshop_id>/register")
@require_permission("workshops.register")
def workshop_cancel_registration(workshop_id: int):
    s = db_session()
    w = _get_workshop_or_404(workshop_id)
    cancel_registration(s, w, current_user())
    s.commit()
    return jsonify({"ok": True, "registered_count": registered_count(s, w.id)})


@bp.get("/me/workshops")
@require_login
def my_workshops():
    s = db_session()
    regs = my_registrations(s, current_user())
    return jsonify(
        {
            "registrations": [
                {**serialize_registration(r), "workshop": serialize_workshop(r.workshop)}
                for r in regs
            ]
        }
    )


# ---------- Registration management ----------
@bp.get("/workshops/<int:workshop_id>/registrations")
@require_permission("registrations.manage")
def workshop_registrations(workshop_id: int):
    w = _get_workshop_or_404(workshop_id)
    regs = sorted(w.registrations or [], key=lambda r: (r.registered_at, r.id))
    return jsonify(
        {
            "workshop": serialize_workshop(w, registered_count=len(regs)),
            "registrations": [serialize_registration(r, include_user=True) for r in regs],
        }
    )


@bp.post("/workshops/<int:workshop_id>/registrations")
@require_permission("registrations.manage")
def workshop_add_participant(workshop_id: int):
    s = db_session()
    w = _get_workshop_or_404(workshop_id)
    body = json_body()
    target = None
    user_id = parse_int(body.get("user_id"), "user_id")
    if user_id is not None:
        target = s.get(User, user_id)
    elif body.get("email"):
        target = s.query(User).filter(User.email == str(body["email"]).strip().lower()).one_or_none()
    else:
        raise ValidationError("user_id or email is required.")
    if target is None:
        abort(404)
    reg = add_participant(s, w, target, current_user(), notes=body.get("notes"))
    s.commit()
    return jsonify({"registration": serialize_registration(reg, include_user=True)}), 201


@bp.delete("/workshops/<int:workshop_id>/registrations/<int:registration_id>")
@require_permission("registrations.manage")
def workshop_remove_registration(workshop_id: int, registration_id: int):
    s = db_session()
    w = _get_workshop_or_404(workshop_id)
    reg = get_registration(s, w, registration_id)
    remove_registration(s, reg, current_user())
    s.commit()
    return jsonify({"ok": True})


@bp.post("/workshops/<int:workshop_id>/registrations/<int:registration_id>/approve")
@require_permission("registrations.manage")
def workshop_approve_registration(workshop_id: int, registration_id: int):
    s = db_session()
    w = _get_workshop_or_404(workshop_id)
    reg = approve_registration(s, get_registration(s, w, registration_id), current_user())
    s.commit()
    return jsonify({"registration": serialize_registration(reg, include_user=True)})


@bp.post("/workshops/<int:workshop_id>/registrations/<int:registration_id>/confirm-payment")
@require_permission("registrations.manage")
def workshop_confirm_payment(workshop_id: int, registration_id: int):
    s = db_session()
    w = _get_workshop_or_404(workshop_id)
    reg = confirm_payment(s, get_registration(s, w, registration_id), current_user())
    s.commit()
    return jsonify({"registration": serialize_registration(reg, include_user=True)})


@bp.post("/workshops/<int:workshop_id>/registrations/<int:registration_id>/notes")
@require_permission("registrations.manage")
def workshop_registration_notes(workshop_id: int, registration_id: int):
    s = db_session()
    w = _get_workshop_or_404(workshop_id)
    reg = set_registration_notes(s, get_registration(s, w, registration_id), json_body().get("notes"), current_user())
    s.commit()
    return jsonify({"registration": serialize_registration(reg, include_user=True)})


# ---------- Membership pricing rules ----------
@bp.get("/membership-pricing-rules")
@require_login
def pricing_rules_list():
    rules = db_session().query(MembershipPricingRule).order_by(MembershipPricingRule.membership_level.asc()).all()
    return jsonify({"rules": [serialize_pricing_rule(r) for r in rules]})


@bp.post("/membership-pricing-rules")
@require_permission("pricing.manage")
def pricing_rules_upsert():
    s = db_session()
    rule, created = upsert_pricing_rule(s, json_body(), current_user())
    s.commit()
    return jsonify({"rule": serialize_pricing_rule(rule)}), 201 if created else 200


@bp.patch("/membership-pricing-rules/<int:rule_id>")
@require_permission("pricing.manage")
def pricing_rules_update(rule_id: int):
    s = db_session()
    rule = s.get(MembershipPricingRule, rule_id)
    if not rule:
        abort(404)
    update_pricing_rule(s, rule, json_body(), current_user())
    s.commit()
    return jsonify({"rule": serialize_pricing_rule(rule)})


@bp.post("/membership-pricing-rules/seed")
@require_permission("pricing.manage")
def pricing_rules_seed():
    from app.portal.audit import record_event

    s = db_session()
    created = ensure_pricing_rules(s)
    record_event(s, actor=current_user(), action="pricing_rule.seed", entity_type="MembershipPricingRule", metadata={"created": created})
    s.commit()
    rules = s.query(MembershipPricingRule).order_by(MembershipPricingRule.membership_level.asc()).all()
    return jsonify({"created": created, "rules": [serialize_pricing_rule(r) for r in rules]})
