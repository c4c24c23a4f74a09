from __future__ import annotations

from flask import Blueprint, abort, jsonify, request

from app.portal.db import db_session
from app.portal.modules.committees.models import Committee, CommitteeRole
from app.portal.modules.committees.service import (
    add_committee_member,
    can_manage_committee_members,
    create_committee,
    create_committee_role,
    delete_committee,
    delete_committee_role,
    get_membership,
    list_committee_members,
    my_committee_memberships,
    remove_committee_member,
    serialize_committee,
    serialize_committee_role,
    serialize_membership,
    update_committee,
    update_committee_description,
    update_committee_member,
    update_committee_role,
)
from app.portal.rbac import current_user, require_login, require_permission
from app.portal.utils import json_body, parse_bool

bp = Blueprint("committees", __name__)


def _get_committee_or_404(committee_id: int) -> Committee:
    c = db_session().get(Committee, committee_id)
    if not c:
        abort(404)
    return c


def _get_role_or_404(role_id: int) -> CommitteeRole:
    r = db_session().get(CommitteeRole, role_id)
    if not r:
        abort(404)
    return r


def _require_member_management(committee: Committee) -> None:
    if not can_manage_committee_members(db_session(), current_user(), committee.id):
        abort(403)


# ---------- Committees ----------
@bp.get("/committees")
@require_permission("committees.view")
def committees_list():
    committees = db_session().query(Committee).order_by(Committee.name.asc()).all()
    return jsonify({"committees": [serialize_committee(c) for c in committees]})


@bp.get("/committees/<int:committee_id>")
@require_permission("committees.view")
def committee_detail(committee_id: int):
    c = _get_committee_or_404(committee_id)
    return jsonify({"committee": serialize_committee(c, include_members=True)})


@bp.post("/committees")
@require_permission("committees.manage")
def committee_create():
    s = db_session()
    c = create_committee(s, json_body(), current_user())
    s.commit()
    return jsonify({"committee": serialize_committee(c, include_members=True)}), 201


@bp.patch("/committees/<int:committee_id>")
@require_permission("committees.manage")
def committee_update(committee_id: int):
    s = db_session()
    c = _get_committee_or_404(committee_id)
    update_committee(s, c, json_body(), current_user())
    s.commit()
    return jsonify({"committee": serialize_committee(c)})


@bp.patch("/committees/<int:committee_id>/description")
@require_login
def committee_update_description(committee_id: int):
    s = db_session()
    c = _get_committee_or_404(committee_id)
    update_committee_description(s, c, json_body().get("description"), current_user())
    s.commit()
    return jsonify({"committee": serialize_committee(c)})


@bp.delete("/committees/<int:committee_id>")
@require_permission("committees.manage")
def committee_delete(committee_id: int):
    s = db_session()
    c = _get_committee_or_404(committee_id)
    delete_committee(s, c, current_user())
    s.commit()
    return jsonify({"ok": True})


# ---------- Committee roles ----------
@bp.get("/committee-roles")
@require_permission("committees.view")
def committee_roles_list():
    roles = db_session().query(CommitteeRole).order_by(CommitteeRole.name.asc()).all()
    return jsonify({"roles": [serialize_committee_role(r) for r in roles]})


@bp.get("/committee-roles/<int:role_id>")
@require_permission("committees.view")
def committee_role_detail(role_id: int):
    return jsonify({"role": serialize_committee_role(_get_role_or_404(role_id))})


@bp.post("/committee-roles")
@require_permission("committees.manage")
def committee_role_create():
    s = db_session()
    r = create_committee_role(s, json_body(), current_user())
    s.commit()
    return jsonify({"role": serialize_committee_role(r)}), 201


@bp.patch("/committee-roles/<int:role_id>")
@require_permission("committees.manage")
def committee_role_update(role_id: int):
    s = db_session()
    r = _get_role_or_404(role_id)
    update_committee_role(s, r, json_body(), current_user())
    s.commit()
    return jsonify({"role": serialize_committee_role(r)})


@bp.delete("/committee-roles/<int:role_id>")
@require_permission("committees.manage")
def committee_role_delete(role_id: int):
    s = db_session()
    r = _get_role_or_404(role_id)
    delete_committee_role(s, r, current_user())
    s.commit()
    return jsonify({"ok": True})


# ---------- Committee members ----------
@bp.get("/committees/<int:committee_id>/members")
@require_permission("committees.view")
def committee_members_list(committee_id: int):
    s = db_session()
    c = _get_committee_or_404(committee_id)
    rows = list_committee_members(s, c, include_inactive=parse_bool(request.args.get("include_inactive")))
    return jsonify({"committee_id": c.id, "members": [serialize_membership(cm) for cm in rows]})


@bp.post("/committees/<int:committee_id>/members")
@require_permission("committees.members")
def committee_members_add(committee_id: int):
    s = db_session()
    c = _get_committee_or_404(committee_id)
    _require_member_management(c)
    cm = add_committee_member(s, c, json_body(), current_user())
    s.commit()
    return jsonify({"membership": serialize_membership(cm)}), 201


@bp.patch("/committees/<int:committee_id>/members/<int:membership_id>")
@require_permission("committees.members")
def committee_members_update(committee_id: int, membership_id: int):
    s = db_session()
    c = _get_committee_or_404(committee_id)
    _require_member_management(c)
    cm = update_committee_member(s, get_membership(s, c, membership_id), json_body(), current_user())
    s.commit()
    return jsonify({"membership": serialize_membership(cm)})


@bp.delete("/committees/<int:committee_id>/members/<int:membership_id>")
@require_permission("committees.members")
def committee_members_remove(committee_id: int, membership_id: int):
    s = db_session()
    c = _get_committee_or_404(committee_id)
    _require_member_management(c)
    cm = remove_committee_member(s, get_membership(s, c, membership_id), current_user())
    s.commit()
    return jsonify({"membership": serialize_membership(cm)})


@bp.get("/me/committee-roles")
@require_login
def my_committee_roles():
    rows = my_committee_memberships(db_session(), current_user())
    return jsonify({"committees": [serialize_membership(cm) for cm in rows]})
