from __future__ import annotations

from flask import Blueprint, Response, abort, current_app, jsonify, request

from app.portal.db import db_session
from app.portal.errors import ValidationError
from app.portal.modules.members.models import Member, MemberImport
from app.portal.modules.members.service import (
    can_view_demographics,
    create_member,
    delete_member,
    find_member_by_email,
    import_members,
    list_categories,
    member_statistics,
    query_members,
    serialize_import,
    serialize_member,
    update_member,
)
from app.portal.rbac import current_user, require_login, require_permission
from app.portal.storage import StorageError, storage_from_config
from app.portal.utils import json_body, page_args, pagination, parse_bool

bp = Blueprint("members", __name__)


def _get_member_or_404(member_id: int) -> Member:
    member = db_session().get(Member, member_id)
    if not member:
        abort(404)
    return member


@bp.get("/members")
@require_permission("members.view")
def members_list():
    s = db_session()
    full = can_view_demographics(s, current_user())
    page, limit = page_args()

    q = query_members(
        s,
        search=(request.args.get("q") or request.args.get("search") or "").strip(),
        category=(request.args.get("category") or "").strip(),
        active_only=parse_bool(request.args.get("active_only")),
    )
    total = q.count()
    members = q.offset((page - 1) * limit).limit(limit).all()
    return jsonify(
        {
            "members": [serialize_member(m, full=full) for m in members],
            "pagination": pagination(page, limit, total),
            "access_level": "full" if full else "limited",
        }
    )


@bp.get("/members/statistics")
@require_permission("members.view")
def members_statistics():
    s = db_session()
    full = can_view_demographics(s, current_user())
    stats = member_statistics(s, full=full)
    stats["access_level"] = "full" if full else "limited"
    return jsonify(stats)


@bp.get("/members/categories")
@require_permission("members.view")
def members_categories():
    return jsonify({"categories": list_categories(db_session())})


@bp.get("/members/category/<category>")
@require_permission("members.view")
def members_by_category(category: str):
    s = db_session()
    full = can_view_demographics(s, current_user())
    members = query_members(s, category=category).all()
    return jsonify(
        {
            "category": category,
            "members": [serialize_member(m, full=full) for m in members],
            "access_level": "full" if full else "limited",
        }
    )


@bp.get("/members/<int:member_id>")
@require_permission("members.view")
def member_detail(member_id: int):
    s = db_session()
    member = _get_member_or_404(member_id)
    full = can_view_demographics(s, current_user())
    return jsonify({"member": serialize_member(member, full=full), "access_level": "full" if full else "limited"})


@bp.post("/members")
@require_permission("members.create")
def member_create():
    s = db_session()
    member = create_member(s, json_body(), current_user())
    s.commit()
    return jsonify({"member": serialize_member(member)}), 201


@bp.patch("/members/<int:member_id>")
@require_permission("members.edit")
def member_update(member_id: int):
    s = db_session()
    member = _get_member_or_404(member_id)
    update_member(s, member, json_body(), current_user())
    s.commit()
    return jsonify({"member": serialize_member(member)})


@bp.delete("/members/<int:member_id>")
@require_permission("members.delete")
def member_delete(member_id: int):
    s = db_session()
    member = _get_member_or_404(member_id)
    delete_member(s, member, current_user())
    s.commit()
    return jsonify({"ok": True})


@bp.post("/members/import")
@require_permission("members.import")
def members_import():
    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationError("No file uploaded.")
    if not f.filename.lower().endswith(".csv"):
        raise ValidationError("File must be a CSV.")
    file_bytes = f.read()
    if not file_bytes:
        raise ValidationError("Uploaded file is empty.")

    s = db_session()
    run = import_members(
        s,
        file_bytes,
        f.filename,
        current_user(),
        storage=storage_from_config(current_app.config),
    )
    s.commit()
    current_app.logger.info(
        "Member import %s: created=%s skipped=%s errors=%s",
        run.id,
        run.created_count,
        run.skipped_count,
        run.error_count,
    )
    return jsonify({"import": serialize_import(run)}), 201


@bp.get("/members/imports")
@require_permission("members.import")
def members_imports():
    s = db_session()
    runs = s.query(MemberImport).order_by(MemberImport.created_at.desc(), MemberImport.id.desc()).limit(50).all()
    return jsonify({"imports": [serialize_import(r) for r in runs]})


@bp.get("/members/imports/<int:import_id>/file")
@require_permission("members.import")
def members_import_file(import_id: int):
    run = db_session().get(MemberImport, import_id)
    if not run or not run.storage_key:
        abort(404)
    try:
        data = storage_from_config(current_app.config).get_bytes(run.storage_key)
    except StorageError as e:
        current_app.logger.warning("Archived import %s unavailable: %s", run.id, e)
        abort(404)
    return Response(
        data,
        mimetype="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{run.filename}"'},
    )


@bp.get("/me/member-profile")
@require_login
def my_member_profile():
    member = find_member_by_email(db_session(), current_user().email)
    if not member:
        return jsonify({"error": "No member record matches your email."}), 404
    return jsonify({"member": serialize_member(member)})
