from __future__ import annotations

from flask import Blueprint, abort, jsonify, request

from app.portal.db import db_session
from app.portal.modules.messaging.models import Message, MessageGroup
from app.portal.modules.messaging.service import (
    add_group_members,
    can_read_group,
    create_group,
    delete_group,
    group_messages,
    inbox,
    mark_read,
    remove_group_member,
    send_direct_message,
    send_group_message,
    sent_messages,
    serialize_group,
    serialize_group_member,
    serialize_message,
    unread_count,
    update_group,
)
from app.portal.rbac import current_user, require_login, require_permission
from app.portal.utils import json_body, parse_bool

bp = Blueprint("messaging", __name__)


def _get_group_or_404(group_id: int) -> MessageGroup:
    grp = db_session().get(MessageGroup, group_id)
    if not grp:
        abort(404)
    return grp


# ---------- Direct messages ----------
@bp.post("/messages")
@require_permission("messages.send")
def messages_send():
    s = db_session()
    msg = send_direct_message(s, current_user(), json_body())
    s.commit()
    return jsonify({"message": serialize_message(msg)}), 201


@bp.get("/messages/inbox")
@require_login
def messages_inbox():
    s = db_session()
    user = current_user()
    rows = inbox(s, user, unread_only=parse_bool(request.args.get("unread")))
    return jsonify({"messages": [serialize_message(m) for m in rows], "unread_count": unread_count(s, user)})


@bp.get("/messages/sent")
@require_login
def messages_sent():
    rows = sent_messages(db_session(), current_user())
    return jsonify({"messages": [serialize_message(m) for m in rows]})


@bp.post("/messages/<int:message_id>/read")
@require_login
def messages_mark_read(message_id: int):
    s = db_session()
    msg = s.get(Message, message_id)
    if not msg:
        abort(404)
    mark_read(s, msg, current_user())
    s.commit()
    return jsonify({"message": serialize_message(msg)})


# ---------- Groups ----------
@bp.get("/message-groups")
@require_permission("messages.groups")
def groups_list():
    groups = db_session().query(MessageGroup).order_by(MessageGroup.name.asc()).all()
    return jsonify({"groups": [serialize_group(g) for g in groups]})


@bp.post("/message-groups")
@require_permission("messages.groups")
def groups_create():
    s = db_session()
    grp = create_group(s, json_body(), current_user())
    s.commit()
    return jsonify({"group": serialize_group(grp, include_members=True)}), 201


@bp.get("/message-groups/<int:group_id>")
@require_permission("messages.groups")
def groups_detail(group_id: int):
    return jsonify({"group": serialize_group(_get_group_or_404(group_id), include_members=True)})


@bp.patch("/message-groups/<int:group_id>")
@require_permission("messages.groups")
def groups_update(group_id: int):
    s = db_session()
    grp = _get_group_or_404(group_id)
    update_group(s, grp, json_body(), current_user())
    s.commit()
    return jsonify({"group": serialize_group(grp)})


@bp.delete("/message-groups/<int:group_id>")
@require_permission("messages.groups")
def groups_delete(group_id: int):
    s = db_session()
    delete_group(s, _get_group_or_404(group_id), current_user())
    s.commit()
    return jsonify({"ok": True})


@bp.get("/message-groups/<int:group_id>/members")
@require_permission("messages.groups")
def groups_members_list(group_id: int):
    grp = _get_group_or_404(group_id)
    return jsonify({"group_id": grp.id, "members": [serialize_group_member(gm) for gm in grp.members or []]})


@bp.post("/message-groups/<int:group_id>/members")
@require_permission("messages.groups")
def groups_members_add(group_id: int):
    s = db_session()
    grp = _get_group_or_404(group_id)
    body = json_body()
    ids = body.get("member_ids")
    if ids is None and body.get("member_id") is not None:
        ids = [body.get("member_id")]
    result = add_group_members(s, grp, ids, current_user())
    s.commit()
    return jsonify({**result, "group": serialize_group(grp, include_members=True)})


@bp.delete("/message-groups/<int:group_id>/members/<int:member_id>")
@require_permission("messages.groups")
def groups_members_remove(group_id: int, member_id: int):
    s = db_session()
    grp = _get_group_or_404(group_id)
    remove_group_member(s, grp, member_id, current_user())
    s.commit()
    return jsonify({"ok": True})


@bp.post("/message-groups/<int:group_id>/messages")
@require_permission("messages.groups")
def groups_send(group_id: int):
    s = db_session()
    grp = _get_group_or_404(group_id)
    msg = send_group_message(s, grp, current_user(), json_body())
    s.commit()
    return jsonify({"message": serialize_message(msg)}), 201


@bp.get("/message-groups/<int:group_id>/messages")
@require_login
def groups_messages(group_id: int):
    s = db_session()
    grp = _get_group_or_404(group_id)
    if not can_read_group(s, grp, current_user()):
        abort(403)
    return jsonify({"group_id": grp.id, "messages": [serialize_message(m) for m in group_messages(s, grp)]})
