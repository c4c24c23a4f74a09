from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_

from app.portal.audit import record_event
from app.portal.errors import ConflictError, NotFound, PermissionDenied, ValidationError
from app.portal.rbac import user_has_permission
from app.portal.utils import iso, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.portal.models import User
    from app.portal.modules.messaging.models import Message, MessageGroup, MessageGroupMember

MAX_MESSAGE_LENGTH = 10_000


def serialize_message(m: "Message") -> dict:
    sender = m.from_user
    return {
        "id": m.id,
        "from_user_id": m.from_user_id,
        "from_name": sender.display_name if sender else None,
        "to_user_id": m.to_user_id,
        "to_group_id": m.to_group_id,
        "content": m.content,
        "read": m.read,
        "created_at": iso(m.created_at),
    }


def serialize_group_member(gm: "MessageGroupMember") -> dict:
    m = gm.member
    return {
        "id": gm.id,
        "member_id": gm.member_id,
        "display_name": m.display_name if m else None,
        "email": m.email if m else None,
        "added_at": iso(gm.added_at),
    }


def serialize_group(grp: "MessageGroup", *, include_members: bool = False) -> dict:
    d = {
        "id": grp.id,
        "name": grp.name,
        "description": grp.description,
        "member_count": len(grp.members or []),
        "created_by_user_id": grp.created_by_user_id,
        "created_at": iso(grp.created_at),
    }
    if include_members:
        d["members"] = [serialize_group_member(gm) for gm in grp.members or []]
    return d


def _clean_content(raw: Any) -> str:
    content = str(raw or "").strip()
    if not content:
        raise ValidationError("Message content is required.")
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message content must be at most {MAX_MESSAGE_LENGTH} characters.")
    return content


def _member_group_ids(s: "Session", user: "User") -> list[int]:
    """Groups whose membership includes the member record matching the user's email."""
    from app.portal.modules.members.service import find_member_by_email
    from app.portal.modules.messaging.models import MessageGroupMember

    member = find_member_by_email(s, user.email)
    if member is None:
        return []
    return [gid for (gid,) in s.query(MessageGroupMember.group_id).filter(MessageGroupMember.member_id == member.id)]


# ---------- Direct messages ----------
def send_direct_message(s: "Session", sender: "User", payload: dict) -> "Message":
    from app.portal.models import User
    from app.portal.modules.messaging.models import Message

    to_user_id = parse_int(payload.get("to_user_id"), "to_user_id")
    if to_user_id is None:
        raise ValidationError("to_user_id is required.")
    content = _clean_content(payload.get("content"))
    recipient = s.get(User, to_user_id)
    if recipient is None or not recipient.is_active:
        raise NotFound("Recipient not found.")

    msg = Message(from_user_id=sender.id, to_user_id=recipient.id, content=content, read=False, created_at=datetime.utcnow())
    s.add(msg)
    s.flush()
    record_event(s, actor=sender, action="message.send", entity_type="Message", entity_id=str(msg.id), metadata={"to_user_id": recipient.id})
    return msg


def inbox(s: "Session", user: "User", *, unread_only: bool = False) -> list["Message"]:
    from app.portal.modules.messaging.models import Message

    group_ids = _member_group_ids(s, user)
    cond = Message.to_user_id == user.id
    if group_ids:
        cond = or_(cond, Message.to_group_id.in_(group_ids))
    q = s.query(Message).filter(cond)
    if unread_only:
        q = q.filter(Message.read.is_(False))
    return q.order_by(Message.created_at.desc(), Message.id.desc()).all()


def sent_messages(s: "Session", user: "User") -> list["Message"]:
    from app.portal.modules.messaging.models import Message

    return (
        s.query(Message)
        .filter(Message.from_user_id == user.id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .all()
    )


def unread_count(s: "Session", user: "User") -> int:
    from app.portal.modules.messaging.models import Message

    return int(
        s.query(func.count(Message.id)).filter(Message.to_user_id == user.id, Message.read.is_(False)).scalar() or 0
    )


def mark_read(s: "Session", msg: "Message", user: "User") -> "Message":
    # The read flag belongs to the single recipient of a direct message.
    if msg.to_user_id != user.id:
        raise PermissionDenied("Only the recipient can mark this message as read.")
    if not msg.read:
        msg.read = True
        s.flush()
    return msg


# ---------- Groups ----------
def validate_group_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors: list[str] = []
    if not partial or "name" in payload:
        if not str(payload.get("name") or "").strip():
            errors.append("Group name is required.")
    ids = payload.get("member_ids")
    if ids is not None and not isinstance(ids, list):
        errors.append("member_ids must be a list.")
    return errors


def create_group(s: "Session", payload: dict, user: "User") -> "MessageGroup":
    from app.portal.modules.messaging.models import MessageGroup

    errors = validate_group_payload(payload)
    if errors:
        raise ValidationError(errors)
    now = datetime.utcnow()
    grp = MessageGroup(
        name=str(payload.get("name")).strip(),
        description=str(payload.get("description") or "").strip() or None,
        created_by_user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    s.add(grp)
    s.flush()
    record_event(s, actor=user, action="message_group.create", entity_type="MessageGroup", entity_id=str(grp.id), metadata={"name": grp.name})
    if payload.get("member_ids"):
        add_group_members(s, grp, payload["member_ids"], user)
    return grp


def update_group(s: "Session", grp: "MessageGroup", payload: dict, user: "User") -> "MessageGroup":
    errors = validate_group_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)
    changes: dict[str, dict] = {}
    if "name" in payload:
        name = str(payload.get("name")).strip()
        if name != grp.name:
            changes["name"] = {"old": grp.name, "new": name}
            grp.name = name
    if "description" in payload:
        desc = str(payload.get("description") or "").strip() or None
        if desc != grp.description:
            changes["description"] = {"old": grp.description, "new": desc}
            grp.description = desc
    if changes:
        grp.updated_at = datetime.utcnow()
        record_event(s, actor=user, action="message_group.update", entity_type="MessageGroup", entity_id=str(grp.id), metadata={"changes": changes})
    return grp


def delete_group(s: "Session", grp: "MessageGroup", user: "User") -> None:
    record_event(s, actor=user, action="message_group.delete", entity_type="MessageGroup", entity_id=str(grp.id), metadata={"name": grp.name})
    s.delete(grp)
    s.flush()


def add_group_members(s: "Session", grp: "MessageGroup", member_ids: list[Any], user: "User") -> dict[str, list[int]]:
    """Add members by id. Ids already in the group are reported as skipped; unknown ids are a 404."""
    from app.portal.modules.members.models import Member
    from app.portal.modules.messaging.models import MessageGroupMember

    if not isinstance(member_ids, list) or not member_ids:
        raise ValidationError("member_ids must be a non-empty list.")
    wanted: list[int] = []
    for raw in member_ids:
        mid = parse_int(raw, "member_id")
        if mid is not None and mid not in wanted:
            wanted.append(mid)

    found = {m.id for m in s.query(Member).filter(Member.id.in_(wanted)).all()}
    missing = [mid for mid in wanted if mid not in found]
    if missing:
        raise NotFound("Some members were not found.", details={"missing_member_ids": missing})

    present = {gm.member_id for gm in grp.members or []}
    added: list[int] = []
    skipped: list[int] = []
    now = datetime.utcnow()
    for mid in wanted:
        if mid in present:
            skipped.append(mid)
            continue
        grp.members.append(MessageGroupMember(member_id=mid, added_by_user_id=user.id, added_at=now))
        added.append(mid)
    s.flush()
    if added:
        record_event(s, actor=user, action="message_group.add_members", entity_type="MessageGroup", entity_id=str(grp.id), metadata={"member_ids": added})
    return {"added": added, "skipped": skipped}


def remove_group_member(s: "Session", grp: "MessageGroup", member_id: int, user: "User") -> None:
    gm = next((x for x in grp.members or [] if x.member_id == member_id), None)
    if gm is None:
        raise NotFound("Member is not in this group.")
    grp.members.remove(gm)
    s.flush()
    record_event(s, actor=user, action="message_group.remove_member", entity_type="MessageGroup", entity_id=str(grp.id), metadata={"member_id": member_id})


def can_read_group(s: "Session", grp: "MessageGroup", user: "User") -> bool:
    return user_has_permission(user, "messages.groups") or grp.id in _member_group_ids(s, user)


def send_group_message(s: "Session", grp: "MessageGroup", sender: "User", payload: dict) -> "Message":
    from app.portal.modules.messaging.models import Message

    if not grp.members:
        raise ConflictError("This group has no members.")
    content = _clean_content(payload.get("content"))
    msg = Message(from_user_id=sender.id, to_group_id=grp.id, content=content, read=False, created_at=datetime.utcnow())
    s.add(msg)
    s.flush()
    record_event(
        s,
        actor=sender,
        action="message.send_group",
        entity_type="Message",
        entity_id=str(msg.id),
        metadata={"group_id": grp.id, "recipients": len(grp.members)},
    )
    return msg


def group_messages(s: "Session", grp: "MessageGroup") -> list["Message"]:
    from app.portal.modules.messaging.models import Message

    return (
        s.query(Message)
        .filter(Message.to_group_id == grp.id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .all()
    )
