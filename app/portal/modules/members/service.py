from __future__ import annotations

import hashlib
import json
import logging
import re
import time
from collections import Counter
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_
from werkzeug.utils import secure_filename

from app.portal.audit import record_event
from app.portal.constants import (
    CHAIR_ROLE_NAME,
    COCHAIR_ROLE_NAME,
    DEMOGRAPHIC_FIELDS,
    DIVERSITY_COMMITTEE_KEYWORD,
)
from app.portal.errors import ConflictError, ValidationError
from app.portal.rbac import user_has_permission

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.portal.models import User
    from app.portal.modules.members.models import Member, MemberImport
    from app.portal.storage import Storage

logger = logging.getLogger(__name__)

FIRST_MEMBER_NUMBER = 1001
BATCH_SIZE = 50

CONTACT_FIELDS = (
    "member_number",
    "category",
    "first_name",
    "last_name",
    "known_as",
    "province",
    "affiliation",
    "occupation",
    "home_phone",
    "cell_phone",
    "email",
    "website",
    "web_reel",
    "instagram",
)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(raw: Any) -> str | None:
    v = str(raw or "").strip().lower()
    return v or None


def _clean(raw: Any) -> str | None:
    if raw is None:
        return None
    v = str(raw).strip()
    return v or None


def _clean_languages(raw: Any) -> list[str] | None:
    if raw in (None, ""):
        return None
    if isinstance(raw, str):
        raw = [p for p in raw.split(",")]
    return [str(p).strip() for p in raw if str(p).strip()] or None


def serialize_member(m: "Member", *, full: bool = True) -> dict:
    d: dict[str, Any] = {"id": m.id, "display_name": m.display_name}
    for f in CONTACT_FIELDS:
        d[f] = getattr(m, f)
    if full:
        for f in DEMOGRAPHIC_FIELDS:
            d[f] = getattr(m, f)
    d["is_active"] = m.is_active
    d["has_portal_access"] = m.has_portal_access
    d["imported_at"] = m.imported_at.isoformat() if m.imported_at else None
    return d


def validate_member_payload(payload: dict, *, partial: bool = False) -> list[str]:
    """Validate member create/update payload. Returns list of errors."""
    errors: list[str] = []
    unknown = set(payload) - set(CONTACT_FIELDS) - set(DEMOGRAPHIC_FIELDS) - {"is_active", "has_portal_access"}
    if unknown:
        errors.append(f"Unknown member fields: {', '.join(sorted(unknown))}")
    if not partial and not (_clean(payload.get("first_name")) or _clean(payload.get("last_name"))):
        errors.append("First name or last name is required.")
    email = normalize_email(payload.get("email"))
    if email and not _EMAIL_RE.match(email):
        errors.append("Email is invalid.")
    langs = payload.get("languages_spoken")
    if langs not in (None, "") and not isinstance(langs, (list, str)):
        errors.append("languages_spoken must be a list of strings.")
    return errors


def find_member_by_email(s: "Session", email: str | None) -> "Member | None":
    from app.portal.modules.members.models import Member

    email = normalize_email(email)
    if not email:
        return None
    return s.query(Member).filter(func.lower(Member.email) == email).order_by(Member.id.asc()).first()


def can_view_demographics(s: "Session", user: "User | None") -> bool:
    """
    Full demographic access: the members.demographics permission, or an active
    Chair/Co-Chair seat on a committee whose name mentions diversity.
    """
    if user is None:
        return False
    if user_has_permission(user, "members.demographics"):
        return True

    from app.portal.modules.committees.models import Committee, CommitteeMember, CommitteeRole

    seat = (
        s.query(CommitteeMember.id)
        .join(Committee, Committee.id == CommitteeMember.committee_id)
        .join(CommitteeRole, CommitteeRole.id == CommitteeMember.role_id)
        .filter(
            CommitteeMember.user_id == user.id,
            CommitteeMember.end_date.is_(None),
            CommitteeRole.name.in_((CHAIR_ROLE_NAME, COCHAIR_ROLE_NAME)),
            func.lower(Committee.name).contains(DIVERSITY_COMMITTEE_KEYWORD),
        )
        .first()
    )
    return seat is not None


def next_member_number(s: "Session") -> str:
    from app.portal.modules.members.models import Member

    highest = FIRST_MEMBER_NUMBER - 1
    for (num,) in s.query(Member.member_number).filter(Member.member_number.isnot(None)):
        raw = (num or "").strip()
        if raw.isdigit():
            highest = max(highest, int(raw))
    return str(highest + 1)


def _assert_email_free(s: "Session", email: str | None, *, exclude_id: int | None = None) -> None:
    if not email:
        return
    existing = find_member_by_email(s, email)
    if existing is not None and existing.id != exclude_id:
        raise ConflictError("A member with this email already exists.", details={"member_id": existing.id})


def _apply_fields(m: "Member", payload: dict) -> dict[str, dict]:
    changes: dict[str, dict] = {}
    for f in CONTACT_FIELDS + DEMOGRAPHIC_FIELDS:
        if f not in payload:
            continue
        if f == "email":
            new = normalize_email(payload[f])
        elif f == "languages_spoken":
            new = _clean_languages(payload[f])
        else:
            new = _clean(payload[f])
        old = getattr(m, f)
        if new != old:
            changes[f] = {"old": old, "new": new}
            setattr(m, f, new)
    for f in ("is_active", "has_portal_access"):
        if f in payload and bool(payload[f]) != getattr(m, f):
            changes[f] = {"old": getattr(m, f), "new": bool(payload[f])}
            setattr(m, f, bool(payload[f]))
    return changes


def create_member(s: "Session", payload: dict, user: "User | None") -> "Member":
    from app.portal.modules.members.models import Member

    errors = validate_member_payload(payload)
    if errors:
        raise ValidationError(errors)
    email = normalize_email(payload.get("email"))
    _assert_email_free(s, email)

    now = datetime.utcnow()
    member = Member(is_active=True, has_portal_access=False, created_at=now, updated_at=now)
    _apply_fields(member, payload)
    if not member.member_number:
        member.member_number = next_member_number(s)
    s.add(member)
    s.flush()

    record_event(
        s,
        actor=user,
        action="member.create",
        entity_type="Member",
        entity_id=str(member.id),
        metadata={"member_number": member.member_number, "email": member.email},
    )
    return member


def update_member(s: "Session", member: "Member", payload: dict, user: "User | None") -> "Member":
    errors = validate_member_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)
    if "email" in payload:
        _assert_email_free(s, normalize_email(payload.get("email")), exclude_id=member.id)

    changes = _apply_fields(member, payload)
    if changes:
        member.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="member.edit",
            entity_type="Member",
            entity_id=str(member.id),
            # Demographic values stay out of the audit trail.
            metadata={"fields": sorted(changes)},
        )
    return member


def delete_member(s: "Session", member: "Member", user: "User | None") -> None:
    record_event(
        s,
        actor=user,
        action="member.delete",
        entity_type="Member",
        entity_id=str(member.id),
        metadata={"member_number": member.member_number, "email": member.email},
    )
    s.delete(member)
    s.flush()


def query_members(s: "Session", *, search: str = "", category: str = "", active_only: bool = False):
    from app.portal.modules.members.models import Member

    q = s.query(Member)
    if search:
        like = f"%{search}%"
        q = q.filter(
            or_(
                Member.first_name.ilike(like),
                Member.last_name.ilike(like),
                Member.known_as.ilike(like),
                Member.email.ilike(like),
                Member.member_number.ilike(like),
                Member.occupation.ilike(like),
                Member.affiliation.ilike(like),
            )
        )
    if category:
        q = q.filter(func.lower(Member.category) == category.strip().lower())
    if active_only:
        q = q.filter(Member.is_active.is_(True))
    return q.order_by(Member.last_name.asc(), Member.first_name.asc(), Member.id.asc())


def list_categories(s: "Session") -> list[str]:
    from app.portal.modules.members.models import Member

    rows = s.query(Member.category).filter(Member.category.isnot(None)).distinct().all()
    return sorted(r[0] for r in rows if r[0])


def member_statistics(s: "Session", *, full: bool) -> dict:
    from app.portal.modules.members.models import Member

    members = s.query(Member).all()
    stats: dict[str, Any] = {
        "total": len(members),
        "active": sum(1 for m in members if m.is_active),
        "with_portal_access": sum(1 for m in members if m.has_portal_access),
        "by_category": dict(Counter(m.category or "Unknown" for m in members)),
        "by_province": dict(Counter(m.province or "Unknown" for m in members)),
    }
    if full:
        demographics: dict[str, dict[str, int]] = {}
        for f in DEMOGRAPHIC_FIELDS:
            if f == "languages_spoken":
                counter: Counter = Counter()
                for m in members:
                    counter.update(m.languages_spoken or [])
                demographics[f] = dict(counter)
            else:
                demographics[f] = dict(Counter(getattr(m, f) or "Not specified" for m in members))
        stats["demographics"] = demographics
    return stats


def build_import_storage_key(sha256: str, filename: str, upload_date: date | None = None) -> str:
    if upload_date is None:
        upload_date = date.today()
    safe_filename = secure_filename(filename) or "members.csv"
    return f"member-imports/{upload_date.isoformat()}/{sha256[:12]}-{safe_filename}"


def import_members(
    s: "Session",
    file_bytes: bytes,
    filename: str,
    user: "User | None",
    *,
    storage: "Storage | None" = None,
    batch_size: int = BATCH_SIZE,
    delay: float = 0.0,
) -> "MemberImport":
    """
    Import a roster CSV in batches inside the caller's transaction.

    Rows whose email already exists (in the database or earlier in the file)
    are skipped. Rows without a member number keep it empty, as in the roster.
    """
    from app.portal.modules.members.models import Member, MemberImport
    from app.portal.modules.members.parsers.csv import parse_members_csv

    try:
        rows, parse_errors = parse_members_csv(file_bytes)
    except ValueError as e:
        raise ValidationError(str(e))

    sha256 = hashlib.sha256(file_bytes).hexdigest()
    existing = {e for (e,) in s.query(func.lower(Member.email)).filter(Member.email.isnot(None))}

    now = datetime.utcnow()
    pending: list[Member] = []
    skipped: list[dict] = []
    for row in rows:
        email = row.get("email")
        if email and email in existing:
            skipped.append({"email": email, "member_number": row.get("member_number")})
            continue
        if email:
            existing.add(email)
        pending.append(Member(**row, is_active=True, has_portal_access=False, imported_at=now, created_at=now, updated_at=now))

    batch_size = max(1, batch_size)
    for start in range(0, len(pending), batch_size):
        batch = pending[start : start + batch_size]
        s.add_all(batch)
        s.flush()
        logger.info(
            "Member import batch %s-%s of %s flushed",
            start + 1,
            start + len(batch),
            len(pending),
        )
        if delay and start + batch_size < len(pending):
            time.sleep(delay)

    storage_key = None
    if storage is not None:
        storage_key = build_import_storage_key(sha256, filename)
        storage.put_bytes(storage_key, file_bytes, content_type="text/csv")

    run = MemberImport(
        filename=secure_filename(filename) or "members.csv",
        storage_key=storage_key,
        sha256=sha256,
        total_rows=len(rows) + len(parse_errors),
        created_count=len(pending),
        skipped_count=len(skipped),
        error_count=len(parse_errors),
        errors_json=json.dumps([{"row": e.row_number, "message": e.message} for e in parse_errors]) if parse_errors else None,
        imported_by_user_id=user.id if user else None,
        created_at=now,
    )
    s.add(run)
    s.flush()

    record_event(
        s,
        actor=user,
        action="member.import",
        entity_type="MemberImport",
        entity_id=str(run.id),
        metadata={
            "filename": run.filename,
            "sha256": sha256,
            "created": run.created_count,
            "skipped": run.skipped_count,
            "errors": run.error_count,
        },
    )
    return run


def serialize_import(run: "MemberImport") -> dict:
    return {
        "id": run.id,
        "filename": run.filename,
        "storage_key": run.storage_key,
        "sha256": run.sha256,
        "total_rows": run.total_rows,
        "created": run.created_count,
        "skipped": run.skipped_count,
        "errors": json.loads(run.errors_json) if run.errors_json else [],
        "imported_by_user_id": run.imported_by_user_id,
        "created_at": run.created_at.isoformat(),
    }
