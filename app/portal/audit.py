"""
Append-only audit trail.

Every state-changing service call records one AuditEvent in the caller's
transaction, so the event commits or rolls back with the change itself.
"""
from __future__ import annotations

import json
from datetime import date, datetime, time, timedelta
from typing import Any

from flask import g, has_app_context, has_request_context, request
from sqlalchemy.orm import Session

from app.portal.models import AuditEvent, User
from app.portal.utils import iso

AUDIT_PAGE_LIMIT = 200


def _request_context() -> tuple[str | None, str | None]:
    rid = g.get("request_id") if has_app_context() else None
    ip = request.remote_addr if has_request_context() else None
    return rid, ip


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    rid, ip = _request_context()
    ev = AuditEvent(
        request_id=request_id or rid,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        # Dates and Decimals in metadata are stored as their str() form.
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=ip,
    )
    s.add(ev)
    return ev


def query_events(
    s: Session,
    *,
    action: str = "",
    actor_email: str = "",
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int = AUDIT_PAGE_LIMIT,
) -> list[AuditEvent]:
    """Newest first. date_to is inclusive of the whole day."""
    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))
    return q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit).all()


def serialize_event(e: AuditEvent) -> dict:
    return {
        "id": e.id,
        "created_at": iso(e.created_at),
        "request_id": e.request_id,
        "actor_user_email": e.actor_user_email,
        "action": e.action,
        "entity_type": e.entity_type,
        "entity_id": e.entity_id,
        "reason": e.reason,
        "metadata": json.loads(e.metadata_json) if e.metadata_json else None,
        "client_ip": e.client_ip,
    }
