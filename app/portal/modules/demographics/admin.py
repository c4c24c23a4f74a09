from __future__ import annotations

from flask import Blueprint, abort, jsonify

from app.portal.db import db_session
from app.portal.modules.demographics.models import DemographicChangeRequest
from app.portal.modules.demographics.service import (
    create_change_request,
    my_requests,
    pending_requests,
    review_change_request,
    serialize_change_request,
)
from app.portal.rbac import current_user, require_login, require_permission, user_has_permission
from app.portal.utils import json_body

bp = Blueprint("demographics", __name__)


def _get_request_or_404(request_id: int) -> DemographicChangeRequest:
    r = db_session().get(DemographicChangeRequest, request_id)
    if not r:
        abort(404)
    return r


@bp.post("/demographic-change-requests")
@require_login
def change_request_create():
    s = db_session()
    req = create_change_request(s, current_user(), json_body())
    s.commit()
    return jsonify({"request": serialize_change_request(req)}), 201


@bp.get("/demographic-change-requests/pending")
@require_permission("demographics.review")
def change_requests_pending():
    rows = pending_requests(db_session())
    return jsonify({"requests": [serialize_change_request(r) for r in rows]})


@bp.get("/demographic-change-requests/mine")
@require_login
def change_requests_mine():
    rows = my_requests(db_session(), current_user())
    return jsonify({"requests": [serialize_change_request(r) for r in rows]})


@bp.get("/demographic-change-requests/<int:request_id>")
@require_login
def change_request_detail(request_id: int):
    r = _get_request_or_404(request_id)
    user = current_user()
    if r.requester_id != user.id and not user_has_permission(user, "demographics.review"):
        abort(403)
    return jsonify({"request": serialize_change_request(r)})


@bp.patch("/demographic-change-requests/<int:request_id>")
@require_permission("demographics.review")
def change_request_review(request_id: int):
    s = db_session()
    r = _get_request_or_404(request_id)
    review_change_request(s, r, json_body(), current_user())
    s.commit()
    return jsonify({"request": serialize_change_request(r)})
