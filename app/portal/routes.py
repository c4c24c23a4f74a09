from flask import Blueprint, current_app
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.portal.db import db_session

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """JSON status including a database round trip; 503 when the database is unreachable."""
    try:
        db_session().execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        current_app.logger.error("Health check database failure: %s", e)
        return {"ok": False, "database": "unavailable"}, 503
    return {"ok": True, "database": "ok"}


@bp.get("/healthz")
def healthz():
    """Liveness check. No DB access."""
    return "ok", 200
