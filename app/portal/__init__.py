import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request, session
from werkzeug.exceptions import HTTPException

from app.portal.config import load_config
from app.portal.db import init_db, teardown_db_session
from app.portal.errors import PortalError

# Mutating endpoints reachable without a CSRF token: the pre-login auth flow
# and the payment provider's webhook (authenticated by signature instead).
CSRF_EXEMPT_ENDPOINTS = frozenset(
    {
        "auth.login",
        "auth.logout",
        "auth.verify_member",
        "auth.register",
        "auth.password_reset_request",
        "auth.password_reset_complete",
        "payments.stripe_webhook",
    }
)

UNAUTHENTICATED_PREFIXES = ("/health", "/healthz")

REQUIRED_S3_SETTINGS = ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")


def _check_production_config(app: Flask) -> None:
    env = (app.config.get("ENV") or "").strip().lower()
    if env not in ("prod", "production"):
        return
    db_url = str(app.config.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is required in production.")
    if db_url.startswith("sqlite"):
        raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
    if str(app.config.get("SECRET_KEY") or "") in ("", "change-me"):
        raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
    if not app.config.get("STRIPE_WEBHOOK_SECRET"):
        app.logger.warning("STRIPE_WEBHOOK_SECRET is not set; webhook signatures will not be verified.")


def _register_blueprints(app: Flask) -> None:
    from app.portal.admin import bp as admin_bp
    from app.portal.auth import bp as auth_bp
    from app.portal.modules.committees.admin import bp as committees_bp
    from app.portal.modules.demographics.admin import bp as demographics_bp
    from app.portal.modules.members.admin import bp as members_bp
    from app.portal.modules.messaging.admin import bp as messaging_bp
    from app.portal.modules.payments.admin import bp as payments_bp
    from app.portal.modules.workshops.admin import bp as workshops_bp
    from app.portal.routes import bp as routes_bp

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    for bp in (admin_bp, members_bp, workshops_bp, payments_bp, committees_bp, messaging_bp, demographics_bp):
        app.register_blueprint(bp, url_prefix="/api")


def _install_request_hooks(app: Flask) -> None:
    from app.portal.auth import load_current_user
    from app.portal.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(UNAUTHENTICATED_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method not in ("POST", "PUT", "PATCH", "DELETE"):
            return None
        if (request.endpoint or "") in CSRF_EXEMPT_ENDPOINTS or validate_csrf(request):
            return None
        return jsonify({"error": "CSRF token missing or invalid."}), 400

    @app.before_request
    def _load_user():
        if request.path.startswith(UNAUTHENTICATED_PREFIXES):
            g.current_user = None
            return None
        return load_current_user()

    app.teardown_appcontext(teardown_db_session)


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(PortalError)
    def _err_portal(e: PortalError):
        if e.status_code >= 500:
            app.logger.error("%s (request_id=%s): %s", type(e).__name__, g.get("request_id"), e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(403)
    def _err_403(e):
        body = {"error": "Forbidden."}
        missing = g.get("missing_permission")
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, g.get("request_id"))
            body["missing_permission"] = missing
        return jsonify(body), 403

    @app.errorhandler(413)
    def _err_413(e):
        limit_mb = int(app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
        return jsonify({"error": f"File too large. Maximum size is {limit_mb}MB."}), 413

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):
        return jsonify({"error": e.description or e.name}), e.code or 500

    @app.errorhandler(500)
    def _err_500(e):
        app.logger.exception("Unhandled 500 (request_id=%s)", g.get("request_id"))
        return jsonify({"error": "Internal server error."}), 500


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    level = app.config.get("LOG_LEVEL") or "INFO"
    logging.basicConfig(level=level)
    app.logger.setLevel(level)

    _check_production_config(app)
    init_db(app)

    # Forked gunicorn workers must not share pooled connections with the parent.
    if hasattr(os, "register_at_fork"):
        def _dispose_engine_in_child():
            engine = app.extensions.get("sqlalchemy_engine")
            if engine:
                engine.dispose()

        os.register_at_fork(after_in_child=_dispose_engine_in_child)

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [k for k in REQUIRED_S3_SETTINGS if not app.config.get(k)]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    _register_blueprints(app)
    _install_request_hooks(app)
    _register_error_handlers(app)

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")
    return app
