"""
Session-bound CSRF tokens for the JSON API.

The SPA reads the token from /api/auth/me (or /api/auth/csrf) and echoes it on
every mutating request in the X-CSRF-Token header or a JSON csrf_token field.
"""
import secrets

from flask import Request, session

CSRF_SESSION_KEY = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"


def ensure_csrf_token() -> str:
    return session.setdefault(CSRF_SESSION_KEY, secrets.token_urlsafe(32))


def _submitted_token(req: Request) -> str | None:
    token = req.headers.get(CSRF_HEADER)
    if token or not req.is_json:
        return token
    body = req.get_json(silent=True)
    return body.get(CSRF_SESSION_KEY) if isinstance(body, dict) else None


def validate_csrf(req: Request) -> bool:
    token = _submitted_token(req)
    expected = session.get(CSRF_SESSION_KEY)
    return bool(token and expected and secrets.compare_digest(str(token), str(expected)))
