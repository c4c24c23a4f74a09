from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g

from app.portal.models import User


def user_permission_keys(user: User | None) -> list[str]:
    if not user:
        return []
    return sorted({p.key for r in user.roles or [] for p in r.permissions or []})


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    return permission_key in user_permission_keys(user)


def user_has_role(user: User | None, role_key: str) -> bool:
    return bool(user and user.is_active and role_key in user.role_keys)


def _active_user() -> User:
    user: User | None = g.get("current_user")
    if not user or not user.is_active:
        abort(401)
    return user


def current_user() -> User:
    return _active_user()


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        _active_user()
        return fn(*args, **kwargs)

    return wrapped


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """401 when signed out; 403 naming the missing permission otherwise."""

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            if not user_has_permission(_active_user(), permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
