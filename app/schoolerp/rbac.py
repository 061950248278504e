from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, current_app, g

from app.schoolerp.access import LEVEL_NONE, effective_access, load_access_matrix
from app.schoolerp.constants import ROLE_SUPERADMIN
from app.schoolerp.tenancy import resolve_school_context, school_db_session


def _require_user():
    user = getattr(g, "current_user", None)
    if not user or not user.is_active:
        abort(401, description=getattr(g, "auth_error", None) or "Authentication required")
    return user


def current_access_matrix() -> dict[str, dict[str, str]] | None:
    """The resolved school's matrix, loaded once per request."""
    if getattr(g, "school", None) is None:
        return None
    cached = getattr(g, "access_matrix", None)
    if cached is None:
        cached = load_access_matrix(school_db_session())
        g.access_matrix = cached
    return cached


def access_level(user, feature: str) -> str:
    if user is None:
        return LEVEL_NONE
    if user.role == ROLE_SUPERADMIN:
        return effective_access(user.role, feature, None)
    return effective_access(user.role, feature, current_access_matrix())


def require_roles(*roles: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user = _require_user()
            if user.role not in roles:
                g.missing_permission = f"role:{'|'.join(roles)}"
                abort(403, description=f"Access denied. {user.role} role is not authorized for this action.")
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_school_context(optional: bool = False) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            _require_user()
            resolve_school_context(optional=optional)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_access(feature: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Checks the access matrix. Must run after require_school_context for school roles.
    Sets g.access_level so handlers can narrow results ("own", "self", "limited").
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user = _require_user()
            level = access_level(user, feature)
            if level == LEVEL_NONE:
                g.missing_permission = feature
                current_app.logger.info("Access matrix denied %s for %s", feature, user.role)
                abort(403, description=f"Access denied. {user.role} cannot use {feature}.")
            g.access_level = level
            return fn(*args, **kwargs)

        return wrapped

    return decorator
