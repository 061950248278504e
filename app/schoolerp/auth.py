from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, abort, current_app, g, request
from sqlalchemy import func, or_

from app.schoolerp.access import load_access_matrix, permissions_for
from app.schoolerp.audit import record_event
from app.schoolerp.constants import ROLE_SUPERADMIN
from app.schoolerp.db import db_session
from app.schoolerp.models import School, SchoolUser, SuperAdmin
from app.schoolerp.security import (
    MIN_PASSWORD_LENGTH,
    USER_TYPE_SCHOOL,
    AuthError,
    bearer_token,
    create_access_token,
    decode_access_token,
    hash_password,
    verify_password,
)
from app.schoolerp.tenancy import school_db_session
from app.schoolerp.utils import json_body, ok

bp = Blueprint("auth", __name__)


def _login_attempts() -> dict[str, list[datetime]]:
    return current_app.extensions.setdefault("login_attempts", defaultdict(list))


def _check_rate_limit(ip: str) -> bool:
    attempts = _login_attempts()
    window = int(current_app.config.get("LOGIN_RATE_WINDOW") or 300)
    limit = int(current_app.config.get("LOGIN_RATE_LIMIT") or 5)
    cutoff = datetime.utcnow() - timedelta(seconds=window)
    attempts[ip] = [t for t in attempts[ip] if t > cutoff]
    return len(attempts[ip]) >= limit


def _record_attempt(ip: str) -> None:
    _login_attempts()[ip].append(datetime.utcnow())


def _throttle() -> str:
    ip = request.remote_addr or "unknown"
    if _check_rate_limit(ip):
        current_app.logger.warning("Login throttled ip=%s request_id=%s", ip, getattr(g, "request_id", None))
        abort(429, description="Too many login attempts. Please try again later.")
    _record_attempt(ip)
    return ip


def _load_school_user(payload: dict) -> SchoolUser | None:
    code = str(payload.get("school_code") or "").strip().upper()
    school = db_session().query(School).filter(School.code == code).one_or_none()
    if school is None or not school.is_active or not school.database_created:
        return None
    user = school_db_session(code).query(SchoolUser).filter(SchoolUser.user_id == payload["sub"]).one_or_none()
    if user is None or not user.is_active:
        return None
    user.school_code = school.code
    return user


def load_current_user() -> None:
    """
    Loads g.current_user from the bearer token.
    Also assigns a per-request request_id (for audit/log correlation).
    A rejected token leaves g.current_user None and keeps the reason in g.auth_error.
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None
    g.auth_error = None
    if request.path.startswith(("/health", "/healthz")):
        return

    token = bearer_token(request.headers.get("Authorization"))
    if not token:
        return
    try:
        payload = decode_access_token(token)
    except AuthError as e:
        g.auth_error = str(e)
        return

    if payload.get("user_type") == USER_TYPE_SCHOOL:
        user = _load_school_user(payload)
    elif payload["role"] == ROLE_SUPERADMIN:
        user = db_session().query(SuperAdmin).filter(SuperAdmin.email == payload["sub"]).one_or_none()
        if user is not None and not user.is_active:
            user = None
    else:
        g.auth_error = "Invalid token payload"
        return

    if user is None:
        g.auth_error = "User not found or inactive"
        return
    g.current_user = user


def current_user_or_401():
    user = getattr(g, "current_user", None)
    if user is None:
        abort(401, description=g.get("auth_error") or "Authentication required")
    return user


def _superadmin_profile(admin: SuperAdmin) -> dict:
    return {
        "id": admin.id,
        "email": admin.email,
        "role": ROLE_SUPERADMIN,
        "last_login": admin.last_login.isoformat() if admin.last_login else None,
    }


def _profile(user) -> dict:
    if user.role == ROLE_SUPERADMIN:
        return _superadmin_profile(user)
    from app.schoolerp.modules.users.service import user_to_dict

    data = user_to_dict(user)
    data["school_code"] = user.school_code
    return data


def _permissions(user) -> dict:
    if user.role == ROLE_SUPERADMIN:
        return permissions_for(ROLE_SUPERADMIN, None)
    return permissions_for(user.role, load_access_matrix(school_db_session(user.school_code)))


@bp.post("/login")
def login():
    data = json_body()
    email = str(data.get("email") or "").strip().lower()
    password = str(data.get("password") or "")
    if not email or not password:
        abort(400, description="Email and password are required")
    ip = _throttle()

    s = db_session()
    admin = s.query(SuperAdmin).filter(func.lower(SuperAdmin.email) == email).one_or_none()
    if not admin or not verify_password(admin.password_hash, password):
        record_event(s, actor=None, action="auth.login_failed", entity_type="SuperAdmin", entity_id=email, reason="Invalid credentials")
        s.commit()
        current_app.logger.info("Superadmin login failed email=%s", email)
        abort(400, description="Invalid credentials")
    if not admin.is_active:
        abort(400, description="Account is deactivated")

    admin.last_login = datetime.utcnow()
    _login_attempts()[ip].clear()
    record_event(s, actor=admin, action="auth.login", entity_type="SuperAdmin", entity_id=admin.email)
    s.commit()
    current_app.logger.info("Superadmin login email=%s", admin.email)
    token = create_access_token(admin.email, ROLE_SUPERADMIN)
    return ok(token=token, user=_superadmin_profile(admin), permissions=permissions_for(ROLE_SUPERADMIN, None))


@bp.post("/school-login")
def school_login():
    data = json_body()
    identifier = str(data.get("identifier") or "").strip()
    password = str(data.get("password") or "")
    code = str(data.get("school_code") or "").strip().upper()
    if not identifier or not password or not code:
        abort(400, description="Identifier, password and school code are required")
    ip = _throttle()

    central = db_session()
    school = central.query(School).filter(School.code == code).one_or_none()
    if school is None or not school.database_created:
        record_event(central, actor=None, action="auth.login_failed", entity_type="School", entity_id=code, reason="Unknown school")
        central.commit()
        abort(400, description="Invalid credentials")
    if not school.is_active:
        abort(400, description="School account is deactivated. Contact the platform administrator.")

    s = school_db_session(school.code)
    ident = identifier.lower()
    user = (
        s.query(SchoolUser)
        .filter(or_(func.lower(SchoolUser.user_id) == ident, func.lower(SchoolUser.email) == ident))
        .one_or_none()
    )
    if user is None:
        record_event(s, actor=None, action="auth.login_failed", entity_type="SchoolUser", entity_id=identifier, reason="Unknown user")
        s.commit()
        abort(400, description="Invalid credentials")
    if not user.is_active:
        abort(400, description="Account is deactivated. Contact your school administrator.")
    if not verify_password(user.password_hash, password):
        user.login_attempts = (user.login_attempts or 0) + 1
        record_event(s, actor=None, action="auth.login_failed", entity_type="SchoolUser", entity_id=user.user_id, reason="Invalid password")
        s.commit()
        current_app.logger.info("School login failed school=%s user=%s", school.code, user.user_id)
        abort(400, description="Invalid credentials")

    user.login_attempts = 0
    user.last_login = datetime.utcnow()
    user.school_code = school.code
    _login_attempts()[ip].clear()
    record_event(s, actor=user, action="auth.login", entity_type="SchoolUser", entity_id=user.user_id)
    s.commit()
    current_app.logger.info("School login school=%s user=%s role=%s", school.code, user.user_id, user.role)

    token = create_access_token(user.user_id, user.role, school_code=school.code)
    return ok(
        token=token,
        user=_profile(user),
        school={"id": school.id, "name": school.name, "code": school.code},
        password_change_required=bool(user.password_change_required),
        permissions=permissions_for(user.role, load_access_matrix(s)),
    )


@bp.get("/me")
def me():
    user = current_user_or_401()
    return ok(user=_profile(user), permissions=_permissions(user))


@bp.post("/change-password")
def change_password():
    user = current_user_or_401()
    data = json_body()
    current = str(data.get("current_password") or "")
    new = str(data.get("new_password") or "")
    if not current or not new:
        abort(400, description="current_password and new_password are required")
    if len(new) < MIN_PASSWORD_LENGTH:
        abort(400, description=f"New password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not verify_password(user.password_hash, current):
        abort(400, description="Current password is incorrect")

    s = db_session() if user.role == ROLE_SUPERADMIN else school_db_session(user.school_code)
    user.password_hash = hash_password(new)
    if user.role != ROLE_SUPERADMIN:
        user.password_change_required = False
        user.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="auth.password_change", entity_type=type(user).__name__, entity_id=user.actor_id)
    s.commit()
    return ok(message="Password changed successfully")
