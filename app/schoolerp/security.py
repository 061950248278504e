from __future__ import annotations

import secrets
from datetime import date, datetime, timedelta, timezone
from typing import Any

import jwt
from flask import current_app
from werkzeug.security import check_password_hash, generate_password_hash

from app.schoolerp.constants import ROLE_SUPERADMIN

PASSWORD_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnpqrstuvwxyz23456789"
MIN_PASSWORD_LENGTH = 8

USER_TYPE_SCHOOL = "school_user"


class AuthError(Exception):
    """Token problems; surfaced to clients as 401 with this message."""


def create_access_token(
    subject: str,
    role: str,
    *,
    school_code: str | None = None,
    expires_hours: int | None = None,
) -> str:
    cfg = current_app.config
    now = datetime.now(timezone.utc)
    hours = expires_hours if expires_hours is not None else int(cfg.get("JWT_EXPIRES_HOURS") or 24)
    payload: dict[str, Any] = {
        "sub": subject,
        "role": role,
        "iat": now,
        "exp": now + timedelta(hours=hours),
    }
    if role != ROLE_SUPERADMIN:
        payload["school_code"] = school_code
        payload["user_type"] = USER_TYPE_SCHOOL
    return jwt.encode(payload, cfg["JWT_SECRET"], algorithm=cfg.get("JWT_ALGORITHM") or "HS256")


def decode_access_token(token: str) -> dict[str, Any]:
    cfg = current_app.config
    try:
        payload = jwt.decode(token, cfg["JWT_SECRET"], algorithms=[cfg.get("JWT_ALGORITHM") or "HS256"])
    except jwt.ExpiredSignatureError as e:
        raise AuthError("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise AuthError("Invalid token") from e
    if not payload.get("sub") or not payload.get("role"):
        raise AuthError("Invalid token payload")
    if payload.get("user_type") == USER_TYPE_SCHOOL and not payload.get("school_code"):
        raise AuthError("Invalid token payload")
    return payload


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password_hash: str | None, password: str) -> bool:
    if not password_hash or not password:
        return False
    return check_password_hash(password_hash, password)


def generate_random_password(length: int = 8) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def password_from_date_of_birth(dob: date | str | None) -> str:
    """Students' initial password is their birth date as DDMMYYYY."""
    if isinstance(dob, str):
        try:
            dob = date.fromisoformat(dob.strip())
        except ValueError:
            dob = None
    if not isinstance(dob, date):
        return generate_random_password()
    return dob.strftime("%d%m%Y")
