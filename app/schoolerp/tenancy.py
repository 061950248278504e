"""
Per-school database routing.

Every school gets its own physical database, named from its code
(``NPS`` -> ``school_nps``) and reached through SCHOOL_DATABASE_URL_TEMPLATE.
Engines are created lazily and cached for the life of the process.
"""
from __future__ import annotations

import logging
import re
import threading
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime

from flask import Flask, abort, current_app, g, request
from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.schoolerp.constants import ROLE_SUPERADMIN, SCHOOL_ROLES
from app.schoolerp.db import create_db_engine, db_session, make_sessionmaker

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9]")


class TenantError(RuntimeError):
    pass


def database_name_for(code: str) -> str:
    return "school_" + _NON_ALNUM.sub("_", (code or "").strip().lower())


class TenantRegistry:
    """Thread-safe cache of one engine + sessionmaker per school database."""

    def __init__(self, url_template: str) -> None:
        if "{database}" not in url_template:
            raise TenantError("SCHOOL_DATABASE_URL_TEMPLATE must contain '{database}'.")
        self.url_template = url_template
        self._lock = threading.Lock()
        self._engines: dict[str, Engine] = {}
        self._sessionmakers: dict[str, sessionmaker] = {}

    def url_for(self, code: str) -> str:
        return self.url_template.format(database=database_name_for(code))

    def engine_for(self, code: str) -> Engine:
        key = code.strip().upper()
        with self._lock:
            engine = self._engines.get(key)
            if engine is None:
                url = self.url_for(key)
                engine = create_db_engine(url)
                self._engines[key] = engine
                self._sessionmakers[key] = make_sessionmaker(engine, school_code=key)
                logger.info("Opened engine for school %s (%s)", key, database_name_for(key))
            return engine

    def sessionmaker_for(self, code: str) -> sessionmaker:
        self.engine_for(code)
        return self._sessionmakers[code.strip().upper()]

    def provision(self, code: str) -> None:
        """Create all tenant tables and seed defaults. Safe to run repeatedly."""
        from app.schoolerp.access import seed_access_matrix
        from app.schoolerp.models import IdSequence, SchoolBase

        engine = self.engine_for(code)
        try:
            SchoolBase.metadata.create_all(engine)
            s: Session = self.sessionmaker_for(code)()
            try:
                added = seed_access_matrix(s)
                existing = set(s.execute(select(IdSequence.key)).scalars())
                for role in SCHOOL_ROLES:
                    if role not in existing:
                        s.add(IdSequence(key=role, value=0, updated_at=datetime.utcnow()))
                s.commit()
            except Exception:
                s.rollback()
                raise
            finally:
                s.close()
        except SQLAlchemyError as e:
            logger.exception("Provisioning failed for school %s", code)
            raise TenantError(f"Could not provision database for school {code}: {e}") from e
        logger.info("Provisioned school %s (access rules added=%s)", code, added)

    def drop(self, code: str) -> None:
        from app.schoolerp.models import SchoolBase

        engine = self.engine_for(code)
        try:
            SchoolBase.metadata.drop_all(engine)
        except SQLAlchemyError as e:
            raise TenantError(f"Could not drop database for school {code}: {e}") from e
        finally:
            self.dispose(code)
        logger.info("Dropped tables for school %s", code)

    def dispose(self, code: str) -> None:
        key = code.strip().upper()
        with self._lock:
            engine = self._engines.pop(key, None)
            self._sessionmakers.pop(key, None)
        if engine is not None:
            engine.dispose()

    def dispose_all(self) -> None:
        with self._lock:
            engines = list(self._engines.values())
            self._engines.clear()
            self._sessionmakers.clear()
        for engine in engines:
            engine.dispose()


def init_tenancy(app: Flask) -> TenantRegistry:
    registry = TenantRegistry(app.config["SCHOOL_DATABASE_URL_TEMPLATE"])
    app.extensions["tenant_registry"] = registry
    return registry


def tenant_registry(app: Flask | None = None) -> TenantRegistry:
    return (app or current_app).extensions["tenant_registry"]


def school_db_session(code: str | None = None) -> Session:
    """
    Request-scoped session on a school's database (defaults to the resolved g.school).
    """
    if code is None:
        school = getattr(g, "school", None)
        if school is None:
            raise TenantError("No school context for this request.")
        code = school.code
    key = code.strip().upper()
    sessions: dict[str, Session] | None = getattr(g, "school_sessions", None)
    if sessions is None:
        sessions = {}
        g.school_sessions = sessions
    s = sessions.get(key)
    if s is None:
        s = tenant_registry().sessionmaker_for(key)()
        sessions[key] = s
    return s


def teardown_school_sessions(_exc: BaseException | None) -> None:
    sessions: dict[str, Session] | None = getattr(g, "school_sessions", None)
    if not sessions:
        return
    for s in sessions.values():
        try:
            s.close()
        except Exception:
            logger.exception("Failed closing school session")
    g.school_sessions = None


@contextmanager
def school_session_scope(app: Flask, code: str) -> Generator[Session, None, None]:
    """Scripts/tests: yields a school session and commits/rolls back."""
    s: Session = tenant_registry(app).sessionmaker_for(code)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


# ---------- request-time resolution ----------


def _school_identifier() -> tuple[str | None, str | None]:
    """
    Returns (school_id, school_code) from the first source that has one:
    headers, JSON body, then URL parameters.
    """
    header_id = (request.headers.get("X-School-Id") or "").strip()
    if header_id:
        return header_id, None
    header_code = (request.headers.get("X-School-Code") or "").strip()
    if header_code:
        return None, header_code

    body = request.get_json(silent=True) if request.is_json else None
    if isinstance(body, dict):
        if body.get("school_id") not in (None, ""):
            return str(body["school_id"]).strip(), None
        if isinstance(body.get("school_code"), str) and body["school_code"].strip():
            return None, body["school_code"].strip()

    view_args = request.view_args or {}
    if view_args.get("school_id") not in (None, ""):
        return str(view_args["school_id"]), None
    if view_args.get("school_code"):
        return None, str(view_args["school_code"])
    return None, None


def resolve_school_context(*, optional: bool = False):
    """
    Sets g.school for the current request, aborting with the matching status
    when the school cannot be used by the current user.
    Returns the School, or None for platform-wide superadmin calls.
    """
    from app.schoolerp.models import School

    user = getattr(g, "current_user", None)
    if user is None:
        abort(401, description=getattr(g, "auth_error", None) or "Authentication required")
    is_superadmin = user.role == ROLE_SUPERADMIN

    school_id, school_code = _school_identifier()
    if not school_id and not school_code and not is_superadmin:
        school_code = user.school_code

    if not school_id and not school_code:
        if is_superadmin and optional:
            g.school = None
            return None
        abort(400, description="School context is required (X-School-Code header or school_code).")

    s = db_session()
    school = None
    if school_id:
        try:
            school = s.get(School, int(school_id))
        except ValueError:
            school = None
    else:
        school = s.query(School).filter(School.code == school_code.strip().upper()).one_or_none()
    if school is None:
        abort(404, description="School not found")

    if not is_superadmin:
        if (user.school_code or "").upper() != school.code:
            g.missing_permission = f"school:{school.code}"
            abort(403, description="Access denied. You do not belong to this school.")
        if not school.is_active:
            abort(403, description="School is deactivated. Contact the platform administrator.")

    if not school.database_created:
        current_app.logger.error("School %s has no provisioned database (request_id=%s)", school.code, getattr(g, "request_id", None))
        abort(500, description="Error accessing school database")
    try:
        tenant_registry().engine_for(school.code)
    except Exception:
        current_app.logger.exception("Tenant engine failed for %s", school.code)
        abort(500, description="Error accessing school database")

    g.school = school
    return school
