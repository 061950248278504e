import logging
import os

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from app.schoolerp.config import load_config
from app.schoolerp.db import init_db, teardown_db_session
from app.schoolerp.tenancy import init_tenancy, teardown_school_sessions
from app.schoolerp.routes import bp as routes_bp
from app.schoolerp.auth import bp as auth_bp, load_current_user
from app.schoolerp.modules.schools.api import bp as schools_bp
from app.schoolerp.modules.users.api import bp as users_bp
from app.schoolerp.modules.attendance.api import bp as attendance_bp
from app.schoolerp.modules.assignments.api import bp as assignments_bp
from app.schoolerp.modules.results.api import bp as results_bp
from app.schoolerp.modules.timetable.api import bp as timetable_bp
from app.schoolerp.modules.messages.api import bp as messages_bp

_ERROR_MESSAGES = {
    400: "Bad request",
    401: "Authentication required",
    403: "Access denied",
    404: "Not found",
    405: "Method not allowed",
    409: "Conflict",
    413: "File too large. Maximum size is 10MB.",
    429: "Too many requests",
    500: "Internal server error",
}


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        if str(app.config.get("JWT_SECRET")) in ("", "change-me"):
            raise RuntimeError("JWT_SECRET must be set to a strong value in production (not default).")

    init_db(app)
    init_tenancy(app)

    def _dispose_engines_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                registry = app.extensions.get("tenant_registry")
                if registry:
                    registry.dispose_all()
                app.logger.info("Disposed DB engines after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engines_on_fork()

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    app.register_blueprint(schools_bp, url_prefix="/api/schools")
    app.register_blueprint(users_bp, url_prefix="/api/users")
    app.register_blueprint(attendance_bp, url_prefix="/api/attendance")
    app.register_blueprint(assignments_bp, url_prefix="/api/assignments")
    app.register_blueprint(results_bp, url_prefix="/api/results")
    app.register_blueprint(timetable_bp, url_prefix="/api/timetables")
    app.register_blueprint(messages_bp, url_prefix="/api/messages")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_school_sessions)
    app.teardown_appcontext(teardown_db_session)

    @app.after_request
    def _request_id_header(resp):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        if rid:
            resp.headers["X-Request-Id"] = rid
        return resp

    def _error_body(status: int, message: str):
        return jsonify({"success": False, "message": message, "request_id": getattr(g, "request_id", None)}), status

    def _make_handler(status: int):
        def _handler(e: HTTPException):
            message = e.description if e.description and e.description != type(e).description else _ERROR_MESSAGES[status]
            if status == 403:
                app.logger.warning(
                    "Forbidden: missing_permission=%s path=%s request_id=%s",
                    getattr(g, "missing_permission", None),
                    request.path,
                    getattr(g, "request_id", None),
                )
            return _error_body(status, message)

        return _handler

    for status in (400, 401, 403, 404, 405, 409, 413, 429):
        app.register_error_handler(status, _make_handler(status))

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        original = getattr(e, "original_exception", None)
        if original is not None:
            app.logger.error("Unhandled 500 (request_id=%s)", rid, exc_info=original)
            return _error_body(500, _ERROR_MESSAGES[500])
        app.logger.error("500 %s (request_id=%s)", e.description, rid)
        return _error_body(500, e.description or _ERROR_MESSAGES[500])

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
