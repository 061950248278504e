from __future__ import annotations

from flask import Blueprint, abort, g, request

from app.schoolerp.access import LEVEL_OWN, LEVEL_SELF
from app.schoolerp.constants import ROLE_ADMIN, ROLE_PARENT, ROLE_STUDENT, ROLE_TEACHER
from app.schoolerp.modules.attendance.models import AttendanceRecord
from app.schoolerp.modules.attendance.service import (
    AttendanceLocked,
    SessionAlreadyMarked,
    attendance_stats,
    find_student,
    mark_attendance,
    mark_session,
    query_records,
    record_to_dict,
    session_for,
    set_locked,
    student_report,
    validate_mark_payload,
    validate_session_payload,
)
from app.schoolerp.modules.users.service import child_ids
from app.schoolerp.rbac import require_access, require_roles, require_school_context
from app.schoolerp.tenancy import school_db_session
from app.schoolerp.utils import clean_str, isoformat, json_body, ok, pagination_args, parse_bool, parse_date, validation_error

bp = Blueprint("attendance", __name__)

_FILTER_KEYS = ("class_name", "section", "session", "status", "date", "start_date", "end_date", "student_id")


def _current_user():
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _filters() -> dict:
    return {k: (request.args.get(k) or "").strip() for k in _FILTER_KEYS}


def _scoped_student_ids(s, user) -> set[int] | None:
    """None means unrestricted."""
    level = g.get("access_level")
    if user.role == ROLE_STUDENT or level == LEVEL_SELF:
        return {user.id}
    if user.role == ROLE_PARENT or level == LEVEL_OWN:
        return child_ids(s, user)
    return None


@bp.post("/mark")
@require_roles(ROLE_ADMIN, ROLE_TEACHER)
@require_school_context()
@require_access("mark_attendance")
def attendance_mark():
    s = school_db_session()
    u = _current_user()
    payload = json_body()

    errors = validate_mark_payload(payload)
    if errors:
        return validation_error(errors)
    student = find_student(s, str(payload["student_id"]))
    if student is None:
        abort(404, description="Student not found")

    try:
        record, created = mark_attendance(s, student, payload, u)
    except (AttendanceLocked, SessionAlreadyMarked) as e:
        s.rollback()
        abort(409, description=str(e))
    s.commit()
    return ok(201 if created else 200, message="Attendance marked", attendance=record_to_dict(record))


@bp.post("/mark-session")
@require_roles(ROLE_ADMIN, ROLE_TEACHER)
@require_school_context()
@require_access("mark_attendance")
def attendance_mark_session():
    s = school_db_session()
    u = _current_user()
    payload = json_body()

    errors = validate_session_payload(payload)
    if errors:
        return validation_error(errors)
    try:
        summary = mark_session(s, payload, u)
    except SessionAlreadyMarked as e:
        s.rollback()
        abort(409, description=str(e))
    s.commit()
    session = payload["session"].strip().lower()
    return ok(
        201,
        message=(
            f"{session.capitalize()} attendance marked: "
            f"{summary['success_count']} students processed, {summary['fail_count']} failed"
        ),
        data=summary,
    )


@bp.get("/session-status")
@require_roles(ROLE_ADMIN, ROLE_TEACHER)
@require_school_context()
def attendance_session_status():
    s = school_db_session()
    d = parse_date(request.args.get("date"))
    class_name = clean_str(request.args.get("class_name"))
    section = clean_str(request.args.get("section"))
    session = (clean_str(request.args.get("session")) or "").lower()
    if d is None or not class_name or not section or not session:
        return validation_error(["date, class_name, section and session are required."])

    marked = session_for(s, d, class_name, section, session)
    return ok(
        is_marked=marked is not None,
        is_frozen=marked is not None,
        session=None
        if marked is None
        else {
            "id": marked.id,
            "date": isoformat(marked.attendance_date),
            "class_name": marked.class_name,
            "section": marked.section,
            "session": marked.session,
            "marked_by": marked.marked_by,
            "marked_at": isoformat(marked.created_at),
            "total_students": marked.total_students,
            "present_count": marked.present_count,
            "absent_count": marked.absent_count,
        },
    )


@bp.get("")
@require_school_context()
@require_access("view_attendance")
def attendance_list():
    s = school_db_session()
    u = _current_user()
    page, per_page = pagination_args(default_per_page=100, max_per_page=500)
    q = query_records(s, _filters(), student_ids=_scoped_student_ids(s, u))
    total = q.count()
    records = q.offset((page - 1) * per_page).limit(per_page).all()
    return ok(
        attendance=[record_to_dict(r) for r in records],
        pagination={"page": page, "per_page": per_page, "total": total, "pages": (total + per_page - 1) // per_page},
    )


@bp.get("/stats")
@require_roles(ROLE_ADMIN, ROLE_TEACHER)
@require_school_context()
def attendance_stats_view():
    s = school_db_session()
    return ok(stats=attendance_stats(s, _filters()))


@bp.get("/students/<student_id>/report")
@require_school_context()
@require_access("view_attendance")
def attendance_student_report(student_id: str):
    s = school_db_session()
    u = _current_user()
    student = find_student(s, student_id)
    if student is None:
        abort(404, description="Student not found")
    allowed = _scoped_student_ids(s, u)
    if allowed is not None and student.id not in allowed:
        abort(403, description="Access denied. You can only view your own attendance.")

    report = student_report(
        s,
        student,
        start=parse_date(request.args.get("start_date")),
        end=parse_date(request.args.get("end_date")),
    )
    return ok(**report)


@bp.patch("/<int:record_id>/lock")
@require_roles(ROLE_ADMIN, ROLE_TEACHER)
@require_school_context()
@require_access("mark_attendance")
def attendance_lock(record_id: int):
    s = school_db_session()
    u = _current_user()
    record = s.get(AttendanceRecord, record_id)
    if record is None:
        abort(404, description="Attendance not found")

    locked = parse_bool(json_body().get("locked"))
    if locked is None:
        locked = True
    if not locked and u.role != ROLE_ADMIN:
        abort(403, description="Access denied. Only admins can unlock attendance.")

    set_locked(s, record, locked, u)
    s.commit()
    return ok(message=f"Attendance {'locked' if locked else 'unlocked'}", attendance=record_to_dict(record))
