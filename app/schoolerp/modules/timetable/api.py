from __future__ import annotations

from flask import Blueprint, abort, g, jsonify, request

from app.schoolerp.constants import ROLE_ADMIN, ROLE_PARENT, ROLE_STUDENT, ROLE_SUPERADMIN, ROLE_TEACHER
from app.schoolerp.modules.schools.service import default_academic_year
from app.schoolerp.modules.timetable.models import Timetable
from app.schoolerp.modules.timetable.service import (
    TIMETABLE_STATUSES,
    analyze_timetable,
    conflicts_for,
    delete_timetable,
    find_timetable,
    normalize_periods,
    query_timetables,
    resolve_teachers,
    save_timetable,
    set_status,
    teacher_schedule,
    timetable_to_dict,
    validate_timetable_payload,
)
from app.schoolerp.modules.users.service import children_of, get_user
from app.schoolerp.rbac import require_access, require_roles, require_school_context
from app.schoolerp.tenancy import school_db_session
from app.schoolerp.utils import clean_str, json_body, ok, validation_error

bp = Blueprint("timetable", __name__)


def _current_user():
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _academic_year() -> str:
    return clean_str(request.args.get("academic_year")) or default_academic_year()


@bp.post("")
@require_roles(ROLE_ADMIN, ROLE_TEACHER, ROLE_SUPERADMIN)
@require_school_context()
@require_access("create_timetable")
def timetables_save():
    s = school_db_session()
    u = _current_user()
    payload = json_body()

    errors = validate_timetable_payload(payload)
    if errors:
        return validation_error(errors)
    periods = normalize_periods(payload["periods"])
    teachers, errors = resolve_teachers(s, periods)
    if errors:
        return validation_error(errors)

    tt, created, conflicts = save_timetable(s, payload, periods, teachers, u)
    s.commit()
    if conflicts:
        message = "Timetable saved with conflicts (saved as draft)"
    else:
        message = "Timetable created successfully" if created else "Timetable updated successfully"
    return ok(201 if created else 200, message=message, timetable=timetable_to_dict(tt), conflicts=conflicts)


@bp.get("")
@require_roles(ROLE_ADMIN, ROLE_TEACHER, ROLE_SUPERADMIN)
@require_school_context()
@require_access("view_timetable")
def timetables_list():
    s = school_db_session()
    filters = {k: (request.args.get(k) or "").strip() for k in ("academic_year", "status", "class_name")}
    rows = query_timetables(s, filters).all()
    return ok(timetables=[timetable_to_dict(tt, include_periods=False) for tt in rows])


@bp.get("/class/<class_name>/<section>")
@require_school_context()
@require_access("view_timetable")
def timetables_for_class(class_name: str, section: str):
    s = school_db_session()
    u = _current_user()
    section = section.upper()

    if u.role == ROLE_STUDENT and (u.class_name, u.section) != (class_name, section):
        abort(403, description="Access denied. You can only view your own class timetable.")
    if u.role == ROLE_PARENT:
        classes = {(c.class_name, c.section) for c in children_of(s, u)}
        if (class_name, section) not in classes:
            abort(403, description="Access denied. Parents can only view their children's timetables.")

    tt = find_timetable(s, class_name, section, _academic_year())
    # drafts stay with staff
    if tt is None or (u.role in (ROLE_STUDENT, ROLE_PARENT) and tt.status != "active"):
        abort(404, description="Timetable not found")
    return ok(timetable=timetable_to_dict(tt), analysis=analyze_timetable(tt))


@bp.get("/teachers/<user_id>")
@require_roles(ROLE_ADMIN, ROLE_TEACHER, ROLE_SUPERADMIN)
@require_school_context()
@require_access("view_timetable")
def timetables_for_teacher(user_id: str):
    s = school_db_session()
    u = _current_user()
    teacher = get_user(s, user_id)
    if teacher is None or teacher.role != ROLE_TEACHER:
        abort(404, description="Teacher not found")
    if u.role == ROLE_TEACHER and teacher.id != u.id:
        abort(403, description="Access denied. Teachers can only view their own schedule.")

    schedule = teacher_schedule(s, teacher, _academic_year())
    return ok(
        teacher={"user_id": teacher.user_id, "name": teacher.display_name},
        total_periods=len(schedule),
        schedule=schedule,
    )


@bp.patch("/<int:timetable_id>/status")
@require_roles(ROLE_ADMIN, ROLE_TEACHER, ROLE_SUPERADMIN)
@require_school_context()
@require_access("create_timetable")
def timetables_status(timetable_id: int):
    s = school_db_session()
    u = _current_user()
    tt = s.get(Timetable, timetable_id)
    if tt is None:
        abort(404, description="Timetable not found")

    status = (clean_str(json_body().get("status")) or "").lower()
    if status not in TIMETABLE_STATUSES:
        return validation_error([f"Invalid status. Must be one of: {', '.join(TIMETABLE_STATUSES)}"])
    if status == "active" and tt.status != "active":
        conflicts = conflicts_for(s, tt)
        if conflicts:
            body = {"success": False, "message": "Timetable has conflicts and cannot be activated", "conflicts": conflicts}
            return jsonify(body), 409

    set_status(s, tt, status, u)
    s.commit()
    return ok(message=f"Timetable is now {status}", timetable=timetable_to_dict(tt, include_periods=False))


@bp.delete("/<int:timetable_id>")
@require_roles(ROLE_ADMIN, ROLE_SUPERADMIN)
@require_school_context()
@require_access("create_timetable")
def timetables_delete(timetable_id: int):
    s = school_db_session()
    u = _current_user()
    tt = s.get(Timetable, timetable_id)
    if tt is None:
        abort(404, description="Timetable not found")
    delete_timetable(s, tt, u)
    s.commit()
    return ok(message="Timetable deleted")
