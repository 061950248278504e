from __future__ import annotations

from flask import Blueprint, abort, current_app, g, request

from app.schoolerp.access import LEVEL_NONE, LEVEL_OWN
from app.schoolerp.constants import ROLE_ADMIN, ROLE_PARENT, ROLE_STUDENT, ROLE_SUPERADMIN, ROLE_TEACHER
from app.schoolerp.modules.attendance.service import find_student
from app.schoolerp.modules.results.models import Result
from app.schoolerp.modules.results.service import (
    class_report,
    progress_trend,
    result_to_dict,
    save_result,
    set_published,
    student_results,
    validate_result_payload,
)
from app.schoolerp.modules.schools.service import default_academic_year
from app.schoolerp.modules.users.service import is_parent_of
from app.schoolerp.rbac import access_level, require_access, require_roles, require_school_context
from app.schoolerp.tenancy import school_db_session
from app.schoolerp.utils import clean_str, json_body, ok, parse_bool, validation_error

bp = Blueprint("results", __name__)


def _current_user():
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _require_result_editor(u) -> None:
    # Admins always enter results; teachers need update_results in the matrix.
    if u.role == ROLE_ADMIN:
        return
    if access_level(u, "update_results") == LEVEL_NONE:
        g.missing_permission = "update_results"
        current_app.logger.info("Access matrix denied update_results for %s", u.role)
        abort(403, description=f"Access denied. {u.role} cannot use update_results.")


@bp.post("")
@require_roles(ROLE_ADMIN, ROLE_TEACHER)
@require_school_context()
def results_save():
    s = school_db_session()
    u = _current_user()
    _require_result_editor(u)
    payload = json_body()

    errors = validate_result_payload(payload)
    if errors:
        return validation_error(errors)
    student = find_student(s, str(payload["student_id"]))
    if student is None:
        abort(404, description="Student not found")
    if not student.is_active:
        return validation_error(["Student account is deactivated."])

    r, created = save_result(s, student, payload, u)
    s.commit()
    return ok(
        201 if created else 200,
        message="Result created successfully" if created else "Result updated successfully",
        result=result_to_dict(r),
    )


@bp.get("/students/<student_id>")
@require_school_context()
@require_access("view_results")
def results_student_history(student_id: str):
    s = school_db_session()
    u = _current_user()
    student = find_student(s, student_id)
    if student is None:
        abort(404, description="Student not found")

    if u.role == ROLE_STUDENT and student.id != u.id:
        abort(403, description="Access denied. You can only view your own results.")
    if u.role == ROLE_PARENT and not is_parent_of(s, u, student.id):
        abort(403, description="Access denied. Parents can only view their own children.")

    recorded_by = u.user_id if u.role == ROLE_TEACHER and g.get("access_level") == LEVEL_OWN else None
    results = student_results(
        s,
        student,
        academic_year=clean_str(request.args.get("academic_year")),
        exam_type=clean_str(request.args.get("exam_type")),
        published_only=u.role in (ROLE_STUDENT, ROLE_PARENT),
        recorded_by=recorded_by,
    ).all()
    return ok(
        student={"user_id": student.user_id, "name": student.display_name, "class_name": student.class_name, "section": student.section},
        result_count=len(results),
        results=[result_to_dict(r) for r in results],
        progress_trend=progress_trend(results),
    )


@bp.get("/class/<class_name>/<section>/report")
@require_roles(ROLE_ADMIN, ROLE_TEACHER)
@require_school_context()
@require_access("view_results")
def results_class_report(class_name: str, section: str):
    s = school_db_session()
    report = class_report(
        s,
        class_name,
        section,
        academic_year=clean_str(request.args.get("academic_year")) or default_academic_year(),
        exam_type=clean_str(request.args.get("exam_type")),
    )
    if report is None:
        abort(404, description="No results found for the specified criteria")
    return ok(**report)


@bp.patch("/<int:result_id>/publish")
@require_roles(ROLE_ADMIN, ROLE_TEACHER, ROLE_SUPERADMIN)
@require_school_context()
def results_publish(result_id: int):
    s = school_db_session()
    u = _current_user()
    r = s.get(Result, result_id)
    if r is None:
        abort(404, description="Result not found")
    if u.role not in (ROLE_ADMIN, ROLE_SUPERADMIN) and r.created_by != u.user_id:
        abort(403, description="Access denied. Only the teacher who recorded this result can publish it.")

    published = parse_bool(json_body().get("is_published"))
    set_published(s, r, True if published is None else published, u)
    s.commit()
    return ok(message="Result published" if r.is_published else "Result unpublished", result=result_to_dict(r))
