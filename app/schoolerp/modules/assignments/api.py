from __future__ import annotations

from flask import Blueprint, abort, current_app, g, request, send_file

from app.schoolerp.constants import ROLE_ADMIN, ROLE_PARENT, ROLE_STUDENT, ROLE_SUPERADMIN, ROLE_TEACHER
from app.schoolerp.modules.assignments.models import Assignment, AssignmentAttachment, Submission, SubmissionAttachment
from app.schoolerp.modules.assignments.service import (
    SubmissionClosed,
    allowed_attachment,
    assignment_stats,
    assignment_to_dict,
    create_assignment,
    delete_assignment,
    get_submission,
    grade_submission,
    publish_assignment,
    query_assignments,
    submission_to_dict,
    submit_assignment,
    update_assignment,
    upload_assignment_attachment,
    validate_assignment_payload,
    validate_grade,
)
from app.schoolerp.modules.users.service import children_of, get_user, is_parent_of
from app.schoolerp.rbac import require_access, require_roles, require_school_context
from app.schoolerp.storage import storage_from_config
from app.schoolerp.tenancy import school_db_session
from app.schoolerp.utils import clean_str, json_body, ok, parse_bool, validation_error

bp = Blueprint("assignments", __name__)

_FILTER_KEYS = ("class_name", "section", "subject", "status")


def _current_user():
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _filters() -> dict:
    return {k: (request.args.get(k) or "").strip() for k in _FILTER_KEYS}


def _payload() -> dict:
    """JSON, or form fields for multipart requests."""
    if request.is_json:
        return json_body()
    return {k: v for k, v in request.form.items()}


def _get_assignment_or_404(s, assignment_id: int) -> Assignment:
    a = s.get(Assignment, assignment_id)
    if a is None:
        abort(404, description="Assignment not found")
    return a


def _require_owner(a: Assignment, u) -> None:
    """Admins manage every assignment; teachers only their own."""
    if u.role in (ROLE_ADMIN, ROLE_SUPERADMIN):
        return
    if u.role == ROLE_TEACHER and a.teacher_id == u.id:
        return
    abort(403, description="Access denied. You can only manage your own assignments.")


def _visible_classes(s, u) -> set[tuple[str, str]] | None:
    """None means every class."""
    if u.role == ROLE_STUDENT:
        return {(u.class_name, u.section)} if u.class_name and u.section else set()
    if u.role == ROLE_PARENT:
        return {(c.class_name, c.section) for c in children_of(s, u) if c.class_name and c.section}
    return None


def _can_view(s, a: Assignment, u) -> bool:
    if u.role in (ROLE_ADMIN, ROLE_SUPERADMIN):
        return True
    if u.role == ROLE_TEACHER:
        return a.teacher_id == u.id
    classes = _visible_classes(s, u) or set()
    return bool(a.is_published) and (a.class_name, a.section) in classes


def _read_upload(field: str = "file") -> tuple[bytes, str, str | None] | None:
    f = request.files.get(field)
    if not f or not f.filename:
        return None
    if not allowed_attachment(f.filename):
        abort(400, description=f"File type not allowed: {f.filename}")
    data = f.read()
    if len(data) > int(current_app.config.get("MAX_FILE_BYTES") or 10 * 1024 * 1024):
        abort(413, description="File too large. Maximum size is 10MB.")
    return data, f.filename, f.mimetype


@bp.post("")
@require_roles(ROLE_ADMIN, ROLE_TEACHER)
@require_school_context()
@require_access("add_assignments")
def assignments_create():
    s = school_db_session()
    u = _current_user()
    payload = json_body()

    errors = validate_assignment_payload(payload)
    teacher = u if u.role == ROLE_TEACHER else None
    if u.role == ROLE_ADMIN and clean_str(payload.get("teacher_id")):
        teacher = get_user(s, str(payload["teacher_id"]))
        if teacher is None or teacher.role != ROLE_TEACHER:
            errors.append("teacher_id does not match a teacher.")
    if errors:
        return validation_error(errors)

    a = create_assignment(s, payload, u, teacher=teacher)
    if parse_bool(payload.get("publish")):
        publish_assignment(s, a, u)
    s.commit()
    return ok(201, message="Assignment created", assignment=assignment_to_dict(s, a))


@bp.get("")
@require_school_context()
def assignments_list():
    s = school_db_session()
    u = _current_user()
    teacher_id = u.id if u.role == ROLE_TEACHER else None
    classes = _visible_classes(s, u)
    q = query_assignments(
        s,
        _filters(),
        teacher_id=teacher_id,
        classes=classes,
        published_only=u.role in (ROLE_STUDENT, ROLE_PARENT),
    )
    assignments = q.all()
    return ok(assignments=[assignment_to_dict(s, a) for a in assignments], total=len(assignments))


@bp.get("/stats")
@require_roles(ROLE_ADMIN, ROLE_TEACHER)
@require_school_context()
def assignments_stats():
    s = school_db_session()
    u = _current_user()
    return ok(stats=assignment_stats(s, teacher_id=u.id if u.role == ROLE_TEACHER else None))


@bp.get("/<int:assignment_id>")
@require_school_context()
def assignments_detail(assignment_id: int):
    s = school_db_session()
    u = _current_user()
    a = _get_assignment_or_404(s, assignment_id)
    if not _can_view(s, a, u):
        # unpublished or out-of-scope assignments are indistinguishable from missing ones
        abort(404, description="Assignment not found")
    data = assignment_to_dict(s, a)
    if u.role == ROLE_STUDENT:
        sub = get_submission(s, a.id, u.id)
        data["my_submission"] = submission_to_dict(sub) if sub else None
    return ok(assignment=data)


@bp.put("/<int:assignment_id>")
@require_roles(ROLE_ADMIN, ROLE_TEACHER)
@require_school_context()
@require_access("add_assignments")
def assignments_update(assignment_id: int):
    s = school_db_session()
    u = _current_user()
    a = _get_assignment_or_404(s, assignment_id)
    _require_owner(a, u)
    payload = json_body()

    errors = validate_assignment_payload(payload, existing=a)
    if errors:
        return validation_error(errors)
    changes = update_assignment(s, a, payload, u)
    s.commit()
    return ok(message="Assignment updated" if changes else "No changes", assignment=assignment_to_dict(s, a), changes=sorted(changes))


@bp.patch("/<int:assignment_id>/publish")
@require_roles(ROLE_ADMIN, ROLE_TEACHER)
@require_school_context()
@require_access("add_assignments")
def assignments_publish(assignment_id: int):
    s = school_db_session()
    u = _current_user()
    a = _get_assignment_or_404(s, assignment_id)
    _require_owner(a, u)
    publish = parse_bool(json_body().get("is_published"))
    publish_assignment(s, a, u, publish=True if publish is None else publish)
    s.commit()
    return ok(message="Assignment published" if a.is_published else "Assignment unpublished", assignment=assignment_to_dict(s, a))


@bp.delete("/<int:assignment_id>")
@require_roles(ROLE_ADMIN, ROLE_TEACHER)
@require_school_context()
@require_access("add_assignments")
def assignments_delete(assignment_id: int):
    s = school_db_session()
    u = _current_user()
    a = _get_assignment_or_404(s, assignment_id)
    _require_owner(a, u)
    delete_assignment(s, a, u)
    s.commit()
    return ok(message="Assignment deleted", id=assignment_id)


# ---------- attachments ----------


@bp.post("/<int:assignment_id>/attachments")
@require_roles(ROLE_ADMIN, ROLE_TEACHER)
@require_school_context()
@require_access("add_assignments")
def assignments_upload_attachment(assignment_id: int):
    s = school_db_session()
    u = _current_user()
    a = _get_assignment_or_404(s, assignment_id)
    _require_owner(a, u)

    upload = _read_upload()
    if upload is None:
        return validation_error(["Please select a file to upload."])
    file_bytes, filename, content_type = upload
    att = upload_assignment_attachment(s, g.school.code, a, file_bytes, filename, content_type, u)
    s.commit()
    return ok(201, message="Attachment uploaded", attachment={"id": att.id, "filename": att.filename, "size_bytes": att.size_bytes})


@bp.get("/attachments/<int:attachment_id>/download")
@require_school_context()
def assignments_download_attachment(attachment_id: int):
    s = school_db_session()
    u = _current_user()
    att = s.get(AssignmentAttachment, attachment_id)
    if att is None or not _can_view(s, att.assignment, u):
        abort(404, description="Attachment not found")
    fobj = storage_from_config(current_app.config).open(att.storage_key)
    return send_file(
        fobj,
        mimetype=att.content_type or "application/octet-stream",
        as_attachment=True,
        download_name=att.filename,
        max_age=0,
    )


@bp.get("/submission-attachments/<int:attachment_id>/download")
@require_school_context()
def submissions_download_attachment(attachment_id: int):
    s = school_db_session()
    u = _current_user()
    att = s.get(SubmissionAttachment, attachment_id)
    if att is None:
        abort(404, description="Attachment not found")
    sub = att.submission
    allowed = (
        (u.role == ROLE_STUDENT and sub.student_id == u.id)
        or (u.role == ROLE_PARENT and is_parent_of(s, u, sub.student_id))
        or (u.role in (ROLE_ADMIN, ROLE_SUPERADMIN))
        or (u.role == ROLE_TEACHER and sub.assignment.teacher_id == u.id)
    )
    if not allowed:
        abort(404, description="Attachment not found")
    fobj = storage_from_config(current_app.config).open(att.storage_key)
    return send_file(
        fobj,
        mimetype=att.content_type or "application/octet-stream",
        as_attachment=True,
        download_name=att.filename,
        max_age=0,
    )


# ---------- submissions ----------


@bp.post("/<int:assignment_id>/submit")
@require_roles(ROLE_STUDENT)
@require_school_context()
@require_access("submit_assignments")
def assignments_submit(assignment_id: int):
    s = school_db_session()
    u = _current_user()
    a = _get_assignment_or_404(s, assignment_id)
    if not _can_view(s, a, u):
        abort(404, description="Assignment not found")
    if a.status in ("completed", "archived"):
        abort(400, description=f"Assignment is {a.status} and no longer accepts submissions")

    payload = _payload()
    upload = _read_upload()
    text = clean_str(payload.get("text") or payload.get("submission_text"))
    if not text and upload is None:
        return validation_error(["Submission text or a file is required."])

    try:
        sub, created = submit_assignment(s, g.school.code, a, u, text=text, upload=upload)
    except SubmissionClosed as e:
        s.rollback()
        abort(409, description=str(e))
    s.commit()
    return ok(
        201 if created else 200,
        message="Assignment submitted" + (" (late)" if sub.is_late else ""),
        submission=submission_to_dict(sub),
    )


@bp.get("/<int:assignment_id>/submission")
@require_school_context()
def assignments_my_submission(assignment_id: int):
    s = school_db_session()
    u = _current_user()
    a = _get_assignment_or_404(s, assignment_id)

    if u.role == ROLE_STUDENT:
        student = u
    else:
        sid = clean_str(request.args.get("student_id"))
        if not sid:
            return validation_error(["student_id is required."])
        student = get_user(s, sid)
        if student is None or student.role != ROLE_STUDENT:
            abort(404, description="Student not found")
        if u.role == ROLE_PARENT and not is_parent_of(s, u, student.id):
            abort(403, description="Access denied. Parents can only view their own children.")
    if u.role in (ROLE_STUDENT, ROLE_PARENT) and not _can_view(s, a, u):
        abort(404, description="Assignment not found")
    if u.role == ROLE_TEACHER and a.teacher_id != u.id:
        abort(403, description="Access denied. You can only view submissions for your own assignments.")

    sub = get_submission(s, a.id, student.id)
    if sub is None:
        abort(404, description="Submission not found")
    return ok(submission=submission_to_dict(sub))


@bp.get("/<int:assignment_id>/submissions")
@require_roles(ROLE_ADMIN, ROLE_TEACHER)
@require_school_context()
def assignments_submissions(assignment_id: int):
    s = school_db_session()
    u = _current_user()
    a = _get_assignment_or_404(s, assignment_id)
    _require_owner(a, u)
    subs = (
        s.query(Submission)
        .filter(Submission.assignment_id == a.id)
        .order_by(Submission.submitted_at.asc(), Submission.id.asc())
        .all()
    )
    return ok(
        assignment_id=a.id,
        submissions=[submission_to_dict(x) for x in subs],
        total=len(subs),
        late=sum(1 for x in subs if x.is_late),
        graded=sum(1 for x in subs if x.status == "graded"),
    )


@bp.put("/submissions/<int:submission_id>/grade")
@require_roles(ROLE_ADMIN, ROLE_TEACHER)
@require_school_context()
def assignments_grade(submission_id: int):
    s = school_db_session()
    u = _current_user()
    sub = s.get(Submission, submission_id)
    if sub is None:
        abort(404, description="Submission not found")
    _require_owner(sub.assignment, u)
    payload = json_body()

    grade, max_marks, errors = validate_grade(payload, sub)
    if errors:
        return validation_error(errors)
    grade_submission(
        s,
        sub,
        grade=grade,
        max_marks=max_marks,
        feedback=clean_str(payload.get("feedback")),
        actor=u,
        returned=(clean_str(payload.get("status")) or "").lower() == "returned",
    )
    s.commit()
    return ok(message="Submission graded", submission=submission_to_dict(sub))
