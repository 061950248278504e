from __future__ import annotations

import hashlib
import logging
import math
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.schoolerp.audit import record_event
from app.schoolerp.constants import ALLOWED_ATTACHMENT_EXTENSIONS, ASSIGNMENT_STATUSES, GRADE_ORDER, ROLE_STUDENT
from app.schoolerp.models import SchoolUser
from app.schoolerp.modules.assignments.models import Assignment, AssignmentAttachment, Submission, SubmissionAttachment
from app.schoolerp.storage import attachment_key, safe_filename, storage_from_config
from app.schoolerp.utils import clean_str, isoformat, parse_date, parse_datetime, parse_float

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session

logger = logging.getLogger(__name__)

DUE_SOON_DAYS = 7
DEFAULT_MAX_MARKS = 100.0
EDITABLE_FIELDS = (
    "title",
    "description",
    "instructions",
    "subject",
    "class_name",
    "section",
    "start_date",
    "due_date",
    "max_marks",
    "academic_year",
    "term",
    "status",
)


class SubmissionClosed(Exception):
    """The submission can no longer be changed (already graded)."""


def file_digest_and_bytes(file_bytes: bytes) -> tuple[str, int]:
    """Compute SHA256 digest and size."""
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def allowed_attachment(filename: str) -> bool:
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    return ext in ALLOWED_ATTACHMENT_EXTENSIONS


# ---------- derived fields ----------


def days_until_due(due: datetime, now: datetime | None = None) -> int:
    now = now or datetime.utcnow()
    return math.ceil((due - now).total_seconds() / 86400)


def display_status(a: Assignment, now: datetime | None = None) -> str:
    if a.status in ("completed", "archived"):
        return a.status
    days = days_until_due(a.due_date, now)
    if days < 0:
        return "overdue"
    if days <= DUE_SOON_DAYS:
        return "due-soon"
    return "active"


def submission_percentage(submitted: int, total_students: int) -> int:
    if total_students <= 0:
        return 0
    return round(submitted / total_students * 100)


def roster_count(s: "Session", class_name: str, section: str) -> int:
    return (
        s.query(func.count(SchoolUser.id))
        .filter(
            SchoolUser.role == ROLE_STUDENT,
            SchoolUser.class_name == class_name,
            SchoolUser.section == section,
            SchoolUser.is_active.is_(True),
        )
        .scalar()
        or 0
    )


def submitted_count(s: "Session", assignment_id: int) -> int:
    return s.query(func.count(Submission.id)).filter(Submission.assignment_id == assignment_id).scalar() or 0


def attachment_to_dict(att) -> dict[str, Any]:
    return {
        "id": att.id,
        "filename": att.filename,
        "content_type": att.content_type,
        "size_bytes": att.size_bytes,
        "sha256": att.sha256,
        "uploaded_at": isoformat(att.uploaded_at),
    }


def assignment_to_dict(s: "Session", a: Assignment, *, now: datetime | None = None) -> dict[str, Any]:
    total = roster_count(s, a.class_name, a.section)
    submitted = submitted_count(s, a.id)
    return {
        "id": a.id,
        "title": a.title,
        "description": a.description,
        "instructions": a.instructions,
        "subject": a.subject,
        "class_name": a.class_name,
        "section": a.section,
        "teacher": {"user_id": a.teacher.user_id, "name": a.teacher.display_name} if a.teacher else None,
        "start_date": isoformat(a.start_date),
        "due_date": isoformat(a.due_date),
        "max_marks": a.max_marks,
        "academic_year": a.academic_year,
        "term": a.term,
        "status": a.status,
        "is_published": bool(a.is_published),
        "published_at": isoformat(a.published_at),
        "attachments": [attachment_to_dict(x) for x in a.attachments],
        "total_students": total,
        "submitted_count": submitted,
        "submission_percentage": submission_percentage(submitted, total),
        "days_until_due": days_until_due(a.due_date, now),
        "assignment_status": display_status(a, now),
        "created_at": isoformat(a.created_at),
        "updated_at": isoformat(a.updated_at),
    }


def submission_to_dict(sub: Submission) -> dict[str, Any]:
    return {
        "id": sub.id,
        "assignment_id": sub.assignment_id,
        "student": {
            "user_id": sub.student.user_id,
            "name": sub.student.display_name,
            "class_name": sub.student.class_name,
            "section": sub.student.section,
        }
        if sub.student
        else None,
        "text": sub.text,
        "submitted_at": isoformat(sub.submitted_at),
        "is_late": bool(sub.is_late),
        "status": sub.status,
        "version": sub.version,
        "grade": sub.grade,
        "max_marks": sub.max_marks,
        "feedback": sub.feedback,
        "graded_by": sub.graded_by,
        "graded_at": isoformat(sub.graded_at),
        "attachments": [attachment_to_dict(x) for x in sub.attachments],
    }


# ---------- assignments ----------


def _due_datetime(raw: Any) -> datetime | None:
    """A bare date means end of that day."""
    if isinstance(raw, str) and len(raw.strip()) == 10:
        d = parse_date(raw)
        return datetime(d.year, d.month, d.day, 23, 59, 59) if d else None
    return parse_datetime(raw)


def validate_assignment_payload(payload: dict, *, existing: Assignment | None = None) -> list[str]:
    """Validate assignment creation/update payload. Returns list of errors."""
    errors: list[str] = []
    creating = existing is None

    def _required(field: str, label: str) -> None:
        if (creating or field in payload) and not clean_str(payload.get(field)):
            errors.append(f"{label} is required.")

    _required("title", "Title")
    _required("subject", "Subject")
    _required("class_name", "Class")
    _required("section", "Section")
    title = clean_str(payload.get("title"))
    if title and len(title) > 255:
        errors.append("Title must be at most 255 characters.")
    class_name = clean_str(payload.get("class_name"))
    if class_name and class_name not in GRADE_ORDER:
        errors.append(f"Unknown class: {class_name}")

    start = parse_date(payload.get("start_date")) if payload.get("start_date") not in (None, "") else None
    if payload.get("start_date") not in (None, "") and start is None:
        errors.append("Start date must be YYYY-MM-DD.")
    due = _due_datetime(payload.get("due_date")) if payload.get("due_date") not in (None, "") else None
    if creating and payload.get("due_date") in (None, ""):
        errors.append("Due date is required.")
    elif payload.get("due_date") not in (None, "") and due is None:
        errors.append("Due date is invalid.")

    effective_start = start or (existing.start_date if existing else date.today())
    effective_due = due or (existing.due_date if existing else None)
    if effective_due is not None and effective_due.date() < effective_start:
        errors.append("Due date cannot be before the start date.")

    if payload.get("max_marks") not in (None, ""):
        marks = parse_float(payload.get("max_marks"))
        if marks is None or marks <= 0:
            errors.append("Max marks must be a positive number.")
    status = clean_str(payload.get("status"))
    if status and status not in ASSIGNMENT_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(ASSIGNMENT_STATUSES)}")
    return errors


def create_assignment(s: "Session", payload: dict, actor, *, teacher: SchoolUser | None = None) -> Assignment:
    now = datetime.utcnow()
    a = Assignment(
        title=clean_str(payload.get("title")),
        description=clean_str(payload.get("description")),
        instructions=clean_str(payload.get("instructions")),
        subject=clean_str(payload.get("subject")),
        class_name=clean_str(payload.get("class_name")),
        section=clean_str(payload.get("section")).upper(),
        teacher_id=teacher.id if teacher else None,
        start_date=parse_date(payload.get("start_date")) or date.today(),
        due_date=_due_datetime(payload.get("due_date")),
        max_marks=parse_float(payload.get("max_marks")),
        academic_year=clean_str(payload.get("academic_year")),
        term=clean_str(payload.get("term")),
        status=clean_str(payload.get("status")) or "draft",
        is_published=False,
        created_by=actor.actor_id,
        created_at=now,
        updated_at=now,
    )
    s.add(a)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="assignment.create",
        entity_type="Assignment",
        entity_id=str(a.id),
        metadata={"title": a.title, "class_name": a.class_name, "section": a.section, "subject": a.subject},
    )
    return a


def update_assignment(s: "Session", a: Assignment, payload: dict, actor) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    for field in EDITABLE_FIELDS:
        if field not in payload:
            continue
        raw = payload.get(field)
        if field == "start_date":
            new = parse_date(raw) or a.start_date
        elif field == "due_date":
            new = _due_datetime(raw) or a.due_date
        elif field == "max_marks":
            new = parse_float(raw)
        elif field == "section":
            new = (clean_str(raw) or a.section).upper()
        elif field in ("title", "subject", "class_name", "status"):
            new = clean_str(raw) or getattr(a, field)
        else:
            new = clean_str(raw)
        old = getattr(a, field)
        if new != old:
            setattr(a, field, new)
            changes[field] = [isoformat(old) if hasattr(old, "isoformat") else old, isoformat(new) if hasattr(new, "isoformat") else new]
    if changes:
        a.updated_at = datetime.utcnow()
        record_event(s, actor=actor, action="assignment.update", entity_type="Assignment", entity_id=str(a.id), metadata={"changes": changes})
    return changes


def publish_assignment(s: "Session", a: Assignment, actor, *, publish: bool = True) -> None:
    a.is_published = publish
    if publish:
        a.published_at = a.published_at or datetime.utcnow()
        if a.status == "draft":
            a.status = "active"
    a.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="assignment.publish",
        entity_type="Assignment",
        entity_id=str(a.id),
        metadata={"is_published": publish},
    )


def delete_assignment(s: "Session", a: Assignment, actor) -> None:
    record_event(
        s,
        actor=actor,
        action="assignment.delete",
        entity_type="Assignment",
        entity_id=str(a.id),
        metadata={"title": a.title, "submissions": len(a.submissions)},
    )
    s.delete(a)


def upload_assignment_attachment(
    s: "Session",
    school_code: str,
    a: Assignment,
    file_bytes: bytes,
    filename: str,
    content_type: str | None,
    actor,
) -> AssignmentAttachment:
    """Upload a file to an assignment."""
    from flask import current_app

    sha256, size_bytes = file_digest_and_bytes(file_bytes)
    storage_key = attachment_key(school_code, "assignments", a.id, filename)
    storage_from_config(current_app.config).put_bytes(storage_key, file_bytes, content_type=content_type)

    att = AssignmentAttachment(
        assignment_id=a.id,
        storage_key=storage_key,
        filename=safe_filename(filename),
        content_type=content_type,
        size_bytes=size_bytes,
        sha256=sha256,
        uploaded_by=actor.actor_id,
        uploaded_at=datetime.utcnow(),
    )
    s.add(att)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="assignment.attachment_upload",
        entity_type="AssignmentAttachment",
        entity_id=str(att.id),
        metadata={"assignment_id": a.id, "filename": att.filename, "size_bytes": size_bytes},
    )
    return att


def query_assignments(
    s: "Session",
    filters: dict,
    *,
    teacher_id: int | None = None,
    classes: set[tuple[str, str]] | None = None,
    published_only: bool = False,
) -> "Query":
    """
    teacher_id narrows to one teacher's assignments; classes to (class_name, section)
    pairs, as used for students and parents.
    """
    q = s.query(Assignment)
    if teacher_id is not None:
        q = q.filter(Assignment.teacher_id == teacher_id)
    if classes is not None:
        if not classes:
            return q.filter(Assignment.id == -1)
        from sqlalchemy import and_, or_

        q = q.filter(or_(*[and_(Assignment.class_name == c, Assignment.section == sec) for c, sec in sorted(classes)]))
    if published_only:
        q = q.filter(Assignment.is_published.is_(True))
    if filters.get("class_name"):
        q = q.filter(Assignment.class_name == filters["class_name"])
    if filters.get("section"):
        q = q.filter(Assignment.section == filters["section"].upper())
    if filters.get("subject"):
        q = q.filter(Assignment.subject == filters["subject"])
    if filters.get("status"):
        q = q.filter(Assignment.status == filters["status"])
    return q.order_by(Assignment.due_date.asc(), Assignment.id.asc())


def assignment_stats(s: "Session", *, teacher_id: int | None = None) -> dict[str, Any]:
    q = query_assignments(s, {}, teacher_id=teacher_id)
    assignments = q.all()
    by_status = {status: 0 for status in ASSIGNMENT_STATUSES}
    for a in assignments:
        by_status[a.status] = by_status.get(a.status, 0) + 1
    ids = [a.id for a in assignments]
    subs_by_status: dict[str, int] = {}
    late = 0
    if ids:
        for status, n in (
            s.query(Submission.status, func.count(Submission.id))
            .filter(Submission.assignment_id.in_(ids))
            .group_by(Submission.status)
            .all()
        ):
            subs_by_status[status] = n
        late = s.query(func.count(Submission.id)).filter(Submission.assignment_id.in_(ids), Submission.is_late.is_(True)).scalar() or 0
    now = datetime.utcnow()
    return {
        "total_assignments": len(assignments),
        "by_status": by_status,
        "published": sum(1 for a in assignments if a.is_published),
        "overdue": sum(1 for a in assignments if display_status(a, now) == "overdue"),
        "due_soon": sum(1 for a in assignments if display_status(a, now) == "due-soon"),
        "total_submissions": sum(subs_by_status.values()),
        "submissions_by_status": subs_by_status,
        "late_submissions": late,
    }


# ---------- submissions ----------


def get_submission(s: "Session", assignment_id: int, student_id: int) -> Submission | None:
    return (
        s.query(Submission)
        .filter(Submission.assignment_id == assignment_id, Submission.student_id == student_id)
        .one_or_none()
    )


def submit_assignment(
    s: "Session",
    school_code: str,
    a: Assignment,
    student: SchoolUser,
    *,
    text: str | None,
    upload: tuple[bytes, str, str | None] | None,
    now: datetime | None = None,
) -> tuple[Submission, bool]:
    """
    Creates or replaces the student's submission. Returns (submission, created).
    upload is (bytes, filename, content_type).
    """
    now = now or datetime.utcnow()
    sub = get_submission(s, a.id, student.id)
    created = sub is None
    if sub is None:
        sub = Submission(
            assignment_id=a.id,
            student_id=student.id,
            version=1,
            max_marks=a.max_marks,
        )
        sub.student = student
        s.add(sub)
    else:
        if sub.status == "graded":
            raise SubmissionClosed("Submission has already been graded and cannot be changed")
        sub.version = (sub.version or 1) + 1
    sub.text = text
    sub.submitted_at = now
    sub.is_late = now > a.due_date
    sub.status = "submitted"
    s.flush()

    if upload is not None:
        from flask import current_app

        file_bytes, filename, content_type = upload
        sha256, size_bytes = file_digest_and_bytes(file_bytes)
        storage_key = attachment_key(school_code, "submissions", sub.id, filename)
        storage_from_config(current_app.config).put_bytes(storage_key, file_bytes, content_type=content_type)
        s.add(
            SubmissionAttachment(
                submission_id=sub.id,
                storage_key=storage_key,
                filename=safe_filename(filename),
                content_type=content_type,
                size_bytes=size_bytes,
                sha256=sha256,
                uploaded_at=now,
            )
        )
        s.flush()
        s.refresh(sub)

    record_event(
        s,
        actor=student,
        action="submission.submit",
        entity_type="Submission",
        entity_id=str(sub.id),
        metadata={"assignment_id": a.id, "version": sub.version, "is_late": sub.is_late},
    )
    return sub, created


def validate_grade(payload: dict, sub: Submission) -> tuple[float | None, float, list[str]]:
    """Returns (grade, max_marks, errors)."""
    errors: list[str] = []
    max_marks = parse_float(payload.get("max_marks")) or sub.max_marks or sub.assignment.max_marks or DEFAULT_MAX_MARKS
    grade = parse_float(payload.get("grade"))
    if grade is None:
        errors.append("grade is required and must be a number.")
    elif grade < 0 or grade > max_marks:
        errors.append(f"Grade must be between 0 and {max_marks:g}.")
    if max_marks <= 0:
        errors.append("Max marks must be a positive number.")
    return grade, max_marks, errors


def grade_submission(
    s: "Session",
    sub: Submission,
    *,
    grade: float,
    max_marks: float,
    feedback: str | None,
    actor,
    returned: bool = False,
) -> None:
    """A returned submission keeps its grade but can be resubmitted."""
    previous = sub.grade
    sub.grade = grade
    sub.max_marks = max_marks
    sub.feedback = feedback
    sub.status = "returned" if returned else "graded"
    sub.graded_by = actor.actor_id
    sub.graded_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="submission.grade",
        entity_type="Submission",
        entity_id=str(sub.id),
        metadata={"old_grade": previous, "new_grade": grade, "max_marks": max_marks, "status": sub.status},
    )
