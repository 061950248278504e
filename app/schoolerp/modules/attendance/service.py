from __future__ import annotations

import logging
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.schoolerp.audit import record_event
from app.schoolerp.constants import ATTENDANCE_SESSIONS, ATTENDANCE_STATUSES, ROLE_STUDENT
from app.schoolerp.models import SchoolUser
from app.schoolerp.modules.attendance.models import AttendanceRecord, AttendanceSession
from app.schoolerp.utils import clean_str, isoformat, parse_date

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session

logger = logging.getLogger(__name__)

BULK_SESSIONS = ("morning", "afternoon")


class AttendanceLocked(Exception):
    pass


class SessionAlreadyMarked(Exception):
    pass


def normalize_status(raw: Any) -> str | None:
    """Accepts "Half-day" or "half day" as half_day."""
    v = (clean_str(raw) or "").lower().replace("-", "_").replace(" ", "_")
    return v or None


def record_to_dict(r: AttendanceRecord) -> dict[str, Any]:
    student = r.student
    return {
        "id": r.id,
        "student_id": student.user_id if student else None,
        "student_name": student.display_name if student else None,
        "class_name": r.class_name,
        "section": r.section,
        "date": isoformat(r.attendance_date),
        "session": r.session,
        "status": r.status,
        "remarks": r.remarks,
        "is_locked": bool(r.is_locked),
        "locked_by": r.locked_by,
        "locked_at": isoformat(r.locked_at),
        "marked_by": r.marked_by,
        "updated_at": isoformat(r.updated_at),
    }


def validate_mark_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if not clean_str(payload.get("student_id")):
        errors.append("student_id is required.")
    d = parse_date(payload.get("date"))
    if d is None:
        errors.append("date is required (YYYY-MM-DD).")
    elif d > date.today():
        errors.append("Attendance cannot be marked for a future date.")
    status = normalize_status(payload.get("status"))
    if status not in ATTENDANCE_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(ATTENDANCE_STATUSES)}")
    session = (clean_str(payload.get("session")) or "daily").lower()
    if session not in ATTENDANCE_SESSIONS:
        errors.append(f"Invalid session. Must be one of: {', '.join(ATTENDANCE_SESSIONS)}")
    return errors


def find_student(s: "Session", student_id: str) -> SchoolUser | None:
    user = s.query(SchoolUser).filter(SchoolUser.user_id == student_id.strip().upper()).one_or_none()
    if user is None or user.role != ROLE_STUDENT:
        return None
    return user


def _existing(s: "Session", student: SchoolUser, d: date, session: str) -> AttendanceRecord | None:
    return (
        s.query(AttendanceRecord)
        .filter(
            AttendanceRecord.student_id == student.id,
            AttendanceRecord.attendance_date == d,
            AttendanceRecord.session == session,
        )
        .one_or_none()
    )


def _upsert(
    s: "Session",
    student: SchoolUser,
    *,
    d: date,
    session: str,
    status: str,
    remarks: str | None,
    actor,
) -> tuple[AttendanceRecord, str | None]:
    """Returns (record, previous status or None when created)."""
    now = datetime.utcnow()
    record = _existing(s, student, d, session)
    if record is not None:
        if record.is_locked:
            raise AttendanceLocked("Attendance is locked and cannot be modified")
        previous = record.status
        record.status = status
        record.remarks = remarks
        record.class_name = student.class_name or record.class_name
        record.section = student.section or record.section
        record.marked_by = actor.actor_id
        record.updated_at = now
        return record, previous
    record = AttendanceRecord(
        student_id=student.id,
        class_name=student.class_name or "",
        section=student.section or "",
        attendance_date=d,
        session=session,
        status=status,
        remarks=remarks,
        is_locked=False,
        marked_by=actor.actor_id,
        created_at=now,
        updated_at=now,
    )
    record.student = student
    s.add(record)
    return record, None


def mark_attendance(s: "Session", student: SchoolUser, payload: dict, actor) -> tuple[AttendanceRecord, bool]:
    """Single-record upsert. Returns (record, created)."""
    d = parse_date(payload.get("date"))
    session = (clean_str(payload.get("session")) or "daily").lower()
    status = normalize_status(payload.get("status"))
    # bulk-marked sessions are frozen
    if session in BULK_SESSIONS and student.class_name and student.section:
        if session_for(s, d, student.class_name, student.section, session) is not None:
            raise SessionAlreadyMarked(
                f"{session.capitalize()} attendance for {student.class_name}-{student.section} "
                f"on {d.isoformat()} is already marked and cannot be modified"
            )
    record, previous = _upsert(
        s, student, d=d, session=session, status=status, remarks=clean_str(payload.get("remarks")), actor=actor
    )
    s.flush()
    if previous != status:
        record_event(
            s,
            actor=actor,
            action="attendance.mark",
            entity_type="AttendanceRecord",
            entity_id=str(record.id),
            metadata={
                "student_id": student.user_id,
                "date": d.isoformat(),
                "session": session,
                "old_status": previous,
                "new_status": status,
            },
        )
    return record, previous is None


def session_for(s: "Session", d: date, class_name: str, section: str, session: str) -> AttendanceSession | None:
    return (
        s.query(AttendanceSession)
        .filter(
            AttendanceSession.attendance_date == d,
            AttendanceSession.class_name == class_name,
            AttendanceSession.section == section.upper(),
            AttendanceSession.session == session,
        )
        .one_or_none()
    )


def validate_session_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    d = parse_date(payload.get("date"))
    if d is None:
        errors.append("date is required (YYYY-MM-DD).")
    elif d > date.today():
        errors.append("Attendance cannot be marked for a future date.")
    if not clean_str(payload.get("class_name")):
        errors.append("class_name is required.")
    if not clean_str(payload.get("section")):
        errors.append("section is required.")
    session = (clean_str(payload.get("session")) or "").lower()
    if session not in BULK_SESSIONS:
        errors.append(f"session must be one of: {', '.join(BULK_SESSIONS)}")
    entries = payload.get("records")
    if not isinstance(entries, list) or not entries:
        errors.append("records must be a non-empty list.")
    return errors


def mark_session(s: "Session", payload: dict, actor) -> dict[str, Any]:
    """
    Bulk-mark one session for a class/section. Entries that fail are skipped and reported;
    the session is frozen afterwards.
    """
    d = parse_date(payload.get("date"))
    class_name = clean_str(payload.get("class_name"))
    section = clean_str(payload.get("section")).upper()
    session = clean_str(payload.get("session")).lower()
    if session_for(s, d, class_name, section, session) is not None:
        raise SessionAlreadyMarked(f"{session.capitalize()} attendance for {class_name}-{section} on {d.isoformat()} is already marked")

    roster = {
        u.user_id: u
        for u in s.query(SchoolUser)
        .filter(
            SchoolUser.role == ROLE_STUDENT,
            SchoolUser.class_name == class_name,
            SchoolUser.section == section,
            SchoolUser.is_active.is_(True),
        )
        .all()
    }

    success = 0
    failures: list[dict[str, str]] = []
    counts = {status: 0 for status in ATTENDANCE_STATUSES}
    seen: set[int] = set()
    for entry in payload.get("records") or []:
        sid = (clean_str(entry.get("student_id")) if isinstance(entry, dict) else None) or ""
        student = roster.get(sid.upper())
        status = normalize_status(entry.get("status")) if isinstance(entry, dict) else None
        if student is None:
            failures.append({"student_id": sid, "error": "Student not found in this class/section"})
            continue
        if student.id in seen:
            failures.append({"student_id": sid, "error": "Duplicate entry for this student"})
            continue
        seen.add(student.id)
        if status not in ATTENDANCE_STATUSES:
            failures.append({"student_id": sid, "error": f"Invalid status: {status}"})
            continue
        try:
            _upsert(s, student, d=d, session=session, status=status, remarks=clean_str(entry.get("remarks")), actor=actor)
            s.flush()
        except AttendanceLocked as e:
            failures.append({"student_id": sid, "error": str(e)})
            continue
        counts[status] += 1
        success += 1

    marked = AttendanceSession(
        attendance_date=d,
        class_name=class_name,
        section=section,
        session=session,
        marked_by=actor.actor_id,
        total_students=len(roster),
        present_count=counts["present"],
        absent_count=counts["absent"],
        created_at=datetime.utcnow(),
    )
    s.add(marked)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="attendance.session",
        entity_type="AttendanceSession",
        entity_id=str(marked.id),
        metadata={
            "date": d.isoformat(),
            "class_name": class_name,
            "section": section,
            "session": session,
            "success_count": success,
            "fail_count": len(failures),
        },
    )
    logger.info("Marked %s session %s-%s %s: %s ok, %s failed", session, class_name, section, d, success, len(failures))
    return {
        "session_id": marked.id,
        "success_count": success,
        "fail_count": len(failures),
        "total_students": len(roster),
        "progress": f"{success}/{len(roster)} marked",
        "failures": failures,
        "counts": counts,
    }


def query_records(s: "Session", filters: dict, *, student_ids: set[int] | None = None) -> "Query":
    """student_ids narrows the result to those students (self/own scopes)."""
    q = s.query(AttendanceRecord)
    if student_ids is not None:
        q = q.filter(AttendanceRecord.student_id.in_(sorted(student_ids) or [-1]))
    if filters.get("class_name"):
        q = q.filter(AttendanceRecord.class_name == filters["class_name"])
    if filters.get("section"):
        q = q.filter(AttendanceRecord.section == filters["section"].upper())
    if filters.get("session"):
        q = q.filter(AttendanceRecord.session == filters["session"])
    if filters.get("status"):
        q = q.filter(AttendanceRecord.status == filters["status"])
    start = parse_date(filters.get("start_date") or filters.get("date"))
    end = parse_date(filters.get("end_date") or filters.get("date"))
    if start:
        q = q.filter(AttendanceRecord.attendance_date >= start)
    if end:
        q = q.filter(AttendanceRecord.attendance_date <= end)
    if filters.get("student_id"):
        q = q.join(SchoolUser, SchoolUser.id == AttendanceRecord.student_id).filter(
            SchoolUser.user_id == filters["student_id"].upper()
        )
    return q.order_by(AttendanceRecord.attendance_date.desc(), AttendanceRecord.id.asc())


def status_counts(q: "Query") -> dict[str, int]:
    counts = {status: 0 for status in ATTENDANCE_STATUSES}
    rows = q.order_by(None).with_entities(AttendanceRecord.status, func.count(AttendanceRecord.id)).group_by(AttendanceRecord.status)
    for status, n in rows.all():
        counts[status] = counts.get(status, 0) + n
    return counts


def percentage(present: int, total: int) -> int:
    return round(present / total * 100) if total > 0 else 0


def attendance_stats(s: "Session", filters: dict) -> dict[str, Any]:
    counts = status_counts(query_records(s, filters))
    total = sum(counts.values())
    return {
        "total_records": total,
        "by_status": counts,
        "total_present": counts["present"],
        "total_absent": counts["absent"],
        "average_attendance": percentage(counts["present"], total),
    }


def student_report(s: "Session", student: SchoolUser, *, start: date | None = None, end: date | None = None) -> dict[str, Any]:
    filters = {"start_date": start, "end_date": end}
    q = query_records(s, filters, student_ids={student.id})
    counts = status_counts(q)
    total = sum(counts.values())
    return {
        "student": {
            "user_id": student.user_id,
            "name": student.display_name,
            "class_name": student.class_name,
            "section": student.section,
        },
        "summary": {
            "total_days": total,
            "present_days": counts["present"],
            "absent_days": counts["absent"],
            "late_days": counts["late"],
            "half_days": counts["half_day"],
            "leave_days": counts["medical_leave"] + counts["authorized_leave"],
            "by_status": counts,
            "attendance_percentage": percentage(counts["present"], total),
        },
        "records": [record_to_dict(r) for r in q.all()],
    }


def set_locked(s: "Session", record: AttendanceRecord, locked: bool, actor) -> None:
    record.is_locked = locked
    record.locked_by = actor.actor_id if locked else None
    record.locked_at = datetime.utcnow() if locked else None
    record.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="attendance.lock",
        entity_type="AttendanceRecord",
        entity_id=str(record.id),
        metadata={"is_locked": locked},
    )
