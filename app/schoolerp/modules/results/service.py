from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.schoolerp.audit import record_event
from app.schoolerp.models import SchoolUser
from app.schoolerp.modules.results.grading import grade_for, level_for_class, percentage_of
from app.schoolerp.modules.results.models import Result, ResultSubject
from app.schoolerp.modules.schools.service import ACADEMIC_YEAR_RE, default_academic_year
from app.schoolerp.utils import clean_str, isoformat, parse_float

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT_MAX_MARKS = 100.0
TOPPERS = 5
TREND_THRESHOLD = 5.0


def subject_to_dict(x: ResultSubject) -> dict[str, Any]:
    return {
        "name": x.name,
        "marks_obtained": x.marks_obtained,
        "max_marks": x.max_marks,
        "practical_marks": x.practical_marks,
        "max_practical_marks": x.max_practical_marks,
        "percentage": x.percentage,
        "grade": x.grade,
        "grade_point": x.grade_point,
        "status": x.status,
        "remarks": x.remarks,
    }


def result_to_dict(r: Result, *, include_subjects: bool = True) -> dict[str, Any]:
    d: dict[str, Any] = {
        "id": r.id,
        "student": {"user_id": r.student.user_id, "name": r.student.display_name} if r.student else None,
        "class_name": r.class_name,
        "section": r.section,
        "academic_year": r.academic_year,
        "exam_type": r.exam_type,
        "total_marks": r.total_marks,
        "max_marks": r.max_marks,
        "percentage": r.percentage,
        "grade": r.grade,
        "grade_point": r.grade_point,
        "status": r.status,
        "rank": r.rank,
        "class_size": r.class_size,
        "remarks": r.remarks,
        "is_published": bool(r.is_published),
        "published_at": isoformat(r.published_at),
        "created_by": r.created_by,
        "updated_at": isoformat(r.updated_at),
    }
    if include_subjects:
        d["subjects"] = [subject_to_dict(x) for x in r.subjects]
    return d


def validate_result_payload(payload: dict) -> list[str]:
    """Validate a result submission. Returns list of errors."""
    errors: list[str] = []
    if not clean_str(payload.get("student_id")):
        errors.append("Student ID is required.")
    class_name = clean_str(payload.get("class_name") or payload.get("class"))
    if not class_name:
        errors.append("Class is required.")
    elif level_for_class(class_name) is None:
        errors.append(f"Unknown class: {class_name}")
    if not clean_str(payload.get("section")):
        errors.append("Section is required.")
    if not clean_str(payload.get("exam_type")):
        errors.append("Exam type is required.")
    year = clean_str(payload.get("academic_year"))
    if year and not ACADEMIC_YEAR_RE.match(year):
        errors.append("Academic year must look like 2024-25.")

    subjects = payload.get("subjects")
    if not isinstance(subjects, list) or not subjects:
        errors.append("At least one subject is required.")
        return errors

    seen: set[str] = set()
    for i, raw in enumerate(subjects, start=1):
        if not isinstance(raw, dict):
            errors.append(f"Subject {i}: must be an object.")
            continue
        name = clean_str(raw.get("name") or raw.get("subject"))
        label = name or f"Subject {i}"
        if not name:
            errors.append(f"Subject {i}: name is required.")
        elif name.lower() in seen:
            errors.append(f"{label}: listed more than once.")
        else:
            seen.add(name.lower())

        marks = parse_float(raw.get("marks_obtained"))
        max_marks = parse_float(raw.get("max_marks")) if raw.get("max_marks") not in (None, "") else DEFAULT_SUBJECT_MAX_MARKS
        if marks is None:
            errors.append(f"{label}: marks_obtained is required.")
        if max_marks is None or max_marks <= 0:
            errors.append(f"{label}: max_marks must be a positive number.")
        elif marks is not None and not 0 <= marks <= max_marks:
            errors.append(f"{label}: marks_obtained must be between 0 and {max_marks:g}.")

        practical = parse_float(raw.get("practical_marks")) if raw.get("practical_marks") not in (None, "") else 0.0
        max_practical = parse_float(raw.get("max_practical_marks")) if raw.get("max_practical_marks") not in (None, "") else 0.0
        if practical is None:
            errors.append(f"{label}: practical_marks must be a number.")
        if max_practical is None:
            errors.append(f"{label}: max_practical_marks must be a number.")
        elif max_practical < 0:
            errors.append(f"{label}: max_practical_marks cannot be negative.")
        elif practical is not None and not 0 <= practical <= max_practical:
            errors.append(f"{label}: practical_marks must be between 0 and {max_practical:g}.")
    return errors


def _build_subjects(class_name: str, subjects: list[dict]) -> list[ResultSubject]:
    rows = []
    for raw in subjects:
        marks = parse_float(raw.get("marks_obtained")) or 0.0
        max_marks = parse_float(raw.get("max_marks")) or DEFAULT_SUBJECT_MAX_MARKS
        practical = parse_float(raw.get("practical_marks")) or 0.0
        max_practical = parse_float(raw.get("max_practical_marks")) or 0.0
        pct = percentage_of(marks + practical, max_marks + max_practical)
        info = grade_for(pct, class_name)
        rows.append(
            ResultSubject(
                name=clean_str(raw.get("name") or raw.get("subject")),
                marks_obtained=marks,
                max_marks=max_marks,
                practical_marks=practical,
                max_practical_marks=max_practical,
                percentage=pct,
                grade=info.grade,
                grade_point=info.grade_point,
                status=info.status,
                remarks=clean_str(raw.get("remarks")),
            )
        )
    return rows


def find_result(s: "Session", student_id: int, academic_year: str, exam_type: str) -> Result | None:
    return (
        s.query(Result)
        .filter(Result.student_id == student_id, Result.academic_year == academic_year, Result.exam_type == exam_type)
        .one_or_none()
    )


def save_result(s: "Session", student: SchoolUser, payload: dict, actor) -> tuple[Result, bool]:
    """
    Create or replace the result for (student, academic year, exam type).
    Subject rows are rebuilt and class ranks recomputed. Returns (result, created).
    """
    class_name = clean_str(payload.get("class_name") or payload.get("class"))
    section = clean_str(payload.get("section")).upper()
    year = clean_str(payload.get("academic_year")) or default_academic_year()
    exam_type = clean_str(payload.get("exam_type"))
    now = datetime.utcnow()

    subjects = _build_subjects(class_name, payload["subjects"])
    total = round(sum(x.marks_obtained + x.practical_marks for x in subjects), 2)
    maximum = round(sum(x.max_marks + x.max_practical_marks for x in subjects), 2)
    pct = percentage_of(total, maximum)
    info = grade_for(pct, class_name)

    r = find_result(s, student.id, year, exam_type)
    created = r is None
    if r is None:
        r = Result(student_id=student.id, academic_year=year, exam_type=exam_type, created_by=actor.actor_id, created_at=now)
        r.student = student
        s.add(r)
        previous = None
    else:
        previous = {"percentage": r.percentage, "grade": r.grade, "class_name": r.class_name, "section": r.section}
    r.class_name = class_name
    r.section = section
    r.subjects = subjects
    r.total_marks = total
    r.max_marks = maximum
    r.percentage = pct
    r.grade = info.grade
    r.grade_point = info.grade_point
    r.status = info.status
    r.remarks = clean_str(payload.get("remarks"))
    r.updated_by = actor.actor_id
    r.updated_at = now
    s.flush()

    recompute_ranks(s, class_name, section, exam_type, year)
    if previous and (previous["class_name"], previous["section"]) != (class_name, section):
        recompute_ranks(s, previous["class_name"], previous["section"], exam_type, year)

    record_event(
        s,
        actor=actor,
        action="result.create" if created else "result.update",
        entity_type="Result",
        entity_id=str(r.id),
        metadata={
            "student_id": student.user_id,
            "exam_type": exam_type,
            "academic_year": year,
            "old": previous,
            "new": {"percentage": pct, "grade": info.grade},
        },
    )
    return r, created


def recompute_ranks(s: "Session", class_name: str, section: str, exam_type: str, academic_year: str) -> int:
    """Sequential ranks by percentage descending; equal percentages keep entry order."""
    rows = (
        s.query(Result)
        .filter(
            Result.class_name == class_name,
            Result.section == section,
            Result.exam_type == exam_type,
            Result.academic_year == academic_year,
        )
        .order_by(Result.percentage.desc(), Result.id.asc())
        .all()
    )
    for i, r in enumerate(rows, start=1):
        r.rank = i
        r.class_size = len(rows)
    s.flush()
    return len(rows)


def set_published(s: "Session", r: Result, published: bool, actor) -> None:
    r.is_published = published
    r.published_at = datetime.utcnow() if published else None
    r.published_by = actor.actor_id if published else None
    r.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="result.publish",
        entity_type="Result",
        entity_id=str(r.id),
        metadata={"is_published": published},
    )


def student_results(
    s: "Session",
    student: SchoolUser,
    *,
    academic_year: str | None = None,
    exam_type: str | None = None,
    published_only: bool = False,
    recorded_by: str | None = None,
) -> "Query":
    q = s.query(Result).filter(Result.student_id == student.id)
    if academic_year:
        q = q.filter(Result.academic_year == academic_year)
    if exam_type:
        q = q.filter(Result.exam_type == exam_type)
    if published_only:
        q = q.filter(Result.is_published.is_(True))
    if recorded_by:
        q = q.filter(Result.created_by == recorded_by)
    return q.order_by(Result.updated_at.desc(), Result.id.desc())


def progress_trend(results: list[Result]) -> dict[str, Any]:
    """Compares the two most recent results (newest first)."""
    if len(results) < 2:
        return {"trend": "insufficient_data"}
    latest, previous = results[0], results[1]
    delta = round(latest.percentage - previous.percentage, 2)
    if delta > TREND_THRESHOLD:
        trend = "improving"
    elif delta < -TREND_THRESHOLD:
        trend = "declining"
    else:
        trend = "stable"
    return {
        "trend": trend,
        "improvement": delta,
        "latest_percentage": latest.percentage,
        "previous_percentage": previous.percentage,
    }


def _avg(values: list[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def class_report(
    s: "Session",
    class_name: str,
    section: str,
    *,
    academic_year: str,
    exam_type: str | None = None,
) -> dict[str, Any] | None:
    q = s.query(Result).filter(
        Result.class_name == class_name,
        Result.section == section.upper(),
        Result.academic_year == academic_year,
    )
    if exam_type:
        q = q.filter(Result.exam_type == exam_type)
    results = q.order_by(Result.percentage.desc(), Result.id.asc()).all()
    if not results:
        return None

    percentages = [r.percentage for r in results]
    passed = sum(1 for r in results if r.status == "pass")

    by_subject: dict[str, list[ResultSubject]] = {}
    for r in results:
        for x in r.subjects:
            by_subject.setdefault(x.name, []).append(x)
    subject_analysis = {
        name: {
            "average_percentage": _avg([x.percentage for x in rows]),
            "highest_percentage": max(x.percentage for x in rows),
            "lowest_percentage": min(x.percentage for x in rows),
            "pass_count": sum(1 for x in rows if x.status == "pass"),
            "fail_count": sum(1 for x in rows if x.status != "pass"),
        }
        for name, rows in sorted(by_subject.items())
    }

    return {
        "class_details": {
            "class_name": class_name,
            "section": section.upper(),
            "academic_year": academic_year,
            "exam_type": exam_type,
            "total_students": len(results),
        },
        "class_statistics": {
            "average_percentage": _avg(percentages),
            "highest_percentage": max(percentages),
            "lowest_percentage": min(percentages),
            "pass_count": passed,
            "fail_count": len(results) - passed,
            "pass_percentage": round(passed / len(results) * 100, 2),
        },
        "subject_analysis": subject_analysis,
        "grade_distribution": dict(Counter(r.grade for r in results)),
        "top_performers": [
            {
                "student_id": r.student.user_id if r.student else None,
                "name": r.student.display_name if r.student else None,
                "percentage": r.percentage,
                "grade": r.grade,
                "rank": r.rank,
                "exam_type": r.exam_type,
            }
            for r in results[:TOPPERS]
        ],
    }
