from __future__ import annotations

import logging
import re
from collections import Counter
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from app.schoolerp.audit import record_event
from app.schoolerp.constants import GRADE_ORDER, ROLE_TEACHER
from app.schoolerp.models import SchoolUser
from app.schoolerp.modules.schools.service import ACADEMIC_YEAR_RE, default_academic_year
from app.schoolerp.modules.timetable.models import Timetable, TimetablePeriod
from app.schoolerp.utils import clean_str, isoformat, parse_date, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session

logger = logging.getLogger(__name__)

DAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday")
PERIOD_TYPES = ("regular", "break", "lunch", "assembly", "activity")
NON_TEACHING_TYPES = frozenset({"break", "lunch"})
TIMETABLE_STATUSES = ("draft", "active", "archived")
TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

MAX_TEACHER_PERIODS_PER_DAY = 6
MIN_PERIODS_PER_DAY = 6


def _overlaps(a_start: str, a_end: str, b_start: str, b_end: str) -> bool:
    # HH:MM strings compare in time order
    return a_start < b_end and b_start < a_end


def _is_teaching(period_type: str) -> bool:
    return period_type not in NON_TEACHING_TYPES


def normalize_periods(raw_periods: list) -> list[dict[str, Any]]:
    """Lower-cased days and types, stripped strings. Assumes validate_timetable_payload passed."""
    out = []
    for raw in raw_periods:
        day = clean_str(raw.get("day") or raw.get("day_of_week")).lower()
        out.append(
            {
                "day": day,
                "period_number": parse_int(raw.get("period_number")),
                "start_time": clean_str(raw.get("start_time")),
                "end_time": clean_str(raw.get("end_time")),
                "period_type": (clean_str(raw.get("period_type")) or "regular").lower(),
                "subject": clean_str(raw.get("subject")),
                "teacher_id": (clean_str(raw.get("teacher_id")) or "").upper() or None,
                "room": clean_str(raw.get("room")),
            }
        )
    return out


def validate_timetable_payload(payload: dict) -> list[str]:
    """Validate a timetable submission. Returns list of errors."""
    errors: list[str] = []
    class_name = clean_str(payload.get("class_name") or payload.get("class"))
    if not class_name:
        errors.append("Class is required.")
    elif class_name not in GRADE_ORDER:
        errors.append(f"Unknown class: {class_name}")
    if not clean_str(payload.get("section")):
        errors.append("Section is required.")
    year = clean_str(payload.get("academic_year"))
    if year and not ACADEMIC_YEAR_RE.match(year):
        errors.append("Academic year must look like 2024-25.")
    if clean_str(payload.get("effective_from")) and parse_date(payload.get("effective_from")) is None:
        errors.append("effective_from must be a date (YYYY-MM-DD).")
    status = clean_str(payload.get("status"))
    if status and status.lower() not in TIMETABLE_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(TIMETABLE_STATUSES)}")

    periods = payload.get("periods")
    if not isinstance(periods, list) or not periods:
        errors.append("At least one period is required.")
        return errors

    slots: dict[str, list[tuple[int, str, str]]] = {}
    for i, raw in enumerate(periods, start=1):
        if not isinstance(raw, dict):
            errors.append(f"Period {i}: must be an object.")
            continue
        day = (clean_str(raw.get("day") or raw.get("day_of_week")) or "").lower()
        number = parse_int(raw.get("period_number"))
        label = f"{day} period {number}" if day and number else f"Period {i}"
        if day not in DAYS:
            errors.append(f"{label}: day must be one of: {', '.join(DAYS)}")
        if number is None or number < 1:
            errors.append(f"{label}: period_number must be a positive integer.")
        period_type = (clean_str(raw.get("period_type")) or "regular").lower()
        if period_type not in PERIOD_TYPES:
            errors.append(f"{label}: period_type must be one of: {', '.join(PERIOD_TYPES)}")
        elif _is_teaching(period_type) and not clean_str(raw.get("subject")):
            errors.append(f"{label}: subject is required.")

        start, end = clean_str(raw.get("start_time")), clean_str(raw.get("end_time"))
        if not start or not TIME_RE.match(start) or not end or not TIME_RE.match(end):
            errors.append(f"{label}: start_time and end_time must be HH:MM.")
            continue
        if start >= end:
            errors.append(f"{label}: end_time must be after start_time.")
            continue
        if day not in DAYS or number is None:
            continue

        for other_number, other_start, other_end in slots.get(day, []):
            if other_number == number:
                errors.append(f"{label}: listed more than once.")
            elif _overlaps(start, end, other_start, other_end):
                errors.append(f"{label}: overlaps period {other_number}.")
        slots.setdefault(day, []).append((number, start, end))
    return errors


def resolve_teachers(s: "Session", periods: list[dict[str, Any]]) -> tuple[dict[str, SchoolUser], list[str]]:
    """Maps teacher user ids to active teachers; unknown ids come back as errors."""
    wanted = {p["teacher_id"] for p in periods if p["teacher_id"]}
    if not wanted:
        return {}, []
    found = {
        u.user_id: u
        for u in s.query(SchoolUser)
        .filter(SchoolUser.user_id.in_(sorted(wanted)), SchoolUser.role == ROLE_TEACHER, SchoolUser.is_active.is_(True))
        .all()
    }
    errors = [f"Teacher not found: {tid}" for tid in sorted(wanted - set(found))]
    return found, errors


def _other_active_periods(s: "Session", academic_year: str, exclude_id: int | None) -> list[TimetablePeriod]:
    q = (
        s.query(TimetablePeriod)
        .join(Timetable, Timetable.id == TimetablePeriod.timetable_id)
        .filter(Timetable.academic_year == academic_year, Timetable.status == "active")
    )
    if exclude_id is not None:
        q = q.filter(Timetable.id != exclude_id)
    return q.all()


def detect_conflicts(
    s: "Session",
    periods: list[dict[str, Any]],
    teachers: dict[str, SchoolUser],
    *,
    academic_year: str,
    exclude_id: int | None = None,
) -> list[dict[str, Any]]:
    """
    Clashes against the school's other active timetables for the same year:
    a teacher or a room booked twice at overlapping times, and teachers with
    more than MAX_TEACHER_PERIODS_PER_DAY teaching periods on a day.
    """
    others = _other_active_periods(s, academic_year, exclude_id)
    conflicts: list[dict[str, Any]] = []
    load: Counter = Counter()

    for o in others:
        if o.teacher_id is not None and _is_teaching(o.period_type):
            load[(o.teacher_id, o.day_of_week)] += 1

    for p in periods:
        if not _is_teaching(p["period_type"]):
            continue
        slot = f"{p['start_time']}-{p['end_time']}"
        teacher = teachers.get(p["teacher_id"]) if p["teacher_id"] else None
        if teacher is not None:
            load[(teacher.id, p["day"])] += 1
        for o in others:
            if o.day_of_week != p["day"] or not _overlaps(p["start_time"], p["end_time"], o.start_time, o.end_time):
                continue
            where = f"{o.timetable.class_name}-{o.timetable.section}"
            if teacher is not None and o.teacher_id == teacher.id:
                conflicts.append(
                    {
                        "type": "teacher_conflict",
                        "day": p["day"],
                        "period": p["period_number"],
                        "time_slot": slot,
                        "teacher_id": teacher.user_id,
                        "message": f"Teacher {teacher.display_name} is already assigned to {where} at {o.start_time}-{o.end_time}",
                    }
                )
            if p["room"] and o.room and o.room.lower() == p["room"].lower():
                conflicts.append(
                    {
                        "type": "room_conflict",
                        "day": p["day"],
                        "period": p["period_number"],
                        "time_slot": slot,
                        "room": p["room"],
                        "message": f"Room {p['room']} is already booked by {where} at {o.start_time}-{o.end_time}",
                    }
                )

    by_pk = {t.id: t for t in teachers.values()}
    for (teacher_pk, day), count in sorted(load.items(), key=lambda kv: (kv[0][1], kv[0][0])):
        teacher = by_pk.get(teacher_pk)
        if teacher is None or count <= MAX_TEACHER_PERIODS_PER_DAY:
            continue
        conflicts.append(
            {
                "type": "teacher_overload",
                "day": day,
                "teacher_id": teacher.user_id,
                "periods_count": count,
                "message": f"Teacher {teacher.display_name} has {count} periods on {day} (exceeds max {MAX_TEACHER_PERIODS_PER_DAY})",
            }
        )
    return conflicts


def conflicts_for(s: "Session", tt: Timetable) -> list[dict[str, Any]]:
    """Conflicts of a saved timetable against the other active ones."""
    periods = [
        {
            "day": p.day_of_week,
            "period_number": p.period_number,
            "start_time": p.start_time,
            "end_time": p.end_time,
            "period_type": p.period_type,
            "subject": p.subject,
            "teacher_id": p.teacher.user_id if p.teacher else None,
            "room": p.room,
        }
        for p in tt.periods
    ]
    teachers = {p.teacher.user_id: p.teacher for p in tt.periods if p.teacher}
    return detect_conflicts(s, periods, teachers, academic_year=tt.academic_year, exclude_id=tt.id)


def find_timetable(s: "Session", class_name: str, section: str, academic_year: str) -> Timetable | None:
    return (
        s.query(Timetable)
        .filter(
            Timetable.class_name == class_name,
            Timetable.section == section.upper(),
            Timetable.academic_year == academic_year,
        )
        .one_or_none()
    )


def save_timetable(
    s: "Session",
    payload: dict,
    periods: list[dict[str, Any]],
    teachers: dict[str, SchoolUser],
    actor,
) -> tuple[Timetable, bool, list[dict[str, Any]]]:
    """
    Create or replace the timetable for (class, section, academic year).
    A timetable asked to go active while it has conflicts is saved as a draft.
    Returns (timetable, created, conflicts).
    """
    class_name = clean_str(payload.get("class_name") or payload.get("class"))
    section = clean_str(payload.get("section")).upper()
    year = clean_str(payload.get("academic_year")) or default_academic_year()
    requested = (clean_str(payload.get("status")) or "active").lower()
    now = datetime.utcnow()

    tt = find_timetable(s, class_name, section, year)
    created = tt is None
    conflicts = detect_conflicts(s, periods, teachers, academic_year=year, exclude_id=None if created else tt.id)
    status = "draft" if conflicts and requested == "active" else requested

    if tt is None:
        tt = Timetable(class_name=class_name, section=section, academic_year=year, created_by=actor.actor_id, created_at=now)
        s.add(tt)
    tt.effective_from = parse_date(payload.get("effective_from")) or tt.effective_from or date.today()
    tt.status = status
    tt.updated_by = actor.actor_id
    tt.updated_at = now
    if not created:
        # old rows must be gone before the new ones hit the (day, period) unique key
        tt.periods.clear()
        s.flush()
    tt.periods = [
        TimetablePeriod(
            day_of_week=p["day"],
            day_number=DAYS.index(p["day"]) + 1,
            period_number=p["period_number"],
            start_time=p["start_time"],
            end_time=p["end_time"],
            period_type=p["period_type"],
            subject=p["subject"],
            teacher_id=teachers[p["teacher_id"]].id if p["teacher_id"] else None,
            room=p["room"],
        )
        for p in periods
    ]
    s.flush()

    record_event(
        s,
        actor=actor,
        action="timetable.create" if created else "timetable.update",
        entity_type="Timetable",
        entity_id=str(tt.id),
        metadata={
            "class_name": class_name,
            "section": section,
            "academic_year": year,
            "status": status,
            "periods": len(periods),
            "conflicts": len(conflicts),
        },
    )
    logger.info("Saved timetable %s-%s %s (%s, %s conflicts)", class_name, section, year, status, len(conflicts))
    return tt, created, conflicts


def period_to_dict(p: TimetablePeriod) -> dict[str, Any]:
    return {
        "period_number": p.period_number,
        "start_time": p.start_time,
        "end_time": p.end_time,
        "period_type": p.period_type,
        "subject": p.subject,
        "teacher_id": p.teacher.user_id if p.teacher else None,
        "teacher_name": p.teacher.display_name if p.teacher else None,
        "room": p.room,
    }


def _sorted_periods(tt: Timetable) -> list[TimetablePeriod]:
    return sorted(tt.periods, key=lambda p: (p.day_number, p.start_time, p.period_number))


def timetable_to_dict(tt: Timetable, *, include_periods: bool = True) -> dict[str, Any]:
    periods = _sorted_periods(tt)
    d: dict[str, Any] = {
        "id": tt.id,
        "class_name": tt.class_name,
        "section": tt.section,
        "academic_year": tt.academic_year,
        "effective_from": isoformat(tt.effective_from),
        "status": tt.status,
        "total_periods": sum(1 for p in periods if _is_teaching(p.period_type)),
        "working_days": len({p.day_of_week for p in periods}),
        "created_by": tt.created_by,
        "updated_at": isoformat(tt.updated_at),
    }
    if include_periods:
        schedule: dict[str, list[dict[str, Any]]] = {}
        for p in periods:
            schedule.setdefault(p.day_of_week, []).append(period_to_dict(p))
        d["weekly_schedule"] = schedule
    return d


def analyze_timetable(tt: Timetable) -> dict[str, Any]:
    """Subject balance and workload summary with an efficiency score out of 100."""
    subjects: Counter = Counter()
    workload: Counter = Counter()
    issues: list[dict[str, Any]] = []

    by_day: dict[str, list[TimetablePeriod]] = {}
    for p in _sorted_periods(tt):
        if _is_teaching(p.period_type):
            by_day.setdefault(p.day_of_week, []).append(p)

    for day in DAYS:
        teaching = by_day.get(day)
        if not teaching:
            continue
        for p in teaching:
            if p.subject:
                subjects[p.subject] += 1
            if p.teacher:
                workload[p.teacher.user_id] += 1
        if len(teaching) < MIN_PERIODS_PER_DAY:
            issues.append(
                {
                    "type": "underutilized_day",
                    "day": day,
                    "periods": len(teaching),
                    "message": f"Only {len(teaching)} periods scheduled",
                }
            )
        for i in range(len(teaching) - 2):
            run = {teaching[i].subject, teaching[i + 1].subject, teaching[i + 2].subject}
            if len(run) == 1 and teaching[i].subject:
                issues.append(
                    {
                        "type": "consecutive_subjects",
                        "day": day,
                        "subject": teaching[i].subject,
                        "start_period": teaching[i].period_number,
                        "count": 3,
                    }
                )

    score = 100 - 10 * len(issues)
    if subjects and max(subjects.values()) - min(subjects.values()) > 5:
        score -= 15
    return {
        "total_periods": sum(len(v) for v in by_day.values()),
        "subject_distribution": dict(sorted(subjects.items())),
        "teacher_workload": dict(sorted(workload.items())),
        "efficiency": {"score": max(0, score), "issues": issues},
    }


def query_timetables(s: "Session", filters: dict) -> "Query":
    q = s.query(Timetable)
    if filters.get("academic_year"):
        q = q.filter(Timetable.academic_year == filters["academic_year"])
    if filters.get("status"):
        q = q.filter(Timetable.status == filters["status"].lower())
    if filters.get("class_name"):
        q = q.filter(Timetable.class_name == filters["class_name"])
    return q.order_by(Timetable.academic_year.desc(), Timetable.class_name.asc(), Timetable.section.asc())


def teacher_schedule(s: "Session", teacher: SchoolUser, academic_year: str) -> list[dict[str, Any]]:
    rows = (
        s.query(TimetablePeriod)
        .join(Timetable, Timetable.id == TimetablePeriod.timetable_id)
        .filter(
            TimetablePeriod.teacher_id == teacher.id,
            Timetable.academic_year == academic_year,
            Timetable.status == "active",
        )
        .order_by(TimetablePeriod.day_number.asc(), TimetablePeriod.start_time.asc())
        .all()
    )
    return [
        {
            "day": p.day_of_week,
            "class_name": p.timetable.class_name,
            "section": p.timetable.section,
            **period_to_dict(p),
        }
        for p in rows
    ]


def set_status(s: "Session", tt: Timetable, status: str, actor) -> None:
    previous = tt.status
    tt.status = status
    tt.updated_by = actor.actor_id
    tt.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="timetable.status",
        entity_type="Timetable",
        entity_id=str(tt.id),
        metadata={"old": previous, "new": status},
    )


def delete_timetable(s: "Session", tt: Timetable, actor) -> None:
    record_event(
        s,
        actor=actor,
        action="timetable.delete",
        entity_type="Timetable",
        entity_id=str(tt.id),
        metadata={"class_name": tt.class_name, "section": tt.section, "academic_year": tt.academic_year},
    )
    s.delete(tt)
