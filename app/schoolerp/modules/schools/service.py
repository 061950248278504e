from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_

from app.schoolerp.audit import record_event
from app.schoolerp.constants import AFFILIATION_BOARDS, ROLE_ADMIN, SCHOOL_TYPES
from app.schoolerp.models import School
from app.schoolerp.tenancy import database_name_for
from app.schoolerp.utils import EMAIL_RE, PHONE_RE, clean_str, isoformat, parse_bool, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session

logger = logging.getLogger(__name__)

CODE_RE = re.compile(r"^[A-Z0-9]{2,10}$")
PINCODE_RE = re.compile(r"^\d{6}$")
ACADEMIC_YEAR_RE = re.compile(r"^\d{4}-\d{2}$")

# code is set once at creation; database_name follows it
EDITABLE_FIELDS = (
    "name",
    "school_type",
    "affiliation_board",
    "established_year",
    "principal_name",
    "principal_email",
    "contact_phone",
    "contact_email",
    "website",
    "street",
    "city",
    "state",
    "pincode",
    "country",
    "current_academic_year",
)


def normalize_code(raw: Any) -> str:
    return str(raw or "").strip().upper()


def default_academic_year(today: date | None = None) -> str:
    """Academic year starts in April: 2024-04-01 .. 2025-03-31 is "2024-25"."""
    today = today or date.today()
    start = today.year if today.month >= 4 else today.year - 1
    return f"{start}-{str(start + 1)[-2:]}"


def validate_school_payload(payload: dict, *, creating: bool = True) -> list[str]:
    """Validate school creation/update payload. Returns list of errors."""
    errors: list[str] = []

    if creating or "name" in payload:
        name = clean_str(payload.get("name"))
        if not name:
            errors.append("School name is required.")
        elif len(name) < 2 or len(name) > 255:
            errors.append("School name must be 2-255 characters.")

    if creating:
        code = normalize_code(payload.get("code"))
        if not code:
            errors.append("School code is required.")
        elif not CODE_RE.match(code):
            errors.append("School code must be 2-10 characters long and contain only letters and numbers.")

    school_type = clean_str(payload.get("school_type"))
    if school_type and school_type not in SCHOOL_TYPES:
        errors.append(f"Invalid school type. Must be one of: {', '.join(SCHOOL_TYPES)}")
    board = clean_str(payload.get("affiliation_board"))
    if board and board not in AFFILIATION_BOARDS:
        errors.append(f"Invalid affiliation board. Must be one of: {', '.join(AFFILIATION_BOARDS)}")

    if payload.get("established_year") not in (None, ""):
        year = parse_int(payload.get("established_year"))
        if year is None or year < 1800 or year > date.today().year:
            errors.append("Established year must be a valid year not in the future.")

    for field, label in (("principal_email", "Principal email"), ("contact_email", "Contact email")):
        v = clean_str(payload.get(field))
        if v and not EMAIL_RE.match(v):
            errors.append(f"{label} is invalid.")

    phone = clean_str(payload.get("contact_phone"))
    if phone and not PHONE_RE.match(phone):
        errors.append("Contact phone must be 7-10 digits.")
    pincode = clean_str(payload.get("pincode"))
    if pincode and not PINCODE_RE.match(pincode):
        errors.append("Pincode must be 6 digits.")
    year = clean_str(payload.get("current_academic_year"))
    if year and not ACADEMIC_YEAR_RE.match(year):
        errors.append("Academic year must look like 2024-25.")
    return errors


def school_to_dict(school: School, *, user_counts: dict[str, int] | None = None) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": school.id,
        "name": school.name,
        "code": school.code,
        "school_type": school.school_type,
        "affiliation_board": school.affiliation_board,
        "established_year": school.established_year,
        "principal_name": school.principal_name,
        "principal_email": school.principal_email,
        "contact": {
            "phone": school.contact_phone,
            "email": school.contact_email,
            "website": school.website,
        },
        "address": {
            "street": school.street,
            "city": school.city,
            "state": school.state,
            "pincode": school.pincode,
            "country": school.country,
        },
        "current_academic_year": school.current_academic_year,
        "is_active": bool(school.is_active),
        "database_name": school.database_name,
        "database_created": bool(school.database_created),
        "database_created_at": isoformat(school.database_created_at),
        "created_at": isoformat(school.created_at),
        "updated_at": isoformat(school.updated_at),
    }
    if user_counts is not None:
        data["user_counts"] = user_counts
    return data


def get_school(s: "Session", code: str) -> School | None:
    return s.query(School).filter(School.code == normalize_code(code)).one_or_none()


def code_taken(s: "Session", code: str) -> bool:
    return s.query(School.id).filter(School.code == normalize_code(code)).first() is not None


def create_school(s: "Session", payload: dict, actor) -> School:
    """Registers the school row. The tenant database is provisioned by the caller."""
    now = datetime.utcnow()
    code = normalize_code(payload.get("code"))
    school = School(
        name=clean_str(payload.get("name")),
        code=code,
        school_type=clean_str(payload.get("school_type")) or "Private",
        affiliation_board=clean_str(payload.get("affiliation_board")) or "CBSE",
        established_year=parse_int(payload.get("established_year")) or date.today().year,
        principal_name=clean_str(payload.get("principal_name")),
        principal_email=(clean_str(payload.get("principal_email")) or "").lower() or None,
        contact_phone=clean_str(payload.get("contact_phone")),
        contact_email=(clean_str(payload.get("contact_email")) or "").lower() or None,
        website=clean_str(payload.get("website")),
        street=clean_str(payload.get("street")),
        city=clean_str(payload.get("city")),
        state=clean_str(payload.get("state")),
        pincode=clean_str(payload.get("pincode")),
        country=clean_str(payload.get("country")) or "India",
        current_academic_year=clean_str(payload.get("current_academic_year")) or default_academic_year(),
        is_active=True,
        database_name=database_name_for(code),
        database_created=False,
        created_at=now,
        updated_at=now,
    )
    s.add(school)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="school.create",
        entity_type="School",
        entity_id=school.code,
        metadata={"name": school.name, "database_name": school.database_name},
    )
    logger.info("Registered school %s (%s)", school.code, school.database_name)
    return school


def mark_provisioned(school: School) -> None:
    school.database_created = True
    school.database_created_at = datetime.utcnow()


def update_school(s: "Session", school: School, payload: dict, actor) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    for field in EDITABLE_FIELDS:
        if field not in payload:
            continue
        if field == "established_year":
            new = parse_int(payload.get(field))
        elif field in ("principal_email", "contact_email"):
            new = (clean_str(payload.get(field)) or "").lower() or None
        else:
            new = clean_str(payload.get(field))
        if field in ("name", "school_type", "affiliation_board", "established_year", "country") and new is None:
            continue
        old = getattr(school, field)
        if new != old:
            setattr(school, field, new)
            changes[field] = [old, new]
    if changes:
        school.updated_at = datetime.utcnow()
        record_event(s, actor=actor, action="school.update", entity_type="School", entity_id=school.code, metadata={"changes": changes})
    return changes


def set_school_status(s: "Session", school: School, active: bool, actor, *, reason: str | None = None) -> None:
    school.is_active = active
    school.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="school.status",
        entity_type="School",
        entity_id=school.code,
        reason=reason,
        metadata={"is_active": active},
    )
    logger.info("School %s %s", school.code, "activated" if active else "deactivated")


def delete_school(s: "Session", school: School, actor) -> None:
    record_event(
        s,
        actor=actor,
        action="school.delete",
        entity_type="School",
        entity_id=school.code,
        metadata={"name": school.name, "database_name": school.database_name},
    )
    s.delete(school)


def query_schools(s: "Session", *, q: str = "", active: Any = None) -> "Query":
    query = s.query(School)
    if q:
        like = f"%{q}%"
        query = query.filter(or_(School.name.ilike(like), School.code.ilike(like), School.city.ilike(like)))
    flag = parse_bool(active)
    if flag is not None:
        query = query.filter(School.is_active.is_(flag))
    return query.order_by(School.name.asc())


def first_admin_payload(raw: Any) -> dict | None:
    """The optional ``admin`` object on school creation, forced to the admin role."""
    if not isinstance(raw, dict) or not raw:
        return None
    payload = dict(raw)
    payload["role"] = ROLE_ADMIN
    return payload
