from __future__ import annotations

import csv
import io
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select

from app.schoolerp.audit import record_event
from app.schoolerp.constants import GRADE_ORDER, ROLE_ID_PREFIXES, ROLE_PARENT, ROLE_STUDENT, ROLE_TEACHER, SCHOOL_ROLES
from app.schoolerp.models import IdSequence, SchoolUser, StudentGuardian
from app.schoolerp.security import (
    MIN_PASSWORD_LENGTH,
    generate_random_password,
    hash_password,
    password_from_date_of_birth,
)
from app.schoolerp.utils import EMAIL_RE, PHONE_RE, clean_str, isoformat, parse_bool, parse_date

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session

logger = logging.getLogger(__name__)

GENDERS = ("male", "female", "other")
PROFILE_FIELDS = (
    "first_name",
    "middle_name",
    "last_name",
    "email",
    "phone",
    "date_of_birth",
    "gender",
    "class_name",
    "section",
    "roll_number",
    "admission_number",
    "subjects",
    "qualification",
)


class SequenceError(RuntimeError):
    pass


def _subjects_list(raw: str | None) -> list[str]:
    return [x.strip() for x in (raw or "").split(",") if x.strip()]


def _subjects_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        items = [str(x).strip() for x in value if str(x).strip()]
    else:
        items = _subjects_list(str(value))
    return ",".join(items) or None


def user_to_dict(u: SchoolUser) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": u.id,
        "user_id": u.user_id,
        "email": u.email,
        "role": u.role,
        "first_name": u.first_name,
        "middle_name": u.middle_name,
        "last_name": u.last_name,
        "name": u.display_name,
        "phone": u.phone,
        "date_of_birth": isoformat(u.date_of_birth),
        "gender": u.gender,
        "is_active": bool(u.is_active),
        "password_change_required": bool(u.password_change_required),
        "last_login": isoformat(u.last_login),
        "created_at": isoformat(u.created_at),
        "updated_at": isoformat(u.updated_at),
    }
    if u.role == ROLE_STUDENT:
        data.update(
            class_name=u.class_name,
            section=u.section,
            roll_number=u.roll_number,
            admission_number=u.admission_number,
        )
    elif u.role == ROLE_TEACHER:
        data.update(subjects=_subjects_list(u.subjects), qualification=u.qualification)
    return data


def validate_user_payload(payload: dict, *, creating: bool = True) -> list[str]:
    """Validate school user creation/update payload. Returns list of errors."""
    errors: list[str] = []

    def _name(field: str, label: str, required: bool) -> None:
        if field not in payload and not creating:
            return
        v = clean_str(payload.get(field))
        if not v:
            if required:
                errors.append(f"{label} is required.")
            return
        if not 2 <= len(v) <= 50:
            errors.append(f"{label} must be 2-50 characters.")

    _name("first_name", "First name", True)
    _name("last_name", "Last name", True)
    _name("middle_name", "Middle name", False)

    if creating or "email" in payload:
        raw_email = payload.get("email")
        email = clean_str(raw_email) if isinstance(raw_email, str) else None
        if raw_email is not None and not isinstance(raw_email, str):
            errors.append("Email must be a string.")
        elif not email:
            errors.append("Email is required.")
        elif not EMAIL_RE.match(email):
            errors.append("Email is invalid.")

    role = clean_str(payload.get("role"))
    if creating:
        if role not in SCHOOL_ROLES:
            errors.append(f"Invalid role. Must be one of: {', '.join(SCHOOL_ROLES)}")

    phone = clean_str(payload.get("phone"))
    if phone and not PHONE_RE.match(phone):
        errors.append("Phone must be 7-10 digits.")

    if payload.get("date_of_birth") not in (None, "") and parse_date(payload.get("date_of_birth")) is None:
        errors.append("Date of birth must be YYYY-MM-DD.")

    gender = clean_str(payload.get("gender"))
    if gender and gender.lower() not in GENDERS:
        errors.append(f"Invalid gender. Must be one of: {', '.join(GENDERS)}")

    class_name = clean_str(payload.get("class_name"))
    if creating and role == ROLE_STUDENT:
        if not class_name:
            errors.append("Class is required for students.")
        if not clean_str(payload.get("section")):
            errors.append("Section is required for students.")
    if class_name and class_name not in GRADE_ORDER:
        errors.append(f"Unknown class: {class_name}")

    password = payload.get("password")
    if password not in (None, "") and len(str(password)) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    return errors


# ---------- ids ----------


def format_user_id(school_code: str, role: str, seq: int) -> str:
    code = school_code.upper()
    if role == ROLE_STUDENT:
        return f"{code}{seq:04d}"
    prefix = ROLE_ID_PREFIXES.get(role)
    if not prefix:
        raise SequenceError(f"No id prefix for role {role}")
    return f"{code}_{prefix}{seq:03d}"


def _sequence(s: "Session", role: str, *, lock: bool) -> IdSequence:
    stmt = select(IdSequence).where(IdSequence.key == role)
    if lock:
        stmt = stmt.with_for_update()
    seq = s.execute(stmt).scalar_one_or_none()
    if seq is None:
        seq = IdSequence(key=role, value=0, updated_at=datetime.utcnow())
        s.add(seq)
        s.flush()
    return seq


def _user_id_taken(s: "Session", user_id: str) -> bool:
    return s.query(SchoolUser.id).filter(SchoolUser.user_id == user_id).first() is not None


def peek_next_user_id(s: "Session", school_code: str, role: str) -> str:
    """Preview only; does not consume a number."""
    if role not in SCHOOL_ROLES:
        raise SequenceError(f"Invalid role: {role}")
    row = s.execute(select(IdSequence.value).where(IdSequence.key == role)).scalar_one_or_none()
    n = (row or 0) + 1
    while _user_id_taken(s, format_user_id(school_code, role, n)):
        n += 1
    return format_user_id(school_code, role, n)


def allocate_user_id(s: "Session", school_code: str, role: str) -> str:
    if role not in SCHOOL_ROLES:
        raise SequenceError(f"Invalid role: {role}")
    seq = _sequence(s, role, lock=True)
    n = seq.value + 1
    # rows imported or created before the counter existed
    while _user_id_taken(s, format_user_id(school_code, role, n)):
        n += 1
    seq.value = n
    seq.updated_at = datetime.utcnow()
    return format_user_id(school_code, role, n)


# ---------- CRUD ----------


def email_taken(s: "Session", email: str, *, exclude_id: int | None = None) -> bool:
    q = s.query(SchoolUser.id).filter(func.lower(SchoolUser.email) == email.strip().lower())
    if exclude_id is not None:
        q = q.filter(SchoolUser.id != exclude_id)
    return q.first() is not None


def _initial_password(payload: dict) -> str:
    provided = payload.get("password")
    if provided not in (None, ""):
        return str(provided)
    if payload.get("role") == ROLE_STUDENT and parse_date(payload.get("date_of_birth")):
        return password_from_date_of_birth(parse_date(payload.get("date_of_birth")))
    return generate_random_password()


def create_user(s: "Session", school_code: str, payload: dict, actor) -> tuple[SchoolUser, str]:
    """
    Creates the user with a generated user_id. Returns (user, plaintext password);
    the plaintext is never stored and is only handed back to the caller once.
    """
    role = clean_str(payload.get("role"))
    password = _initial_password(payload)
    now = datetime.utcnow()
    gender = clean_str(payload.get("gender"))
    user = SchoolUser(
        user_id=allocate_user_id(s, school_code, role),
        email=clean_str(payload.get("email")).lower(),
        password_hash=hash_password(password),
        role=role,
        first_name=clean_str(payload.get("first_name")),
        middle_name=clean_str(payload.get("middle_name")),
        last_name=clean_str(payload.get("last_name")),
        phone=clean_str(payload.get("phone")),
        date_of_birth=parse_date(payload.get("date_of_birth")),
        gender=gender.lower() if gender else None,
        class_name=clean_str(payload.get("class_name")) if role == ROLE_STUDENT else None,
        section=((clean_str(payload.get("section")) or "").upper() or None) if role == ROLE_STUDENT else None,
        roll_number=clean_str(payload.get("roll_number")) if role == ROLE_STUDENT else None,
        admission_number=clean_str(payload.get("admission_number")) if role == ROLE_STUDENT else None,
        subjects=_subjects_text(payload.get("subjects")) if role == ROLE_TEACHER else None,
        qualification=clean_str(payload.get("qualification")) if role == ROLE_TEACHER else None,
        is_active=True,
        password_change_required=True,
        login_attempts=0,
        created_at=now,
        updated_at=now,
        created_by=actor.actor_id if actor else None,
    )
    s.add(user)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="user.create",
        entity_type="SchoolUser",
        entity_id=user.user_id,
        metadata={"role": role, "email": user.email},
    )
    logger.info("Created %s %s in school %s", role, user.user_id, school_code)
    return user, password


def update_user(s: "Session", user: SchoolUser, payload: dict, actor) -> dict[str, Any]:
    """Apply profile changes. Role and user_id are immutable. Returns {field: [old, new]}."""
    changes: dict[str, Any] = {}
    for field in PROFILE_FIELDS:
        if field not in payload:
            continue
        raw = payload.get(field)
        if field == "date_of_birth":
            new = parse_date(raw)
        elif field == "subjects":
            new = _subjects_text(raw)
        elif field == "email":
            new = (clean_str(raw) or "").lower() or None
        elif field == "section":
            new = (clean_str(raw) or "").upper() or None
        elif field == "gender":
            new = (clean_str(raw) or "").lower() or None
        else:
            new = clean_str(raw)
        old = getattr(user, field)
        if new != old:
            setattr(user, field, new)
            changes[field] = [isoformat(old) if hasattr(old, "isoformat") else old, isoformat(new) if hasattr(new, "isoformat") else new]
    if changes:
        user.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=actor,
            action="user.update",
            entity_type="SchoolUser",
            entity_id=user.user_id,
            metadata={"changes": changes},
        )
    return changes


def set_user_status(s: "Session", user: SchoolUser, active: bool, actor, *, reason: str | None = None) -> None:
    user.is_active = active
    user.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="user.status",
        entity_type="SchoolUser",
        entity_id=user.user_id,
        reason=reason,
        metadata={"is_active": active},
    )


def reset_password(s: "Session", user: SchoolUser, actor) -> str:
    password = generate_random_password()
    user.password_hash = hash_password(password)
    user.password_change_required = True
    user.login_attempts = 0
    user.updated_at = datetime.utcnow()
    record_event(s, actor=actor, action="user.reset_password", entity_type="SchoolUser", entity_id=user.user_id)
    return password


def delete_user(s: "Session", user: SchoolUser, actor) -> None:
    s.query(StudentGuardian).filter(
        or_(StudentGuardian.student_id == user.id, StudentGuardian.parent_id == user.id)
    ).delete(synchronize_session=False)
    record_event(
        s,
        actor=actor,
        action="user.delete",
        entity_type="SchoolUser",
        entity_id=user.user_id,
        metadata={"role": user.role, "email": user.email},
    )
    s.delete(user)


def link_guardian(s: "Session", student: SchoolUser, parent: SchoolUser, actor, *, relationship_type: str | None = None) -> tuple[StudentGuardian, bool]:
    """Returns (link, created)."""
    link = s.get(StudentGuardian, (student.id, parent.id))
    if link is not None:
        return link, False
    link = StudentGuardian(
        student_id=student.id,
        parent_id=parent.id,
        relationship_type=relationship_type,
        created_at=datetime.utcnow(),
    )
    s.add(link)
    record_event(
        s,
        actor=actor,
        action="guardian.link",
        entity_type="StudentGuardian",
        entity_id=f"{student.user_id}:{parent.user_id}",
        metadata={"relationship_type": relationship_type},
    )
    return link, True


def children_of(s: "Session", parent: SchoolUser) -> list[SchoolUser]:
    return (
        s.query(SchoolUser)
        .join(StudentGuardian, StudentGuardian.student_id == SchoolUser.id)
        .filter(StudentGuardian.parent_id == parent.id)
        .order_by(SchoolUser.user_id.asc())
        .all()
    )


def child_ids(s: "Session", parent: SchoolUser) -> set[int]:
    rows = s.query(StudentGuardian.student_id).filter(StudentGuardian.parent_id == parent.id).all()
    return {r[0] for r in rows}


def get_user(s: "Session", user_id: str) -> SchoolUser | None:
    return s.query(SchoolUser).filter(SchoolUser.user_id == user_id.strip().upper()).one_or_none()


def query_users(s: "Session", filters: dict) -> "Query":
    q = s.query(SchoolUser)
    if filters.get("role"):
        q = q.filter(SchoolUser.role == filters["role"])
    if filters.get("class_name"):
        q = q.filter(SchoolUser.class_name == filters["class_name"])
    if filters.get("section"):
        q = q.filter(SchoolUser.section == filters["section"].upper())
    active = parse_bool(filters.get("active"))
    if active is not None:
        q = q.filter(SchoolUser.is_active.is_(active))
    if filters.get("q"):
        like = f"%{filters['q']}%"
        q = q.filter(
            or_(
                SchoolUser.first_name.ilike(like),
                SchoolUser.last_name.ilike(like),
                SchoolUser.email.ilike(like),
                SchoolUser.user_id.ilike(like),
            )
        )
    return q.order_by(SchoolUser.role.asc(), SchoolUser.user_id.asc())


def export_users_csv(users: list[SchoolUser]) -> bytes:
    out = io.StringIO()
    w = csv.writer(out)
    w.writerow(
        ["User ID", "Role", "First Name", "Last Name", "Email", "Phone", "Class", "Section", "Roll No", "Active", "Last Login"]
    )
    for u in users:
        w.writerow(
            [
                u.user_id,
                u.role,
                u.first_name,
                u.last_name,
                u.email,
                u.phone or "",
                u.class_name or "",
                u.section or "",
                u.roll_number or "",
                "yes" if u.is_active else "no",
                isoformat(u.last_login) or "",
            ]
        )
    return out.getvalue().encode("utf-8")


def count_by_role(s: "Session") -> dict[str, int]:
    counts = {role: 0 for role in SCHOOL_ROLES}
    for role, n in s.query(SchoolUser.role, func.count(SchoolUser.id)).group_by(SchoolUser.role).all():
        counts[role] = n
    counts["total"] = sum(counts[r] for r in SCHOOL_ROLES)
    return counts


def is_parent_of(s: "Session", parent: SchoolUser, student_pk: int) -> bool:
    return parent.role == ROLE_PARENT and student_pk in child_ids(s, parent)
