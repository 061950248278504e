"""
Access matrix: which role may use which feature, and how far.

Levels
------
``all``      unrestricted (serialized as ``true``)
``none``     denied (serialized as ``false``)
``limited``  read-only / partial (e.g. teachers viewing school settings)
``own``      records the user owns: a teacher's own results, a parent's children
``self``     only the user's own records (students)

Superadmin uses the static platform row below. The four school roles read
their school's matrix, which is seeded from the same table when the school
database is provisioned and can then be edited per school.
"""
from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from app.schoolerp.constants import ROLE_ADMIN, ROLE_PARENT, ROLE_STUDENT, ROLE_SUPERADMIN, ROLE_TEACHER, SCHOOL_ROLES

LEVEL_ALL = "all"
LEVEL_NONE = "none"
LEVEL_LIMITED = "limited"
LEVEL_OWN = "own"
LEVEL_SELF = "self"
LEVELS = (LEVEL_ALL, LEVEL_NONE, LEVEL_LIMITED, LEVEL_OWN, LEVEL_SELF)

FEATURES = (
    "manage_users",
    "manage_school_settings",
    "create_timetable",
    "view_timetable",
    "mark_attendance",
    "view_attendance",
    "add_assignments",
    "submit_assignments",
    "view_results",
    "update_results",
    "message",
)

# Viewing features that are narrowed to the caller's own scope for students/parents.
SCOPED_VIEW_FEATURES = frozenset({"view_attendance", "view_results"})

_T, _F = LEVEL_ALL, LEVEL_NONE

DEFAULT_ACCESS_MATRIX: dict[str, dict[str, str]] = {
    ROLE_SUPERADMIN: {
        "manage_users": _T,
        "manage_school_settings": _T,
        "create_timetable": _T,
        "view_timetable": _T,
        "mark_attendance": _T,
        "view_attendance": _T,
        "add_assignments": _F,
        "submit_assignments": _F,
        "view_results": _T,
        "update_results": _F,
        "message": _T,
    },
    ROLE_ADMIN: {
        "manage_users": _T,
        "manage_school_settings": _T,
        "create_timetable": _T,
        "view_timetable": _T,
        "mark_attendance": _T,
        "view_attendance": _T,
        "add_assignments": _T,
        "submit_assignments": _F,
        "view_results": _T,
        "update_results": _F,
        "message": _T,
    },
    ROLE_TEACHER: {
        "manage_users": _F,
        "manage_school_settings": LEVEL_LIMITED,
        "create_timetable": _T,
        "view_timetable": _T,
        "mark_attendance": _T,
        "view_attendance": _T,
        "add_assignments": _T,
        "submit_assignments": _F,
        "view_results": LEVEL_OWN,
        "update_results": _T,
        "message": _T,
    },
    ROLE_STUDENT: {
        "manage_users": _F,
        "manage_school_settings": _F,
        "create_timetable": _F,
        "view_timetable": _T,
        "mark_attendance": _F,
        "view_attendance": LEVEL_SELF,
        "add_assignments": _F,
        "submit_assignments": _T,
        "view_results": _T,
        "update_results": _F,
        "message": _F,
    },
    ROLE_PARENT: {
        "manage_users": _F,
        "manage_school_settings": _F,
        "create_timetable": _F,
        "view_timetable": _T,
        "mark_attendance": _F,
        "view_attendance": LEVEL_OWN,
        "add_assignments": _F,
        "submit_assignments": _F,
        "view_results": LEVEL_OWN,
        "update_results": _F,
        "message": _F,
    },
}

# Cells an admin may not switch off for themselves.
LOCKED_CELLS = frozenset({(ROLE_ADMIN, "manage_school_settings")})


def level_to_json(level: str) -> bool | str:
    if level == LEVEL_ALL:
        return True
    if level == LEVEL_NONE:
        return False
    return level


def level_from_json(value: Any) -> str | None:
    """Accepts true/false or one of the named levels; returns None when invalid."""
    if value is True:
        return LEVEL_ALL
    if value is False:
        return LEVEL_NONE
    if isinstance(value, str) and value.strip().lower() in LEVELS:
        return value.strip().lower()
    return None


def load_access_matrix(s: Session) -> dict[str, dict[str, str]]:
    """Read the school's matrix, filling gaps from the defaults."""
    from app.schoolerp.models import AccessRule

    matrix = {role: dict(DEFAULT_ACCESS_MATRIX[role]) for role in SCHOOL_ROLES}
    for rule in s.query(AccessRule).all():
        if rule.role in matrix and rule.feature in FEATURES and rule.level in LEVELS:
            matrix[rule.role][rule.feature] = rule.level
    return matrix


def seed_access_matrix(s: Session) -> int:
    """Insert default cells that are missing. Idempotent; never overwrites an edited cell."""
    from app.schoolerp.models import AccessRule

    existing = {(r.role, r.feature) for r in s.query(AccessRule).all()}
    added = 0
    for role in SCHOOL_ROLES:
        for feature in FEATURES:
            if (role, feature) in existing:
                continue
            s.add(AccessRule(role=role, feature=feature, level=DEFAULT_ACCESS_MATRIX[role][feature]))
            added += 1
    return added


def effective_access(role: str, feature: str, matrix: dict[str, dict[str, str]] | None) -> str:
    if role == ROLE_SUPERADMIN:
        return DEFAULT_ACCESS_MATRIX[ROLE_SUPERADMIN].get(feature, LEVEL_NONE)
    row = (matrix or DEFAULT_ACCESS_MATRIX).get(role) or {}
    level = row.get(feature, LEVEL_NONE)
    if level == LEVEL_NONE or feature not in SCOPED_VIEW_FEATURES:
        return level
    if role == ROLE_STUDENT:
        return LEVEL_SELF
    if role == ROLE_PARENT:
        return LEVEL_OWN
    return level


def permissions_for(role: str, matrix: dict[str, dict[str, str]] | None) -> dict[str, bool | str]:
    return {feature: level_to_json(effective_access(role, feature, matrix)) for feature in FEATURES}


def validate_matrix_update(payload: Any, *, actor_role: str) -> tuple[dict[tuple[str, str], str], list[str]]:
    """
    Parse ``{"teacher": {"mark_attendance": false}, ...}``.
    Returns the cells to write and a list of errors.
    """
    errors: list[str] = []
    cells: dict[tuple[str, str], str] = {}
    if not isinstance(payload, dict) or not payload:
        return cells, ["matrix must be a non-empty object keyed by role."]
    for role, row in payload.items():
        if role not in SCHOOL_ROLES:
            errors.append(f"Unknown role: {role}")
            continue
        if not isinstance(row, dict):
            errors.append(f"Permissions for {role} must be an object.")
            continue
        for feature, raw in row.items():
            if feature not in FEATURES:
                errors.append(f"Unknown feature: {feature}")
                continue
            level = level_from_json(raw)
            if level is None:
                errors.append(f"Invalid value for {role}.{feature}: {raw!r}")
                continue
            if (role, feature) in LOCKED_CELLS and level != LEVEL_ALL and actor_role != ROLE_SUPERADMIN:
                errors.append(f"{role}.{feature} cannot be restricted by a school admin.")
                continue
            cells[(role, feature)] = level
    return cells, errors
