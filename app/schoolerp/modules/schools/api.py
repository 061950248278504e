from __future__ import annotations

from datetime import datetime

from flask import Blueprint, abort, current_app, g, request

from app.schoolerp.access import (
    FEATURES,
    LEVEL_ALL,
    LEVELS,
    level_to_json,
    load_access_matrix,
    validate_matrix_update,
)
from app.schoolerp.audit import record_event
from app.schoolerp.constants import ROLE_ADMIN, ROLE_SUPERADMIN, SCHOOL_ROLES
from app.schoolerp.db import db_session
from app.schoolerp.models import AccessRule, School
from app.schoolerp.modules.schools.service import (
    code_taken,
    create_school,
    delete_school,
    first_admin_payload,
    get_school,
    mark_provisioned,
    normalize_code,
    query_schools,
    school_to_dict,
    set_school_status,
    update_school,
    validate_school_payload,
)
from app.schoolerp.modules.users.service import count_by_role, create_user, user_to_dict, validate_user_payload
from app.schoolerp.rbac import require_access, require_roles, require_school_context
from app.schoolerp.tenancy import TenantError, school_db_session, tenant_registry
from app.schoolerp.utils import clean_str, json_body, ok, parse_bool, validation_error

bp = Blueprint("schools", __name__)


def _current_user():
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _resolved_school(school_code: str) -> School:
    """The school resolved for this request must be the one in the URL."""
    school = g.school
    if school is None or school.code != normalize_code(school_code):
        abort(400, description="School in request does not match the URL")
    return school


def _require_full_settings_access() -> None:
    if g.get("access_level") != LEVEL_ALL:
        g.missing_permission = "manage_school_settings"
        abort(403, description="Access denied. Full school settings access is required.")


def _user_counts(code: str) -> dict[str, int] | None:
    try:
        return count_by_role(school_db_session(code))
    except Exception:
        current_app.logger.exception("User count failed for school %s", code)
        return None


def _matrix_json(matrix: dict[str, dict[str, str]]) -> dict[str, dict[str, bool | str]]:
    return {role: {f: level_to_json(matrix[role][f]) for f in FEATURES} for role in SCHOOL_ROLES}


@bp.post("")
@require_roles(ROLE_SUPERADMIN)
def schools_create():
    s = db_session()
    u = _current_user()
    payload = json_body()

    errors = validate_school_payload(payload)
    admin_payload = first_admin_payload(payload.get("admin"))
    if admin_payload is not None:
        errors.extend(f"admin: {e}" for e in validate_user_payload(admin_payload))
    if errors:
        return validation_error(errors)

    code = normalize_code(payload.get("code"))
    if code_taken(s, code):
        abort(409, description=f"School code '{code}' already exists. Please choose a different code.")

    school = create_school(s, payload, u)
    registry = tenant_registry()
    try:
        registry.provision(school.code)
    except TenantError:
        s.rollback()
        registry.dispose(code)
        current_app.logger.error("School %s not created: provisioning failed (request_id=%s)", code, g.request_id)
        abort(500, description="Error creating school database")
    mark_provisioned(school)

    admin_out = None
    if admin_payload is not None:
        ts = school_db_session(school.code)
        admin, password = create_user(ts, school.code, admin_payload, u)
        ts.commit()
        admin_out = {"user": user_to_dict(admin), "credentials": {"user_id": admin.user_id, "password": password}}

    s.commit()
    return ok(201, message="School created", school=school_to_dict(school), admin=admin_out)


@bp.get("")
@require_roles(ROLE_SUPERADMIN)
def schools_list():
    s = db_session()
    schools = query_schools(s, q=(request.args.get("q") or "").strip(), active=request.args.get("active")).all()
    return ok(schools=[school_to_dict(x) for x in schools], total=len(schools))


@bp.get("/stats")
@require_roles(ROLE_SUPERADMIN)
def schools_stats():
    s = db_session()
    schools = s.query(School).order_by(School.name.asc()).all()
    per_school = []
    totals = {role: 0 for role in SCHOOL_ROLES}
    for school in schools:
        counts = _user_counts(school.code) if school.database_created else None
        if counts:
            for role in SCHOOL_ROLES:
                totals[role] += counts[role]
        per_school.append({"code": school.code, "name": school.name, "is_active": bool(school.is_active), "user_counts": counts})
    active = sum(1 for x in schools if x.is_active)
    return ok(
        stats={
            "total_schools": len(schools),
            "active_schools": active,
            "inactive_schools": len(schools) - active,
            "total_users": sum(totals.values()),
            "users_by_role": totals,
            "schools": per_school,
        }
    )


@bp.get("/<school_code>")
@require_school_context()
@require_access("manage_school_settings")
def schools_detail(school_code: str):
    school = _resolved_school(school_code)
    return ok(school=school_to_dict(school, user_counts=_user_counts(school.code)))


@bp.put("/<school_code>")
@require_roles(ROLE_SUPERADMIN, ROLE_ADMIN)
@require_school_context()
@require_access("manage_school_settings")
def schools_update(school_code: str):
    _require_full_settings_access()
    school = _resolved_school(school_code)
    u = _current_user()
    payload = json_body()

    if "code" in payload and normalize_code(payload.get("code")) != school.code:
        return validation_error(["School code cannot be changed."])
    errors = validate_school_payload(payload, creating=False)
    if errors:
        return validation_error(errors)

    s = db_session()
    changes = update_school(s, school, payload, u)
    s.commit()
    return ok(message="School updated" if changes else "No changes", school=school_to_dict(school), changes=sorted(changes))


@bp.patch("/<school_code>/status")
@require_roles(ROLE_SUPERADMIN)
def schools_status(school_code: str):
    s = db_session()
    u = _current_user()
    school = get_school(s, school_code)
    if school is None:
        abort(404, description="School not found")
    payload = json_body()
    active = parse_bool(payload.get("is_active"))
    if active is None:
        active = not school.is_active
    set_school_status(s, school, active, u, reason=clean_str(payload.get("reason")))
    s.commit()
    return ok(message=f"School {'activated' if active else 'deactivated'}", school=school_to_dict(school))


@bp.delete("/<school_code>")
@require_roles(ROLE_SUPERADMIN)
def schools_delete(school_code: str):
    s = db_session()
    u = _current_user()
    school = get_school(s, school_code)
    if school is None:
        abort(404, description="School not found")

    code = school.code
    delete_school(s, school, u)
    s.flush()
    try:
        tenant_registry().drop(code)
    except TenantError:
        s.rollback()
        current_app.logger.exception("Drop failed for school %s", code)
        abort(500, description="Error deleting school database")
    s.commit()
    return ok(message="School deleted", code=code)


# ---------- access matrix ----------


@bp.get("/<school_code>/access-matrix")
@require_roles(ROLE_SUPERADMIN, ROLE_ADMIN)
@require_school_context()
@require_access("manage_school_settings")
def access_matrix_get(school_code: str):
    _require_full_settings_access()
    school = _resolved_school(school_code)
    matrix = load_access_matrix(school_db_session())
    return ok(school_code=school.code, matrix=_matrix_json(matrix), features=list(FEATURES), levels=list(LEVELS))


@bp.put("/<school_code>/access-matrix")
@require_roles(ROLE_SUPERADMIN, ROLE_ADMIN)
@require_school_context()
@require_access("manage_school_settings")
def access_matrix_update(school_code: str):
    _require_full_settings_access()
    school = _resolved_school(school_code)
    u = _current_user()
    payload = json_body()
    raw = payload.get("matrix")
    if raw is None:
        raw = {k: v for k, v in payload.items() if k not in ("school_code", "school_id")}

    cells, errors = validate_matrix_update(raw, actor_role=u.role)
    if errors:
        return validation_error(errors)

    s = school_db_session()
    now = datetime.utcnow()
    changes: dict[str, list[str]] = {}
    for (role, feature), level in cells.items():
        rule = s.get(AccessRule, (role, feature))
        if rule is None:
            rule = AccessRule(role=role, feature=feature, level=level, updated_at=now, updated_by=u.actor_id)
            s.add(rule)
            changes[f"{role}.{feature}"] = [None, level]
        elif rule.level != level:
            changes[f"{role}.{feature}"] = [rule.level, level]
            rule.level = level
            rule.updated_at = now
            rule.updated_by = u.actor_id
    if changes:
        record_event(
            s,
            actor=u,
            action="access_matrix.update",
            entity_type="AccessRule",
            entity_id=school.code,
            metadata={"changes": changes},
        )
    s.commit()
    g.access_matrix = None
    return ok(
        message="Access matrix updated" if changes else "No changes",
        school_code=school.code,
        matrix=_matrix_json(load_access_matrix(s)),
        changes=sorted(changes),
    )
