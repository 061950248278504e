from __future__ import annotations

import io
from datetime import date

from flask import Blueprint, abort, g, request, send_file

from app.schoolerp.audit import record_event
from app.schoolerp.constants import ROLE_ADMIN, ROLE_PARENT, ROLE_STUDENT, ROLE_SUPERADMIN, ROLE_TEACHER
from app.schoolerp.modules.users.service import (
    SequenceError,
    children_of,
    create_user,
    delete_user,
    email_taken,
    export_users_csv,
    get_user,
    is_parent_of,
    link_guardian,
    peek_next_user_id,
    query_users,
    reset_password,
    set_user_status,
    update_user,
    user_to_dict,
    validate_user_payload,
)
from app.schoolerp.rbac import require_access, require_roles, require_school_context
from app.schoolerp.tenancy import school_db_session
from app.schoolerp.utils import clean_str, json_body, ok, pagination_args, parse_bool, validation_error

bp = Blueprint("users", __name__)

_FILTER_KEYS = ("role", "q", "class_name", "section", "active")


def _current_user():
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _is_self(actor, user) -> bool:
    return getattr(actor, "user_id", None) == user.user_id


def _get_or_404(s, user_id: str):
    user = get_user(s, user_id)
    if user is None:
        abort(404, description="User not found")
    return user


def _filters() -> dict:
    return {k: (request.args.get(k) or "").strip() for k in _FILTER_KEYS}


@bp.post("")
@require_roles(ROLE_ADMIN, ROLE_SUPERADMIN)
@require_school_context()
@require_access("manage_users")
def users_create():
    s = school_db_session()
    u = _current_user()
    payload = json_body()

    errors = validate_user_payload(payload)
    if errors:
        return validation_error(errors)
    if email_taken(s, clean_str(payload["email"])):
        abort(409, description="A user with this email already exists in this school")

    user, password = create_user(s, g.school.code, payload, u)
    s.commit()
    return ok(
        201,
        message="User created",
        user=user_to_dict(user),
        credentials={"user_id": user.user_id, "password": password},
    )


@bp.get("")
@require_roles(ROLE_ADMIN, ROLE_TEACHER, ROLE_SUPERADMIN)
@require_school_context()
def users_list():
    s = school_db_session()
    page, per_page = pagination_args()
    q = query_users(s, _filters())
    total = q.count()
    users = q.offset((page - 1) * per_page).limit(per_page).all()
    return ok(
        users=[user_to_dict(x) for x in users],
        pagination={
            "page": page,
            "per_page": per_page,
            "total": total,
            "pages": (total + per_page - 1) // per_page,
        },
    )


@bp.get("/next-id/<role>")
@require_roles(ROLE_ADMIN, ROLE_SUPERADMIN)
@require_school_context()
def users_next_id(role: str):
    s = school_db_session()
    try:
        next_id = peek_next_user_id(s, g.school.code, role.strip().lower())
    except SequenceError as e:
        abort(400, description=str(e))
    return ok(role=role.lower(), next_id=next_id)


@bp.get("/export")
@require_roles(ROLE_ADMIN, ROLE_SUPERADMIN)
@require_school_context()
@require_access("manage_users")
def users_export():
    s = school_db_session()
    u = _current_user()
    filters = _filters()
    users = query_users(s, filters).all()
    data = export_users_csv(users)

    record_event(
        s,
        actor=u,
        action="user.export",
        entity_type="SchoolUser",
        entity_id="export",
        metadata={"filters": {k: v for k, v in filters.items() if v}, "row_count": len(users)},
    )
    s.commit()

    filename = f"{g.school.code.lower()}_users_{date.today().strftime('%Y%m%d')}.csv"
    return send_file(
        io.BytesIO(data),
        mimetype="text/csv",
        as_attachment=True,
        download_name=filename,
        max_age=0,
    )


@bp.get("/<user_id>")
@require_school_context()
def users_detail(user_id: str):
    s = school_db_session()
    u = _current_user()
    user = _get_or_404(s, user_id)

    if u.role == ROLE_STUDENT and not _is_self(u, user):
        abort(403, description="Access denied. Students can only view their own profile.")
    if u.role == ROLE_PARENT and not _is_self(u, user) and not is_parent_of(s, u, user.id):
        abort(403, description="Access denied. Parents can only view their own children.")

    data = user_to_dict(user)
    if user.role == ROLE_PARENT:
        data["children"] = [user_to_dict(c) for c in children_of(s, user)]
    elif user.role == ROLE_STUDENT:
        data["guardians"] = [
            {"user_id": p.user_id, "name": p.display_name, "email": p.email, "phone": p.phone} for p in user.guardians
        ]
    return ok(user=data)


@bp.put("/<user_id>")
@require_roles(ROLE_ADMIN, ROLE_SUPERADMIN)
@require_school_context()
@require_access("manage_users")
def users_update(user_id: str):
    s = school_db_session()
    u = _current_user()
    user = _get_or_404(s, user_id)
    payload = json_body()

    if "role" in payload and clean_str(payload.get("role")) != user.role:
        return validation_error(["Role cannot be changed."])
    if "user_id" in payload and clean_str(payload.get("user_id")) != user.user_id:
        return validation_error(["User ID cannot be changed."])
    errors = validate_user_payload(payload, creating=False)
    if errors:
        return validation_error(errors)
    if payload.get("email") and email_taken(s, clean_str(payload["email"]), exclude_id=user.id):
        abort(409, description="A user with this email already exists in this school")

    changes = update_user(s, user, payload, u)
    s.commit()
    return ok(message="User updated" if changes else "No changes", user=user_to_dict(user), changes=sorted(changes))


@bp.patch("/<user_id>/status")
@require_roles(ROLE_ADMIN, ROLE_SUPERADMIN)
@require_school_context()
@require_access("manage_users")
def users_status(user_id: str):
    s = school_db_session()
    u = _current_user()
    user = _get_or_404(s, user_id)
    payload = json_body()

    active = parse_bool(payload.get("is_active"))
    if active is None:
        active = not user.is_active
    if not active and _is_self(u, user):
        abort(400, description="You cannot deactivate your own account")

    set_user_status(s, user, active, u, reason=clean_str(payload.get("reason")))
    s.commit()
    return ok(message=f"User {'activated' if active else 'deactivated'}", user=user_to_dict(user))


@bp.post("/<user_id>/reset-password")
@require_roles(ROLE_ADMIN, ROLE_SUPERADMIN)
@require_school_context()
@require_access("manage_users")
def users_reset_password(user_id: str):
    s = school_db_session()
    u = _current_user()
    user = _get_or_404(s, user_id)
    password = reset_password(s, user, u)
    s.commit()
    return ok(message="Password reset", credentials={"user_id": user.user_id, "password": password})


@bp.delete("/<user_id>")
@require_roles(ROLE_ADMIN, ROLE_SUPERADMIN)
@require_school_context()
@require_access("manage_users")
def users_delete(user_id: str):
    s = school_db_session()
    u = _current_user()
    user = _get_or_404(s, user_id)
    if _is_self(u, user):
        abort(400, description="You cannot delete your own account")
    delete_user(s, user, u)
    s.commit()
    return ok(message="User deleted", user_id=user_id.upper())


@bp.post("/<user_id>/guardians")
@require_roles(ROLE_ADMIN, ROLE_SUPERADMIN)
@require_school_context()
@require_access("manage_users")
def users_link_guardian(user_id: str):
    s = school_db_session()
    u = _current_user()
    student = _get_or_404(s, user_id)
    if student.role != ROLE_STUDENT:
        abort(400, description="Guardians can only be linked to students")

    payload = json_body()
    parent_id = clean_str(payload.get("parent_id"))
    if not parent_id:
        return validation_error(["parent_id is required."])
    parent = get_user(s, parent_id)
    if parent is None or parent.role != ROLE_PARENT:
        abort(404, description="Parent not found")

    _link, created = link_guardian(s, student, parent, u, relationship_type=clean_str(payload.get("relationship_type")))
    s.commit()
    return ok(
        201 if created else 200,
        message="Guardian linked" if created else "Guardian already linked",
        student_id=student.user_id,
        parent_id=parent.user_id,
    )
