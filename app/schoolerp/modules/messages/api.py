from __future__ import annotations

from flask import Blueprint, abort, g, request

from app.schoolerp.constants import ROLE_ADMIN, ROLE_PARENT, ROLE_STUDENT, ROLE_SUPERADMIN, ROLE_TEACHER
from app.schoolerp.modules.messages.models import Message
from app.schoolerp.modules.messages.service import (
    NoRecipients,
    delete_message,
    inbox_query,
    message_stats,
    message_to_dict,
    preview_recipients,
    query_messages,
    send_message,
    validate_message_payload,
    validate_target,
)
from app.schoolerp.modules.users.service import children_of
from app.schoolerp.rbac import require_access, require_roles, require_school_context
from app.schoolerp.tenancy import school_db_session
from app.schoolerp.utils import json_body, ok, pagination_args, validation_error

bp = Blueprint("messages", __name__)


def _current_user():
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _sender_scope(u) -> str | None:
    """Teachers only see what they sent; admins see the whole school."""
    return u.actor_id if u.role == ROLE_TEACHER else None


def _paginated(q, page: int, per_page: int) -> dict:
    total = q.count()
    rows = q.offset((page - 1) * per_page).limit(per_page).all()
    return {
        "messages": [message_to_dict(m) for m in rows],
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "pages": (total + per_page - 1) // per_page,
        },
    }


@bp.post("/preview")
@require_roles(ROLE_ADMIN, ROLE_TEACHER, ROLE_SUPERADMIN)
@require_school_context()
@require_access("message")
def messages_preview():
    s = school_db_session()
    payload = json_body()
    errors = validate_target(payload)
    if errors:
        return validation_error(errors)
    return ok(data=preview_recipients(s, payload))


@bp.post("")
@require_roles(ROLE_ADMIN, ROLE_TEACHER, ROLE_SUPERADMIN)
@require_school_context()
@require_access("message")
def messages_send():
    s = school_db_session()
    u = _current_user()
    payload = json_body()

    errors = validate_message_payload(payload)
    if errors:
        return validation_error(errors)
    try:
        msg, recipients = send_message(s, payload, u)
    except NoRecipients as e:
        s.rollback()
        return validation_error([str(e)], message=str(e))
    s.commit()
    return ok(
        201,
        message="Message sent successfully",
        data={
            "message": message_to_dict(msg),
            "sent_count": len(recipients),
            "recipients": [{"user_id": r.user_id, "name": r.display_name} for r in recipients],
        },
    )


@bp.get("")
@require_roles(ROLE_ADMIN, ROLE_TEACHER, ROLE_SUPERADMIN)
@require_school_context()
@require_access("message")
def messages_list():
    s = school_db_session()
    u = _current_user()
    page, per_page = pagination_args(default_per_page=20)
    filters = {k: request.args.get(k) for k in ("class_name", "section")}
    return ok(**_paginated(query_messages(s, filters, sender_id=_sender_scope(u)), page, per_page))


@bp.get("/stats")
@require_roles(ROLE_ADMIN, ROLE_TEACHER, ROLE_SUPERADMIN)
@require_school_context()
@require_access("message")
def messages_stats():
    s = school_db_session()
    u = _current_user()
    return ok(stats=message_stats(s, sender_id=_sender_scope(u)))


@bp.get("/inbox")
@require_roles(ROLE_STUDENT, ROLE_PARENT)
@require_school_context()
def messages_inbox():
    s = school_db_session()
    u = _current_user()
    if u.role == ROLE_STUDENT:
        classes = {(u.class_name, u.section)} if u.class_name and u.section else set()
    else:
        classes = {(c.class_name, c.section) for c in children_of(s, u) if c.class_name and c.section}
    page, per_page = pagination_args(default_per_page=20)
    return ok(**_paginated(inbox_query(s, classes), page, per_page))


def _get_visible_or_404(s, message_id: int, u) -> Message:
    m = s.get(Message, message_id)
    sender = _sender_scope(u)
    if m is None or (sender is not None and m.sender_id != sender):
        abort(404, description="Message not found")
    return m


@bp.get("/<int:message_id>")
@require_roles(ROLE_ADMIN, ROLE_TEACHER, ROLE_SUPERADMIN)
@require_school_context()
@require_access("message")
def messages_detail(message_id: int):
    s = school_db_session()
    return ok(data=message_to_dict(_get_visible_or_404(s, message_id, _current_user())))


@bp.delete("/<int:message_id>")
@require_roles(ROLE_ADMIN, ROLE_TEACHER, ROLE_SUPERADMIN)
@require_school_context()
@require_access("message")
def messages_delete(message_id: int):
    s = school_db_session()
    u = _current_user()
    m = s.get(Message, message_id)
    if m is None:
        abort(404, description="Message not found")
    if u.role == ROLE_TEACHER and m.sender_id != u.actor_id:
        abort(403, description="You can only delete messages that you created")
    delete_message(s, m, u)
    s.commit()
    return ok(message="Message deleted successfully", data={"id": message_id})
