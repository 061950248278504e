from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_

from app.schoolerp.audit import record_event
from app.schoolerp.constants import GRADE_ORDER, ROLE_STUDENT
from app.schoolerp.models import SchoolUser
from app.schoolerp.modules.messages.models import Message
from app.schoolerp.utils import clean_str, isoformat

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session

logger = logging.getLogger(__name__)

ALL = "ALL"
PREVIEW_SAMPLE = 10
RECENT_DAYS = 7
MAX_TITLE_LENGTH = 200


class NoRecipients(Exception):
    pass


def _target(payload: dict) -> tuple[str | None, str | None]:
    class_name = clean_str(payload.get("class_name") or payload.get("class"))
    section = clean_str(payload.get("section"))
    if class_name and class_name.upper() == ALL:
        class_name = ALL
    return class_name, section.upper() if section else None


def validate_message_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    for field, label in (("title", "Title"), ("subject", "Subject")):
        value = clean_str(payload.get(field))
        if not value:
            errors.append(f"{label} is required.")
        elif len(value) > MAX_TITLE_LENGTH:
            errors.append(f"{label} must be at most {MAX_TITLE_LENGTH} characters.")
    if not clean_str(payload.get("message")):
        errors.append("Message is required.")
    errors.extend(validate_target(payload))
    return errors


def validate_target(payload: dict) -> list[str]:
    errors: list[str] = []
    class_name, section = _target(payload)
    if not class_name:
        errors.append("Class is required (or ALL).")
    elif class_name != ALL and class_name not in GRADE_ORDER:
        errors.append(f"Unknown class: {class_name}")
    if not section:
        errors.append("Section is required (or ALL).")
    return errors


def recipients_query(s: "Session", class_name: str, section: str) -> "Query":
    q = s.query(SchoolUser).filter(SchoolUser.role == ROLE_STUDENT, SchoolUser.is_active.is_(True))
    if class_name != ALL:
        q = q.filter(SchoolUser.class_name == class_name)
    if section != ALL:
        q = q.filter(SchoolUser.section == section)
    return q.order_by(SchoolUser.user_id.asc())


def _recipient_to_dict(u: SchoolUser) -> dict[str, Any]:
    return {"user_id": u.user_id, "name": u.display_name, "class_name": u.class_name, "section": u.section}


def preview_recipients(s: "Session", payload: dict) -> dict[str, Any]:
    class_name, section = _target(payload)
    q = recipients_query(s, class_name, section)
    return {
        "estimated_recipients": q.count(),
        "target_class": class_name,
        "target_section": section,
        "sample_recipients": [_recipient_to_dict(u) for u in q.limit(PREVIEW_SAMPLE).all()],
    }


def send_message(s: "Session", payload: dict, actor) -> tuple[Message, list[SchoolUser]]:
    class_name, section = _target(payload)
    recipients = recipients_query(s, class_name, section).all()
    if not recipients:
        raise NoRecipients("No students found matching the selected criteria")

    msg = Message(
        class_name=class_name,
        section=section,
        title=clean_str(payload.get("title")),
        subject=clean_str(payload.get("subject")),
        body=clean_str(payload.get("message")),
        recipient_count=len(recipients),
        sender_id=actor.actor_id,
        sender_role=actor.role,
        created_at=datetime.utcnow(),
    )
    s.add(msg)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="message.send",
        entity_type="Message",
        entity_id=str(msg.id),
        metadata={"class_name": class_name, "section": section, "recipients": len(recipients)},
    )
    logger.info("Message %s sent to %s-%s (%s students)", msg.id, class_name, section, len(recipients))
    return msg, recipients


def message_age(created_at: datetime, *, now: datetime | None = None) -> str:
    days = ((now or datetime.utcnow()) - created_at).days
    if days <= 0:
        return "Today"
    if days == 1:
        return "Yesterday"
    if days < 7:
        return f"{days} days ago"
    if days < 30:
        return f"{days // 7} weeks ago"
    return f"{days // 30} months ago"


def message_to_dict(m: Message) -> dict[str, Any]:
    return {
        "id": m.id,
        "class_name": m.class_name,
        "section": m.section,
        "title": m.title,
        "subject": m.subject,
        "message": m.body,
        "recipient_count": m.recipient_count,
        "sender_id": m.sender_id,
        "sender_role": m.sender_role,
        "created_at": isoformat(m.created_at),
        "message_age": message_age(m.created_at),
    }


def query_messages(s: "Session", filters: dict, *, sender_id: str | None = None) -> "Query":
    q = s.query(Message)
    if sender_id:
        q = q.filter(Message.sender_id == sender_id)
    class_name = (filters.get("class_name") or "").strip()
    section = (filters.get("section") or "").strip().upper()
    if class_name and class_name.upper() != ALL:
        q = q.filter(Message.class_name == class_name)
    if section and section != ALL:
        q = q.filter(Message.section == section)
    return q.order_by(Message.created_at.desc(), Message.id.desc())


def message_stats(s: "Session", *, sender_id: str | None = None) -> dict[str, Any]:
    base = query_messages(s, {}, sender_id=sender_id).order_by(None)

    def _grouped(col) -> dict[str, int]:
        rows = base.with_entities(col, func.count(Message.id)).group_by(col).all()
        return {k: n for k, n in sorted(rows)}

    since = datetime.utcnow() - timedelta(days=RECENT_DAYS)
    return {
        "total_messages": base.count(),
        "by_class": _grouped(Message.class_name),
        "by_section": _grouped(Message.section),
        "recent_messages": base.filter(Message.created_at >= since).count(),
    }


def inbox_query(s: "Session", classes: set[tuple[str, str]]) -> "Query":
    """Messages addressed to any of the given (class, section) pairs, including ALL targets."""
    q = s.query(Message)
    if not classes:
        return q.filter(Message.id == -1)
    clauses = [
        (Message.class_name.in_([class_name, ALL])) & (Message.section.in_([section, ALL]))
        for class_name, section in sorted(classes)
    ]
    return q.filter(or_(*clauses)).order_by(Message.created_at.desc(), Message.id.desc())


def delete_message(s: "Session", m: Message, actor) -> None:
    record_event(
        s,
        actor=actor,
        action="message.delete",
        entity_type="Message",
        entity_id=str(m.id),
        metadata={"title": m.title, "sender_id": m.sender_id},
    )
    s.delete(m)
