import json
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.schoolerp.models import AuditEvent, SchoolAuditEvent


def record_event(
    s: Session,
    *,
    actor: Any | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
):
    """
    Append-only audit event helper.
    School sessions (info["school_code"]) write to the school's own trail,
    everything else to the central one.
    """
    in_request = has_request_context()
    rid = request_id or (getattr(g, "request_id", None) if in_request else None)
    school_code = s.info.get("school_code")
    fields = dict(
        request_id=rid,
        actor_id=actor.actor_id if actor else None,
        actor_role=actor.role if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=request.remote_addr if in_request else None,
    )
    if school_code:
        ev = SchoolAuditEvent(**fields)
    else:
        school = getattr(g, "school", None) if in_request else None
        ev = AuditEvent(school_code=school.code if school is not None else None, **fields)
    s.add(ev)
    return ev
