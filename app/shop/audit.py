import json
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.shop.models import AuditEvent, User


def _request_origin() -> tuple[str | None, str | None]:
    if not has_request_context():
        return None, None
    return g.get("request_id"), request.remote_addr


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Stage an audit row on the caller's session; it lands with the caller's commit.

    Webhooks pass ``actor=None``. Scripts run outside a request, so request id and
    client IP are left empty unless given.
    """
    rid, client_ip = _request_origin()
    ev = AuditEvent(
        request_id=request_id or rid,
        client_ip=client_ip,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
    )
    s.add(ev)
    return ev
