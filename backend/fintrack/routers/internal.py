from fastapi import APIRouter, Request

from fintrack.core.config import settings
from fintrack.db.pool import db_conn
from fintrack.models.ledger import AuditActionRequest
from fintrack.services import state
from fintrack.services.accounts import provision_owner
from fintrack.services.auth import require_internal_token
from fintrack.services.parsing import parse_uuid_value

router = APIRouter(prefix="/api/v1/internal")


@router.post("/logs", status_code=202)
def internal_append_action(req: Request, payload: AuditActionRequest):
    require_internal_token(req)
    owner_id = parse_uuid_value(payload.user_id, "user_id")
    entity_id = parse_uuid_value(payload.entity_id, "entity_id") if payload.entity_id else None
    queued = state.audit_sink.emit(owner_id, payload.action, payload.entity.strip(), entity_id, payload.details)
    return {"ok": True, "queued": queued}


@router.post("/owners/{owner_id}/provision")
def internal_provision_owner(owner_id: str, req: Request):
    require_internal_token(req)
    with db_conn() as conn:
        result = provision_owner(conn, owner_id, settings.default_account_name)
    return {"ok": True, **result}
