"""
Audit logging. Security-relevant events only; no credential values, passwords, or request bodies.
"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from oidc_provider.context import get_db
from oidc_provider.models import AuditLog

logger = logging.getLogger(__name__)

EVENT_LOGIN_OK = "login_ok"
EVENT_LOGIN_FAIL = "login_fail"
EVENT_CODE_ISSUED = "code_issued"
EVENT_TOKEN_ISSUED = "token_issued"
EVENT_TOKEN_FAILED = "token_failed"
EVENT_TOKEN_REVOKED = "token_revoked"
EVENT_USERINFO = "userinfo"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are not trusted."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


def log_audit(
    db: Session,
    event_type: str,
    *,
    client_id: str | None = None,
    subject_id: str | None = None,
    ip: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
) -> None:
    """Append one audit record. A failing audit write is logged, never fails the request."""
    try:
        db.add(
            AuditLog(
                event_type=event_type,
                client_id=client_id,
                subject_id=subject_id,
                ip=ip,
                outcome=outcome,
            )
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not write audit event %s", event_type)


router = APIRouter(tags=["audit"])


@router.get("/audit")
def list_audit_logs(
    limit: int = 100,
    event_type: str | None = None,
    outcome: str | None = None,
    client_id: str | None = None,
    db: Session = Depends(get_db),
):
    """List recent audit events, most recent first. Lab/dev use; do not expose publicly."""
    q = db.query(AuditLog).order_by(AuditLog.id.desc())
    if event_type:
        q = q.filter(AuditLog.event_type == event_type)
    if outcome:
        q = q.filter(AuditLog.outcome == outcome)
    if client_id:
        q = q.filter(AuditLog.client_id == client_id)
    rows = q.limit(min(max(1, limit), 500)).all()
    return [
        {
            "created_at": r.created_at.isoformat() if r.created_at else None,
            "event_type": r.event_type,
            "client_id": r.client_id,
            "subject_id": r.subject_id,
            "ip": r.ip,
            "outcome": r.outcome,
        }
        for r in rows
    ]
