"""
Subject login. Authentication is a collaborator of the grant flow, not part of it:
POST /login verifies username/password and issues a session credential (no client binding);
/authorize only asks "which subject does this session belong to?".
"""
import logging

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from oidc_provider.audit import (
    EVENT_LOGIN_FAIL,
    EVENT_LOGIN_OK,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
    get_client_ip,
    log_audit,
)
from oidc_provider.context import ProviderContext, get_context, get_db
from oidc_provider.credentials import Credential, CredentialKind
from oidc_provider.errors import AccessDeniedError, NotFoundError
from oidc_provider.rate_limit import enforce
from oidc_provider.subjects import authenticate

logger = logging.getLogger(__name__)
router = APIRouter()

SESSION_COOKIE = "oidc_session"


def _session_value_from_request(request: Request) -> str | None:
    cookie = request.cookies.get(SESSION_COOKIE)
    if cookie:
        return cookie
    auth = request.headers.get("Authorization") or ""
    scheme, _, value = auth.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


def resolve_session(ctx: ProviderContext, request: Request) -> Credential | None:
    """Return the valid session credential carried by the request, or None."""
    value = _session_value_from_request(request)
    if not value:
        return None
    try:
        session = ctx.store.get(value, kind=CredentialKind.SESSION)
    except NotFoundError:
        return None
    return session if session.is_valid() else None


@router.post("/login")
def login(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    ctx: ProviderContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    ip = get_client_ip(request)
    enforce(ctx.login_limiter, ip)

    subject = authenticate(db, username, password)
    if subject is None:
        log_audit(db, EVENT_LOGIN_FAIL, ip=ip, outcome=OUTCOME_FAIL)
        raise AccessDeniedError()

    session = ctx.store.put(
        Credential.issue(CredentialKind.SESSION, subject.subject_id, ctx.config.session_ttl_seconds)
    )
    log_audit(db, EVENT_LOGIN_OK, subject_id=subject.subject_id, ip=ip, outcome=OUTCOME_SUCCESS)
    logger.info("Subject %s logged in", subject.subject_id)

    response = JSONResponse({"session": session.value, "expires_in": ctx.config.session_ttl_seconds})
    response.set_cookie(
        SESSION_COOKIE,
        session.value,
        max_age=ctx.config.session_ttl_seconds,
        httponly=True,
        samesite="lax",
        secure=ctx.config.issuer.startswith("https://"),
    )
    return response
