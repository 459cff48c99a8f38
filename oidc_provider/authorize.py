"""
Authorization endpoint (GET /authorize).
Validates the request against the client registry, requires an authenticated subject (session from
POST /login), issues a single-use authorization code and redirects to redirect_uri?code=...&state=...
"""
import logging
from datetime import datetime
from urllib.parse import urlencode, urljoin, urlsplit, urlunsplit

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from oidc_provider.audit import EVENT_CODE_ISSUED, OUTCOME_SUCCESS, get_client_ip, log_audit
from oidc_provider.config import ProviderConfig, RegisteredClient
from oidc_provider.context import ProviderContext, get_context, get_db
from oidc_provider.credentials import Credential, CredentialKind
from oidc_provider.errors import (
    InvalidClientError,
    InvalidRequestError,
    InvalidScopeError,
    LoginRequiredError,
)
from oidc_provider.session import resolve_session

logger = logging.getLogger(__name__)
router = APIRouter()

DEFAULT_SCOPE = ("openid",)


def parse_scope(scope: str | None) -> list[str]:
    """Space-separated scope string -> ordered list without duplicates; absent means openid."""
    if not scope or not scope.strip():
        return list(DEFAULT_SCOPE)
    seen: list[str] = []
    for s in scope.split():
        if s not in seen:
            seen.append(s)
    return seen


def grant_scope(requested: list[str], client: RegisteredClient, supported) -> list[str]:
    """requested ∩ client-permitted ∩ provider-supported, in request order."""
    supported = set(supported)
    return [s for s in requested if s in client.scopes and s in supported]


def validate_authorization_request(
    config: ProviderConfig,
    *,
    client_id: str | None,
    redirect_uri: str | None,
    response_type: str | None,
    scope: str | None,
) -> tuple[RegisteredClient, list[str]]:
    """Check parameters in order; returns (client, granted_scope) or raises ProtocolError."""
    if response_type != "code":
        raise InvalidRequestError("response_type must be 'code'")
    if not client_id or not redirect_uri:
        raise InvalidRequestError("client_id and redirect_uri are required")

    client = config.get_client(client_id)
    if client is None:
        raise InvalidClientError("Client is not registered", status_code=400)
    if not client.redirect_uri_allowed(redirect_uri):
        raise InvalidRequestError("redirect_uri is not registered for this client")

    granted = grant_scope(parse_scope(scope), client, config.supported_scopes)
    if not granted:
        raise InvalidScopeError("No valid scopes requested")
    return client, granted


def authorize(
    ctx: ProviderContext,
    *,
    client_id: str | None,
    redirect_uri: str | None,
    response_type: str | None,
    scope: str | None,
    subject_id: str | None,
    nonce: str | None = None,
    auth_time: int | None = None,
    now: datetime | None = None,
) -> Credential:
    """
    Issue an authorization code bound to {subject, client, granted scope, redirect_uri}.
    The subject must already be authenticated; nothing is stored on a rejected request.
    """
    client, granted = validate_authorization_request(
        ctx.config,
        client_id=client_id,
        redirect_uri=redirect_uri,
        response_type=response_type,
        scope=scope,
    )
    if not subject_id:
        raise LoginRequiredError()

    metadata = {"redirect_uri": redirect_uri}
    if nonce:
        metadata["nonce"] = nonce
    if auth_time is not None:
        metadata["auth_time"] = auth_time
    code = Credential.issue(
        CredentialKind.AUTHORIZATION_CODE,
        subject_id,
        ctx.config.code_ttl_seconds,
        client_id=client.client_id,
        scope=granted,
        metadata=metadata,
        now=now,
    )
    return ctx.store.put(code)


def build_redirect(config: ProviderConfig, redirect_uri: str, params: dict) -> str:
    """Add params to the query of redirect_uri, keeping any existing query and fragment in place."""
    target = redirect_uri
    if not urlsplit(target).scheme and config.callback_base:
        target = urljoin(config.callback_base, target)
    parts = urlsplit(target)
    extra = urlencode({k: v for k, v in params.items() if v is not None})
    query = f"{parts.query}&{extra}" if parts.query and extra else (parts.query or extra)
    return urlunsplit(parts._replace(query=query))


@router.get("/authorize")
def authorize_get(
    request: Request,
    response_type: str | None = None,
    client_id: str | None = None,
    redirect_uri: str | None = None,
    scope: str | None = None,
    state: str | None = None,
    nonce: str | None = None,
    code_challenge: str | None = None,
    ctx: ProviderContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    """
    OAuth2 authorization endpoint. Errors are returned as {error, error_description};
    success redirects (302) with code and the echoed state.
    """
    if code_challenge:
        raise InvalidRequestError("PKCE (code_challenge) is not supported by this provider")

    session = resolve_session(ctx, request)
    code = authorize(
        ctx,
        client_id=client_id,
        redirect_uri=redirect_uri,
        response_type=response_type,
        scope=scope,
        subject_id=session.subject_id if session else None,
        nonce=nonce,
        auth_time=int(session.issued_at.timestamp()) if session else None,
    )
    log_audit(
        db,
        EVENT_CODE_ISSUED,
        client_id=code.client_id,
        subject_id=code.subject_id,
        ip=get_client_ip(request),
        outcome=OUTCOME_SUCCESS,
    )
    logger.info("Authorization code issued for client_id=%s scope=%s", code.client_id, code.scope_string)
    return RedirectResponse(
        url=build_redirect(ctx.config, redirect_uri, {"code": code.value, "state": state}),
        status_code=302,
    )
