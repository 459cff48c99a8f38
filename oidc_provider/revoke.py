"""
Token revocation endpoint (POST /revoke). RFC 7009.
Revokes access tokens bound to the calling client. Always 200 for well-formed requests, even when the
token is unknown, so the endpoint does not reveal which tokens exist.
"""
import logging

from fastapi import APIRouter, Depends, Form, Request
from sqlalchemy.orm import Session

from oidc_provider.audit import EVENT_TOKEN_REVOKED, OUTCOME_SUCCESS, get_client_ip, log_audit
from oidc_provider.client_auth import authenticate_client
from oidc_provider.context import ProviderContext, get_context, get_db
from oidc_provider.credentials import CredentialKind
from oidc_provider.errors import InvalidRequestError, NotFoundError

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/revoke")
def revoke(
    request: Request,
    token: str = Form(""),
    token_type_hint: str | None = Form(None),
    client_id: str = Form(""),
    client_assertion: str | None = Form(None),
    client_assertion_type: str | None = Form(None),
    ctx: ProviderContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    if not token.strip() or not client_id.strip():
        raise InvalidRequestError("token and client_id are required")
    client = authenticate_client(
        ctx.config, client_id.strip(), client_assertion, client_assertion_type, ctx.store
    )

    hint = (token_type_hint or "").strip().lower()
    if hint in ("", "access_token"):
        try:
            credential = ctx.store.get(token.strip(), kind=CredentialKind.ACCESS_TOKEN)
        except NotFoundError:
            credential = None
        # A client may only revoke its own tokens; anything else is silently ignored
        if credential is not None and credential.client_id == client.client_id:
            if ctx.store.revoke(credential.value):
                log_audit(
                    db,
                    EVENT_TOKEN_REVOKED,
                    client_id=client.client_id,
                    subject_id=credential.subject_id,
                    ip=get_client_ip(request),
                    outcome=OUTCOME_SUCCESS,
                )
                logger.debug("Revoked access token %s...", credential.value[:6])
    return {}
