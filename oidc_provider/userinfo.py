"""
OIDC UserInfo endpoint (GET|POST /userinfo). Opaque Bearer access token required; claims by scope.
"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from oidc_provider.audit import EVENT_USERINFO, OUTCOME_SUCCESS, get_client_ip, log_audit
from oidc_provider.claims import assemble_claims
from oidc_provider.context import ProviderContext, get_context, get_db
from oidc_provider.credentials import CredentialKind
from oidc_provider.errors import InvalidTokenError, NotFoundError
from oidc_provider.subjects import get_subject

logger = logging.getLogger(__name__)
router = APIRouter()
security = HTTPBearer(auto_error=False)


def userinfo_claims(ctx: ProviderContext, db: Session, access_token: str | None) -> dict:
    """Validate the access token on every call (never cached) and assemble scope-gated claims."""
    if not access_token:
        raise InvalidTokenError("Access token required")
    try:
        token = ctx.store.get(access_token, kind=CredentialKind.ACCESS_TOKEN)
    except NotFoundError:
        raise InvalidTokenError()
    if not token.is_valid():
        raise InvalidTokenError()

    subject = get_subject(db, token.subject_id)
    if subject is None:
        raise InvalidTokenError("Subject not found")
    return assemble_claims(subject, token.scope)


@router.api_route("/userinfo", methods=["GET", "POST"])
def userinfo(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    ctx: ProviderContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    """Claims for the subject behind the Bearer access token: sub always, then profile/resident groups."""
    claims = userinfo_claims(ctx, db, credentials.credentials if credentials else None)
    log_audit(db, EVENT_USERINFO, subject_id=claims["sub"], ip=get_client_ip(request), outcome=OUTCOME_SUCCESS)
    return claims
