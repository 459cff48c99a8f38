"""
Token endpoint (POST /token). Authorization code exchange only.
A code is redeemed at most once: it is consumed atomically before any token is minted, and every
later attempt with the same code fails with invalid_grant.
"""
import logging
import uuid
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from oidc_provider.audit import (
    EVENT_TOKEN_FAILED,
    EVENT_TOKEN_ISSUED,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
    get_client_ip,
    log_audit,
)
from oidc_provider.claims import PROFILE
from oidc_provider.client_auth import authenticate_client
from oidc_provider.context import ProviderContext, get_context, get_db
from oidc_provider.credentials import Credential, CredentialKind, utc_now
from oidc_provider.errors import (
    AlreadyConsumedError,
    InvalidGrantError,
    InvalidRequestError,
    NotFoundError,
    ProtocolError,
    ServerError,
    UnsupportedGrantTypeError,
)
from oidc_provider.models import Subject
from oidc_provider.rate_limit import enforce
from oidc_provider.subjects import get_subject

logger = logging.getLogger(__name__)
router = APIRouter()

GRANT_AUTHORIZATION_CODE = "authorization_code"


def build_id_token_claims(
    ctx: ProviderContext,
    subject: Subject,
    code: Credential,
    now: datetime,
    jti: str,
) -> dict:
    exp = now + timedelta(seconds=ctx.config.id_token_ttl_seconds)
    claims = {
        "iss": ctx.config.issuer,
        "sub": subject.subject_id,
        "aud": code.client_id,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
        "jti": jti,
    }
    if code.metadata.get("nonce"):
        claims["nonce"] = code.metadata["nonce"]
    if code.metadata.get("auth_time") is not None:
        claims["auth_time"] = code.metadata["auth_time"]
    if PROFILE.applies_to(code.scope):
        claims.update(PROFILE.extract(subject))
    return claims


def _issue_tokens(ctx: ProviderContext, subject: Subject, code: Credential, now: datetime) -> dict:
    access = ctx.store.put(
        Credential.issue(
            CredentialKind.ACCESS_TOKEN,
            subject.subject_id,
            ctx.config.access_token_ttl_seconds,
            client_id=code.client_id,
            scope=code.scope,
            now=now,
        ),
        now=now,
    )
    jti = uuid.uuid4().hex
    id_token = ctx.keys.sign(build_id_token_claims(ctx, subject, code, now, jti))
    ctx.store.put(
        Credential.issue(
            CredentialKind.ID_TOKEN_OPAQUE_REF,
            subject.subject_id,
            ctx.config.id_token_ttl_seconds,
            client_id=code.client_id,
            scope=code.scope,
            value=jti,
            now=now,
        ),
        now=now,
    )
    return {
        "access_token": access.value,
        "token_type": "Bearer",
        "expires_in": access.expires_in(now),
        "id_token": id_token,
        "scope": code.scope_string,
    }


def exchange(
    ctx: ProviderContext,
    db: Session,
    *,
    grant_type: str | None,
    code: str | None,
    client_id: str | None,
    redirect_uri: str | None = None,
    client_assertion: str | None = None,
    client_assertion_type: str | None = None,
    code_verifier: str | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Redeem an authorization code for an access token and a signed ID token.
    Checks run before the code is consumed, so a rejected request leaves the code usable.
    """
    now = now or utc_now()
    if grant_type != GRANT_AUTHORIZATION_CODE:
        raise UnsupportedGrantTypeError()
    if not code or not client_id:
        raise InvalidRequestError("code and client_id are required")
    if code_verifier:
        raise InvalidRequestError("PKCE (code_verifier) is not supported by this provider")

    client = authenticate_client(ctx.config, client_id, client_assertion, client_assertion_type, ctx.store)

    try:
        pending = ctx.store.get(code, kind=CredentialKind.AUTHORIZATION_CODE, now=now)
    except NotFoundError:
        raise InvalidGrantError()
    if not pending.is_valid(now):
        raise InvalidGrantError("Authorization code already used")
    if pending.client_id != client.client_id:
        raise InvalidGrantError("Authorization code was issued to another client")
    # Only enforced when the client sends redirect_uri; an omitted value is accepted
    if redirect_uri is not None and redirect_uri != pending.metadata.get("redirect_uri"):
        raise InvalidGrantError("redirect_uri does not match the authorization request")

    try:
        auth_code = ctx.store.consume(code, kind=CredentialKind.AUTHORIZATION_CODE, now=now)
    except AlreadyConsumedError:
        raise InvalidGrantError("Authorization code already used")
    except NotFoundError:
        raise InvalidGrantError()

    subject = get_subject(db, auth_code.subject_id)
    if subject is None:
        raise InvalidGrantError("Subject not found")

    try:
        return _issue_tokens(ctx, subject, auth_code, now)
    except Exception as e:
        # The code is already consumed and cannot be restored; the client must re-authorize
        logger.critical(
            "Authorization code for client_id=%s sub=%s consumed but token issuance failed: %s",
            auth_code.client_id,
            auth_code.subject_id,
            e,
        )
        raise ServerError("Token issuance failed; restart the authorization flow") from e


async def _read_params(request: Request) -> dict:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            raise InvalidRequestError("Malformed JSON body")
        if not isinstance(body, dict):
            raise InvalidRequestError("JSON body must be an object")
        return {k: v for k, v in body.items() if isinstance(v, str)}
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


@router.post("/token")
async def token(
    request: Request,
    ctx: ProviderContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    """Form or JSON body: grant_type, code, client_id, redirect_uri?, client_assertion(_type)?"""
    ip = get_client_ip(request)
    enforce(ctx.token_limiter, ip)
    params = await _read_params(request)
    client_id = params.get("client_id")
    try:
        result = await run_in_threadpool(
            exchange,
            ctx,
            db,
            grant_type=params.get("grant_type"),
            code=params.get("code"),
            client_id=client_id,
            redirect_uri=params.get("redirect_uri"),
            client_assertion=params.get("client_assertion"),
            client_assertion_type=params.get("client_assertion_type"),
            code_verifier=params.get("code_verifier"),
        )
    except ProtocolError as e:
        logger.info("Token request rejected for client_id=%s: %s", client_id, e.error)
        log_audit(db, EVENT_TOKEN_FAILED, client_id=client_id, ip=ip, outcome=OUTCOME_FAIL)
        raise

    log_audit(db, EVENT_TOKEN_ISSUED, client_id=client_id, ip=ip, outcome=OUTCOME_SUCCESS)
    return JSONResponse(result, headers={"Cache-Control": "no-store", "Pragma": "no-cache"})
