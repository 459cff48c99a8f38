"""
Client authentication at the token endpoint (private_key_jwt, RFC 7523).
Assertions are verified against public keys registered for the client itself, never the provider's key.
"""
import logging
from datetime import datetime

import jwt

from oidc_provider.config import CLIENT_ASSERTION_TYPE_JWT_BEARER, SIGNING_ALG, ProviderConfig, RegisteredClient
from oidc_provider.credentials import Credential, CredentialKind, CredentialStore, utc_now
from oidc_provider.errors import DuplicateValueError, InvalidClientError, KeyFormatError
from oidc_provider.keys import to_verification_form

logger = logging.getLogger(__name__)


def _select_client_key(client: RegisteredClient, kid: str | None) -> dict | None:
    if kid:
        for jwk in client.jwks:
            if jwk.get("kid") == kid:
                return jwk
        return None
    # No kid in the header: only unambiguous when the client registered a single key
    return client.jwks[0] if len(client.jwks) == 1 else None


def verify_client_assertion(
    config: ProviderConfig,
    client: RegisteredClient,
    assertion: str,
    assertion_type: str | None,
    now: datetime | None = None,
) -> dict:
    """Verify a client assertion JWT; returns its claims or raises InvalidClientError."""
    if assertion_type != CLIENT_ASSERTION_TYPE_JWT_BEARER:
        raise InvalidClientError("Unsupported client_assertion_type")
    if not client.jwks:
        raise InvalidClientError("Client has no registered keys for client assertions")

    try:
        header = jwt.get_unverified_header(assertion)
    except jwt.InvalidTokenError:
        raise InvalidClientError("Malformed client assertion")
    if header.get("alg") != SIGNING_ALG:
        raise InvalidClientError(f"Client assertion must be signed with {SIGNING_ALG}")

    jwk = _select_client_key(client, header.get("kid"))
    if jwk is None:
        raise InvalidClientError("No registered client key matches the assertion")
    try:
        public_key = to_verification_form(jwk)
    except KeyFormatError as e:
        logger.warning("Registered key for client_id=%s is unusable: %s", client.client_id, e)
        raise InvalidClientError("Registered client key is unusable")

    try:
        claims = jwt.decode(
            assertion,
            public_key,
            algorithms=[SIGNING_ALG],
            audience=[config.token_endpoint, config.issuer],
            options={"require": ["iss", "sub", "aud", "exp", "iat", "jti"]},
        )
    except jwt.InvalidTokenError as e:
        logger.debug("Client assertion rejected for client_id=%s: %s", client.client_id, e)
        raise InvalidClientError("Client assertion verification failed")

    if claims.get("iss") != client.client_id or claims.get("sub") != client.client_id:
        raise InvalidClientError("Client assertion iss and sub must equal client_id")
    if not isinstance(claims["jti"], str) or not claims["jti"]:
        raise InvalidClientError("Client assertion jti must be a non-empty string")

    # exp, iat and now must all lie within one max-age window
    max_age = config.client_assertion_max_age_seconds
    now_ts = int((now or utc_now()).timestamp())
    exp, iat = claims["exp"], claims["iat"]
    if exp - iat > max_age or exp - now_ts > max_age:
        raise InvalidClientError("Client assertion lifetime is too long")
    if now_ts - iat > max_age:
        raise InvalidClientError("Client assertion is too old")
    return claims


def _remember_assertion(store: CredentialStore, client_id: str, claims: dict, now: datetime) -> None:
    """Record the assertion's jti until it expires; a second use is rejected."""
    ttl = max(1, int(claims["exp"] - now.timestamp()))
    try:
        store.put(
            Credential.issue(
                CredentialKind.CLIENT_ASSERTION,
                client_id,
                ttl,
                client_id=client_id,
                value=f"{client_id}:{claims['jti']}",
                now=now,
            ),
            now=now,
        )
    except DuplicateValueError:
        logger.info("Replayed client assertion for client_id=%s", client_id)
        raise InvalidClientError("Client assertion has already been used")


def authenticate_client(
    config: ProviderConfig,
    client_id: str,
    assertion: str | None,
    assertion_type: str | None,
    store: CredentialStore | None = None,
) -> RegisteredClient:
    """
    Resolve the client. If an assertion is presented it must verify; clients registered for
    private_key_jwt must present one. With a store, each assertion is accepted only once.
    Returns the client or raises InvalidClientError.
    """
    client = config.get_client(client_id)
    if client is None:
        raise InvalidClientError("Client is not registered")
    if assertion:
        now = utc_now()
        claims = verify_client_assertion(config, client, assertion, assertion_type, now)
        if store is not None:
            _remember_assertion(store, client.client_id, claims, now)
    elif client.token_endpoint_auth_method == "private_key_jwt":
        raise InvalidClientError("client_assertion is required for this client")
    return client
