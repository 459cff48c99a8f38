"""
Discovery document and published key set.
"""
from fastapi import APIRouter, Depends

from oidc_provider.claims import supported_claims
from oidc_provider.config import SIGNING_ALG, ProviderConfig
from oidc_provider.context import ProviderContext, get_context
from oidc_provider.keys import KeyMaterial

router = APIRouter()


def discovery_document(config: ProviderConfig) -> dict:
    """Pure function of static configuration."""
    issuer = config.issuer
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}/authorize",
        "token_endpoint": f"{issuer}/token",
        "userinfo_endpoint": f"{issuer}/userinfo",
        "revocation_endpoint": f"{issuer}/revoke",
        "jwks_uri": f"{issuer}/jwks",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code"],
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": [SIGNING_ALG],
        "scopes_supported": list(config.supported_scopes),
        "claims_supported": supported_claims(),
        "token_endpoint_auth_methods_supported": ["none", "private_key_jwt"],
        "token_endpoint_auth_signing_alg_values_supported": [SIGNING_ALG],
    }


def public_key_set(keys: KeyMaterial) -> dict:
    """Exactly one entry: the active key, RS256, use=sig."""
    return keys.jwks()


@router.get("/.well-known/openid_configuration")
@router.get("/.well-known/openid-configuration")
def openid_configuration(ctx: ProviderContext = Depends(get_context)):
    """OpenID Connect discovery document."""
    return discovery_document(ctx.config)


@router.get("/jwks")
def jwks(ctx: ProviderContext = Depends(get_context)):
    """JSON Web Key Set for ID token signature verification."""
    return public_key_set(ctx.keys)
