"""
RSA key material for signing and verifying JWTs.
Converts a JWK descriptor to the signing (private) and verification (public) forms used by PyJWT,
and derives the public-only descriptor published in the JWKS. One active key per process; no rotation.
"""
import json
import logging
from pathlib import Path

import jwt
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import (
    RSAPrivateKey,
    RSAPublicKey,
    generate_private_key,
)
from jwt.algorithms import RSAAlgorithm
from jwt.exceptions import InvalidKeyError
from jwt.utils import base64url_encode

from oidc_provider.config import SIGNING_ALG, ProviderConfig
from oidc_provider.errors import KeyFormatError

logger = logging.getLogger(__name__)

_KEY_BITS = 2048
_PUBLIC_FIELDS = ("n", "e")
_PRIVATE_FIELDS = ("d", "p", "q", "dp", "dq", "qi")


def _int_to_b64url(value: int) -> str:
    """Encode a positive int as base64url without padding (JWK n/e/d...)."""
    length = max(1, (value.bit_length() + 7) // 8)
    return base64url_encode(value.to_bytes(length, "big")).decode("ascii")


def _check_descriptor(descriptor: dict) -> None:
    if not isinstance(descriptor, dict):
        raise KeyFormatError("Key descriptor must be a JSON object")
    if descriptor.get("kty") != "RSA":
        raise KeyFormatError(f"Unsupported key type: {descriptor.get('kty')!r}")
    alg = descriptor.get("alg")
    if alg is not None and alg != SIGNING_ALG:
        raise KeyFormatError(f"Unsupported key algorithm: {alg!r}")
    for name in _PUBLIC_FIELDS:
        value = descriptor.get(name)
        if not value or not isinstance(value, str):
            raise KeyFormatError(f"Key descriptor field '{name}' is missing or malformed")


def _from_jwk(fields: dict):
    try:
        return RSAAlgorithm.from_jwk(fields)
    except (InvalidKeyError, ValueError, TypeError) as e:
        raise KeyFormatError(f"Invalid RSA key descriptor: {e}") from e


def to_signing_form(descriptor: dict) -> RSAPrivateKey:
    """Private key object for signing. Requires the private exponent; CRT fields are optional."""
    _check_descriptor(descriptor)
    if not descriptor.get("d"):
        raise KeyFormatError("Key descriptor has no private exponent 'd'")
    fields = {k: descriptor[k] for k in ("kty",) + _PUBLIC_FIELDS + _PRIVATE_FIELDS if descriptor.get(k)}
    key = _from_jwk(fields)
    if not isinstance(key, RSAPrivateKey):
        raise KeyFormatError("Key descriptor did not yield a private key")
    return key


def to_verification_form(descriptor: dict) -> RSAPublicKey:
    """Public key object for verification, built from n/e only; private fields are ignored."""
    _check_descriptor(descriptor)
    key = _from_jwk({"kty": "RSA", "n": descriptor["n"], "e": descriptor["e"]})
    if not isinstance(key, RSAPublicKey):
        raise KeyFormatError("Key descriptor did not yield a public key")
    return key


def public_descriptor(descriptor: dict, kid: str | None = None) -> dict:
    """Strip private fields; keep kid, algorithm and the public modulus/exponent for publication."""
    _check_descriptor(descriptor)
    kid = descriptor.get("kid") or kid
    if not kid:
        raise KeyFormatError("Key descriptor has no 'kid'")
    return {
        "kty": "RSA",
        "use": "sig",
        "alg": SIGNING_ALG,
        "kid": kid,
        "n": descriptor["n"],
        "e": descriptor["e"],
    }


def private_key_to_jwk(key: RSAPrivateKey, kid: str) -> dict:
    """Export a cryptography RSA private key as a full private JWK."""
    numbers = key.private_numbers()
    public = numbers.public_numbers
    return {
        "kty": "RSA",
        "kid": kid,
        "alg": SIGNING_ALG,
        "use": "sig",
        "n": _int_to_b64url(public.n),
        "e": _int_to_b64url(public.e),
        "d": _int_to_b64url(numbers.d),
        "p": _int_to_b64url(numbers.p),
        "q": _int_to_b64url(numbers.q),
        "dp": _int_to_b64url(numbers.dmp1),
        "dq": _int_to_b64url(numbers.dmq1),
        "qi": _int_to_b64url(numbers.iqmp),
    }


def generate_jwk(kid: str) -> dict:
    return private_key_to_jwk(generate_private_key(65537, _KEY_BITS, default_backend()), kid)


class KeyMaterial:
    """The provider's active signing key in all three forms."""

    def __init__(self, descriptor: dict, default_kid: str | None = None):
        _check_descriptor(descriptor)
        self.kid = descriptor.get("kid") or default_kid
        self.alg = SIGNING_ALG
        self._signing_key = to_signing_form(descriptor)
        self._verification_key = to_verification_form(descriptor)
        self.public_jwk = public_descriptor(descriptor, self.kid)

    def sign(self, payload: dict, headers: dict | None = None) -> str:
        token = jwt.encode(
            payload,
            self._signing_key,
            algorithm=self.alg,
            headers={"kid": self.kid, "typ": "JWT", **(headers or {})},
        )
        if isinstance(token, bytes):
            token = token.decode("utf-8")
        return token

    def verify(self, token: str, *, audience: str | None = None, issuer: str | None = None) -> dict:
        """Decode and verify a JWT signed with this key. Raises jwt.InvalidTokenError."""
        return jwt.decode(
            token,
            self._verification_key,
            algorithms=[self.alg],
            audience=audience,
            issuer=issuer,
            options={"verify_aud": audience is not None},
        )

    def jwks(self) -> dict:
        return {"keys": [dict(self.public_jwk)]}


def _read_key_file(path: Path, kid: str) -> dict:
    raw = path.read_bytes()
    if raw.lstrip().startswith(b"-----BEGIN"):
        try:
            key = serialization.load_pem_private_key(raw, password=None, backend=default_backend())
        except (ValueError, TypeError) as e:
            raise KeyFormatError(f"Signing key in {path} is not a valid PEM private key") from e
        if not isinstance(key, RSAPrivateKey):
            raise KeyFormatError(f"Signing key in {path} is not an RSA key")
        return private_key_to_jwk(key, kid)
    try:
        return json.loads(raw)
    except ValueError as e:
        raise KeyFormatError(f"Signing key in {path} is not valid JSON") from e


def load_key_material(config: ProviderConfig) -> KeyMaterial:
    """
    Load the active signing key: inline JWK from config, else the key file, else generate and save one.
    A configured key that is malformed raises KeyFormatError; there is no silent fallback.
    """
    if config.signing_jwk is not None:
        material = KeyMaterial(config.signing_jwk, config.signing_kid)
        logger.info("Loaded signing key from configuration (kid=%s)", material.kid)
        return material

    path = Path(config.signing_key_path) if config.signing_key_path else None
    if path is not None and path.exists():
        material = KeyMaterial(_read_key_file(path, config.signing_kid), config.signing_kid)
        logger.info("Loaded signing key from %s (kid=%s)", path, material.kid)
        return material

    descriptor = generate_jwk(config.signing_kid)
    if path is not None:
        try:
            path.write_text(json.dumps(descriptor), encoding="utf-8")
            logger.info("Generated and saved signing key to %s", path)
        except OSError as e:
            logger.warning("Could not save signing key to %s: %s", path, e)
    return KeyMaterial(descriptor, config.signing_kid)
