"""
Scope-gated claim groups. Each group is an explicit extraction rule from a Subject to a claim subset;
groups are disjoint and evaluated independently, so a token holding several scopes gets the union.
Attributes missing on the subject are omitted, never synthesized.
"""
from dataclasses import dataclass
from typing import Callable, Iterable

from oidc_provider.models import Subject


def _present(claims: dict) -> dict:
    return {k: v for k, v in claims.items() if v is not None}


def _profile_claims(subject: Subject) -> dict:
    return _present({
        "given_name": subject.given_name,
        "family_name": subject.family_name,
        "name": subject.name,
        "email": subject.email,
        "email_verified": subject.email_verified,
        "phone_number": subject.phone_number,
        "phone_number_verified": subject.phone_number_verified,
        "locale": subject.locale,
        "zoneinfo": subject.zoneinfo,
    })


def _resident_claims(subject: Subject) -> dict:
    return _present({
        "address": subject.address,
        "birthdate": subject.birthdate.isoformat() if subject.birthdate else None,
        "country": subject.country,
        "nationality": subject.nationality,
    })


@dataclass(frozen=True)
class ClaimGroup:
    name: str
    scopes: frozenset[str]
    claim_names: tuple[str, ...]
    extract: Callable[[Subject], dict]

    def applies_to(self, scope: Iterable[str]) -> bool:
        return not self.scopes.isdisjoint(scope)


PROFILE = ClaimGroup(
    name="profile",
    scopes=frozenset({"profile", "openid"}),
    claim_names=(
        "given_name", "family_name", "name", "email", "email_verified",
        "phone_number", "phone_number_verified", "locale", "zoneinfo",
    ),
    extract=_profile_claims,
)

RESIDENT = ClaimGroup(
    name="resident",
    scopes=frozenset({"resident-service"}),
    claim_names=("address", "birthdate", "country", "nationality"),
    extract=_resident_claims,
)

CLAIM_GROUPS = (PROFILE, RESIDENT)


def supported_claims() -> list[str]:
    names = ["sub"]
    for group in CLAIM_GROUPS:
        names.extend(group.claim_names)
    return names


def assemble_claims(subject: Subject, scope: Iterable[str], groups=CLAIM_GROUPS) -> dict:
    """sub always; every group whose scopes intersect the granted scope adds its claims."""
    scope = set(scope)
    claims = {"sub": subject.subject_id}
    for group in groups:
        if group.applies_to(scope):
            claims.update(group.extract(subject))
    return claims
