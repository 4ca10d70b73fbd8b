"""Fetch, verify and normalize the provider's signed userinfo document."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Union

import jwt

from app.clients.fayda_auth import FaydaOAuthClient
from app.core.config import AppSettings
from app.core.errors import ProfileDecodeError
from app.services.provider_keys import ProviderKeySet, SigningKeyNotFound

logger = logging.getLogger(__name__)


@dataclass
class UserProfile:
    subject_id: str
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    birthdate: Optional[str] = None
    gender: Optional[str] = None
    address: Optional[Union[Dict[str, Any], str]] = None
    picture_ref: Optional[str] = None
    raw_claims: Dict[str, Any] = field(default_factory=dict)


def _present(value: Any) -> bool:
    return value is not None and value != "" and value != {}


def _claim(claims: Dict[str, Any], base: str, locales: Sequence[str], *, bare: bool = True) -> Any:
    """Return ``base`` if present, else the first ``base#<locale>`` in locale order."""
    if bare and _present(claims.get(base)):
        return claims[base]
    for locale in locales:
        value = claims.get(f"{base}#{locale}")
        if _present(value):
            return value
    return None


def normalize_claims(claims: Dict[str, Any], locales: Sequence[str]) -> UserProfile:
    """
    Map provider claims onto one profile shape.

    Localized claims are keyed ``<claim>#<locale>``. Precedence:

    - given name: ``given_name``, then ``name#<locale>`` in locale order, then ``name``
    - family name: ``family_name``, then ``family_name#<locale>``
    - full name: ``name``, then ``name#<locale>``, then given and family joined
    - everything else: the bare claim, then its localized variants
    """
    subject = claims.get("sub")
    if not subject:
        raise ProfileDecodeError("Userinfo token has no subject.")

    given_name = claims.get("given_name") or _claim(claims, "name", locales, bare=False) or claims.get("name")
    family_name = _claim(claims, "family_name", locales)
    full_name = _claim(claims, "name", locales)
    if not full_name:
        full_name = " ".join(part for part in (given_name, family_name) if part) or None

    return UserProfile(
        subject_id=str(subject),
        given_name=given_name,
        family_name=family_name,
        full_name=full_name,
        email=_claim(claims, "email", locales),
        phone=_claim(claims, "phone_number", locales),
        birthdate=_claim(claims, "birthdate", locales),
        gender=_claim(claims, "gender", locales),
        address=_claim(claims, "address", locales),
        picture_ref=claims.get("picture"),
        raw_claims=dict(claims),
    )


class UserInfoResolver:
    """Resolve an access token into a verified, normalized profile."""

    def __init__(
        self,
        oauth_client: FaydaOAuthClient,
        key_set: ProviderKeySet,
        settings: AppSettings,
    ) -> None:
        self._client = oauth_client
        self._keys = key_set
        self._issuer = settings.fayda.resolved_issuer
        self._client_id = settings.fayda.client_id
        self._algorithms = settings.fayda.provider_algorithm_list
        self._locales = settings.oauth.locale_list
        self._leeway = settings.oauth.clock_skew_seconds

    async def resolve(self, access_token: str, *, expected_subject: Optional[str] = None) -> UserProfile:
        token = await self._client.fetch_userinfo(access_token)
        if not token or token.count(".") != 2:
            raise ProfileDecodeError("Userinfo response is not a compact JWT.")

        try:
            claims = await self._keys.decode(token, algorithms=self._algorithms, leeway=self._leeway)
        except (jwt.PyJWTError, SigningKeyNotFound) as exc:
            raise ProfileDecodeError(f"Userinfo token rejected: {exc}") from exc

        issuer = claims.get("iss")
        if issuer is not None and str(issuer).rstrip("/") != self._issuer:
            raise ProfileDecodeError("Userinfo token issuer mismatch.", error_code="invalid_issuer")
        audience = claims.get("aud")
        if audience is not None:
            audiences = audience if isinstance(audience, list) else [audience]
            if self._client_id not in audiences:
                raise ProfileDecodeError("Userinfo token audience mismatch.", error_code="invalid_audience")

        profile = normalize_claims(claims, self._locales)
        if expected_subject is not None and profile.subject_id != expected_subject:
            raise ProfileDecodeError(
                "Userinfo subject does not match the ID token subject.", error_code="subject_mismatch"
            )
        logger.info("Resolved userinfo profile with %d claims", len(claims))
        return profile


__all__ = ["UserInfoResolver", "UserProfile", "normalize_claims"]
