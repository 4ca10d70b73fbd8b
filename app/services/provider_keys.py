"""
Provider signing keys and ID token validation.

The provider publishes its public keys as a JWKS document. Keys are cached
for ``FAYDA_JWKS_CACHE_SECONDS`` and refetched once when a token names a key
id the cache does not know (the provider rotated its keys).
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx
import jwt

from app.core.config import AppSettings
from app.core.errors import IdTokenValidationError, TransientNetworkError
from app.utils.http import RetryConfig, request_with_retry

logger = logging.getLogger(__name__)

_MIN_REFRESH_INTERVAL_SECONDS = 30.0


class SigningKeyNotFound(LookupError):
    """No usable provider key matches the token header."""


def asymmetric_only(algorithms: Sequence[str]) -> List[str]:
    """Drop ``none`` and HMAC algorithms; provider tokens must be signed with a public key."""
    return [alg for alg in algorithms if alg and alg.lower() != "none" and not alg.upper().startswith("HS")]


class ProviderKeySet:
    """Async JWKS cache for the identity provider."""

    def __init__(
        self,
        jwks_uri: str,
        *,
        cache_seconds: int = 3600,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_config: Optional[RetryConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._jwks_uri = jwks_uri
        self._cache_seconds = cache_seconds
        self._timeout = timeout_seconds
        self._transport = transport
        self._retry = retry_config or RetryConfig(attempts=2, backoff_seconds=0.5)
        self._clock = clock
        self._keys: List[jwt.PyJWK] = []
        self._fetched_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ProviderKeySet":
        return cls(
            settings.fayda.resolved_jwks_uri,
            cache_seconds=settings.oauth.jwks_cache_seconds,
            timeout_seconds=settings.oauth.http_timeout_seconds,
            transport=transport,
        )

    def _is_stale(self) -> bool:
        if self._fetched_at is None:
            return True
        return self._clock() - self._fetched_at >= self._cache_seconds

    async def _refresh(self) -> None:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await request_with_retry(
                    client.get,
                    self._jwks_uri,
                    headers={"Accept": "application/json"},
                    retry_config=self._retry,
                )
        except httpx.HTTPStatusError as exc:
            raise TransientNetworkError(
                f"Provider JWKS returned HTTP {exc.response.status_code}."
            ) from exc
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"Provider JWKS unreachable: {exc}") from exc

        try:
            document = response.json()
            signing_keys = [
                key for key in document.get("keys", []) if key.get("use", "sig") == "sig"
            ]
            keys = jwt.PyJWKSet.from_dict({"keys": signing_keys}).keys
        except (ValueError, AttributeError, jwt.PyJWTError) as exc:
            raise SigningKeyNotFound(f"Provider JWKS is malformed: {exc}") from exc

        self._keys = list(keys)
        self._fetched_at = self._clock()
        logger.info("Loaded %d provider signing key(s) from %s", len(self._keys), self._jwks_uri)

    def _find(self, kid: Optional[str]) -> Optional[jwt.PyJWK]:
        if kid is None:
            return self._keys[0] if len(self._keys) == 1 else None
        for key in self._keys:
            if key.key_id == kid:
                return key
        return None

    async def get_signing_key(self, kid: Optional[str]) -> jwt.PyJWK:
        """Return the provider key for ``kid``, refetching the JWKS at most once."""
        async with self._lock:
            refreshed = False
            if self._is_stale():
                await self._refresh()
                refreshed = True
            key = self._find(kid)
            if key is None and not refreshed:
                recently = (
                    self._fetched_at is not None
                    and self._clock() - self._fetched_at < _MIN_REFRESH_INTERVAL_SECONDS
                )
                if not recently:
                    logger.info("Unknown provider key id %s; refreshing JWKS", kid)
                    await self._refresh()
                    key = self._find(kid)
        if key is None:
            raise SigningKeyNotFound(f"No provider signing key matches kid={kid!r}.")
        return key

    async def decode(
        self,
        token: str,
        *,
        algorithms: Sequence[str],
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
        leeway: int = 0,
        require: Sequence[str] = (),
    ) -> Dict[str, Any]:
        """Verify ``token`` against the provider keys and return its claims.

        Raises ``jwt.PyJWTError`` subclasses, ``SigningKeyNotFound`` or
        ``TransientNetworkError``; callers translate them.
        """
        allowed = asymmetric_only(algorithms)
        header = jwt.get_unverified_header(token)
        algorithm = header.get("alg")
        if algorithm not in allowed:
            raise jwt.InvalidAlgorithmError(f"Token algorithm {algorithm!r} is not allowed.")

        key = await self.get_signing_key(header.get("kid"))
        return jwt.decode(
            token,
            key.key,
            algorithms=[algorithm],
            audience=audience,
            issuer=issuer,
            leeway=leeway,
            options={"require": list(require), "verify_aud": audience is not None},
        )


@dataclass(frozen=True)
class VerifiedIdToken:
    """ID token claims that passed signature, issuer, audience, expiry and nonce checks."""

    subject: str
    issuer: str
    audience: str
    nonce: str
    issued_at: int
    expires_at: int
    claims: Dict[str, Any] = field(default_factory=dict)


async def validate_id_token(
    key_set: ProviderKeySet,
    id_token: Optional[str],
    *,
    issuer: str,
    client_id: str,
    nonce: str,
    algorithms: Sequence[str],
    leeway: int = 0,
) -> VerifiedIdToken:
    if not id_token:
        raise IdTokenValidationError("Token response did not include an id_token.", error_code="missing_id_token")

    try:
        claims = await key_set.decode(
            id_token,
            algorithms=algorithms,
            audience=client_id,
            issuer=issuer,
            leeway=leeway,
            require=("iss", "sub", "aud", "exp", "iat"),
        )
    except jwt.ExpiredSignatureError as exc:
        raise IdTokenValidationError("ID token has expired.", error_code="expired_id_token") from exc
    except jwt.InvalidIssuerError as exc:
        raise IdTokenValidationError("ID token issuer mismatch.", error_code="invalid_issuer") from exc
    except jwt.InvalidAudienceError as exc:
        raise IdTokenValidationError("ID token audience mismatch.", error_code="invalid_audience") from exc
    except (jwt.PyJWTError, SigningKeyNotFound) as exc:
        raise IdTokenValidationError(f"ID token rejected: {exc}") from exc

    audience = claims["aud"]
    if isinstance(audience, list) and len(audience) > 1 and claims.get("azp") != client_id:
        raise IdTokenValidationError("ID token authorized party mismatch.", error_code="invalid_audience")

    token_nonce = claims.get("nonce")
    if not isinstance(token_nonce, str) or not hmac.compare_digest(token_nonce, nonce):
        raise IdTokenValidationError("ID token nonce mismatch.", error_code="invalid_nonce")

    return VerifiedIdToken(
        subject=str(claims["sub"]),
        issuer=str(claims["iss"]),
        audience=client_id,
        nonce=token_nonce,
        issued_at=int(claims["iat"]),
        expires_at=int(claims["exp"]),
        claims=claims,
    )


__all__ = [
    "ProviderKeySet",
    "SigningKeyNotFound",
    "VerifiedIdToken",
    "asymmetric_only",
    "validate_id_token",
]
