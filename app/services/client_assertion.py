"""
Signed JWT client assertions (``private_key_jwt``) for the token endpoint.

The provider authenticates this application by a short-lived JWT signed with
an asymmetric private key registered out of band. Symmetric algorithms are
rejected outright.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, rsa
from jwt.algorithms import ECAlgorithm, OKPAlgorithm, RSAAlgorithm

from app.core.config import FaydaSettings
from app.core.errors import AssertionBuildError, ConfigurationError

logger = logging.getLogger(__name__)

PrivateKey = Union[
    rsa.RSAPrivateKey,
    ec.EllipticCurvePrivateKey,
    ed25519.Ed25519PrivateKey,
    ed448.Ed448PrivateKey,
]

_RSA_ALGORITHMS = frozenset({"RS256", "RS384", "RS512", "PS256", "PS384", "PS512"})
_EC_CURVES = {"ES256": "secp256r1", "ES384": "secp384r1", "ES512": "secp521r1"}
_REQUIRED_CLAIMS = ("iss", "sub", "aud", "iat", "exp", "jti")


def _decode_base64(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    try:
        return base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError):
        return base64.urlsafe_b64decode(padded)


def _load_jwk(document: str) -> tuple[PrivateKey, Optional[str]]:
    try:
        jwk = json.loads(document)
    except json.JSONDecodeError as exc:
        raise ConfigurationError("Signing key JWK is not valid JSON.") from exc
    if not isinstance(jwk, dict):
        raise ConfigurationError("Signing key JWK must be a JSON object.")

    kty = jwk.get("kty")
    loaders = {"RSA": RSAAlgorithm, "EC": ECAlgorithm, "OKP": OKPAlgorithm}
    if kty == "oct":
        raise ConfigurationError(
            "Symmetric (oct) keys cannot sign client assertions; an asymmetric key is required."
        )
    if kty not in loaders:
        raise ConfigurationError(f"Unsupported JWK key type: {kty!r}")
    if "d" not in jwk:
        raise ConfigurationError("Signing key JWK holds no private component.")

    try:
        key = loaders[kty].from_jwk(jwk)
    except (jwt.PyJWTError, ValueError, KeyError, TypeError) as exc:
        raise ConfigurationError(f"Signing key JWK could not be parsed: {exc}") from exc
    return key, jwk.get("kid")


def _load_pem_or_der(data: bytes, *, pem: bool) -> PrivateKey:
    try:
        if pem:
            return serialization.load_pem_private_key(data, password=None)
        return serialization.load_der_private_key(data, password=None)
    except (ValueError, TypeError) as exc:
        raise ConfigurationError(f"Signing key could not be parsed: {exc}") from exc


def load_private_key(material: str) -> tuple[PrivateKey, Optional[str]]:
    """Parse configured key material into a private key and optional key id.

    Accepts PEM text, raw JWK JSON, or base64 of either (the provider hands
    out base64-encoded JWK documents during onboarding). Base64-encoded DER is
    accepted as a last resort.
    """
    text = (material or "").strip()
    if not text:
        raise ConfigurationError("Private signing key is empty.")

    if text.startswith("-----BEGIN"):
        key: Any = _load_pem_or_der(text.encode("utf-8"), pem=True)
        kid = None
    elif text.startswith("{"):
        key, kid = _load_jwk(text)
    else:
        try:
            decoded = _decode_base64(text)
        except (binascii.Error, ValueError) as exc:
            raise ConfigurationError("Private signing key is neither PEM, JWK nor base64.") from exc
        stripped = decoded.strip()
        if stripped.startswith(b"-----BEGIN"):
            key, kid = _load_pem_or_der(stripped, pem=True), None
        elif stripped.startswith(b"{"):
            key, kid = _load_jwk(stripped.decode("utf-8"))
        else:
            key, kid = _load_pem_or_der(decoded, pem=False), None

    if not isinstance(
        key,
        (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey, ed25519.Ed25519PrivateKey, ed448.Ed448PrivateKey),
    ):
        raise ConfigurationError("Signing key must be an RSA, EC or EdDSA private key.")
    return key, kid


def _check_algorithm(algorithm: str, key: PrivateKey) -> None:
    if algorithm.upper().startswith("HS") or algorithm.lower() == "none":
        raise ConfigurationError(
            f"Algorithm {algorithm} is not asymmetric; client assertions must use private_key_jwt."
        )
    if isinstance(key, rsa.RSAPrivateKey):
        if algorithm not in _RSA_ALGORITHMS:
            raise ConfigurationError(f"Algorithm {algorithm} does not match an RSA key.")
    elif isinstance(key, ec.EllipticCurvePrivateKey):
        expected_curve = _EC_CURVES.get(algorithm)
        if expected_curve is None:
            raise ConfigurationError(f"Algorithm {algorithm} does not match an EC key.")
        if key.curve.name != expected_curve:
            raise ConfigurationError(
                f"Algorithm {algorithm} requires curve {expected_curve}, key uses {key.curve.name}."
            )
    elif algorithm != "EdDSA":
        raise ConfigurationError(f"Algorithm {algorithm} does not match an EdDSA key.")


def public_jwk(key: PrivateKey, *, kid: Optional[str] = None, algorithm: Optional[str] = None) -> Dict[str, Any]:
    """Return the public half of ``key`` as a JWK dict for provider registration."""
    public_key = key.public_key()
    if isinstance(key, rsa.RSAPrivateKey):
        document = RSAAlgorithm.to_jwk(public_key)
    elif isinstance(key, ec.EllipticCurvePrivateKey):
        document = ECAlgorithm.to_jwk(public_key)
    else:
        document = OKPAlgorithm.to_jwk(public_key)
    jwk = json.loads(document) if isinstance(document, str) else dict(document)
    jwk["use"] = "sig"
    if kid:
        jwk["kid"] = kid
    if algorithm:
        jwk["alg"] = algorithm
    return jwk


class ClientAssertionSigner:
    """Build and sign client assertions for the provider's token endpoint."""

    MAX_TTL_MINUTES = 120

    def __init__(
        self,
        *,
        client_id: str,
        token_endpoint: str,
        private_key: Union[str, PrivateKey],
        algorithm: str = "RS256",
        ttl_minutes: int = 5,
        key_id: Optional[str] = None,
    ) -> None:
        if isinstance(private_key, str):
            key, embedded_kid = load_private_key(private_key)
        else:
            key, embedded_kid = private_key, None
        _check_algorithm(algorithm, key)
        if not 0 < ttl_minutes <= self.MAX_TTL_MINUTES:
            raise ConfigurationError(
                f"Client assertion TTL must be within 1..{self.MAX_TTL_MINUTES} minutes, got {ttl_minutes}."
            )

        self._client_id = client_id
        self._audience = token_endpoint
        self._key = key
        self._algorithm = algorithm
        self._ttl_seconds = ttl_minutes * 60
        self._key_id = key_id or embedded_kid

    @classmethod
    def from_settings(cls, settings: FaydaSettings) -> "ClientAssertionSigner":
        """Create a signer from provider settings, failing fast on bad key material."""
        if settings.private_key is None:
            raise ConfigurationError("FAYDA_PRIVATE_KEY is not configured.")
        signer = cls(
            client_id=settings.client_id,
            token_endpoint=settings.token_endpoint,
            private_key=settings.private_key.get_secret_value(),
            algorithm=settings.algorithm,
            ttl_minutes=settings.assertion_ttl_minutes,
            key_id=settings.signing_key_id,
        )
        logger.info(
            "Client assertion signer ready: algorithm=%s, kid=%s, ttl_minutes=%d",
            signer.algorithm,
            signer.key_id or "(none)",
            settings.assertion_ttl_minutes,
        )
        return signer

    @property
    def algorithm(self) -> str:
        return self._algorithm

    @property
    def key_id(self) -> Optional[str]:
        return self._key_id

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def public_jwk(self) -> Dict[str, Any]:
        return public_jwk(self._key, kid=self._key_id, algorithm=self._algorithm)

    def build_claims(self, issued_at: Optional[datetime] = None) -> Dict[str, Any]:
        """Assemble the assertion claim set and enforce required fields."""
        now = issued_at or datetime.now(timezone.utc)
        iat = int(now.timestamp())
        claims: Dict[str, Any] = {
            "iss": self._client_id,
            "sub": self._client_id,
            "aud": self._audience,
            "iat": iat,
            "exp": iat + self._ttl_seconds,
            "jti": str(uuid.uuid4()),
        }
        missing = [name for name in _REQUIRED_CLAIMS if not claims.get(name)]
        if missing:
            raise AssertionBuildError(
                f"Client assertion is missing required claims: {', '.join(missing)}"
            )
        return claims

    def sign(self, issued_at: Optional[datetime] = None) -> str:
        """Return a compact, signed client assertion."""
        claims = self.build_claims(issued_at)
        headers: Dict[str, Any] = {"typ": "JWT"}
        if self._key_id:
            headers["kid"] = self._key_id
        try:
            token = jwt.encode(claims, self._key, algorithm=self._algorithm, headers=headers)
        except (jwt.PyJWTError, ValueError, TypeError) as exc:
            raise AssertionBuildError(f"Failed to sign client assertion: {exc}") from exc
        logger.debug("Signed client assertion jti=%s exp=%s", claims["jti"], claims["exp"])
        return token

    def __repr__(self) -> str:
        return (
            f"ClientAssertionSigner(client_id={self._client_id!r}, "
            f"audience={self._audience!r}, algorithm={self._algorithm!r})"
        )


__all__ = [
    "ClientAssertionSigner",
    "PrivateKey",
    "load_private_key",
    "public_jwk",
]
