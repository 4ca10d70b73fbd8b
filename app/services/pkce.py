"""PKCE (Proof Key for Code Exchange) utilities.

Implements RFC 7636 for the authorization code exchange with the identity
provider. Only the S256 challenge method is produced.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass

PKCE_METHOD_S256 = "S256"
MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128


@dataclass(frozen=True, slots=True)
class PKCEPair:
    """A code verifier and the challenge derived from it."""

    code_verifier: str
    code_challenge: str
    code_challenge_method: str = PKCE_METHOD_S256


def generate_pkce_pair(length: int = 64) -> PKCEPair:
    """Generate a PKCE code_verifier and code_challenge pair.

    The code_verifier is a cryptographically random string kept server side
    until the token exchange. The code_challenge is sent in the authorization
    request.

    Per RFC 7636:
    - code_verifier: 43-128 characters of unreserved URI characters
    - code_challenge: BASE64URL(SHA256(code_verifier))

    Args:
        length: Verifier length, between 43 and 128 characters.

    Returns:
        PKCEPair: verifier, challenge and the ``S256`` method marker.

    Raises:
        ValueError: If ``length`` is outside the RFC 7636 bounds.
    """
    if not MIN_VERIFIER_LENGTH <= length <= MAX_VERIFIER_LENGTH:
        raise ValueError(
            f"code_verifier length must be between {MIN_VERIFIER_LENGTH} "
            f"and {MAX_VERIFIER_LENGTH}, got {length}"
        )

    # token_urlsafe(n) yields ~1.33n base64url characters without padding.
    code_verifier = secrets.token_urlsafe(length)[:length]
    return PKCEPair(
        code_verifier=code_verifier,
        code_challenge=compute_challenge(code_verifier),
    )


def compute_challenge(code_verifier: str) -> str:
    """Compute the S256 code_challenge from a code_verifier.

    Args:
        code_verifier: The code verifier string

    Returns:
        str: BASE64URL(SHA256(code_verifier)) without padding
    """
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def verify_pkce(code_verifier: str, code_challenge: str) -> bool:
    """Check a verifier against a challenge in constant time."""
    expected_challenge = compute_challenge(code_verifier)
    return secrets.compare_digest(expected_challenge, code_challenge)


__all__ = [
    "MAX_VERIFIER_LENGTH",
    "MIN_VERIFIER_LENGTH",
    "PKCEPair",
    "PKCE_METHOD_S256",
    "compute_challenge",
    "generate_pkce_pair",
    "verify_pkce",
]
