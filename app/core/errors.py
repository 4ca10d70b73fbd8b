"""
Error taxonomy for the identity verification flow.

Components raise these; the callback state machine maps them onto a terminal
failure reason.
"""

from __future__ import annotations

from typing import Optional


class KYCError(Exception):
    """Base class for every verification-flow failure."""

    error_code = "kyc_error"

    def __init__(self, message: str = "", *, error_code: Optional[str] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        if error_code:
            self.error_code = error_code

    @property
    def description(self) -> str:
        return str(self)


class ConfigurationError(KYCError):
    """Missing or malformed provider wiring or signing key. Fatal at startup."""

    error_code = "configuration_error"


class AssertionBuildError(KYCError):
    """The client assertion could not be built or signed."""

    error_code = "assertion_build_error"


class DuplicateStateError(KYCError):
    """A verification session with the same state already exists."""

    error_code = "duplicate_state"


class SessionStoreError(KYCError):
    """The session backend failed or held a session that could not be read."""

    error_code = "session_store_unavailable"


class InvalidStateError(KYCError):
    """State was not found, already consumed, or expired."""

    error_code = "invalid_state"


class ProviderDeniedError(KYCError):
    """The provider redirected back with an OAuth error instead of a code."""

    error_code = "access_denied"


class TokenExchangeError(KYCError):
    """The token endpoint rejected the authorization code exchange."""

    error_code = "token_exchange_failed"

    def __init__(
        self,
        message: str = "",
        *,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, error_code=error_code)
        self.status_code = status_code


class IdTokenValidationError(KYCError):
    """The ID token failed signature, issuer, audience, expiry or nonce checks."""

    error_code = "invalid_id_token"


class TransientNetworkError(KYCError):
    """Timeout or connection failure talking to the provider.

    Safe to retry by starting a brand-new authorization request, never by
    replaying a consumed authorization code.
    """

    error_code = "temporarily_unavailable"


class ProfileFetchError(KYCError):
    """The userinfo endpoint returned an HTTP error."""

    error_code = "profile_fetch_failed"

    def __init__(
        self,
        message: str = "",
        *,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, error_code=error_code)
        self.status_code = status_code


class ProfileDecodeError(KYCError):
    """The userinfo JWT was malformed, unsigned, or failed verification."""

    error_code = "profile_decode_failed"


class PersistenceError(KYCError):
    """The verification outcome could not be written to the user record."""

    error_code = "persistence_failed"


__all__ = [
    "AssertionBuildError",
    "ConfigurationError",
    "DuplicateStateError",
    "IdTokenValidationError",
    "InvalidStateError",
    "KYCError",
    "PersistenceError",
    "ProfileDecodeError",
    "ProfileFetchError",
    "ProviderDeniedError",
    "SessionStoreError",
    "TokenExchangeError",
    "TransientNetworkError",
]
