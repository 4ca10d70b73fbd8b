"""Public schema exports."""

from .auth import (
    AuthorizationStartResponse,
    KYCCallbackPayload,
    KYCCallbackResponse,
    KYCStatusResponse,
)

__all__ = [
    "AuthorizationStartResponse",
    "KYCCallbackPayload",
    "KYCCallbackResponse",
    "KYCStatusResponse",
]
