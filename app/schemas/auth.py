"""Schemas for the identity verification endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from app.models.kyc import VerificationStatus


class AuthorizationStartResponse(BaseModel):
    """Authorization URL issued for a new verification attempt."""

    authorization_url: str
    state: str = Field(..., description="Opaque state correlating the provider callback.")
    expires_at: datetime


class KYCCallbackPayload(BaseModel):
    """Provider callback parameters relayed by the front end."""

    state: Optional[str] = Field(None, description="State issued when verification started.")
    code: Optional[str] = Field(None, description="Authorization code returned by the provider.")
    error: Optional[str] = Field(None, description="OAuth error code when the provider denied the request.")
    error_description: Optional[str] = None


class KYCCallbackResponse(BaseModel):
    """Terminal result of a verification callback."""

    status: str = Field(..., description="'verified' or 'failed'.")
    flow_state: str
    kyc_status: Optional[VerificationStatus] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None
    retryable: bool = False
    user_id: Optional[str] = None
    external_subject_id: Optional[str] = None
    verified_at: Optional[datetime] = None
    redirect_to: Optional[str] = None
    transitions: List[str] = Field(default_factory=list)


class KYCStatusResponse(BaseModel):
    """Current KYC state of a user."""

    user_id: str
    kyc_status: VerificationStatus
    external_subject_id: Optional[str] = None
    verified_at: Optional[datetime] = None
    verified: bool = False


__all__ = [
    "AuthorizationStartResponse",
    "KYCCallbackPayload",
    "KYCCallbackResponse",
    "KYCStatusResponse",
]
