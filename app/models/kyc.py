"""
Domain models for identity verification results.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field


class VerificationStatus(str, Enum):
    """KYC state of a user record."""

    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class PersonalInfo(BaseModel):
    """Normalized personal attributes sourced from provider claims."""

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    birthdate: Optional[str] = None
    gender: Optional[str] = None
    address: Optional[Union[Dict[str, Any], str]] = None
    picture: Optional[str] = Field(
        None, description="Photo reference as returned by the provider (URL or data URI)."
    )


class VerificationOutcome(BaseModel):
    """Result of a completed verification, owned by exactly one user record."""

    external_subject_id: str = Field(
        ..., description="Provider's stable subject identifier for the person."
    )
    personal_info: PersonalInfo
    status: VerificationStatus
    verified_at: datetime
    raw_claims: Dict[str, Any] = Field(default_factory=dict)
    token_type: Optional[str] = None
    scope: Optional[str] = None
    expires_in: Optional[int] = None


class KYCRecord(BaseModel):
    """KYC view of a user record as held by the user-record store."""

    user_id: str
    kyc_status: VerificationStatus = VerificationStatus.PENDING
    external_subject_id: Optional[str] = None
    verified_at: Optional[datetime] = None
    personal_info: Optional[PersonalInfo] = None
    updated_at: Optional[datetime] = None


__all__ = ["KYCRecord", "PersonalInfo", "VerificationOutcome", "VerificationStatus"]
