"""Turn a verified token and profile into a persisted verification outcome."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from app.clients.fayda_auth import TokenResponse
from app.core.errors import KYCError, PersistenceError, ProfileDecodeError
from app.models.kyc import PersonalInfo, VerificationOutcome, VerificationStatus
from app.services.provider_keys import VerifiedIdToken
from app.services.user_records import UserRecordStore
from app.services.userinfo import UserProfile

logger = logging.getLogger(__name__)


class VerificationOutcomeMapper:
    """Build ``VERIFIED`` outcomes and hand them to the user-record owner."""

    def build(
        self,
        token: TokenResponse,
        id_token: VerifiedIdToken,
        profile: UserProfile,
        now: Optional[datetime] = None,
    ) -> VerificationOutcome:
        # A VerifiedIdToken only exists once state, nonce, issuer, audience
        # and expiry have all been checked.
        if profile.subject_id != id_token.subject:
            raise ProfileDecodeError(
                "Profile subject does not match the verified ID token.", error_code="subject_mismatch"
            )

        personal_info = PersonalInfo(
            first_name=profile.given_name,
            last_name=profile.family_name,
            full_name=profile.full_name,
            email=profile.email,
            phone=profile.phone,
            birthdate=profile.birthdate,
            gender=profile.gender,
            address=profile.address,
            picture=profile.picture_ref,
        )
        return VerificationOutcome(
            external_subject_id=id_token.subject,
            personal_info=personal_info,
            status=VerificationStatus.VERIFIED,
            verified_at=now or datetime.now(timezone.utc),
            raw_claims=profile.raw_claims,
            token_type=token.token_type,
            scope=token.scope,
            expires_in=token.expires_in,
        )

    def persist(self, user_id: str, outcome: VerificationOutcome, records: UserRecordStore) -> None:
        try:
            records.apply_outcome(user_id, outcome)
        except PersistenceError:
            raise
        except (KYCError, ValueError, OSError) as exc:
            raise PersistenceError(f"Failed to persist verification outcome: {exc}") from exc
        logger.info("Verification outcome persisted for user %s", user_id)


__all__ = ["VerificationOutcomeMapper"]
