"""
User-record collaborator for verification outcomes.

The marketplace owns user records; this module is the narrow interface the
verification flow writes through, plus a SQLite implementation so the service
runs standalone. Personal data is encrypted at rest.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from app.clients.sqlite_store import RecordTransaction, SQLiteStore
from app.core.errors import PersistenceError
from app.models.kyc import KYCRecord, PersonalInfo, VerificationOutcome, VerificationStatus
from app.services.token_cipher import TokenCipherService

logger = logging.getLogger(__name__)

PROVIDER = "fayda"
_IDENTITY_PARTITION = f"identity#{PROVIDER}"
_KYC_SORT_KEY = f"kyc#{PROVIDER}"


def _user_key(user_id: str) -> str:
    return f"user#{user_id}"


def _subject_key(subject_id: str) -> str:
    return f"subject#{subject_id}"


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class UserRecordStore(Protocol):
    """What the verification flow needs from the user-record owner."""

    def apply_outcome(self, user_id: str, outcome: VerificationOutcome) -> None:
        ...

    def get_record(self, user_id: str) -> Optional[KYCRecord]:
        ...


class SQLiteUserRecordStore:
    """Stores KYC state on user records and the subject-to-user identity link."""

    def __init__(
        self,
        store: SQLiteStore,
        cipher: TokenCipherService,
        *,
        validity_days: int = 365,
    ) -> None:
        self._store = store
        self._cipher = cipher
        self._validity = timedelta(days=validity_days)

    def apply_outcome(self, user_id: str, outcome: VerificationOutcome) -> None:
        """
        Write ``outcome`` onto the user's record.

        The identity link and the user record are written in one transaction.
        Re-delivering an outcome for the same subject and user leaves exactly
        one identity link. A subject already linked to another user is refused.
        """
        try:
            with self._store.transaction() as txn:
                self._write_outcome(txn, user_id, outcome, datetime.now(timezone.utc))
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to store verification outcome: {exc}") from exc

        logger.info("Stored KYC outcome for user %s (status=%s)", user_id, outcome.status.value)

    def _write_outcome(
        self,
        txn: RecordTransaction,
        user_id: str,
        outcome: VerificationOutcome,
        now: datetime,
    ) -> None:
        subject = outcome.external_subject_id
        inserted = txn.put_item_if_absent(
            {
                "pk": _IDENTITY_PARTITION,
                "sk": _subject_key(subject),
                "user_id": user_id,
                "linked_at": now.isoformat(),
            }
        )
        if not inserted:
            link = txn.get_item(partition_key=_IDENTITY_PARTITION, sort_key=_subject_key(subject))
            if link and link.get("user_id") != user_id:
                raise PersistenceError(
                    "This identity is already linked to another account.",
                    error_code="identity_conflict",
                )

        previous = txn.get_item(partition_key=_user_key(user_id), sort_key=_KYC_SORT_KEY) or {}
        previous_subject = previous.get("external_subject_id")
        if previous_subject and previous_subject != subject:
            old_link = txn.get_item(
                partition_key=_IDENTITY_PARTITION, sort_key=_subject_key(previous_subject)
            )
            if old_link and old_link.get("user_id") == user_id:
                txn.delete_item(partition_key=_IDENTITY_PARTITION, sort_key=_subject_key(previous_subject))

        txn.put_item(
            {
                "pk": _user_key(user_id),
                "sk": _KYC_SORT_KEY,
                "user_id": user_id,
                "provider": PROVIDER,
                "kyc_status": outcome.status.value,
                "external_subject_id": subject,
                "verified_at": outcome.verified_at.isoformat(),
                "personal_info_encrypted": self._cipher.encrypt_json(
                    outcome.personal_info.model_dump(mode="json")
                ),
                "raw_claims_encrypted": self._cipher.encrypt_json(outcome.raw_claims),
                "token_type": outcome.token_type,
                "scope": outcome.scope,
                "created_at": previous.get("created_at") or now.isoformat(),
                "updated_at": now.isoformat(),
            }
        )

    def get_record(self, user_id: str) -> Optional[KYCRecord]:
        item = self._store.get_item(partition_key=_user_key(user_id), sort_key=_KYC_SORT_KEY)
        if not item:
            return None

        personal_info = None
        encrypted = item.get("personal_info_encrypted")
        if encrypted:
            personal_info = PersonalInfo.model_validate(self._cipher.decrypt_json(encrypted))

        return KYCRecord(
            user_id=user_id,
            kyc_status=VerificationStatus(item.get("kyc_status", VerificationStatus.PENDING.value)),
            external_subject_id=item.get("external_subject_id"),
            verified_at=_parse_timestamp(item.get("verified_at")),
            personal_info=personal_info,
            updated_at=_parse_timestamp(item.get("updated_at")),
        )

    def get_status(self, user_id: str, now: Optional[datetime] = None) -> VerificationStatus:
        """Current KYC status; a verification older than the validity window reads as EXPIRED."""
        record = self.get_record(user_id)
        if record is None:
            return VerificationStatus.PENDING
        if (
            record.kyc_status is VerificationStatus.VERIFIED
            and record.verified_at is not None
            and (now or datetime.now(timezone.utc)) - record.verified_at > self._validity
        ):
            return VerificationStatus.EXPIRED
        return record.kyc_status

    def find_user_by_subject(self, subject_id: str) -> Optional[str]:
        link = self._store.get_item(partition_key=_IDENTITY_PARTITION, sort_key=_subject_key(subject_id))
        return link.get("user_id") if link else None


__all__ = ["SQLiteUserRecordStore", "UserRecordStore"]
