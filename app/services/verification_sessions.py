"""
Verification session storage.

A session correlates the ``state`` round-tripped through the provider redirect
with the nonce and PKCE verifier generated when the attempt started. The
browser leaves the application between the two halves of the flow, so the
correlation must live in a store shared by every worker that may serve the
callback.

Every backend guarantees:

- ``put`` refuses to overwrite an existing state (``DuplicateStateError``).
- ``take_by_state`` returns and deletes a session in one atomic step, so a
  state can complete the flow at most once. Expired sessions read as absent.
- Backend failures and stored payloads that cannot be decoded raise
  ``SessionStoreError``.
"""

from __future__ import annotations

import json
import logging
import math
import sqlite3
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Protocol

import redis

from app.clients.sqlite_store import SQLiteStore
from app.core.config import StorageSettings
from app.core.errors import ConfigurationError, DuplicateStateError, SessionStoreError
from app.services.token_cipher import TokenCipherService

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class VerificationSession:
    """Correlation data for one verification attempt."""

    state: str
    nonce: str
    code_verifier: str
    code_challenge: str
    user_id: str
    code_challenge_method: str = "S256"
    redirect_to: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    expires_at: datetime = field(default_factory=lambda: _utcnow() + timedelta(minutes=10))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.expires_at

    def remaining_seconds(self, now: Optional[datetime] = None) -> float:
        return (self.expires_at - (now or _utcnow())).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        payload["expires_at"] = self.expires_at.isoformat()
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "VerificationSession":
        data = dict(payload)
        for key in ("created_at", "expires_at"):
            value = datetime.fromisoformat(data[key])
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            data[key] = value
        return cls(**data)


class VerificationSessionStore(Protocol):
    """Storage contract shared by all session backends."""

    def put(self, session: VerificationSession) -> None:
        ...

    def take_by_state(self, state: str) -> Optional[VerificationSession]:
        ...


class _SessionCodec:
    """JSON (optionally encrypted) serialization for persisted sessions."""

    def __init__(self, cipher: Optional[TokenCipherService] = None) -> None:
        self._cipher = cipher

    def dumps(self, session: VerificationSession) -> str:
        if self._cipher is not None:
            return self._cipher.encrypt_json(session.to_dict())
        return json.dumps(session.to_dict())

    def loads(self, raw: str) -> VerificationSession:
        try:
            payload = self._cipher.decrypt_json(raw) if self._cipher is not None else json.loads(raw)
            return VerificationSession.from_dict(payload)
        except (ValueError, KeyError, TypeError) as exc:
            raise SessionStoreError(
                "Stored verification session could not be read.", error_code="unreadable_session"
            ) from exc


class InMemorySessionStore:
    """
    Process-local session store.

    Only suitable for tests and single-worker development servers: a callback
    served by another process will not find the session.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, VerificationSession] = {}
        self._lock = threading.Lock()
        logger.warning(
            "Using in-memory verification session store. Callbacks must be "
            "served by this process; use sqlite or redis for deployments."
        )

    def _prune(self, now: datetime) -> None:
        expired = [state for state, session in self._sessions.items() if session.is_expired(now)]
        for state in expired:
            del self._sessions[state]

    def put(self, session: VerificationSession) -> None:
        with self._lock:
            self._prune(_utcnow())
            if session.state in self._sessions:
                raise DuplicateStateError("A verification session with this state already exists.")
            self._sessions[session.state] = session

    def take_by_state(self, state: str) -> Optional[VerificationSession]:
        with self._lock:
            session = self._sessions.pop(state, None)
        if session is None or session.is_expired():
            return None
        return session

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class SQLiteSessionStore:
    """Session table kept alongside the KYC records, with TTL pruning on write."""

    def __init__(self, db_path: str, *, cipher: Optional[TokenCipherService] = None) -> None:
        self._store = SQLiteStore(db_path)
        self._codec = _SessionCodec(cipher)
        with self._store.write_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS verification_sessions (
                    state TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    expires_at REAL NOT NULL
                )
                """
            )

    def put(self, session: VerificationSession) -> None:
        payload = self._codec.dumps(session)
        try:
            with self._store.write_connection() as conn:
                conn.execute("DELETE FROM verification_sessions WHERE expires_at <= ?", (time.time(),))
                conn.execute(
                    "INSERT INTO verification_sessions (state, payload, expires_at) VALUES (?, ?, ?)",
                    (session.state, payload, session.expires_at.timestamp()),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateStateError("A verification session with this state already exists.") from exc
        except sqlite3.Error as exc:
            raise SessionStoreError(f"Failed to store verification session: {exc}") from exc

    def take_by_state(self, state: str) -> Optional[VerificationSession]:
        try:
            with self._store.write_connection() as conn:
                row = conn.execute(
                    "SELECT payload, expires_at FROM verification_sessions WHERE state = ?",
                    (state,),
                ).fetchone()
                if row is None:
                    return None
                conn.execute("DELETE FROM verification_sessions WHERE state = ?", (state,))
        except sqlite3.Error as exc:
            raise SessionStoreError(f"Failed to read verification session: {exc}") from exc

        payload, expires_at = row
        if expires_at <= time.time():
            return None
        return self._codec.loads(payload)


class RedisSessionStore:
    """Redis-backed session store for multi-instance deployments."""

    def __init__(
        self,
        redis_client: "redis.Redis",
        *,
        key_prefix: str = "kyc:session:",
        cipher: Optional[TokenCipherService] = None,
    ) -> None:
        self._redis = redis_client
        self._prefix = key_prefix
        self._codec = _SessionCodec(cipher)
        logger.info("Using Redis for verification session storage")

    def _key(self, state: str) -> str:
        return f"{self._prefix}{state}"

    def put(self, session: VerificationSession) -> None:
        ttl = max(1, math.ceil(session.remaining_seconds()))
        try:
            stored = self._redis.set(self._key(session.state), self._codec.dumps(session), nx=True, ex=ttl)
        except redis.RedisError as exc:
            raise SessionStoreError(f"Failed to store verification session: {exc}") from exc
        if not stored:
            raise DuplicateStateError("A verification session with this state already exists.")

    def take_by_state(self, state: str) -> Optional[VerificationSession]:
        try:
            raw = self._redis.getdel(self._key(state))
        except redis.RedisError as exc:
            raise SessionStoreError(f"Failed to read verification session: {exc}") from exc
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        session = self._codec.loads(raw)
        if session.is_expired():
            return None
        return session


def create_session_store(
    settings: StorageSettings,
    *,
    cipher: Optional[TokenCipherService] = None,
) -> VerificationSessionStore:
    """Create the session backend selected by ``FAYDA_SESSION_STORE``.

    Raises:
        ConfigurationError: If redis is selected but unreachable or unset.
    """
    backend = settings.session_store
    logger.info("Creating verification session store: backend=%s", backend)

    if backend == "memory":
        return InMemorySessionStore()

    if backend == "redis":
        if not settings.redis_url:
            raise ConfigurationError("REDIS_URL is required when FAYDA_SESSION_STORE=redis.")
        client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        try:
            client.ping()
        except redis.RedisError as exc:
            raise ConfigurationError(f"Redis session store is unreachable: {exc}") from exc
        return RedisSessionStore(client, cipher=cipher)

    return SQLiteSessionStore(settings.db_path, cipher=cipher)


__all__ = [
    "InMemorySessionStore",
    "RedisSessionStore",
    "SQLiteSessionStore",
    "VerificationSession",
    "VerificationSessionStore",
    "create_session_store",
]
