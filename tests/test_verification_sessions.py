try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import redis

from app.core.config import StorageSettings
from app.core.errors import ConfigurationError, DuplicateStateError, SessionStoreError
from app.services.token_cipher import TokenCipherService
from app.services.verification_sessions import (
    InMemorySessionStore,
    RedisSessionStore,
    SQLiteSessionStore,
    VerificationSession,
    create_session_store,
)


class DummyRedis:
    """Implements the two commands the session store relies on."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):
        with self._lock:
            if nx and key in self.values:
                return None
            self.values[key] = value
            if ex is not None:
                self.ttls[key] = ex
            return True

    def getdel(self, key: str):
        with self._lock:
            self.ttls.pop(key, None)
            return self.values.pop(key, None)


def _session(state: str = "state-1", *, ttl_seconds: int = 600) -> VerificationSession:
    now = datetime.now(timezone.utc)
    return VerificationSession(
        state=state,
        nonce="nonce-1",
        code_verifier="v" * 64,
        code_challenge="challenge",
        user_id="user-1",
        redirect_to="/profile",
        created_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
    )


@pytest.fixture(params=["memory", "sqlite", "sqlite-encrypted", "redis"])
def store(request, tmp_path: Path):
    if request.param == "memory":
        return InMemorySessionStore()
    if request.param == "sqlite":
        return SQLiteSessionStore(str(tmp_path / "sessions.db"))
    if request.param == "sqlite-encrypted":
        return SQLiteSessionStore(
            str(tmp_path / "sessions.db"), cipher=TokenCipherService(secret="session-secret")
        )
    return RedisSessionStore(DummyRedis())


def test_take_by_state_is_at_most_once(store) -> None:
    session = _session()
    store.put(session)

    taken = store.take_by_state("state-1")
    assert taken is not None
    assert taken.nonce == "nonce-1"
    assert taken.code_verifier == session.code_verifier
    assert taken.user_id == "user-1"
    assert taken.redirect_to == "/profile"
    assert taken.expires_at == session.expires_at

    assert store.take_by_state("state-1") is None


def test_put_refuses_existing_state(store) -> None:
    store.put(_session())
    with pytest.raises(DuplicateStateError):
        store.put(_session())


def test_expired_session_reads_as_absent(store) -> None:
    store.put(_session("stale", ttl_seconds=-1))
    assert store.take_by_state("stale") is None


def test_unknown_state_is_not_found(store) -> None:
    assert store.take_by_state("missing") is None


def test_sqlite_sessions_survive_a_new_store_instance(tmp_path: Path) -> None:
    db_path = str(tmp_path / "sessions.db")
    SQLiteSessionStore(db_path).put(_session())

    assert SQLiteSessionStore(db_path).take_by_state("state-1") is not None


def test_encrypted_sqlite_does_not_store_plain_verifier(tmp_path: Path) -> None:
    import sqlite3

    db_path = tmp_path / "sessions.db"
    store = SQLiteSessionStore(str(db_path), cipher=TokenCipherService(secret="session-secret"))
    store.put(_session())

    with sqlite3.connect(db_path) as conn:
        (payload,) = conn.execute("SELECT payload FROM verification_sessions").fetchone()
    assert "v" * 64 not in payload


def test_redis_put_sets_expiry_from_session() -> None:
    client = DummyRedis()
    store = RedisSessionStore(client)
    store.put(_session(ttl_seconds=120))

    assert 119 <= client.ttls["kyc:session:state-1"] <= 120


@pytest.mark.parametrize("backend", ["memory", "sqlite"])
def test_concurrent_take_has_exactly_one_winner(backend: str, tmp_path: Path) -> None:
    if backend == "memory":
        store = InMemorySessionStore()
    else:
        store = SQLiteSessionStore(str(tmp_path / "race.db"))
    store.put(_session("contested"))

    workers = 8
    barrier = threading.Barrier(workers)

    def contend():
        barrier.wait()
        return store.take_by_state("contested")

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(lambda _: contend(), range(workers)))

    assert sum(1 for result in results if result is not None) == 1


def test_factory_selects_backend(tmp_path: Path) -> None:
    memory = create_session_store(StorageSettings(FAYDA_SESSION_STORE="memory"))
    sqlite_store = create_session_store(
        StorageSettings(FAYDA_SESSION_STORE="sqlite", KYC_DB_PATH=str(tmp_path / "kyc.db"))
    )

    assert isinstance(memory, InMemorySessionStore)
    assert isinstance(sqlite_store, SQLiteSessionStore)


def test_factory_requires_redis_url() -> None:
    with pytest.raises(ConfigurationError):
        create_session_store(StorageSettings(FAYDA_SESSION_STORE="redis"))


class UnreachableRedis:
    def set(self, *args, **kwargs):
        raise redis.ConnectionError("connection refused")

    def getdel(self, key: str):
        raise redis.ConnectionError("connection refused")


def test_session_written_under_another_secret_is_unreadable(tmp_path: Path) -> None:
    db_path = str(tmp_path / "sessions.db")
    SQLiteSessionStore(db_path, cipher=TokenCipherService(secret="old")).put(_session("rotated"))

    reader = SQLiteSessionStore(db_path, cipher=TokenCipherService(secret="new"))
    with pytest.raises(SessionStoreError) as excinfo:
        reader.take_by_state("rotated")

    assert excinfo.value.error_code == "unreadable_session"
    assert reader.take_by_state("rotated") is None


def test_redis_failures_surface_as_session_store_errors() -> None:
    store = RedisSessionStore(UnreachableRedis())

    with pytest.raises(SessionStoreError):
        store.put(_session())
    with pytest.raises(SessionStoreError):
        store.take_by_state("state-1")


def test_sqlite_failures_surface_as_session_store_errors(tmp_path: Path) -> None:
    db_path = tmp_path / "sessions.db"
    store = SQLiteSessionStore(str(db_path))
    db_path.unlink()
    db_path.mkdir()

    with pytest.raises(SessionStoreError):
        store.take_by_state("state-1")
