"""
Identity verification flow.

``KYCVerificationFlow.start`` issues an authorization request and persists the
session that correlates it. ``handle_callback`` drives the provider redirect
through a fixed sequence of states:

    INIT -> AWAITING_CALLBACK -> STATE_VALIDATED -> TOKEN_EXCHANGED
         -> PROFILE_FETCHED -> COMPLETE

``FAILED`` is reachable from every non-terminal state. Component errors are
mapped to a ``FailureReason``; nothing is retried here. Retrying means a new
authorization request with a fresh state, nonce and PKCE pair.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional

from anyio import to_thread

from app.clients.fayda_auth import ClaimsManifest, FaydaOAuthClient
from app.core.config import AppSettings
from app.core.errors import (
    InvalidStateError,
    KYCError,
    ProviderDeniedError,
    SessionStoreError,
    TransientNetworkError,
)
from app.models.kyc import VerificationOutcome
from app.services.client_assertion import ClientAssertionSigner
from app.services.pkce import generate_pkce_pair
from app.services.provider_keys import ProviderKeySet, validate_id_token
from app.services.user_records import UserRecordStore
from app.services.userinfo import UserInfoResolver
from app.services.verification_outcome import VerificationOutcomeMapper
from app.services.verification_sessions import VerificationSession, VerificationSessionStore

logger = logging.getLogger(__name__)


class FlowState(str, Enum):
    INIT = "INIT"
    AWAITING_CALLBACK = "AWAITING_CALLBACK"
    STATE_VALIDATED = "STATE_VALIDATED"
    TOKEN_EXCHANGED = "TOKEN_EXCHANGED"
    PROFILE_FETCHED = "PROFILE_FETCHED"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class FailureReason(str, Enum):
    INVALID_STATE = "invalid_state"
    PROVIDER_DENIED = "provider_denied"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    PROFILE_FETCH_FAILED = "profile_fetch_failed"
    PERSISTENCE_FAILED = "persistence_failed"


_TRANSITIONS: Dict[FlowState, FrozenSet[FlowState]] = {
    FlowState.INIT: frozenset({FlowState.AWAITING_CALLBACK, FlowState.FAILED}),
    FlowState.AWAITING_CALLBACK: frozenset({FlowState.STATE_VALIDATED, FlowState.FAILED}),
    FlowState.STATE_VALIDATED: frozenset({FlowState.TOKEN_EXCHANGED, FlowState.FAILED}),
    FlowState.TOKEN_EXCHANGED: frozenset({FlowState.PROFILE_FETCHED, FlowState.FAILED}),
    FlowState.PROFILE_FETCHED: frozenset({FlowState.COMPLETE, FlowState.FAILED}),
    FlowState.COMPLETE: frozenset(),
    FlowState.FAILED: frozenset(),
}


class _Run:
    """Tracks one walk through the state machine and rejects illegal moves."""

    def __init__(self, initial: FlowState) -> None:
        self.state = initial
        self.visited: List[FlowState] = [initial]

    def advance(self, target: FlowState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal verification flow transition {self.state.value} -> {target.value}")
        self.state = target
        self.visited.append(target)


@dataclass
class AuthorizationRequest:
    authorization_url: str
    state: str
    expires_at: datetime


@dataclass
class FlowResult:
    """Terminal result of a callback."""

    state: FlowState
    failure: Optional[FailureReason] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None
    error_type: Optional[str] = None
    retryable: bool = False
    outcome: Optional[VerificationOutcome] = None
    user_id: Optional[str] = None
    redirect_to: Optional[str] = None
    transitions: List[FlowState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is FlowState.COMPLETE


class KYCVerificationFlow:
    """Orchestrates authorization, callback validation and outcome persistence."""

    def __init__(
        self,
        settings: AppSettings,
        *,
        oauth_client: FaydaOAuthClient,
        signer: ClientAssertionSigner,
        sessions: VerificationSessionStore,
        key_set: ProviderKeySet,
        resolver: UserInfoResolver,
        records: UserRecordStore,
        mapper: Optional[VerificationOutcomeMapper] = None,
        claims: Optional[ClaimsManifest] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._settings = settings
        self._client = oauth_client
        self._signer = signer
        self._sessions = sessions
        self._keys = key_set
        self._resolver = resolver
        self._records = records
        self._mapper = mapper or VerificationOutcomeMapper()
        self._claims = claims or ClaimsManifest()
        self._clock = clock

    def start(self, user_id: str, redirect_to: Optional[str] = None) -> AuthorizationRequest:
        """Create and persist a verification session, then build its authorization URL."""
        if not user_id:
            raise ValueError("user_id is required to start verification.")

        run = _Run(FlowState.INIT)
        pkce = generate_pkce_pair()
        now = self._clock()
        session = VerificationSession(
            state=secrets.token_urlsafe(32),
            nonce=secrets.token_urlsafe(32),
            code_verifier=pkce.code_verifier,
            code_challenge=pkce.code_challenge,
            code_challenge_method=pkce.code_challenge_method,
            user_id=user_id,
            redirect_to=redirect_to,
            created_at=now,
            expires_at=now + timedelta(seconds=self._settings.oauth.session_ttl_seconds),
        )
        authorization_url = self._client.build_authorization_url(
            state=session.state,
            nonce=session.nonce,
            code_challenge=session.code_challenge,
            code_challenge_method=session.code_challenge_method,
            claims=self._claims,
        )
        self._sessions.put(session)
        run.advance(FlowState.AWAITING_CALLBACK)
        logger.info("Started verification for user %s; session expires at %s", user_id, session.expires_at.isoformat())
        return AuthorizationRequest(
            authorization_url=authorization_url,
            state=session.state,
            expires_at=session.expires_at,
        )

    def _fail(
        self,
        run: _Run,
        reason: FailureReason,
        exc: KYCError,
        session: Optional[VerificationSession] = None,
    ) -> FlowResult:
        failed_from = run.state
        run.advance(FlowState.FAILED)
        logger.warning(
            "Verification failed at %s: reason=%s error=%s (%s)",
            failed_from.value,
            reason.value,
            exc.error_code,
            exc.description,
        )
        return FlowResult(
            state=FlowState.FAILED,
            failure=reason,
            error_code=exc.error_code,
            error_description=exc.description,
            error_type=type(exc).__name__,
            retryable=isinstance(exc, TransientNetworkError),
            user_id=session.user_id if session else None,
            redirect_to=session.redirect_to if session else None,
            transitions=list(run.visited),
        )

    async def handle_callback(
        self,
        *,
        state: Optional[str],
        code: Optional[str] = None,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> FlowResult:
        run = _Run(FlowState.AWAITING_CALLBACK)

        # The session is consumed before the provider error is inspected.
        try:
            session = await to_thread.run_sync(self._sessions.take_by_state, state) if state else None
        except SessionStoreError as exc:
            return self._fail(run, FailureReason.INVALID_STATE, exc)
        if session is None:
            return self._fail(
                run,
                FailureReason.INVALID_STATE,
                InvalidStateError("Verification session not found, already used, or expired."),
            )
        if error:
            return self._fail(
                run,
                FailureReason.PROVIDER_DENIED,
                ProviderDeniedError(error_description or "The identity provider denied the request.", error_code=error),
                session,
            )
        if not code:
            return self._fail(
                run,
                FailureReason.PROVIDER_DENIED,
                ProviderDeniedError("Callback carried neither a code nor an error.", error_code="invalid_request"),
                session,
            )
        run.advance(FlowState.STATE_VALIDATED)

        fayda = self._settings.fayda
        try:
            assertion = self._signer.sign()
            token = await self._client.exchange_authorization_code(code, session.code_verifier, assertion)
            id_token = await validate_id_token(
                self._keys,
                token.id_token,
                issuer=fayda.resolved_issuer,
                client_id=fayda.client_id,
                nonce=session.nonce,
                algorithms=fayda.provider_algorithm_list,
                leeway=self._settings.oauth.clock_skew_seconds,
            )
        except KYCError as exc:
            return self._fail(run, FailureReason.TOKEN_EXCHANGE_FAILED, exc, session)
        run.advance(FlowState.TOKEN_EXCHANGED)

        try:
            profile = await self._resolver.resolve(token.access_token, expected_subject=id_token.subject)
            outcome = self._mapper.build(token, id_token, profile, now=self._clock())
        except KYCError as exc:
            return self._fail(run, FailureReason.PROFILE_FETCH_FAILED, exc, session)
        run.advance(FlowState.PROFILE_FETCHED)

        try:
            await to_thread.run_sync(self._mapper.persist, session.user_id, outcome, self._records)
        except KYCError as exc:
            return self._fail(run, FailureReason.PERSISTENCE_FAILED, exc, session)
        run.advance(FlowState.COMPLETE)

        logger.info("Verification complete for user %s", session.user_id)
        return FlowResult(
            state=FlowState.COMPLETE,
            outcome=outcome,
            user_id=session.user_id,
            redirect_to=session.redirect_to,
            transitions=list(run.visited),
        )


__all__ = [
    "AuthorizationRequest",
    "FailureReason",
    "FlowResult",
    "FlowState",
    "KYCVerificationFlow",
]
