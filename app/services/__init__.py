"""Service layer exports."""

from .client_assertion import ClientAssertionSigner
from .kyc_flow import AuthorizationRequest, FailureReason, FlowResult, FlowState, KYCVerificationFlow
from .pkce import PKCEPair, generate_pkce_pair
from .provider_keys import ProviderKeySet, VerifiedIdToken
from .token_cipher import TokenCipherService
from .user_records import SQLiteUserRecordStore, UserRecordStore
from .userinfo import UserInfoResolver, UserProfile
from .verification_outcome import VerificationOutcomeMapper
from .verification_sessions import VerificationSession, VerificationSessionStore, create_session_store

__all__ = [
    "AuthorizationRequest",
    "ClientAssertionSigner",
    "FailureReason",
    "FlowResult",
    "FlowState",
    "KYCVerificationFlow",
    "PKCEPair",
    "ProviderKeySet",
    "SQLiteUserRecordStore",
    "TokenCipherService",
    "UserInfoResolver",
    "UserProfile",
    "UserRecordStore",
    "VerificationOutcomeMapper",
    "VerificationSession",
    "VerificationSessionStore",
    "VerifiedIdToken",
    "create_session_store",
    "generate_pkce_pair",
]
