"""
Factory functions to provide shared clients and services as FastAPI dependencies.
"""

from functools import lru_cache

from app.clients import FaydaOAuthClient, SQLiteStore
from app.core.config import get_settings
from app.core.errors import ConfigurationError
from app.services import (
    ClientAssertionSigner,
    KYCVerificationFlow,
    ProviderKeySet,
    SQLiteUserRecordStore,
    TokenCipherService,
    UserInfoResolver,
    VerificationSessionStore,
    create_session_store,
)


@lru_cache()
def _settings():
    """Internal helper to cache settings for client factories."""
    return get_settings()


@lru_cache()
def get_token_cipher_service() -> TokenCipherService:
    """Provide symmetric encryption helper for personal data at rest."""
    secret = _settings().security.token_encryption_secret
    if secret is None:
        raise ConfigurationError("TOKEN_ENCRYPTION_SECRET must be set to store KYC records.")
    return TokenCipherService(
        secret=secret.get_secret_value(),
        previous_secrets=_settings().security.previous_secret_list,
    )


@lru_cache()
def get_fayda_oauth_client() -> FaydaOAuthClient:
    """Create a singleton Fayda OAuth client."""
    settings = _settings()
    return FaydaOAuthClient(settings.fayda, settings.oauth)


@lru_cache()
def get_client_assertion_signer() -> ClientAssertionSigner:
    """Load the private signing key once per process."""
    return ClientAssertionSigner.from_settings(_settings().fayda)


@lru_cache()
def get_sqlite_store() -> SQLiteStore:
    """Provide shared SQLite record store."""
    return SQLiteStore(_settings().storage.db_path)


@lru_cache()
def get_session_store() -> VerificationSessionStore:
    """Provide the configured verification session backend."""
    return create_session_store(_settings().storage, cipher=get_token_cipher_service())


@lru_cache()
def get_provider_key_set() -> ProviderKeySet:
    """Provide the cached provider JWKS."""
    return ProviderKeySet.from_settings(_settings())


@lru_cache()
def get_user_record_store() -> SQLiteUserRecordStore:
    """Provide the user-record collaborator."""
    return SQLiteUserRecordStore(
        get_sqlite_store(),
        get_token_cipher_service(),
        validity_days=_settings().fayda.kyc_validity_days,
    )


def get_userinfo_resolver() -> UserInfoResolver:
    """Build a userinfo resolver over the shared client and key set."""
    return UserInfoResolver(get_fayda_oauth_client(), get_provider_key_set(), _settings())


@lru_cache()
def get_kyc_flow() -> KYCVerificationFlow:
    """Provide the verification flow wired to the configured backends."""
    return KYCVerificationFlow(
        _settings(),
        oauth_client=get_fayda_oauth_client(),
        signer=get_client_assertion_signer(),
        sessions=get_session_store(),
        key_set=get_provider_key_set(),
        resolver=get_userinfo_resolver(),
        records=get_user_record_store(),
    )


__all__ = [
    "get_client_assertion_signer",
    "get_fayda_oauth_client",
    "get_kyc_flow",
    "get_provider_key_set",
    "get_session_store",
    "get_sqlite_store",
    "get_token_cipher_service",
    "get_user_record_store",
    "get_userinfo_resolver",
]
