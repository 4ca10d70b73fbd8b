"""Expose dependency helpers for FastAPI routers."""

from .clients import (
    get_client_assertion_signer,
    get_fayda_oauth_client,
    get_kyc_flow,
    get_provider_key_set,
    get_session_store,
    get_sqlite_store,
    get_token_cipher_service,
    get_user_record_store,
    get_userinfo_resolver,
)
from .config import SettingsDependency, get_app_settings

__all__ = [
    "SettingsDependency",
    "get_app_settings",
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
