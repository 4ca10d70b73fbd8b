"""
Application configuration models and helpers.

Centralizes settings management so the FastAPI app, the verification flow and
the operational scripts share one configuration surface. Every component
receives the settings object explicitly; nothing reads the environment on its
own.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

import os

from pydantic import AnyHttpUrl, Field, HttpUrl, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

JWT_BEARER_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"


def _load_env_file(path: str = ".env") -> None:
    """Best-effort load key=value pairs from a .env file without extra deps."""
    env_path = Path(path)
    if not env_path.exists():
        return
    for raw_line in env_path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        if not key or key in os.environ:
            continue
        cleaned = value.strip().strip('"').strip("'")
        os.environ[key] = cleaned


_load_env_file()


def _split_words(value: str) -> list[str]:
    return [part for part in value.replace(",", " ").split() if part]


class FaydaSettings(BaseSettings):
    """Identity provider wiring and client authentication material."""

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    client_id: str = Field(..., validation_alias="FAYDA_CLIENT_ID")
    redirect_uri: AnyHttpUrl = Field(..., validation_alias="FAYDA_REDIRECT_URI")
    authorization_endpoint: str = Field(
        ..., validation_alias="FAYDA_AUTHORIZATION_ENDPOINT"
    )
    token_endpoint: str = Field(..., validation_alias="FAYDA_TOKEN_ENDPOINT")
    userinfo_endpoint: str = Field(..., validation_alias="FAYDA_USERINFO_ENDPOINT")
    issuer: Optional[str] = Field(
        None,
        validation_alias="FAYDA_ISSUER",
        description="Expected 'iss' of provider tokens. Derived when omitted.",
    )
    jwks_uri: Optional[str] = Field(
        None,
        validation_alias="FAYDA_JWKS_URI",
        description="Provider signing keys. Defaults to the issuer's well-known JWKS.",
    )
    client_assertion_type: str = Field(
        JWT_BEARER_ASSERTION_TYPE, validation_alias="FAYDA_CLIENT_ASSERTION_TYPE"
    )
    private_key: Optional[SecretStr] = Field(
        None,
        validation_alias="FAYDA_PRIVATE_KEY",
        description="PEM or base64 (PEM or JWK JSON) encoded private signing key.",
    )
    signing_key_id: Optional[str] = Field(None, validation_alias="FAYDA_SIGNING_KEY_ID")
    algorithm: str = Field("RS256", validation_alias="FAYDA_ALGORITHM")
    assertion_ttl_minutes: int = Field(5, validation_alias="FAYDA_ASSERTION_TTL_MINUTES")
    acr_values: Optional[str] = Field(None, validation_alias="FAYDA_ACR_VALUES")
    provider_algorithms: str = Field("RS256", validation_alias="FAYDA_PROVIDER_ALGORITHMS")
    kyc_validity_days: int = Field(365, validation_alias="FAYDA_KYC_VALIDITY_DAYS")

    @field_validator(
        "authorization_endpoint", "token_endpoint", "userinfo_endpoint", "issuer", "jwks_uri"
    )
    @classmethod
    def _require_http_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        cleaned = value.strip()
        if not cleaned.startswith(("https://", "http://")):
            raise ValueError(f"Expected an http(s) URL, got {value!r}")
        return cleaned

    @property
    def resolved_issuer(self) -> str:
        if self.issuer:
            return self.issuer.rstrip("/")
        endpoint = self.authorization_endpoint.rstrip("/")
        if endpoint.endswith("/authorize"):
            endpoint = endpoint[: -len("/authorize")]
        return endpoint

    @property
    def resolved_jwks_uri(self) -> str:
        if self.jwks_uri:
            return self.jwks_uri
        return f"{self.resolved_issuer}/.well-known/jwks.json"

    @property
    def provider_algorithm_list(self) -> list[str]:
        return _split_words(self.provider_algorithms)


class OAuthSettings(BaseSettings):
    """Authorization request and protocol timing configuration."""

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    session_ttl_seconds: int = Field(600, validation_alias="FAYDA_SESSION_TTL_SECONDS")
    scopes: str = Field("openid profile email", validation_alias="FAYDA_SCOPES")
    claims_locales: str = Field("en am", validation_alias="FAYDA_CLAIMS_LOCALES")
    http_timeout_seconds: float = Field(10.0, validation_alias="FAYDA_HTTP_TIMEOUT_SECONDS")
    jwks_cache_seconds: int = Field(3600, validation_alias="FAYDA_JWKS_CACHE_SECONDS")
    clock_skew_seconds: int = Field(30, validation_alias="FAYDA_CLOCK_SKEW_SECONDS")

    @field_validator("scopes", "claims_locales", mode="before")
    @classmethod
    def _normalize_words(cls, value: str | tuple[str, ...] | list[str]) -> str:
        """Support comma- or space-separated values as well as sequences."""
        if isinstance(value, (tuple, list)):
            return " ".join(str(item).strip() for item in value if str(item).strip())
        return " ".join(_split_words(value))

    @property
    def scope_list(self) -> list[str]:
        return _split_words(self.scopes)

    @property
    def locale_list(self) -> list[str]:
        return _split_words(self.claims_locales)


class StorageSettings(BaseSettings):
    """Where verification sessions and user KYC records live."""

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    session_store: Literal["sqlite", "memory", "redis"] = Field(
        "sqlite", validation_alias="FAYDA_SESSION_STORE"
    )
    db_path: str = Field("data/kyc.db", validation_alias="KYC_DB_PATH")
    redis_url: Optional[str] = Field(None, validation_alias="REDIS_URL")


class SecuritySettings(BaseSettings):
    """Security-related configuration."""

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    token_encryption_secret: Optional[SecretStr] = Field(
        None,
        validation_alias="TOKEN_ENCRYPTION_SECRET",
        description="Secret used to derive the key encrypting personal data at rest.",
    )
    previous_encryption_secrets: str = Field(
        "",
        validation_alias="TOKEN_ENCRYPTION_PREVIOUS_SECRETS",
        description="Comma separated retired secrets still accepted for decryption.",
    )

    @property
    def previous_secret_list(self) -> list[str]:
        return [part.strip() for part in self.previous_encryption_secrets.split(",") if part.strip()]


class AppSettings(BaseSettings):
    """Root settings object for the FastAPI application."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    environment: str = Field("development", validation_alias="APP_ENV")
    log_level: str = Field("INFO", validation_alias="APP_LOG_LEVEL")
    frontend_base_url: Optional[HttpUrl] = Field(
        None,
        validation_alias="FRONTEND_BASE_URL",
        description="Optional URL for redirecting users back to the front-end.",
    )
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    fayda: FaydaSettings = Field(default_factory=FaydaSettings)


@lru_cache()
def get_settings() -> AppSettings:
    """Return a cached settings object."""
    return AppSettings()  # type: ignore[call-arg]


__all__ = [
    "AppSettings",
    "FaydaSettings",
    "JWT_BEARER_ASSERTION_TYPE",
    "OAuthSettings",
    "SecuritySettings",
    "StorageSettings",
    "get_settings",
]
