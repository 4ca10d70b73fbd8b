"""Expose constructed client wrappers."""

from .fayda_auth import ClaimsManifest, FaydaOAuthClient, TokenResponse
from .sqlite_store import SQLiteStore

__all__ = [
    "ClaimsManifest",
    "FaydaOAuthClient",
    "SQLiteStore",
    "TokenResponse",
]
