"""In-process stand-in for the Fayda identity provider, served over httpx.MockTransport."""

from __future__ import annotations

import json
import secrets
import time
from typing import Any, Optional
from urllib.parse import parse_qsl, urlsplit

import httpx
import jwt
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from app.clients import FaydaOAuthClient, SQLiteStore
from app.core.config import AppSettings
from app.services.client_assertion import ClientAssertionSigner, load_private_key
from app.services.kyc_flow import KYCVerificationFlow
from app.services.pkce import compute_challenge
from app.services.provider_keys import ProviderKeySet
from app.services.token_cipher import TokenCipherService
from app.services.user_records import SQLiteUserRecordStore
from app.services.userinfo import UserInfoResolver
from app.services.verification_sessions import InMemorySessionStore, VerificationSessionStore


class FakeProvider:
    """Issues codes, tokens and signed userinfo the way the real provider does."""

    def __init__(self, settings: AppSettings, *, kid: str = "provider-key-1") -> None:
        self.settings = settings
        self.key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.kid = kid
        client_key, _ = load_private_key(settings.fayda.private_key.get_secret_value())
        self.client_public_key = client_key.public_key()

        self.codes: dict[str, dict[str, str]] = {}
        self.access_tokens: dict[str, str] = {}
        self.token_requests: list[dict[str, str]] = []
        self.userinfo_requests: list[httpx.Request] = []
        self.jwks_requests = 0

        self.userinfo_claims: dict[str, Any] = {"given_name": "Almaz", "family_name": "Tesfaye"}
        self.id_token_overrides: dict[str, Any] = {}
        self.token_error: Optional[tuple[int, Any]] = None
        self.token_exception: Optional[Exception] = None
        self.userinfo_error: Optional[int] = None
        self.userinfo_body: Optional[str] = None

    @property
    def issuer(self) -> str:
        return self.settings.fayda.resolved_issuer

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def jwks(self) -> dict[str, Any]:
        public = json.loads(RSAAlgorithm.to_jwk(self.key.public_key()))
        public.update({"kid": self.kid, "use": "sig", "alg": "RS256"})
        return {"keys": [public]}

    def rotate_key(self, kid: str) -> None:
        self.key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.kid = kid

    def sign(self, claims: dict[str, Any], *, key: Any = None, kid: Optional[str] = None) -> str:
        return jwt.encode(claims, key or self.key, algorithm="RS256", headers={"kid": kid or self.kid})

    def authorize(self, authorization_url: str, *, subject: str = "X123") -> tuple[str, str]:
        """Simulate the user consenting; returns ``(code, state)`` for the callback."""
        query = dict(parse_qsl(urlsplit(authorization_url).query))
        code = secrets.token_urlsafe(16)
        self.codes[code] = {
            "nonce": query["nonce"],
            "code_challenge": query["code_challenge"],
            "subject": subject,
        }
        return code, query["state"]

    def id_token(self, subject: str, issued_nonce: str, **overrides: Any) -> str:
        now = int(time.time())
        claims: dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.settings.fayda.client_id,
            "sub": subject,
            "nonce": issued_nonce,
            "iat": now,
            "exp": now + 300,
        }
        claims.update(overrides)
        return self.sign({key: value for key, value in claims.items() if value is not None})

    def userinfo_token(self, subject: str) -> str:
        claims = {"sub": subject, "iss": self.issuer, "aud": self.settings.fayda.client_id}
        claims.update(self.userinfo_claims)
        return self.sign(claims)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/.well-known/jwks.json":
            self.jwks_requests += 1
            return httpx.Response(200, json=self.jwks())
        if path == urlsplit(self.settings.fayda.token_endpoint).path:
            return self._token(request)
        if path == urlsplit(self.settings.fayda.userinfo_endpoint).path:
            return self._userinfo(request)
        return httpx.Response(404, json={"error": "not_found"})

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.content.decode("utf-8")))
        self.token_requests.append(form)
        if self.token_exception is not None:
            raise self.token_exception
        if self.token_error is not None:
            status_code, body = self.token_error
            return httpx.Response(status_code, json=body)

        grant = self.codes.pop(form.get("code", ""), None)
        if grant is None:
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Unknown code"})
        if compute_challenge(form["code_verifier"]) != grant["code_challenge"]:
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "PKCE mismatch"})
        try:
            jwt.decode(
                form["client_assertion"],
                self.client_public_key,
                algorithms=["RS256"],
                audience=self.settings.fayda.token_endpoint,
                issuer=self.settings.fayda.client_id,
            )
        except jwt.PyJWTError:
            return httpx.Response(401, json={"error": "invalid_client"})

        access_token = secrets.token_urlsafe(16)
        self.access_tokens[access_token] = grant["subject"]
        return httpx.Response(
            200,
            json={
                "access_token": access_token,
                "token_type": "Bearer",
                "expires_in": 3600,
                "scope": "openid profile email",
                "id_token": self.id_token(grant["subject"], grant["nonce"], **self.id_token_overrides),
            },
        )

    def _userinfo(self, request: httpx.Request) -> httpx.Response:
        self.userinfo_requests.append(request)
        if self.userinfo_error is not None:
            return httpx.Response(self.userinfo_error, json={"error": "invalid_token"})
        token = request.headers.get("authorization", "").removeprefix("Bearer ")
        subject = self.access_tokens.get(token)
        if subject is None:
            return httpx.Response(401, json={"error": "invalid_token"})
        body = self.userinfo_body if self.userinfo_body is not None else self.userinfo_token(subject)
        return httpx.Response(200, text=body, headers={"content-type": "application/jwt"})


def build_flow(
    settings: AppSettings,
    provider: FakeProvider,
    *,
    db_path: str,
    sessions: Optional[VerificationSessionStore] = None,
) -> tuple[KYCVerificationFlow, SQLiteUserRecordStore]:
    transport = provider.transport
    oauth_client = FaydaOAuthClient(settings.fayda, settings.oauth, transport=transport)
    key_set = ProviderKeySet.from_settings(settings, transport=transport)
    records = SQLiteUserRecordStore(
        SQLiteStore(db_path),
        TokenCipherService(secret="test-secret"),
        validity_days=settings.fayda.kyc_validity_days,
    )
    flow = KYCVerificationFlow(
        settings,
        oauth_client=oauth_client,
        signer=ClientAssertionSigner.from_settings(settings.fayda),
        sessions=sessions if sessions is not None else InMemorySessionStore(),
        key_set=key_set,
        resolver=UserInfoResolver(oauth_client, key_set, settings),
        records=records,
    )
    return flow, records
