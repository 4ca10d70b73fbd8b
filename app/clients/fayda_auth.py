"""
Fayda OpenID Connect client.

Builds authorization URLs and talks to the provider's token and userinfo
endpoints. The client holds no per-user state; verification sessions live in
``app.services.verification_sessions``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
from fastapi import status
from pydantic import BaseModel, ValidationError

from app.core.config import FaydaSettings, OAuthSettings
from app.core.errors import ProfileDecodeError, ProfileFetchError, TokenExchangeError, TransientNetworkError

logger = logging.getLogger(__name__)

DEFAULT_USERINFO_CLAIMS = (
    "name",
    "phone_number",
    "email",
    "picture",
    "gender",
    "birthdate",
    "address",
)


@dataclass
class ClaimsManifest:
    """Explicit list of requested claims and whether each one is mandatory."""

    userinfo: Dict[str, bool] = field(
        default_factory=lambda: {claim: True for claim in DEFAULT_USERINFO_CLAIMS}
    )
    id_token: Dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {
            "userinfo": {name: {"essential": essential} for name, essential in self.userinfo.items()},
            "id_token": {name: {"essential": essential} for name, essential in self.id_token.items()},
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))


class TokenResponse(BaseModel):
    """Successful token endpoint response."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    id_token: Optional[str] = None


def _provider_error(response: httpx.Response) -> tuple[str, str]:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        code = str(body.get("error") or f"http_{response.status_code}")
        description = str(body.get("error_description") or body.get("message") or "")
        return code, description
    return f"http_{response.status_code}", response.text[:200]


class FaydaOAuthClient:
    """Build Fayda authorization URLs and exchange authorization codes."""

    def __init__(
        self,
        fayda_settings: FaydaSettings,
        oauth_settings: OAuthSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._fayda = fayda_settings
        self._oauth = oauth_settings
        self._transport = transport

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._oauth.http_timeout_seconds,
            transport=self._transport,
        )

    def build_authorization_url(
        self,
        *,
        state: str,
        nonce: str,
        code_challenge: str,
        code_challenge_method: str = "S256",
        claims: Optional[ClaimsManifest] = None,
    ) -> str:
        """Construct the provider consent URL. Performs no I/O."""
        if not state or not nonce or not code_challenge:
            raise ValueError("state, nonce and code_challenge are required for an authorization request.")

        params = {
            "client_id": self._fayda.client_id,
            "redirect_uri": str(self._fayda.redirect_uri),
            "response_type": "code",
            "scope": " ".join(self._oauth.scope_list),
            "state": state,
            "nonce": nonce,
            "code_challenge": code_challenge,
            "code_challenge_method": code_challenge_method,
            "claims_locales": " ".join(self._oauth.locale_list),
            "claims": (claims or ClaimsManifest()).to_json(),
        }
        if self._fayda.acr_values:
            params["acr_values"] = self._fayda.acr_values
        query = urlencode(params)
        separator = "&" if "?" in self._fayda.authorization_endpoint else "?"
        return f"{self._fayda.authorization_endpoint}{separator}{query}"

    async def exchange_authorization_code(
        self,
        code: str,
        code_verifier: str,
        client_assertion: str,
    ) -> TokenResponse:
        """
        Exchange an authorization code for tokens.

        The code is single-use on the provider side, so this method never
        retries; transport failures surface as ``TransientNetworkError``.
        """
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": str(self._fayda.redirect_uri),
            "client_id": self._fayda.client_id,
            "code_verifier": code_verifier,
            "client_assertion_type": self._fayda.client_assertion_type,
            "client_assertion": client_assertion,
        }

        try:
            async with self._http_client() as client:
                response = await client.post(
                    self._fayda.token_endpoint,
                    data=payload,
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as exc:
            raise TransientNetworkError("Token endpoint timed out.") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"Token endpoint unreachable: {exc}") from exc

        if not response.is_success:
            error_code, description = _provider_error(response)
            logger.warning(
                "Token exchange rejected: status=%s error=%s", response.status_code, error_code
            )
            raise TokenExchangeError(
                description or "Token endpoint rejected the authorization code.",
                error_code=error_code,
                status_code=response.status_code,
            )

        try:
            token = TokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise TokenExchangeError(
                "Incomplete token payload returned from the provider.",
                error_code="invalid_response",
                status_code=response.status_code,
            ) from exc

        logger.info(
            "Token exchange succeeded: token_type=%s expires_in=%s scope=%s",
            token.token_type,
            token.expires_in,
            token.scope,
        )
        return token

    async def fetch_userinfo(self, access_token: str) -> str:
        """Return the compact JWT served by the userinfo endpoint."""
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/jwt",
        }
        try:
            async with self._http_client() as client:
                response = await client.get(self._fayda.userinfo_endpoint, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientNetworkError("Userinfo endpoint timed out.") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"Userinfo endpoint unreachable: {exc}") from exc

        if response.status_code != status.HTTP_200_OK:
            error_code, description = _provider_error(response)
            raise ProfileFetchError(
                description or f"Userinfo endpoint returned HTTP {response.status_code}.",
                error_code=error_code,
                status_code=response.status_code,
            )

        body = response.text.strip()
        # Some deployments serve the JWT as a JSON string literal.
        if body.startswith('"') and body.endswith('"'):
            try:
                body = json.loads(body)
            except ValueError as exc:
                raise ProfileDecodeError(
                    "Userinfo response is not a valid JSON string.", error_code="malformed_userinfo"
                ) from exc
        return body


__all__ = [
    "ClaimsManifest",
    "DEFAULT_USERINFO_CLAIMS",
    "FaydaOAuthClient",
    "TokenResponse",
]
