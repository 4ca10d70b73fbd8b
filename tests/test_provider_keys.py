try:
    from . import _bootstrap  # noqa: F401
    from . import fake_provider
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401
    import fake_provider  # type: ignore

import time

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from app.core.errors import IdTokenValidationError, TransientNetworkError
from app.services.provider_keys import ProviderKeySet, SigningKeyNotFound, validate_id_token
from app.utils.http import RetryConfig


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def provider(settings):
    return fake_provider.FakeProvider(settings)


def _key_set(settings, provider, **kwargs) -> ProviderKeySet:
    return ProviderKeySet(
        settings.fayda.resolved_jwks_uri,
        transport=provider.transport,
        retry_config=RetryConfig(attempts=1),
        **kwargs,
    )


async def _validate(settings, key_set, token, nonce="nonce-1"):
    return await validate_id_token(
        key_set,
        token,
        issuer=settings.fayda.resolved_issuer,
        client_id=settings.fayda.client_id,
        nonce=nonce,
        algorithms=["RS256"],
        leeway=settings.oauth.clock_skew_seconds,
    )


@pytest.mark.anyio
async def test_valid_id_token(settings, provider) -> None:
    verified = await _validate(settings, _key_set(settings, provider), provider.id_token("X123", "nonce-1"))

    assert verified.subject == "X123"
    assert verified.issuer == settings.fayda.resolved_issuer
    assert verified.audience == settings.fayda.client_id
    assert verified.nonce == "nonce-1"


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("overrides", "error_code"),
    [
        ({"nonce": "replayed"}, "invalid_nonce"),
        ({"nonce": None}, "invalid_nonce"),
        ({"iss": "https://evil.example.com"}, "invalid_issuer"),
        ({"aud": "another-client"}, "invalid_audience"),
        ({"exp": int(time.time()) - 3600, "iat": int(time.time()) - 7200}, "expired_id_token"),
    ],
)
async def test_id_token_checks(settings, provider, overrides, error_code: str) -> None:
    token = provider.id_token("X123", "nonce-1", **overrides)

    with pytest.raises(IdTokenValidationError) as excinfo:
        await _validate(settings, _key_set(settings, provider), token)

    assert excinfo.value.error_code == error_code


@pytest.mark.anyio
async def test_missing_id_token(settings, provider) -> None:
    with pytest.raises(IdTokenValidationError) as excinfo:
        await _validate(settings, _key_set(settings, provider), None)
    assert excinfo.value.error_code == "missing_id_token"


@pytest.mark.anyio
async def test_token_signed_by_unknown_key_is_rejected(settings, provider) -> None:
    foreign = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    token = provider.sign(
        {
            "iss": settings.fayda.resolved_issuer,
            "aud": settings.fayda.client_id,
            "sub": "X123",
            "nonce": "nonce-1",
            "iat": int(time.time()),
            "exp": int(time.time()) + 300,
        },
        key=foreign,
    )

    with pytest.raises(IdTokenValidationError):
        await _validate(settings, _key_set(settings, provider), token)


@pytest.mark.anyio
async def test_hs256_token_is_never_accepted(settings, provider) -> None:
    import jwt

    token = jwt.encode({"sub": "X123", "nonce": "nonce-1"}, "shared-secret-shared-secret-32by", algorithm="HS256")
    key_set = _key_set(settings, provider)

    with pytest.raises(IdTokenValidationError):
        await validate_id_token(
            key_set,
            token,
            issuer=settings.fayda.resolved_issuer,
            client_id=settings.fayda.client_id,
            nonce="nonce-1",
            algorithms=["RS256", "HS256"],
        )
    assert provider.jwks_requests == 0


@pytest.mark.anyio
async def test_jwks_is_cached(settings, provider) -> None:
    key_set = _key_set(settings, provider)
    for _ in range(3):
        await _validate(settings, key_set, provider.id_token("X123", "nonce-1"))

    assert provider.jwks_requests == 1


@pytest.mark.anyio
async def test_unknown_kid_triggers_single_refresh(settings, provider) -> None:
    clock = FakeClock()
    key_set = _key_set(settings, provider, clock=clock)
    await _validate(settings, key_set, provider.id_token("X123", "nonce-1"))

    provider.rotate_key("provider-key-2")
    clock.now += 120
    await _validate(settings, key_set, provider.id_token("X123", "nonce-1"))

    assert provider.jwks_requests == 2


@pytest.mark.anyio
async def test_unknown_kid_right_after_fetch_is_not_refetched(settings, provider) -> None:
    key_set = _key_set(settings, provider, clock=FakeClock())
    await key_set.get_signing_key("provider-key-1")

    with pytest.raises(SigningKeyNotFound):
        await key_set.get_signing_key("unknown-kid")
    assert provider.jwks_requests == 1


@pytest.mark.anyio
async def test_cache_expiry_refetches(settings, provider) -> None:
    clock = FakeClock()
    key_set = _key_set(settings, provider, clock=clock, cache_seconds=60)
    await key_set.get_signing_key("provider-key-1")
    clock.now += 61
    await key_set.get_signing_key("provider-key-1")

    assert provider.jwks_requests == 2


@pytest.mark.anyio
async def test_jwks_outage_is_transient(settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    key_set = ProviderKeySet(
        settings.fayda.resolved_jwks_uri,
        transport=httpx.MockTransport(handler),
        retry_config=RetryConfig(attempts=2, backoff_seconds=0),
    )

    with pytest.raises(TransientNetworkError):
        await key_set.get_signing_key("provider-key-1")
