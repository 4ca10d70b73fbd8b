"""Tests for the environment validation and drift detection script."""

from __future__ import annotations

try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

import base64
import json
from pathlib import Path

import pytest
from jwt.algorithms import RSAAlgorithm

from scripts import check_env, generate_signing_key

REQUIRED_ENV_KEYS = [
    "FAYDA_CLIENT_ID",
    "FAYDA_REDIRECT_URI",
    "FAYDA_AUTHORIZATION_ENDPOINT",
    "FAYDA_TOKEN_ENDPOINT",
    "FAYDA_USERINFO_ENDPOINT",
    "FAYDA_PRIVATE_KEY",
    "FAYDA_SIGNING_KEY_ID",
    "FAYDA_ALGORITHM",
]


@pytest.fixture(scope="module")
def private_key_b64() -> str:
    encoded, _ = generate_signing_key.generate(kid="test-kid")
    return encoded


def _env_values(private_key: str, **overrides: str) -> dict[str, str]:
    values = {
        "FAYDA_CLIENT_ID": "abc",
        "FAYDA_REDIRECT_URI": "https://app.example.com/api/auth/fayda/callback",
        "FAYDA_AUTHORIZATION_ENDPOINT": "https://idp.example.com/authorize",
        "FAYDA_TOKEN_ENDPOINT": "https://idp.example.com/oauth/v2/token",
        "FAYDA_USERINFO_ENDPOINT": "https://idp.example.com/oidc/userinfo",
        "FAYDA_PRIVATE_KEY": private_key,
    }
    values.update(overrides)
    return values


def _write_env(env_path: Path, values: dict[str, str]) -> None:
    contents = "\n".join(f"{key}={value}" for key, value in values.items())
    env_path.write_text(contents + "\n", encoding="utf-8")


def _clear_required_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # setenv first so teardown also removes values loaded from the .env file.
    for key in REQUIRED_ENV_KEYS:
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)


@pytest.mark.parametrize("command", ["record", "verify", "check"])
def test_main_requires_existing_env_file(tmp_path: Path, command: str) -> None:
    env_file = tmp_path / ".missing-env"
    hash_file = tmp_path / ".env.sha256"

    argv = [command, "--env-file", str(env_file)]
    if command != "check":
        argv.extend(["--hash-file", str(hash_file)])

    exit_code = check_env.main(argv)
    assert exit_code == check_env.EXIT_RUNTIME_ERROR


def test_record_and_verify_detects_mismatched_checksum(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, private_key_b64: str
) -> None:
    env_file = tmp_path / ".env"
    hash_file = tmp_path / ".env.sha256"

    _clear_required_env(monkeypatch)
    _write_env(env_file, _env_values(private_key_b64))

    exit_code = check_env.main(
        ["record", "--env-file", str(env_file), "--hash-file", str(hash_file)]
    )
    assert exit_code == check_env.EXIT_OK
    baseline = hash_file.read_text(encoding="utf-8").strip()
    assert baseline

    _clear_required_env(monkeypatch)
    exit_code = check_env.main(
        ["verify", "--env-file", str(env_file), "--hash-file", str(hash_file)]
    )
    assert exit_code == check_env.EXIT_OK

    _write_env(env_file, _env_values(private_key_b64, FAYDA_CLIENT_ID="different"))

    _clear_required_env(monkeypatch)
    exit_code = check_env.main(
        ["verify", "--env-file", str(env_file), "--hash-file", str(hash_file)]
    )
    assert exit_code == check_env.EXIT_CHECKSUM_ERROR


def test_validation_failure_for_missing_required_values(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, private_key_b64: str
) -> None:
    env_file = tmp_path / ".env"
    values = _env_values(private_key_b64)
    del values["FAYDA_TOKEN_ENDPOINT"]

    _clear_required_env(monkeypatch)
    _write_env(env_file, values)

    exit_code = check_env.main(["check", "--env-file", str(env_file)])
    assert exit_code == check_env.EXIT_VALIDATION_ERROR


@pytest.mark.parametrize(
    "overrides",
    [
        {"FAYDA_PRIVATE_KEY": "bm90LWEta2V5"},
        {"FAYDA_ALGORITHM": "HS256"},
    ],
)
def test_bad_signing_key_configuration(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, private_key_b64: str, overrides: dict
) -> None:
    env_file = tmp_path / ".env"

    _clear_required_env(monkeypatch)
    _write_env(env_file, _env_values(private_key_b64, **overrides))

    exit_code = check_env.main(["check", "--env-file", str(env_file)])
    assert exit_code == check_env.EXIT_KEY_ERROR


def test_jwk_command_prints_public_key(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, private_key_b64: str, capsys: pytest.CaptureFixture
) -> None:
    env_file = tmp_path / ".env"

    _clear_required_env(monkeypatch)
    _write_env(env_file, _env_values(private_key_b64))

    exit_code = check_env.main(["jwk", "--env-file", str(env_file)])
    assert exit_code == check_env.EXIT_OK

    output = capsys.readouterr().out
    jwk = json.loads(output[output.index("{"):])
    assert jwk["kid"] == "test-kid"
    assert "d" not in jwk


def test_generate_signing_key_outputs_matching_pair(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    public_out = tmp_path / "public.jwk.json"

    assert generate_signing_key.main(["--kid", "k-2026", "--public-out", str(public_out)]) == 0

    output = capsys.readouterr().out
    line = next(row for row in output.splitlines() if row.startswith("FAYDA_PRIVATE_KEY="))
    private = json.loads(base64.b64decode(line.split("=", 1)[1]))
    public = json.loads(public_out.read_text(encoding="utf-8"))

    assert private["kid"] == public["kid"] == "k-2026"
    assert "d" in private and "d" not in public
    private_key = RSAAlgorithm.from_jwk(json.dumps(private))
    assert private_key.public_key().public_numbers() == RSAAlgorithm.from_jwk(json.dumps(public)).public_numbers()
