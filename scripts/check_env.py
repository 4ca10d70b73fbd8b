"""Pre-flight checks for a KYC gateway deployment.

Commands:

``check``
    Load ``AppSettings`` from the given ``.env`` and build the client
    assertion signer from ``FAYDA_PRIVATE_KEY`` exactly as the service does,
    so missing provider wiring or an unusable key fails here and not at boot.
``record`` / ``verify``
    Run ``check``, then write or compare a SHA256 baseline of the ``.env`` so
    unexpected edits are noticed before a restart.
``jwk``
    Run ``check``, then print the public JWK registered with the provider.

Example::

    python -m scripts.check_env record --env-file /opt/kyc-gateway/.env \
        --hash-file /opt/kyc-gateway/.env.sha256
    python -m scripts.check_env jwk --env-file /opt/kyc-gateway/.env
"""

from __future__ import annotations

import argparse
import hashlib
import json
import sys
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from app.core.config import AppSettings, _load_env_file
from app.core.errors import ConfigurationError
from app.core.logging import mask_secret
from app.services.client_assertion import ClientAssertionSigner

EXIT_OK = 0
EXIT_VALIDATION_ERROR = 2
EXIT_CHECKSUM_ERROR = 3
EXIT_KEY_ERROR = 4
EXIT_RUNTIME_ERROR = 5

_COMMANDS = {
    "check": ("Validate settings and the signing key.", None),
    "record": ("Validate, then store the checksum baseline.", "Where to write the baseline."),
    "verify": ("Validate, then compare against the checksum baseline.", "Previously recorded baseline."),
    "jwk": ("Validate, then print the public JWK for provider registration.", None),
}


def _sha256(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


def _load_signer(env_file: Path) -> ClientAssertionSigner:
    if not env_file.exists():
        raise FileNotFoundError(f"Environment file {env_file} does not exist.")
    _load_env_file(str(env_file))
    settings = AppSettings()  # type: ignore[call-arg]
    signer = ClientAssertionSigner.from_settings(settings.fayda)
    print(
        f"Settings OK: client_id={mask_secret(settings.fayda.client_id)} "
        f"issuer={settings.fayda.resolved_issuer} "
        f"session_store={settings.storage.session_store} "
        f"assertion_alg={signer.algorithm}"
    )
    return signer


def _record(env_file: Path, hash_file: Path) -> int:
    digest = _sha256(env_file)
    hash_file.write_text(digest + "\n", encoding="utf-8")
    print(f"Baseline {digest} written to {hash_file}")
    return EXIT_OK


def _verify(env_file: Path, hash_file: Path) -> int:
    if not hash_file.exists():
        print(f"No baseline at {hash_file}; run 'record' first.", file=sys.stderr)
        return EXIT_RUNTIME_ERROR

    expected = hash_file.read_text(encoding="utf-8").strip()
    actual = _sha256(env_file)
    if expected != actual:
        print(
            f"{env_file} changed since the baseline was recorded\n"
            f"  expected: {expected}\n"
            f"  actual:   {actual}",
            file=sys.stderr,
        )
        return EXIT_CHECKSUM_ERROR
    print("Environment checksum OK.")
    return EXIT_OK


def _print_jwk(signer: ClientAssertionSigner) -> int:
    print(json.dumps(signer.public_jwk(), indent=2))
    return EXIT_OK


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="KYC gateway configuration checks.")
    subparsers = parser.add_subparsers(dest="command", required=True)
    for name, (help_text, hash_help) in _COMMANDS.items():
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--env-file", default=Path(".env"), type=Path, help="Environment file (default: .env).")
        if hash_help:
            sub.add_argument("--hash-file", required=True, type=Path, help=hash_help)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    env_file: Path = args.env_file

    try:
        signer = _load_signer(env_file)
    except FileNotFoundError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_RUNTIME_ERROR
    except ValidationError as exc:
        print(f"Settings validation failed:\n{exc.json(indent=2)}", file=sys.stderr)
        return EXIT_VALIDATION_ERROR
    except ConfigurationError as exc:
        print(f"Signing key rejected: {exc}", file=sys.stderr)
        return EXIT_KEY_ERROR
    except Exception as exc:  # pylint: disable=broad-except
        print(f"Unexpected error during validation: {exc}", file=sys.stderr)
        return EXIT_RUNTIME_ERROR

    handlers: dict[str, Callable[[], int]] = {
        "check": lambda: EXIT_OK,
        "record": lambda: _record(env_file, args.hash_file),
        "verify": lambda: _verify(env_file, args.hash_file),
        "jwk": lambda: _print_jwk(signer),
    }
    return handlers[args.command]()


if __name__ == "__main__":  # pragma: no cover - script entry point
    sys.exit(main())
