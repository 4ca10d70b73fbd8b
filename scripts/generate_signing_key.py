"""Generate an RSA signing key for provider onboarding.

The provider registers the public JWK against the client id; the private JWK
goes into ``FAYDA_PRIVATE_KEY`` as base64, the same format the provider's
onboarding portal hands out.

Example::

    python -m scripts.generate_signing_key --kid kyc-2026-01 --public-out public.jwk.json
"""

from __future__ import annotations

import argparse
import base64
import json
import sys
import uuid
from pathlib import Path

from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from app.services.client_assertion import public_jwk

RSA_ALGORITHMS = ("RS256", "RS384", "RS512", "PS256", "PS384", "PS512")


def generate(*, kid: str, bits: int = 2048, algorithm: str = "RS256") -> tuple[str, dict]:
    """Return ``(base64 private JWK, public JWK)`` for a fresh RSA key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    private = json.loads(RSAAlgorithm.to_jwk(key))
    private.update({"kid": kid, "alg": algorithm, "use": "sig"})
    encoded = base64.b64encode(json.dumps(private, separators=(",", ":")).encode("utf-8")).decode("ascii")
    return encoded, public_jwk(key, kid=kid, algorithm=algorithm)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate a client assertion signing key.")
    parser.add_argument("--kid", default=None, help="Key id (default: random).")
    parser.add_argument("--bits", type=int, default=2048, choices=(2048, 3072, 4096))
    parser.add_argument("--algorithm", default="RS256", choices=RSA_ALGORITHMS)
    parser.add_argument(
        "--public-out",
        type=Path,
        default=None,
        help="Optional file to write the public JWK to.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    kid = args.kid or uuid.uuid4().hex
    private_b64, public = generate(kid=kid, bits=args.bits, algorithm=args.algorithm)

    public_text = json.dumps(public, indent=2)
    if args.public_out:
        args.public_out.write_text(public_text + "\n", encoding="utf-8")

    print("# Add to .env (keep secret):")
    print(f"FAYDA_PRIVATE_KEY={private_b64}")
    print(f"FAYDA_SIGNING_KEY_ID={kid}")
    print(f"FAYDA_ALGORITHM={args.algorithm}")
    print()
    print("# Public JWK to register with the provider:")
    print(public_text)
    return 0


if __name__ == "__main__":  # pragma: no cover - script entry point
    sys.exit(main())
