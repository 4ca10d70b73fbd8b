"""
Logging utilities for the FastAPI application and operational scripts.

Provides a consistent logging format plus a helper for logging credentials
without leaking them.
"""

import logging
import sys
from typing import Optional


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging with a sensible default format."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )
    # httpx logs every request line at INFO.
    logging.getLogger("httpx").setLevel(max(logging.WARNING, logging.getLogger().level))


def mask_secret(value: Optional[str], *, visible: int = 4) -> str:
    """Return a short, non-reversible preview of a token or secret."""
    if not value:
        return "(not set)"
    if len(value) <= visible * 2:
        return "****"
    return f"{value[:visible]}****{value[-visible:]} (len={len(value)})"


__all__ = ["configure_logging", "mask_secret"]
