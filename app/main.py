"""
FastAPI application entrypoint for the identity verification service.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.logging import configure_logging
from app.dependencies import get_client_assertion_signer, get_kyc_flow

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    """Load signing key and storage backends before serving; configuration errors abort startup."""
    signer = get_client_assertion_signer()
    get_kyc_flow()
    logger.info("Verification service ready (assertion algorithm %s)", signer.algorithm)
    yield


def create_app() -> FastAPI:
    """Factory for the FastAPI application."""
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Fayda KYC Gateway",
        version="0.1.0",
        description="Identity verification through the Fayda OpenID Connect provider.",
        lifespan=lifespan,
    )
    app.include_router(api_router, prefix="/api")
    return app


app = create_app()

__all__ = ["app", "create_app"]
