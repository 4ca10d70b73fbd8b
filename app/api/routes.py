"""
FastAPI routes for the identity verification service.
"""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Annotated, Any, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse

from app.core.config import AppSettings
from app.core.errors import SessionStoreError
from app.dependencies import get_app_settings, get_kyc_flow, get_user_record_store
from app.models.kyc import VerificationStatus
from app.schemas import (
    AuthorizationStartResponse,
    KYCCallbackPayload,
    KYCCallbackResponse,
    KYCStatusResponse,
)
from app.services.kyc_flow import FailureReason, FlowResult

router = APIRouter()
logger = logging.getLogger(__name__)


def _wants_html(request: Request) -> bool:
    return "text/html" in request.headers.get("accept", "").lower()


def _is_allowed_redirect(target: str, settings: AppSettings) -> bool:
    """Accept same-site relative paths or URLs on the configured front end."""
    if target.startswith("/") and not target.startswith("//"):
        return True
    if not settings.frontend_base_url:
        return False
    allowed = urlsplit(str(settings.frontend_base_url))
    candidate = urlsplit(target)
    return (candidate.scheme, candidate.netloc) == (allowed.scheme, allowed.netloc)


def _with_query(url: str, **params: Optional[str]) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value)
    return urlunsplit(parts._replace(query=urlencode(query)))


def _status_code_for(result: FlowResult) -> int:
    if result.succeeded:
        return HTTPStatus.OK
    if result.failure is FailureReason.PERSISTENCE_FAILED:
        return HTTPStatus.INTERNAL_SERVER_ERROR
    if result.retryable:
        return HTTPStatus.BAD_GATEWAY
    return HTTPStatus.BAD_REQUEST


def _callback_response(result: FlowResult, records: Any) -> KYCCallbackResponse:
    if result.succeeded and result.outcome is not None:
        return KYCCallbackResponse(
            status="verified",
            flow_state=result.state.value,
            kyc_status=result.outcome.status,
            user_id=result.user_id,
            external_subject_id=result.outcome.external_subject_id,
            verified_at=result.outcome.verified_at,
            redirect_to=result.redirect_to,
            transitions=[state.value for state in result.transitions],
        )

    # A failed attempt leaves the stored status as it was.
    kyc_status = records.get_status(result.user_id) if result.user_id else None
    return KYCCallbackResponse(
        status="failed",
        flow_state=result.state.value,
        kyc_status=kyc_status,
        reason=result.failure.value if result.failure else None,
        error=result.error_code,
        error_description=result.error_description,
        retryable=result.retryable,
        user_id=result.user_id,
        redirect_to=result.redirect_to,
        transitions=[state.value for state in result.transitions],
    )


@router.get("/health", status_code=HTTPStatus.OK)
async def healthcheck() -> dict:
    """Simple health endpoint for monitoring."""
    return {"status": "ok"}


@router.get("/auth/fayda/authorize", status_code=HTTPStatus.OK)
async def start_fayda_verification(
    request: Request,
    flow: Annotated[Any, Depends(get_kyc_flow)],
    settings: Annotated[AppSettings, Depends(get_app_settings)],
    user_id: str = Query(..., min_length=1, description="User identifier starting verification."),
    redirect_to: str | None = Query(
        default=None,
        description="Optional front-end URL to return to once verification finishes.",
    ),
    redirect: bool = Query(
        default=False,
        description="When true, respond with a redirect to the provider consent screen.",
    ),
) -> Response:
    """
    Start a verification attempt with a fresh state, nonce and PKCE pair.
    """
    if redirect_to and not _is_allowed_redirect(redirect_to, settings):
        raise HTTPException(
            status_code=HTTPStatus.BAD_REQUEST,
            detail="redirect_to must be a relative path or a front-end URL.",
        )

    try:
        authorization = await run_in_threadpool(flow.start, user_id, redirect_to=redirect_to)
    except SessionStoreError as exc:
        logger.error("Could not store verification session for user %s: %s", user_id, exc)
        raise HTTPException(
            status_code=HTTPStatus.SERVICE_UNAVAILABLE,
            detail="Verification is temporarily unavailable.",
        ) from exc

    if redirect or _wants_html(request):
        return RedirectResponse(
            url=authorization.authorization_url, status_code=HTTPStatus.TEMPORARY_REDIRECT
        )

    body = AuthorizationStartResponse(
        authorization_url=authorization.authorization_url,
        state=authorization.state,
        expires_at=authorization.expires_at,
    )
    return JSONResponse(content=body.model_dump(mode="json"))


@router.post("/auth/fayda/callback", response_model=KYCCallbackResponse)
async def handle_fayda_callback(
    payload: KYCCallbackPayload,
    flow: Annotated[Any, Depends(get_kyc_flow)],
    records: Annotated[Any, Depends(get_user_record_store)],
) -> JSONResponse:
    """Complete verification from callback parameters relayed by the front end."""
    result = await flow.handle_callback(
        state=payload.state,
        code=payload.code,
        error=payload.error,
        error_description=payload.error_description,
    )
    body = _callback_response(result, records)
    return JSONResponse(status_code=_status_code_for(result), content=body.model_dump(mode="json"))


@router.get("/auth/fayda/callback")
async def handle_fayda_callback_get(
    request: Request,
    flow: Annotated[Any, Depends(get_kyc_flow)],
    records: Annotated[Any, Depends(get_user_record_store)],
    settings: Annotated[AppSettings, Depends(get_app_settings)],
    state: str | None = Query(default=None, description="State issued when verification started."),
    code: str | None = Query(default=None, description="Authorization code returned by the provider."),
    error: str | None = Query(default=None),
    error_description: str | None = Query(default=None),
    redirect: bool = Query(
        default=False,
        description="When true, redirect browser clients instead of returning JSON.",
    ),
) -> Response:
    """Provider redirect target."""
    result = await flow.handle_callback(
        state=state,
        code=code,
        error=error,
        error_description=error_description,
    )
    body = _callback_response(result, records)

    redirect_target = result.redirect_to or (
        str(settings.frontend_base_url) if settings.frontend_base_url else None
    )
    if redirect_target and (redirect or _wants_html(request)):
        url = _with_query(redirect_target, status=body.status, reason=body.reason)
        return RedirectResponse(url=url, status_code=HTTPStatus.TEMPORARY_REDIRECT)

    return JSONResponse(status_code=_status_code_for(result), content=body.model_dump(mode="json"))


@router.get("/auth/kyc-status", response_model=KYCStatusResponse)
def get_kyc_status(
    records: Annotated[Any, Depends(get_user_record_store)],
    user_id: str = Query(..., min_length=1),
) -> KYCStatusResponse:
    """Report a user's KYC status without any personal details."""
    status = records.get_status(user_id)
    record = records.get_record(user_id)
    if record is None:
        return KYCStatusResponse(user_id=user_id, kyc_status=VerificationStatus.PENDING)
    return KYCStatusResponse(
        user_id=user_id,
        kyc_status=status,
        external_subject_id=record.external_subject_id,
        verified_at=record.verified_at,
        verified=status is VerificationStatus.VERIFIED,
    )


__all__ = ["router"]
