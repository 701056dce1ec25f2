"""
Member-facing verification routes: the verification link, the identity
provider callback and the link status lookup.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse, RedirectResponse

from idlink.infrastructure.observability.logging import get_logger, preview
from idlink.models.api.verification_response import (
    ErrorDetail,
    VerificationCallbackResponse,
    VerifyStatusResponse,
)
from idlink.models.domain.errors import ExternalProviderError, TokenNotFoundOrExpired
from idlink.models.domain.verification_domain import VerificationState
from idlink.services.pending_verification_registry import (
    PendingVerificationRegistry,
    pending_verification_registry,
)
from idlink.services.verification_orchestrator import (
    VerificationOrchestrator,
    verification_orchestrator,
)

logger = get_logger(__name__)

router = APIRouter(tags=["verification"])

# Terminal states that are not the member's fault map to 200; the rest to errors.
# A failed run that never linked the identity is answered separately with 503.
_STATE_STATUS_CODES = {
    VerificationState.COMPLETED: status.HTTP_200_OK,
    VerificationState.FAILED: status.HTTP_200_OK,
    VerificationState.EXPIRED: status.HTTP_410_GONE,
    VerificationState.CONFLICT: status.HTTP_409_CONFLICT,
}


def get_orchestrator() -> VerificationOrchestrator:
    return verification_orchestrator


def get_registry() -> PendingVerificationRegistry:
    return pending_verification_registry


@router.get("/verify")
async def verify_start(
    state: str = Query(..., min_length=1, description="Verification token from the bot"),
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    """
    Redirect the member to the identity provider for a live session.

    Raises:
        404: Unknown or expired verification link
        503: Identity provider not configured
    """
    try:
        url = await orchestrator.authorization_url(state)
    except TokenNotFoundOrExpired as e:
        logger.warning("Verification link not found", token_preview=preview(state))
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=ErrorDetail(error_code=e.error_code, message=str(e)).model_dump(),
        ) from None
    except ExternalProviderError as e:
        logger.error("Could not build authorization URL", error=str(e), error_code=e.error_code)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=ErrorDetail(
                error_code=e.error_code, message="Verification is temporarily unavailable"
            ).model_dump(),
        ) from None

    return RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@router.get("/auth/callback", response_model=VerificationCallbackResponse)
async def oauth_callback(
    state: str = Query(..., description="Provider state parameter"),
    code: str | None = Query(default=None, description="Authorization code"),
    error: str | None = Query(default=None, description="Provider error, if sign-in failed"),
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    """
    Handle the identity provider redirect and complete verification.

    Raises:
        400: Provider reported an error or no code was sent
        409: Identity already linked to another account
        410: Verification link expired, restart verification
        502: Identity provider unavailable, retry the link
        503: Identity could not be saved, restart verification
    """
    if error or not code:
        logger.warning("Identity provider returned no code", provider_error=error)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=ErrorDetail(
                error_code=error or "missing_code",
                message="Sign-in did not complete. Please open your verification link again.",
                retryable=True,
            ).model_dump(),
        )

    try:
        outcome = await orchestrator.handle_callback(state, code)
    except ExternalProviderError as e:
        logger.error(
            "Identity provider error during callback",
            error=str(e),
            error_code=e.error_code,
            state_preview=preview(state),
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=ErrorDetail(error_code=e.error_code, message=str(e), retryable=True).model_dump(),
        ) from None

    body = VerificationCallbackResponse(
        success=outcome.verified,
        state=outcome.state,
        message=outcome.message,
        retryable=outcome.retryable,
        roles_added=outcome.roles_added,
        roles_removed=outcome.roles_removed,
    )
    if outcome.state == VerificationState.FAILED and not outcome.verified:
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = _STATE_STATUS_CODES.get(outcome.state, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json"),
    )


@router.get("/api/verify-status/{token}", response_model=VerifyStatusResponse)
async def verify_status(
    token: str, registry: PendingVerificationRegistry = Depends(get_registry)
):
    """Whether a verification link is still pending."""
    session = await registry.peek(token)
    if session is None:
        return VerifyStatusResponse(status="not_found")
    return VerifyStatusResponse(
        status="pending", member_name=session.member_name or None, expires_at=session.expires_at
    )
