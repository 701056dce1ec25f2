"""
Internal member routes used by the chat bot: start verification, look up,
resync and remove a member's verification.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from idlink.infrastructure.observability.logging import get_logger
from idlink.models.api.verification_request import StartVerificationRequest
from idlink.models.api.verification_response import ErrorDetail, MemberInfoResponse
from idlink.models.domain.errors import ExternalProviderError, MemberNotVerified
from idlink.models.domain.verification_domain import (
    UnverifyResult,
    VerificationOutcome,
    VerificationStart,
)
from idlink.routes.verify import get_orchestrator
from idlink.services.verification_orchestrator import VerificationOrchestrator

logger = get_logger(__name__)

router = APIRouter()


def _provider_unavailable(e: ExternalProviderError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=ErrorDetail(error_code=e.error_code, message=str(e), retryable=True).model_dump(),
    )


def _not_verified(e: MemberNotVerified) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=ErrorDetail(error_code=e.error_code, message=str(e)).model_dump(),
    )


@router.post("/verifications", response_model=VerificationStart)
async def start_verification(
    request: StartVerificationRequest,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    """
    Start verification for a member.

    Returns the link to hand to the member, or ``already_verified`` when the
    member's roles were resynced instead.
    """
    try:
        return await orchestrator.start_verification(
            request.guild_id, request.member_id, request.member_name
        )
    except ExternalProviderError as e:
        logger.error(
            "Provider error while resyncing already verified member",
            member_id=request.member_id,
            error=str(e),
        )
        raise _provider_unavailable(e) from None


@router.get("/members/{member_id}", response_model=MemberInfoResponse)
async def member_info(
    member_id: str, orchestrator: VerificationOrchestrator = Depends(get_orchestrator)
):
    """
    Verification details of a member, with the linked Keycloak user's
    username, full name and email.

    Raises:
        502: Keycloak user lookup failed
    """
    mapping = await orchestrator.member_info(member_id)
    if mapping is None:
        return MemberInfoResponse(member_id=member_id, verified=False)

    try:
        profile = await orchestrator.subject_profile(mapping.subject_id)
    except ExternalProviderError as e:
        logger.error(
            "Could not fetch Keycloak user for member",
            member_id=member_id,
            subject_id=mapping.subject_id,
            error=str(e),
        )
        raise _provider_unavailable(e) from None

    return MemberInfoResponse(
        member_id=member_id,
        verified=True,
        subject_id=mapping.subject_id,
        verified_at=mapping.verified_at,
        username=profile.username,
        full_name=profile.full_name,
        email=profile.email,
    )


@router.post(
    "/guilds/{guild_id}/members/{member_id}/resync", response_model=VerificationOutcome
)
async def resync_member(
    guild_id: str,
    member_id: str,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    """Re-apply a verified member's roles in a guild."""
    try:
        return await orchestrator.resync_member_roles(guild_id, member_id)
    except MemberNotVerified as e:
        raise _not_verified(e) from None
    except ExternalProviderError as e:
        raise _provider_unavailable(e) from None


@router.delete("/guilds/{guild_id}/members/{member_id}", response_model=UnverifyResult)
async def unverify_member(
    guild_id: str,
    member_id: str,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    """Remove a member's verification (un-verify or member left the guild)."""
    try:
        result = await orchestrator.unverify(guild_id, member_id)
    except MemberNotVerified as e:
        raise _not_verified(e) from None

    logger.info(
        "Member unverified",
        guild_id=guild_id,
        member_id=member_id,
        roles_removed=result.roles_removed,
        roles_pending=result.roles_pending,
    )
    return result
