"""
Role resync job.

Re-applies roles for verified members of a guild from their current identity
provider attributes. This is the retry path for members whose role changes
failed after their identity mapping was committed, and picks up attribute
changes made in the identity provider since verification.

Configured through settings (environment or .env.local):
    RESYNC_GUILD_ID     guild to resync
    RESYNC_MEMBER_IDS   comma-separated member ids
"""

from datetime import UTC, datetime

from idlink.config import settings
from idlink.infrastructure.observability.logging import get_logger
from idlink.models.domain.errors import ExternalProviderError, MemberNotVerified
from idlink.models.domain.verification_domain import VerificationState
from idlink.services.redis_client import fast_redis
from idlink.services.verification_orchestrator import (
    VerificationOrchestrator,
    verification_orchestrator,
)

logger = get_logger(__name__)


class ResyncMetrics:
    """Counts for one resync run."""

    def __init__(self):
        self.start_time = datetime.now(UTC)
        self.members_checked = 0
        self.members_synced = 0
        self.members_skipped = 0
        self.members_failed = 0
        self.errors: list[dict] = []

    def record_failure(self, member_id: str, error: str):
        self.members_failed += 1
        self.errors.append({"member_id": member_id, "error": error})
        logger.warning("Member resync failed", member_id=member_id, error=error, job_run="role_resync")

    def summary(self) -> dict:
        return {
            "members_checked": self.members_checked,
            "members_synced": self.members_synced,
            "members_skipped": self.members_skipped,
            "members_failed": self.members_failed,
            "duration_seconds": round(
                (datetime.now(UTC) - self.start_time).total_seconds(), 2
            ),
        }


def _parse_member_ids(raw: str | None) -> list[str]:
    if not raw:
        return []
    seen: list[str] = []
    for part in raw.split(","):
        member_id = part.strip()
        if member_id and member_id not in seen:
            seen.append(member_id)
    return seen


async def resync_members(
    guild_id: str,
    member_ids: list[str],
    orchestrator: VerificationOrchestrator | None = None,
) -> ResyncMetrics:
    """Resync each member in turn; one member's failure does not stop the run."""
    orchestrator = orchestrator or verification_orchestrator
    metrics = ResyncMetrics()

    for member_id in member_ids:
        metrics.members_checked += 1
        try:
            outcome = await orchestrator.resync_member_roles(guild_id, member_id)
        except MemberNotVerified:
            metrics.members_skipped += 1
            logger.info("Member not verified, skipping", member_id=member_id, job_run="role_resync")
            continue
        except ExternalProviderError as e:
            metrics.record_failure(member_id, str(e))
            continue

        if outcome.state == VerificationState.COMPLETED:
            metrics.members_synced += 1
        else:
            metrics.record_failure(member_id, outcome.message)

    return metrics


async def run_role_resync() -> None:
    """Worker entrypoint: resync the members named in settings."""
    guild_id = (settings.RESYNC_GUILD_ID or "").strip()
    member_ids = _parse_member_ids(settings.RESYNC_MEMBER_IDS)
    if not guild_id or not member_ids:
        raise ValueError("RESYNC_GUILD_ID and RESYNC_MEMBER_IDS must be set for role_resync")

    await fast_redis.initialize()
    try:
        logger.info(
            "Role resync started",
            guild_id=guild_id,
            member_count=len(member_ids),
            job_run="role_resync",
        )
        metrics = await resync_members(guild_id, member_ids)
        logger.info("Role resync finished", guild_id=guild_id, job_run="role_resync", **metrics.summary())
    finally:
        await fast_redis.close()
