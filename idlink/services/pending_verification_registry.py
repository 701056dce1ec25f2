"""
Pending Verification Registry.
Stores short-lived verification sessions and hands each one out at most once.
"""

import json
import secrets
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from pydantic import ValidationError

from idlink.config import settings
from idlink.infrastructure.observability.logging import get_logger, preview
from idlink.models.domain.errors import TokenNotFoundOrExpired
from idlink.models.domain.verification_domain import PendingVerification
from idlink.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)

SESSION_KEY_PREFIX = "verify"
TOKEN_LENGTH = 32  # bytes for cryptographically secure token
STATE_LENGTH = 32


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PendingVerificationRegistry:
    """
    Registry for verification sessions with a Redis backend.

    Sessions are stored as JSON under ``verify:{token}`` with a Redis TTL.
    ``consume`` uses GETDEL so a token is handed out at most once even when
    two callbacks race, and re-checks ``expires_at`` in case the key outlived
    its deadline.
    """

    def __init__(
        self,
        redis_client: FastRedisClient | None = None,
        ttl_seconds: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.redis = redis_client or fast_redis
        self.ttl_seconds = ttl_seconds or settings.VERIFICATION_TTL_SECONDS
        self.clock = clock

    def _redis_key(self, token: str) -> str:
        return f"{SESSION_KEY_PREFIX}:{token}"

    async def create(
        self, guild_id: str, member_id: str, member_name: str = ""
    ) -> PendingVerification:
        """
        Create and store a new verification session.

        Returns:
            PendingVerification: the stored session including token and oauth_state
        """
        now = self.clock()
        session = PendingVerification(
            token=secrets.token_urlsafe(TOKEN_LENGTH),
            oauth_state=secrets.token_urlsafe(STATE_LENGTH),
            guild_id=guild_id,
            member_id=member_id,
            member_name=member_name,
            created_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )

        await self.redis.set_with_ttl(
            self._redis_key(session.token), session.model_dump_json(), self.ttl_seconds
        )

        logger.info(
            "Verification session created",
            guild_id=guild_id,
            member_id=member_id,
            token_preview=preview(session.token),
            ttl_seconds=self.ttl_seconds,
        )
        return session

    def _decode(self, token: str, raw: str | None) -> PendingVerification | None:
        if raw is None:
            return None
        try:
            session = PendingVerification.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.error(
                "Corrupt verification session discarded",
                token_preview=preview(token),
                error=str(e),
            )
            return None
        if session.is_expired(self.clock()):
            return None
        return session

    async def consume(self, token: str) -> PendingVerification:
        """
        Atomically read and delete a session.

        Raises:
            TokenNotFoundOrExpired: unknown, already consumed or expired token
        """
        if not token:
            raise TokenNotFoundOrExpired()

        raw = await self.redis.getdel(self._redis_key(token))
        session = self._decode(token, raw)

        if session is None:
            logger.warning(
                "Verification session not found or expired",
                token_preview=preview(token),
                existed=raw is not None,
            )
            raise TokenNotFoundOrExpired()

        logger.info(
            "Verification session consumed",
            guild_id=session.guild_id,
            member_id=session.member_id,
            token_preview=preview(token),
        )
        return session

    async def peek(self, token: str) -> PendingVerification | None:
        """Read-only lookup of a live session."""
        if not token:
            return None
        raw = await self.redis.get(self._redis_key(token))
        return self._decode(token, raw)


pending_verification_registry = PendingVerificationRegistry()
