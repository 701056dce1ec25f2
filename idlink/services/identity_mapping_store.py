"""
Identity Mapping Store - member <-> subject bijection.

Both directions live in Redis as separate keys, but they are only ever
written together inside one optimistic transaction owned by this class:

    discord:{member_id}:keycloak     -> subject_id
    discord:{member_id}:verified_at  -> unix timestamp
    keycloak:{subject_id}:discord    -> member_id
"""

from datetime import UTC, datetime

from idlink.infrastructure.observability.logging import get_logger
from idlink.models.domain.errors import IdentityConflict
from idlink.models.domain.verification_domain import IdentityMapping
from idlink.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)


def member_key(member_id: str) -> str:
    return f"discord:{member_id}:keycloak"


def verified_at_key(member_id: str) -> str:
    return f"discord:{member_id}:verified_at"


def subject_key(subject_id: str) -> str:
    return f"keycloak:{subject_id}:discord"


def _parse_timestamp(raw: str | None) -> datetime:
    try:
        return datetime.fromtimestamp(int(raw), tz=UTC)
    except (TypeError, ValueError):
        return datetime.fromtimestamp(0, tz=UTC)


class IdentityMappingStore:
    def __init__(self, redis_client: FastRedisClient | None = None):
        self.redis = redis_client or fast_redis

    async def upsert(
        self, member_id: str, subject_id: str, verified_at: datetime | None = None
    ) -> IdentityMapping | None:
        """
        Bind ``member_id`` to ``subject_id``.

        Returns the member's previous mapping, if any.

        Raises:
            IdentityConflict: ``subject_id`` is bound to a different member.
                Nothing is written in that case.
        """
        verified_at = verified_at or datetime.now(UTC)
        timestamp = str(int(verified_at.timestamp()))
        forward = member_key(member_id)
        reverse = subject_key(subject_id)
        stamp = verified_at_key(member_id)

        async def _link(pipe) -> IdentityMapping | None:
            bound_member = await pipe.get(reverse)
            if bound_member and bound_member != member_id:
                raise IdentityConflict(subject_id, bound_member, member_id)

            old_subject = await pipe.get(forward)
            old_stamp = await pipe.get(stamp)

            pipe.multi()
            if old_subject and old_subject != subject_id:
                pipe.delete(subject_key(old_subject))
            pipe.set(forward, subject_id)
            pipe.set(reverse, member_id)
            pipe.set(stamp, timestamp)

            if not old_subject:
                return None
            return IdentityMapping(
                member_id=member_id,
                subject_id=old_subject,
                verified_at=_parse_timestamp(old_stamp),
            )

        try:
            previous = await self.redis.transaction(_link, forward, reverse, stamp)
        except IdentityConflict as e:
            logger.warning(
                "Identity conflict, subject already linked",
                subject_id=subject_id,
                existing_member_id=e.existing_member_id,
                requested_member_id=member_id,
            )
            raise

        if previous and previous.subject_id != subject_id:
            logger.info(
                "Member re-verified under a new subject, stale reverse entry removed",
                member_id=member_id,
                old_subject_id=previous.subject_id,
                subject_id=subject_id,
            )
        else:
            logger.info("Identity mapping stored", member_id=member_id, subject_id=subject_id)

        return previous

    async def get_by_member(self, member_id: str) -> IdentityMapping | None:
        subject_id, stamp = await self.redis.mget([member_key(member_id), verified_at_key(member_id)])
        if not subject_id:
            return None
        return IdentityMapping(
            member_id=member_id, subject_id=subject_id, verified_at=_parse_timestamp(stamp)
        )

    async def get_by_subject(self, subject_id: str) -> IdentityMapping | None:
        member_id = await self.redis.get(subject_key(subject_id))
        if not member_id:
            return None
        mapping = await self.get_by_member(member_id)
        if mapping is None or mapping.subject_id != subject_id:
            logger.error(
                "Reverse identity entry has no matching forward entry",
                subject_id=subject_id,
                member_id=member_id,
            )
            return None
        return mapping

    async def remove(self, member_id: str) -> IdentityMapping | None:
        """Delete both directions of the member's mapping. Returns what was removed."""
        forward = member_key(member_id)
        stamp = verified_at_key(member_id)

        async def _unlink(pipe) -> IdentityMapping | None:
            subject_id = await pipe.get(forward)
            old_stamp = await pipe.get(stamp)
            if not subject_id:
                return None

            reverse = subject_key(subject_id)
            bound_member = await pipe.get(reverse)

            pipe.multi()
            pipe.delete(forward, stamp)
            if bound_member == member_id:
                pipe.delete(reverse)
            return IdentityMapping(
                member_id=member_id,
                subject_id=subject_id,
                verified_at=_parse_timestamp(old_stamp),
            )

        removed = await self.redis.transaction(_unlink, forward, stamp)
        if removed:
            logger.info(
                "Identity mapping removed", member_id=member_id, subject_id=removed.subject_id
            )
        return removed


identity_mapping_store = IdentityMappingStore()
