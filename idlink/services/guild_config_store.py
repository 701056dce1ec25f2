"""
Guild role configuration store.

Reads and writes the per-guild role configuration kept in Redis under the
``guild:{guild_id}:*`` namespace.
"""

from collections.abc import Iterable

from idlink.config import settings
from idlink.infrastructure.observability.logging import get_logger
from idlink.models.domain.errors import RoleLookupMissing
from idlink.models.domain.verification_domain import GuildConfig, RoleMode
from idlink.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)

LEVEL_FAMILY = "level"
CLASS_FAMILY = "class"


def verified_role_key(guild_id: str) -> str:
    return f"guild:{guild_id}:role:verified"


def attribute_role_key(guild_id: str, family: str, name: str) -> str:
    return f"guild:{guild_id}:role:{family}:{name}"


def role_mode_key(guild_id: str) -> str:
    return f"guild:{guild_id}:role_mode"


def custom_set_key(guild_id: str, family: str) -> str:
    # custom_levels / custom_classes
    suffix = "levels" if family == LEVEL_FAMILY else "classes"
    return f"guild:{guild_id}:custom_{suffix}"


def log_channel_key(guild_id: str) -> str:
    return f"guild:{guild_id}:log_channel"


class GuildConfigStore:
    def __init__(
        self,
        redis_client: FastRedisClient | None = None,
        level_names: Iterable[str] | None = None,
        class_names: Iterable[str] | None = None,
    ):
        self.redis = redis_client or fast_redis
        self.level_names = list(level_names or settings.LEVEL_NAMES)
        self.class_names = list(class_names or settings.CLASS_NAMES)

    def known_names(self, family: str) -> list[str]:
        if family == LEVEL_FAMILY:
            return self.level_names
        if family == CLASS_FAMILY:
            return self.class_names
        raise RoleLookupMissing(f"Unknown attribute family '{family}'")

    def _check_names(self, family: str, names: Iterable[str]) -> set[str]:
        known = set(self.known_names(family))
        requested = set(names)
        unknown = requested - known
        if unknown:
            raise RoleLookupMissing(
                f"Unknown {family} value(s): {', '.join(sorted(unknown))}. "
                f"Expected one of: {', '.join(self.known_names(family))}"
            )
        return requested

    async def load(self, guild_id: str) -> GuildConfig:
        """Load the full role configuration of a guild in one round trip."""
        keys = [verified_role_key(guild_id), role_mode_key(guild_id), log_channel_key(guild_id)]
        keys += [attribute_role_key(guild_id, LEVEL_FAMILY, name) for name in self.level_names]
        keys += [attribute_role_key(guild_id, CLASS_FAMILY, name) for name in self.class_names]

        values = await self.redis.mget(keys)
        verified_role, role_mode, log_channel = values[:3]
        level_values = values[3 : 3 + len(self.level_names)]
        class_values = values[3 + len(self.level_names) :]

        config = GuildConfig(
            guild_id=guild_id,
            role_mode=RoleMode.parse(role_mode),
            verified_role=verified_role or None,
            level_roles={
                name: role for name, role in zip(self.level_names, level_values) if role
            },
            class_roles={
                name: role for name, role in zip(self.class_names, class_values) if role
            },
            custom_levels=await self.redis.smembers(custom_set_key(guild_id, LEVEL_FAMILY)),
            custom_classes=await self.redis.smembers(custom_set_key(guild_id, CLASS_FAMILY)),
            log_channel=log_channel or None,
        )

        logger.debug(
            "Guild config loaded",
            guild_id=guild_id,
            role_mode=config.role_mode.value,
            level_roles=len(config.level_roles),
            class_roles=len(config.class_roles),
        )
        return config

    async def set_verified_role(self, guild_id: str, role_id: str | None) -> None:
        if role_id:
            await self.redis.set(verified_role_key(guild_id), role_id)
        else:
            await self.redis.delete(verified_role_key(guild_id))
        logger.info("Verified role updated", guild_id=guild_id, role_id=role_id)

    async def set_attribute_role(
        self, guild_id: str, family: str, name: str, role_id: str | None
    ) -> None:
        """Map a level or class value to a role, or clear the mapping."""
        self._check_names(family, [name])
        key = attribute_role_key(guild_id, family, name)
        if role_id:
            await self.redis.set(key, role_id)
        else:
            await self.redis.delete(key)
        logger.info(
            "Attribute role updated", guild_id=guild_id, family=family, name=name, role_id=role_id
        )

    async def set_role_mode(
        self,
        guild_id: str,
        mode: RoleMode,
        custom_levels: Iterable[str] | None = None,
        custom_classes: Iterable[str] | None = None,
    ) -> None:
        """
        Switch the guild's role mode.

        Custom mode also replaces the enabled level and class sets. Leaving
        custom mode keeps the sets so switching back restores the selection.
        """
        if mode == RoleMode.CUSTOM:
            levels = self._check_names(LEVEL_FAMILY, custom_levels or [])
            classes = self._check_names(CLASS_FAMILY, custom_classes or [])
            await self.redis.replace_set(custom_set_key(guild_id, LEVEL_FAMILY), levels)
            await self.redis.replace_set(custom_set_key(guild_id, CLASS_FAMILY), classes)

        await self.redis.set(role_mode_key(guild_id), mode.value)
        logger.info("Role mode updated", guild_id=guild_id, role_mode=mode.value)

    async def set_log_channel(self, guild_id: str, channel_id: str | None) -> None:
        if channel_id:
            await self.redis.set(log_channel_key(guild_id), channel_id)
        else:
            await self.redis.delete(log_channel_key(guild_id))
        logger.info("Log channel updated", guild_id=guild_id, channel_id=channel_id)


guild_config_store = GuildConfigStore()
