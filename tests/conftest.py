from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from idlink.auth.internal import internal_auth_dependency
from idlink.models.domain.verification_domain import RoleMode, SubjectProfile, VerifiedIdentity
from idlink.services.guild_config_store import CLASS_FAMILY, LEVEL_FAMILY, GuildConfigStore
from idlink.services.identity_mapping_store import IdentityMappingStore
from idlink.services.pending_verification_registry import PendingVerificationRegistry
from idlink.services.redis_client import RedisStoreError
from idlink.services.verification_orchestrator import VerificationOrchestrator

GUILD = "guild-1"
GUILD_ROLES = {"role_verified", "role_777", "role_ug", "role_masters", "role_moderator"}

LEVELS = ["Undergrad", "Graduate"]
CLASSES = ["First-Year", "Sophomore", "Junior", "Senior", "Fifth-Year Senior", "Masters", "Doctoral"]


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "chat-bot"}

    return _override


class FakePipeline:
    """Mimics redis-py's transaction pipeline: immediate reads, then queued writes after multi()."""

    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self.queued: list[tuple] = []
        self.buffering = False

    async def _read(self, key: str) -> str | None:
        return self.redis.store.get(key)

    def get(self, key: str):
        return self._read(key)

    def multi(self) -> None:
        self.buffering = True

    def set(self, key: str, value: str) -> "FakePipeline":
        self.queued.append(("set", key, value))
        return self

    def delete(self, *keys: str) -> "FakePipeline":
        self.queued.append(("delete", keys))
        return self

    def apply(self) -> None:
        for op in self.queued:
            if op[0] == "set":
                self.redis.store[op[1]] = op[2]
            else:
                for key in op[1]:
                    self.redis.store.pop(key, None)
                    self.redis.sets.pop(key, None)


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.sets: dict[str, set[str]] = {}
        self.ttls: dict[str, int | None] = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise RedisStoreError("redis unavailable")

    async def ping(self) -> bool:
        return not self.fail

    async def get(self, key: str) -> str | None:
        self._check()
        return self.store.get(key)

    async def mget(self, keys: list[str]) -> list[str | None]:
        self._check()
        return [self.store.get(key) for key in keys]

    async def smembers(self, key: str) -> set[str]:
        self._check()
        return set(self.sets.get(key, set()))

    async def set(self, key: str, value: str) -> bool:
        self._check()
        self.store[key] = value
        return True

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        self._check()
        self.store[key] = value
        self.ttls[key] = ttl_s
        return True

    async def getdel(self, key: str) -> str | None:
        self._check()
        return self.store.pop(key, None)

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            if self.sets.pop(key, None) is not None:
                removed += 1
        return removed

    async def replace_set(self, key: str, members) -> None:
        self._check()
        values = set(members)
        if values:
            self.sets[key] = values
        else:
            self.sets.pop(key, None)

    async def transaction(self, func, *watches: str):
        self._check()
        pipe = FakePipeline(self)
        result = await func(pipe)
        pipe.apply()
        return result


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def now():
    return datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def clock(now):
    """Mutable clock; tests move time forward through ``clock.now``."""

    class _Clock:
        def __init__(self, start):
            self.now = start

        def __call__(self):
            return self.now

    return _Clock(now)


@pytest.fixture
def registry(fake_redis, clock):
    return PendingVerificationRegistry(redis_client=fake_redis, ttl_seconds=600, clock=clock)


@pytest.fixture
def mapping_store(fake_redis):
    return IdentityMappingStore(redis_client=fake_redis)


@pytest.fixture
def guild_store(fake_redis):
    return GuildConfigStore(redis_client=fake_redis, level_names=LEVELS, class_names=CLASSES)


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[internal_auth_dependency] = auth_override

    return _apply


def make_chat_platform(current_roles=None, guild_roles=None):
    platform = MagicMock()
    platform.get_member_roles = AsyncMock(return_value=set(current_roles or set()))
    platform.get_guild_role_ids = AsyncMock(return_value=set(guild_roles or GUILD_ROLES))
    platform.apply_role_diff = AsyncMock(return_value=None)
    platform.send_log_message = AsyncMock(return_value=True)
    platform.send_direct_message = AsyncMock(return_value=True)
    return platform


def make_identity_provider(attributes=None, subject_id="subject-1"):
    provider = MagicMock()
    provider.build_authorization_url = MagicMock(
        side_effect=lambda state: f"https://idp.example/auth?state={state}"
    )
    provider.exchange_code = AsyncMock(
        return_value=VerifiedIdentity(subject_id=subject_id, attributes=attributes or {})
    )
    provider.fetch_attributes = AsyncMock(return_value=attributes or {})
    provider.fetch_profile = AsyncMock(
        return_value=SubjectProfile(
            subject_id=subject_id,
            username="asmith",
            full_name="Alice Smith",
            email="asmith@example.edu",
        )
    )
    return provider


@pytest.fixture
def platform():
    return make_chat_platform()


@pytest.fixture
def provider():
    return make_identity_provider({"level": ["Graduate"], "class": ["Masters"]})


@pytest_asyncio.fixture
async def configured_guild(guild_store):
    await guild_store.set_verified_role(GUILD, "role_verified")
    await guild_store.set_attribute_role(GUILD, LEVEL_FAMILY, "Undergrad", "role_ug")
    await guild_store.set_attribute_role(GUILD, LEVEL_FAMILY, "Graduate", "role_777")
    await guild_store.set_attribute_role(GUILD, CLASS_FAMILY, "Masters", "role_masters")
    await guild_store.set_role_mode(GUILD, RoleMode.LEVELS)
    await guild_store.set_log_channel(GUILD, "log-chan")
    return guild_store


@pytest.fixture
def orchestrator(registry, mapping_store, configured_guild, provider, platform, clock):
    return VerificationOrchestrator(
        registry=registry,
        mapping_store=mapping_store,
        guild_store=configured_guild,
        identity_provider=provider,
        chat_platform=platform,
        clock=clock,
    )
