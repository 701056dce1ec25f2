import pytest

from idlink.models.domain.errors import RoleLookupMissing
from idlink.models.domain.verification_domain import RoleMode
from idlink.services.guild_config_store import (
    CLASS_FAMILY,
    LEVEL_FAMILY,
    attribute_role_key,
    custom_set_key,
    role_mode_key,
)


@pytest.mark.asyncio
async def test_empty_guild_loads_defaults(guild_store):
    config = await guild_store.load("guild-1")

    assert config.role_mode == RoleMode.NONE
    assert config.verified_role is None
    assert config.level_roles == {}
    assert config.class_roles == {}
    assert config.log_channel is None
    assert config.managed_roles() == set()


@pytest.mark.asyncio
async def test_roles_round_trip(guild_store, fake_redis):
    await guild_store.set_verified_role("guild-1", "role_verified")
    await guild_store.set_attribute_role("guild-1", LEVEL_FAMILY, "Graduate", "role_777")
    await guild_store.set_attribute_role("guild-1", CLASS_FAMILY, "Masters", "role_masters")
    await guild_store.set_log_channel("guild-1", "chan-1")

    assert fake_redis.store[attribute_role_key("guild-1", "level", "Graduate")] == "role_777"

    config = await guild_store.load("guild-1")
    assert config.verified_role == "role_verified"
    assert config.level_roles == {"Graduate": "role_777"}
    assert config.class_roles == {"Masters": "role_masters"}
    assert config.log_channel == "chan-1"
    assert config.managed_roles() == {"role_verified", "role_777", "role_masters"}


@pytest.mark.asyncio
async def test_clearing_a_role(guild_store):
    await guild_store.set_attribute_role("guild-1", LEVEL_FAMILY, "Graduate", "role_777")
    await guild_store.set_attribute_role("guild-1", LEVEL_FAMILY, "Graduate", None)

    assert (await guild_store.load("guild-1")).level_roles == {}


@pytest.mark.asyncio
async def test_unknown_attribute_value_is_rejected(guild_store, fake_redis):
    with pytest.raises(RoleLookupMissing):
        await guild_store.set_attribute_role("guild-1", LEVEL_FAMILY, "Postdoc", "role_1")

    with pytest.raises(RoleLookupMissing):
        await guild_store.set_attribute_role("guild-1", "faculty", "Graduate", "role_1")

    assert fake_redis.store == {}


@pytest.mark.asyncio
async def test_custom_mode_replaces_enabled_sets(guild_store, fake_redis):
    await guild_store.set_role_mode("guild-1", RoleMode.CUSTOM, ["Graduate"], ["Junior", "Senior"])
    await guild_store.set_role_mode("guild-1", RoleMode.CUSTOM, ["Undergrad"], [])

    config = await guild_store.load("guild-1")
    assert config.role_mode == RoleMode.CUSTOM
    assert config.custom_levels == {"Undergrad"}
    assert config.custom_classes == set()


@pytest.mark.asyncio
async def test_leaving_custom_mode_keeps_selection(guild_store, fake_redis):
    await guild_store.set_role_mode("guild-1", RoleMode.CUSTOM, ["Graduate"], ["Masters"])
    await guild_store.set_role_mode("guild-1", RoleMode.LEVELS)

    assert fake_redis.store[role_mode_key("guild-1")] == "levels"
    assert fake_redis.sets[custom_set_key("guild-1", LEVEL_FAMILY)] == {"Graduate"}


@pytest.mark.asyncio
async def test_custom_mode_rejects_unknown_values(guild_store, fake_redis):
    with pytest.raises(RoleLookupMissing):
        await guild_store.set_role_mode("guild-1", RoleMode.CUSTOM, ["Graduate", "Postdoc"], [])

    assert role_mode_key("guild-1") not in fake_redis.store


@pytest.mark.asyncio
async def test_unknown_stored_mode_falls_back_to_none(guild_store, fake_redis):
    fake_redis.store[role_mode_key("guild-1")] = "everything"

    assert (await guild_store.load("guild-1")).role_mode == RoleMode.NONE
