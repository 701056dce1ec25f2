"""
Internal guild configuration routes, backing the bot's admin commands.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from idlink.infrastructure.observability.logging import get_logger
from idlink.models.api.verification_request import (
    LogChannelRequest,
    RoleAssignmentRequest,
    RoleModeRequest,
)
from idlink.models.api.verification_response import ErrorDetail
from idlink.models.domain.errors import GuildConfigError, RoleLookupMissing, RoleMutationFailure
from idlink.models.domain.verification_domain import GuildConfig
from idlink.services.discord_role_service import DiscordRoleService, discord_role_service
from idlink.services.guild_config_store import GuildConfigStore, guild_config_store

logger = get_logger(__name__)

router = APIRouter(prefix="/guilds/{guild_id}")


def get_guild_store() -> GuildConfigStore:
    return guild_config_store


def get_chat_platform() -> DiscordRoleService:
    return discord_role_service


def _unprocessable(e: GuildConfigError | RoleLookupMissing) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ErrorDetail(error_code=e.error_code, message=str(e)).model_dump(),
    )


async def _check_role_in_guild(
    chat_platform: DiscordRoleService, guild_id: str, role_id: str | None
) -> None:
    """Configured roles must exist in the guild."""
    if role_id is None:
        return
    try:
        role_ids = await chat_platform.get_guild_role_ids(guild_id)
    except RoleMutationFailure as e:
        logger.error("Could not list guild roles", guild_id=guild_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=ErrorDetail(error_code=e.error_code, message=str(e), retryable=True).model_dump(),
        ) from None
    if role_id not in role_ids:
        raise _unprocessable(
            GuildConfigError(f"Role {role_id} does not belong to guild {guild_id}")
        )


@router.get("/config", response_model=GuildConfig)
async def get_config(guild_id: str, store: GuildConfigStore = Depends(get_guild_store)):
    return await store.load(guild_id)


@router.put("/verified-role", response_model=GuildConfig)
async def set_verified_role(
    guild_id: str,
    request: RoleAssignmentRequest,
    store: GuildConfigStore = Depends(get_guild_store),
    chat_platform: DiscordRoleService = Depends(get_chat_platform),
):
    await _check_role_in_guild(chat_platform, guild_id, request.role_id)
    await store.set_verified_role(guild_id, request.role_id)
    return await store.load(guild_id)


@router.put("/role-mode", response_model=GuildConfig)
async def set_role_mode(
    guild_id: str,
    request: RoleModeRequest,
    store: GuildConfigStore = Depends(get_guild_store),
):
    try:
        await store.set_role_mode(
            guild_id, request.mode, request.custom_levels, request.custom_classes
        )
    except RoleLookupMissing as e:
        raise _unprocessable(e) from None
    return await store.load(guild_id)


@router.put("/roles/{family}/{name}", response_model=GuildConfig)
async def set_attribute_role(
    guild_id: str,
    family: str,
    name: str,
    request: RoleAssignmentRequest,
    store: GuildConfigStore = Depends(get_guild_store),
    chat_platform: DiscordRoleService = Depends(get_chat_platform),
):
    """Map a level or class value (``family`` is ``level`` or ``class``) to a role."""
    try:
        store.known_names(family)
    except RoleLookupMissing as e:
        raise _unprocessable(e) from None

    await _check_role_in_guild(chat_platform, guild_id, request.role_id)
    try:
        await store.set_attribute_role(guild_id, family, name, request.role_id)
    except RoleLookupMissing as e:
        raise _unprocessable(e) from None
    return await store.load(guild_id)


@router.put("/log-channel", response_model=GuildConfig)
async def set_log_channel(
    guild_id: str,
    request: LogChannelRequest,
    store: GuildConfigStore = Depends(get_guild_store),
):
    await store.set_log_channel(guild_id, request.channel_id)
    return await store.load(guild_id)
