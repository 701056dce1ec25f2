"""
Discord role service.

Thin REST client for the chat platform side of verification: reading a
member's roles, applying role diffs and posting verification notices.
Role changes use Discord's per-role PUT/DELETE endpoints, which are
idempotent, so a diff can be retried safely.
"""

import asyncio
from datetime import UTC, datetime
from typing import Any

import httpx

from idlink.config import settings
from idlink.infrastructure.observability.logging import get_logger
from idlink.models.domain.errors import RoleMutationFailure
from idlink.models.domain.verification_domain import RoleDiff

logger = get_logger(__name__)

REQUEST_TIMEOUT = 10  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
AUDIT_LOG_REASON = "Identity verification"

# Embed colours for the guild log channel
COLOR_VERIFIED = 0xA6E3A1
COLOR_UNVERIFIED = 0xF38BA8
COLOR_CONFLICT = 0xF9E2AF


class DiscordRoleService:
    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = settings.DISCORD_API_BASE.rstrip("/")
        self.token = settings.DISCORD_TOKEN
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        if not self.token:
            raise RoleMutationFailure("DISCORD_TOKEN not configured")
        return {
            "Authorization": f"Bot {self.token}",
            "X-Audit-Log-Reason": AUDIT_LOG_REASON,
        }

    async def _request(
        self, client: httpx.AsyncClient, method: str, path: str, operation: str, **kwargs: Any
    ) -> httpx.Response:
        """Send one request, retrying rate limits and transient failures."""
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await client.request(
                    method, f"{self.base_url}{path}", headers=self._headers(), **kwargs
                )
            except httpx.RequestError as exc:
                if attempt == MAX_RETRIES:
                    raise RoleMutationFailure(f"{operation} failed: {exc}") from exc
                wait_time = BACKOFF_FACTOR**attempt
                logger.warning(
                    "Discord request error, retrying",
                    operation=operation,
                    attempt=attempt,
                    wait_time=wait_time,
                    error=str(exc),
                )
                await asyncio.sleep(wait_time)
                continue

            if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                wait_time = self._retry_after(response) or BACKOFF_FACTOR**attempt
                logger.warning(
                    "Discord transient status",
                    operation=operation,
                    status_code=response.status_code,
                    attempt=attempt,
                    wait_time=wait_time,
                )
                await asyncio.sleep(wait_time)
                continue

            return response

        raise RoleMutationFailure(f"{operation} failed: retries exhausted")

    @staticmethod
    def _retry_after(response: httpx.Response) -> float | None:
        if response.status_code != 429:
            return None
        try:
            return float(response.json().get("retry_after"))
        except (ValueError, TypeError, AttributeError):
            return None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self._transport)

    async def get_member_roles(self, guild_id: str, member_id: str) -> set[str]:
        async with self._client() as client:
            response = await self._request(
                client, "GET", f"/guilds/{guild_id}/members/{member_id}", "get_member"
            )
        if not response.is_success:
            raise RoleMutationFailure(
                f"Could not read member {member_id} in guild {guild_id}",
                status_code=response.status_code,
            )
        return {str(role) for role in response.json().get("roles", [])}

    async def get_guild_role_ids(self, guild_id: str) -> set[str]:
        async with self._client() as client:
            response = await self._request(client, "GET", f"/guilds/{guild_id}/roles", "get_roles")
        if not response.is_success:
            raise RoleMutationFailure(
                f"Could not list roles of guild {guild_id}", status_code=response.status_code
            )
        return {str(role["id"]) for role in response.json()}

    async def apply_role_diff(self, guild_id: str, member_id: str, diff: RoleDiff) -> None:
        """
        Apply every change in ``diff``.

        All changes are attempted even if one fails; the first failure is then
        raised so the caller can schedule a resync.
        """
        if diff.is_empty:
            return

        failures: list[RoleMutationFailure] = []
        changes = [("PUT", role) for role in sorted(diff.to_add)]
        changes += [("DELETE", role) for role in sorted(diff.to_remove)]

        async with self._client() as client:
            for method, role_id in changes:
                path = f"/guilds/{guild_id}/members/{member_id}/roles/{role_id}"
                try:
                    response = await self._request(client, method, path, "role_change")
                except RoleMutationFailure as e:
                    e.role_id = role_id
                    failures.append(e)
                    continue

                if response.is_success:
                    continue
                logger.warning(
                    "Discord rejected role change",
                    guild_id=guild_id,
                    member_id=member_id,
                    role_id=role_id,
                    method=method,
                    status_code=response.status_code,
                    response_text=response.text[:200],
                )
                failures.append(
                    RoleMutationFailure(
                        f"{method} role {role_id} failed (HTTP {response.status_code})",
                        status_code=response.status_code,
                        role_id=role_id,
                    )
                )

        if failures:
            raise failures[0]

        logger.info(
            "Role diff applied",
            guild_id=guild_id,
            member_id=member_id,
            added=sorted(diff.to_add),
            removed=sorted(diff.to_remove),
        )

    async def send_log_message(
        self, channel_id: str, title: str, member_id: str, fields: dict[str, str], color: int
    ) -> bool:
        """Post a verification notice embed. Best effort: never raises."""
        embed = {
            "title": title,
            "color": color,
            "fields": [{"name": "User", "value": f"<@{member_id}>", "inline": False}]
            + [{"name": name, "value": value, "inline": False} for name, value in fields.items()],
            "timestamp": datetime.now(UTC).isoformat(),
        }
        try:
            async with self._client() as client:
                response = await self._request(
                    client, "POST", f"/channels/{channel_id}/messages", "log_message",
                    json={"embeds": [embed]},
                )
            if not response.is_success:
                logger.warning(
                    "Failed to send verification log",
                    channel_id=channel_id,
                    status_code=response.status_code,
                )
            return response.is_success
        except RoleMutationFailure as e:
            logger.warning("Failed to send verification log", channel_id=channel_id, error=str(e))
            return False

    async def send_direct_message(self, member_id: str, content: str) -> bool:
        """DM a member. Best effort: members may have DMs closed."""
        try:
            async with self._client() as client:
                channel = await self._request(
                    client, "POST", "/users/@me/channels", "open_dm",
                    json={"recipient_id": member_id},
                )
                if not channel.is_success:
                    logger.info("Could not open DM channel", member_id=member_id)
                    return False
                response = await self._request(
                    client, "POST", f"/channels/{channel.json()['id']}/messages", "send_dm",
                    json={"content": content},
                )
            return response.is_success
        except RoleMutationFailure as e:
            logger.info("Could not DM member", member_id=member_id, error=str(e))
            return False


def format_roles(role_ids: list[str] | set[str] | frozenset[str]) -> str:
    """Role mentions for an embed field."""
    if not role_ids:
        return "None"
    return ", ".join(f"<@&{role_id}>" for role_id in sorted(role_ids))


discord_role_service = DiscordRoleService()
