"""
Verification Orchestrator.

Drives a member's verification through its state machine:

    started -> awaiting_callback -> resolving -> role_assigning -> completed
                       |                |               |
                    expired      conflict/failed       failed

Each verification runs independently; the only shared state lives in the
stores, which provide the atomic operations (consume-once, conflict-checked
upsert) the flow relies on. Role changes are applied only after the identity
mapping is committed and a failure there never reverts the mapping.
"""

import hmac
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from idlink.config import settings
from idlink.infrastructure.observability.logging import (
    get_logger,
    log_verification_event,
    preview,
)
from idlink.models.domain.errors import (
    IdentityConflict,
    InvalidTransition,
    MemberNotVerified,
    RoleMutationFailure,
    TokenNotFoundOrExpired,
)
from idlink.models.domain.verification_domain import (
    ALLOWED_TRANSITIONS,
    GuildConfig,
    IdentityMapping,
    PendingVerification,
    RoleDiff,
    SubjectProfile,
    UnverifyResult,
    VerificationOutcome,
    VerificationStart,
    VerificationState,
)
from idlink.services.discord_role_service import (
    COLOR_CONFLICT,
    COLOR_UNVERIFIED,
    COLOR_VERIFIED,
    DiscordRoleService,
    discord_role_service,
    format_roles,
)
from idlink.services.guild_config_store import GuildConfigStore, guild_config_store
from idlink.services.identity_mapping_store import IdentityMappingStore, identity_mapping_store
from idlink.services.keycloak_service import KeycloakService, keycloak_service
from idlink.services.pending_verification_registry import (
    PendingVerificationRegistry,
    pending_verification_registry,
)
from idlink.services.redis_client import RedisStoreError
from idlink.services.role_assignment_engine import compute_removal_diff, compute_role_diff

logger = get_logger(__name__)

EXPIRED_MESSAGE = "Your verification link has expired. Please run /verify again."
CONFLICT_MESSAGE = (
    "This identity is already linked to another Discord account. "
    "Please contact a server administrator."
)
FAILED_MESSAGE = (
    "You are verified, but your roles could not be updated yet. "
    "They will be applied shortly."
)
COMPLETED_MESSAGE = "You have successfully verified your identity."
UNAVAILABLE_MESSAGE = (
    "Verification could not be saved right now. "
    "Please run /verify again in a few minutes."
)


class VerificationRun:
    """Transition log of one verification. Rejects transitions the machine does not allow."""

    def __init__(
        self,
        state: VerificationState = VerificationState.STARTED,
        guild_id: str = "",
        member_id: str = "",
    ):
        self.state = state
        self.guild_id = guild_id
        self.member_id = member_id
        self.history = [state]

    def advance(self, new_state: VerificationState, error: str = None, **extra: Any) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"Cannot move verification from {self.state.value} to {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)
        log_verification_event(
            "Verification state changed",
            guild_id=self.guild_id,
            member_id=self.member_id,
            state=new_state.value,
            error=error,
            **extra,
        )


def _utcnow() -> datetime:
    return datetime.now(UTC)


class VerificationOrchestrator:
    def __init__(
        self,
        registry: PendingVerificationRegistry | None = None,
        mapping_store: IdentityMappingStore | None = None,
        guild_store: GuildConfigStore | None = None,
        identity_provider: KeycloakService | None = None,
        chat_platform: DiscordRoleService | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.registry = registry or pending_verification_registry
        self.mapping_store = mapping_store or identity_mapping_store
        self.guild_store = guild_store or guild_config_store
        self.identity_provider = identity_provider or keycloak_service
        self.chat_platform = chat_platform or discord_role_service
        self.clock = clock

    # ------------------------------------------------------------------
    # Starting a verification
    # ------------------------------------------------------------------

    async def start_verification(
        self, guild_id: str, member_id: str, member_name: str = ""
    ) -> VerificationStart:
        """
        Begin verification for a member of a guild.

        Members who are already verified skip the identity provider: their
        roles for this guild are resynced from current attributes instead.
        """
        existing = await self.mapping_store.get_by_member(member_id)
        if existing:
            logger.info(
                "Member already verified, resyncing roles",
                guild_id=guild_id,
                member_id=member_id,
                subject_id=existing.subject_id,
            )
            outcome = await self.resync_member_roles(guild_id, member_id)
            return VerificationStart(
                state=outcome.state,
                guild_id=guild_id,
                member_id=member_id,
                already_verified=True,
                roles_added=outcome.roles_added,
                roles_removed=outcome.roles_removed,
            )

        run = VerificationRun(guild_id=guild_id, member_id=member_id)
        session = await self.registry.create(guild_id, member_id, member_name)
        run.advance(VerificationState.AWAITING_CALLBACK, token_preview=preview(session.token))

        return VerificationStart(
            state=run.state,
            guild_id=guild_id,
            member_id=member_id,
            token=session.token,
            verify_url=settings.verify_url(session.token),
            expires_at=session.expires_at,
        )

    async def authorization_url(self, token: str) -> str:
        """
        Identity provider URL for a live session.

        Raises:
            TokenNotFoundOrExpired: no live session for ``token``
        """
        session = await self.registry.peek(token)
        if session is None:
            raise TokenNotFoundOrExpired()
        return self.identity_provider.build_authorization_url(session.provider_state)

    # ------------------------------------------------------------------
    # Completing a verification
    # ------------------------------------------------------------------

    async def handle_callback(self, provider_state: str, code: str) -> VerificationOutcome:
        """
        Entry point for the identity provider redirect.

        The code is exchanged before the session is consumed, so a provider
        failure leaves the session usable until it expires.

        Raises:
            ExternalProviderError: identity provider could not be reached or
                rejected the code
        """
        token, _, oauth_state = (provider_state or "").partition(".")
        if not token or not oauth_state or await self.registry.peek(token) is None:
            run = VerificationRun(VerificationState.AWAITING_CALLBACK)
            run.advance(VerificationState.EXPIRED, error="unknown session")
            return VerificationOutcome(state=run.state, message=EXPIRED_MESSAGE)

        identity = await self.identity_provider.exchange_code(code)
        return await self.complete_verification(
            token, oauth_state, identity.subject_id, identity.attributes
        )

    async def complete_verification(
        self,
        token: str,
        oauth_state: str,
        subject_id: str,
        attributes: Mapping[str, Any] | None = None,
    ) -> VerificationOutcome:
        """Run the callback half of the state machine for a verified identity."""
        run = VerificationRun(VerificationState.AWAITING_CALLBACK)

        try:
            session = await self.registry.consume(token)
        except TokenNotFoundOrExpired as e:
            run.advance(VerificationState.EXPIRED, error=str(e))
            return VerificationOutcome(state=run.state, message=EXPIRED_MESSAGE)

        run.guild_id, run.member_id = session.guild_id, session.member_id
        if not hmac.compare_digest(session.oauth_state, oauth_state or ""):
            run.advance(VerificationState.EXPIRED, error="oauth state mismatch")
            return self._outcome(run, session, subject_id, message=EXPIRED_MESSAGE)

        run.advance(VerificationState.RESOLVING, subject_id=subject_id)
        try:
            await self.mapping_store.upsert(session.member_id, subject_id, self.clock())
        except IdentityConflict as e:
            run.advance(
                VerificationState.CONFLICT,
                error=str(e),
                existing_member_id=e.existing_member_id,
            )
            await self._notify_conflict(session, e)
            return self._outcome(run, session, subject_id, message=CONFLICT_MESSAGE)
        except RedisStoreError as e:
            # session is already spent; the member has to start over
            run.advance(VerificationState.FAILED, error=str(e), error_type=type(e).__name__)
            return self._outcome(
                run, session, subject_id, message=UNAVAILABLE_MESSAGE, retryable=True
            )

        run.advance(VerificationState.ROLE_ASSIGNING)
        try:
            config, diff = await self._sync_roles(session.guild_id, session.member_id, attributes)
        except (RoleMutationFailure, RedisStoreError) as e:
            run.advance(VerificationState.FAILED, error=str(e), error_type=type(e).__name__)
            return self._outcome(
                run, session, subject_id, message=FAILED_MESSAGE, retryable=True, verified=True
            )

        run.advance(
            VerificationState.COMPLETED,
            roles_added=sorted(diff.to_add),
            roles_removed=sorted(diff.to_remove),
        )
        await self._notify_verified(config, session.member_id, diff)
        await self.chat_platform.send_direct_message(session.member_id, COMPLETED_MESSAGE)
        return self._outcome(
            run, session, subject_id, diff=diff, message=COMPLETED_MESSAGE, verified=True
        )

    def _outcome(
        self,
        run: VerificationRun,
        session: PendingVerification,
        subject_id: str,
        diff: RoleDiff | None = None,
        message: str = "",
        retryable: bool = False,
        verified: bool = False,
    ) -> VerificationOutcome:
        diff = diff or RoleDiff()
        return VerificationOutcome(
            state=run.state,
            guild_id=session.guild_id,
            member_id=session.member_id,
            subject_id=subject_id,
            roles_added=sorted(diff.to_add),
            roles_removed=sorted(diff.to_remove),
            message=message,
            retryable=retryable,
            verified=verified,
        )

    async def _sync_roles(
        self, guild_id: str, member_id: str, attributes: Mapping[str, Any] | None
    ) -> tuple[GuildConfig, RoleDiff]:
        """Compute and apply the role diff for a member. Returns the pruned config and diff."""
        config = await self.guild_store.load(guild_id)
        current = await self.chat_platform.get_member_roles(guild_id, member_id)
        existing = await self.chat_platform.get_guild_role_ids(guild_id)

        pruned = config.restricted_to(existing)
        stale = config.managed_roles() - pruned.managed_roles()
        if stale:
            logger.warning(
                "Configured roles no longer exist in guild",
                guild_id=guild_id,
                stale_roles=sorted(stale),
            )

        diff = compute_role_diff(pruned, attributes, current)
        await self.chat_platform.apply_role_diff(guild_id, member_id, diff)
        return pruned, diff

    # ------------------------------------------------------------------
    # Maintenance operations
    # ------------------------------------------------------------------

    async def resync_member_roles(self, guild_id: str, member_id: str) -> VerificationOutcome:
        """
        Re-apply roles for a verified member from its current attributes.

        This is the retry path after a role mutation failure.

        Raises:
            MemberNotVerified: member has no identity mapping
            ExternalProviderError: attributes could not be fetched
        """
        mapping = await self.mapping_store.get_by_member(member_id)
        if mapping is None:
            raise MemberNotVerified(f"Member {member_id} is not verified")

        attributes = await self.identity_provider.fetch_attributes(mapping.subject_id)
        try:
            _, diff = await self._sync_roles(guild_id, member_id, attributes)
        except (RoleMutationFailure, RedisStoreError) as e:
            logger.warning(
                "Role resync failed",
                guild_id=guild_id,
                member_id=member_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return VerificationOutcome(
                state=VerificationState.FAILED,
                guild_id=guild_id,
                member_id=member_id,
                subject_id=mapping.subject_id,
                message=FAILED_MESSAGE,
                retryable=True,
                verified=True,
            )

        logger.info(
            "Member roles resynced",
            guild_id=guild_id,
            member_id=member_id,
            added=sorted(diff.to_add),
            removed=sorted(diff.to_remove),
        )
        return VerificationOutcome(
            state=VerificationState.COMPLETED,
            guild_id=guild_id,
            member_id=member_id,
            subject_id=mapping.subject_id,
            roles_added=sorted(diff.to_add),
            roles_removed=sorted(diff.to_remove),
            message="Roles are up to date.",
            verified=True,
        )

    async def unverify(self, guild_id: str, member_id: str) -> UnverifyResult:
        """
        Remove a member's verification and its managed roles in the guild.

        The mapping is removed first; role removal failures are reported in
        the result rather than restoring the mapping.

        Raises:
            MemberNotVerified: member has no identity mapping
        """
        removed = await self.mapping_store.remove(member_id)
        if removed is None:
            raise MemberNotVerified(f"Member {member_id} is not verified")

        result = UnverifyResult(
            guild_id=guild_id, member_id=member_id, subject_id=removed.subject_id
        )
        try:
            config = await self.guild_store.load(guild_id)
            current = await self.chat_platform.get_member_roles(guild_id, member_id)
            diff = compute_removal_diff(config, current)
            await self.chat_platform.apply_role_diff(guild_id, member_id, diff)
        except (RoleMutationFailure, RedisStoreError) as e:
            logger.warning(
                "Could not remove roles after unverify",
                guild_id=guild_id,
                member_id=member_id,
                error=str(e),
            )
            result.roles_pending = True
            return result

        result.roles_removed = sorted(diff.to_remove)
        if config.log_channel:
            await self.chat_platform.send_log_message(
                config.log_channel,
                "User Unverified",
                member_id,
                {"Roles Removed": format_roles(diff.to_remove)},
                COLOR_UNVERIFIED,
            )
        return result

    async def member_info(self, member_id: str) -> IdentityMapping | None:
        """Identity mapping of a member, or None."""
        return await self.mapping_store.get_by_member(member_id)

    async def subject_profile(self, subject_id: str) -> SubjectProfile:
        """
        Keycloak profile of a linked subject.

        Raises:
            ExternalProviderError: profile could not be fetched
        """
        return await self.identity_provider.fetch_profile(subject_id)

    # ------------------------------------------------------------------
    # Notices
    # ------------------------------------------------------------------

    async def _notify_verified(self, config: GuildConfig, member_id: str, diff: RoleDiff) -> None:
        if not config.log_channel:
            return
        await self.chat_platform.send_log_message(
            config.log_channel,
            "User Verified",
            member_id,
            {"Roles Added": format_roles(diff.to_add)},
            COLOR_VERIFIED,
        )

    async def _notify_conflict(self, session: PendingVerification, error: IdentityConflict) -> None:
        try:
            config = await self.guild_store.load(session.guild_id)
        except RedisStoreError as e:
            logger.warning("Could not load guild config for conflict notice", error=str(e))
            return
        if not config.log_channel:
            return
        await self.chat_platform.send_log_message(
            config.log_channel,
            "Verification Conflict",
            session.member_id,
            {"Already Linked To": f"<@{error.existing_member_id}>"},
            COLOR_CONFLICT,
        )


verification_orchestrator = VerificationOrchestrator()
