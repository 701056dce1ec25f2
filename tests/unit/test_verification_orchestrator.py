import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from idlink.models.domain.errors import (
    ExternalProviderError,
    InvalidTransition,
    MemberNotVerified,
    RoleMutationFailure,
    TokenNotFoundOrExpired,
)
from idlink.models.domain.verification_domain import RoleDiff, VerificationState
from idlink.services.redis_client import RedisStoreError
from idlink.services.verification_orchestrator import (
    COMPLETED_MESSAGE,
    UNAVAILABLE_MESSAGE,
    VerificationRun,
)

GUILD = "guild-1"


@pytest.mark.asyncio
async def test_start_creates_session_and_link(orchestrator, registry):
    start = await orchestrator.start_verification(GUILD, "member-a", "alice")

    assert start.state == VerificationState.AWAITING_CALLBACK
    assert start.already_verified is False
    assert start.verify_url.endswith(f"/verify?state={start.token}")
    assert (await registry.peek(start.token)).member_name == "alice"


@pytest.mark.asyncio
async def test_successful_verification_assigns_roles(orchestrator, registry, mapping_store, platform):
    start = await orchestrator.start_verification(GUILD, "member-a")
    session = await registry.peek(start.token)

    outcome = await orchestrator.complete_verification(
        start.token, session.oauth_state, "subject-1", {"level": ["Graduate"]}
    )

    assert outcome.state == VerificationState.COMPLETED
    assert outcome.succeeded
    assert outcome.roles_added == ["role_777", "role_verified"]
    assert outcome.message == COMPLETED_MESSAGE
    assert outcome.verified is True
    assert (await mapping_store.get_by_member("member-a")).subject_id == "subject-1"
    assert await registry.peek(start.token) is None

    platform.apply_role_diff.assert_awaited_once_with(
        GUILD, "member-a", RoleDiff(to_add=frozenset({"role_777", "role_verified"}))
    )
    platform.send_log_message.assert_awaited_once()
    assert platform.send_log_message.await_args.args[1] == "User Verified"
    platform.send_direct_message.assert_awaited_once_with("member-a", COMPLETED_MESSAGE)


@pytest.mark.asyncio
async def test_expired_session_creates_no_mapping(orchestrator, registry, mapping_store, platform, clock, now):
    start = await orchestrator.start_verification(GUILD, "member-a")
    session = await registry.peek(start.token)

    clock.now = now + timedelta(minutes=11)
    outcome = await orchestrator.complete_verification(start.token, session.oauth_state, "subject-1")

    assert outcome.state == VerificationState.EXPIRED
    assert await mapping_store.get_by_member("member-a") is None
    platform.apply_role_diff.assert_not_awaited()


@pytest.mark.asyncio
async def test_oauth_state_mismatch_is_treated_as_expired(orchestrator, registry, mapping_store):
    start = await orchestrator.start_verification(GUILD, "member-a")

    outcome = await orchestrator.complete_verification(start.token, "forged", "subject-1")

    assert outcome.state == VerificationState.EXPIRED
    assert await mapping_store.get_by_member("member-a") is None
    assert await registry.peek(start.token) is None


@pytest.mark.asyncio
async def test_conflict_keeps_first_members_mapping(orchestrator, registry, mapping_store, platform):
    first = await orchestrator.start_verification(GUILD, "member-a")
    first_session = await registry.peek(first.token)
    await orchestrator.complete_verification(first.token, first_session.oauth_state, "subject-1")
    platform.apply_role_diff.reset_mock()
    platform.send_log_message.reset_mock()

    second = await orchestrator.start_verification(GUILD, "member-b")
    second_session = await registry.peek(second.token)
    outcome = await orchestrator.complete_verification(
        second.token, second_session.oauth_state, "subject-1"
    )

    assert outcome.state == VerificationState.CONFLICT
    assert (await mapping_store.get_by_subject("subject-1")).member_id == "member-a"
    assert await mapping_store.get_by_member("member-b") is None
    platform.apply_role_diff.assert_not_awaited()
    assert platform.send_log_message.await_args.args[1] == "Verification Conflict"


@pytest.mark.asyncio
async def test_role_failure_keeps_mapping(orchestrator, registry, mapping_store, platform):
    platform.apply_role_diff.side_effect = RoleMutationFailure("forbidden", status_code=403)
    start = await orchestrator.start_verification(GUILD, "member-a")
    session = await registry.peek(start.token)

    outcome = await orchestrator.complete_verification(
        start.token, session.oauth_state, "subject-1", {"level": ["Graduate"]}
    )

    assert outcome.state == VerificationState.FAILED
    assert outcome.retryable is True
    assert (await mapping_store.get_by_member("member-a")).subject_id == "subject-1"
    assert outcome.verified is True
    platform.send_direct_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_mapping_write_failure_ends_run_unverified(
    orchestrator, registry, mapping_store, platform, fake_redis, monkeypatch
):
    start = await orchestrator.start_verification(GUILD, "member-a")
    session = await registry.peek(start.token)
    monkeypatch.setattr(
        fake_redis, "transaction", AsyncMock(side_effect=RedisStoreError("redis unavailable"))
    )

    outcome = await orchestrator.complete_verification(start.token, session.oauth_state, "subject-1")

    assert outcome.state == VerificationState.FAILED
    assert outcome.verified is False
    assert outcome.retryable is True
    assert outcome.message == UNAVAILABLE_MESSAGE
    assert await mapping_store.get_by_member("member-a") is None
    assert await registry.peek(start.token) is None
    platform.apply_role_diff.assert_not_awaited()
    platform.send_direct_message.assert_not_awaited()

@pytest.mark.asyncio
async def test_roles_missing_from_guild_are_skipped(orchestrator, registry, platform):
    platform.get_guild_role_ids.return_value = {"role_verified"}
    start = await orchestrator.start_verification(GUILD, "member-a")
    session = await registry.peek(start.token)

    outcome = await orchestrator.complete_verification(
        start.token, session.oauth_state, "subject-1", {"level": ["Graduate"]}
    )

    assert outcome.state == VerificationState.COMPLETED
    assert outcome.roles_added == ["role_verified"]


@pytest.mark.asyncio
async def test_concurrent_callbacks_complete_once(orchestrator, registry):
    start = await orchestrator.start_verification(GUILD, "member-a")
    session = await registry.peek(start.token)

    outcomes = await asyncio.gather(
        orchestrator.complete_verification(start.token, session.oauth_state, "subject-1"),
        orchestrator.complete_verification(start.token, session.oauth_state, "subject-1"),
    )

    states = sorted(outcome.state.value for outcome in outcomes)
    assert states == ["completed", "expired"]


@pytest.mark.asyncio
async def test_handle_callback_exchanges_code(orchestrator, registry, provider, mapping_store):
    start = await orchestrator.start_verification(GUILD, "member-a")
    session = await registry.peek(start.token)

    outcome = await orchestrator.handle_callback(session.provider_state, "auth-code")

    provider.exchange_code.assert_awaited_once_with("auth-code")
    assert outcome.state == VerificationState.COMPLETED
    assert outcome.roles_added == ["role_777", "role_verified"]
    assert (await mapping_store.get_by_member("member-a")).subject_id == "subject-1"


@pytest.mark.asyncio
async def test_handle_callback_unknown_session_skips_provider(orchestrator, provider):
    outcome = await orchestrator.handle_callback("unknown.state", "auth-code")

    assert outcome.state == VerificationState.EXPIRED
    provider.exchange_code.assert_not_awaited()

    malformed = await orchestrator.handle_callback("no-separator", "auth-code")
    assert malformed.state == VerificationState.EXPIRED


@pytest.mark.asyncio
async def test_provider_error_leaves_session_usable(orchestrator, registry, provider):
    provider.exchange_code.side_effect = ExternalProviderError("keycloak down")
    start = await orchestrator.start_verification(GUILD, "member-a")
    session = await registry.peek(start.token)

    with pytest.raises(ExternalProviderError):
        await orchestrator.handle_callback(session.provider_state, "auth-code")

    assert await registry.peek(start.token) is not None


@pytest.mark.asyncio
async def test_authorization_url(orchestrator, registry, provider):
    start = await orchestrator.start_verification(GUILD, "member-a")
    session = await registry.peek(start.token)

    url = await orchestrator.authorization_url(start.token)

    assert url.endswith(session.provider_state)
    with pytest.raises(TokenNotFoundOrExpired):
        await orchestrator.authorization_url("missing")


@pytest.mark.asyncio
async def test_already_verified_member_is_resynced(orchestrator, mapping_store, provider, fake_redis):
    await mapping_store.upsert("member-a", "subject-1")
    keys_before = set(fake_redis.store)

    start = await orchestrator.start_verification(GUILD, "member-a")

    assert start.already_verified is True
    assert start.token is None
    assert start.state == VerificationState.COMPLETED
    assert start.roles_added == ["role_777", "role_verified"]
    provider.fetch_attributes.assert_awaited_once_with("subject-1")
    assert not any(key.startswith("verify:") for key in set(fake_redis.store) - keys_before)


@pytest.mark.asyncio
async def test_resync_requires_mapping(orchestrator):
    with pytest.raises(MemberNotVerified):
        await orchestrator.resync_member_roles(GUILD, "member-x")


@pytest.mark.asyncio
async def test_resync_reports_role_failure(orchestrator, mapping_store, platform):
    await mapping_store.upsert("member-a", "subject-1")
    platform.apply_role_diff.side_effect = RoleMutationFailure("rate limited", status_code=429)

    outcome = await orchestrator.resync_member_roles(GUILD, "member-a")

    assert outcome.state == VerificationState.FAILED
    assert outcome.retryable is True


@pytest.mark.asyncio
async def test_unverify_removes_mapping_and_managed_roles(orchestrator, mapping_store, platform):
    await mapping_store.upsert("member-a", "subject-1")
    platform.get_member_roles.return_value = {"role_verified", "role_777", "role_moderator"}

    result = await orchestrator.unverify(GUILD, "member-a")

    assert result.subject_id == "subject-1"
    assert result.roles_removed == ["role_777", "role_verified"]
    assert result.roles_pending is False
    assert await mapping_store.get_by_subject("subject-1") is None
    assert platform.send_log_message.await_args.args[1] == "User Unverified"


@pytest.mark.asyncio
async def test_unverify_role_failure_still_removes_mapping(orchestrator, mapping_store, platform):
    await mapping_store.upsert("member-a", "subject-1")
    platform.get_member_roles.side_effect = RoleMutationFailure("member left", status_code=404)

    result = await orchestrator.unverify(GUILD, "member-a")

    assert result.roles_pending is True
    assert await mapping_store.get_by_member("member-a") is None


@pytest.mark.asyncio
async def test_unverify_unknown_member(orchestrator):
    with pytest.raises(MemberNotVerified):
        await orchestrator.unverify(GUILD, "member-x")


def test_state_machine_rejects_illegal_transitions():
    run = VerificationRun()
    run.advance(VerificationState.AWAITING_CALLBACK)

    with pytest.raises(InvalidTransition):
        run.advance(VerificationState.COMPLETED)

    run.advance(VerificationState.RESOLVING)
    run.advance(VerificationState.CONFLICT)
    assert run.state.is_terminal

    with pytest.raises(InvalidTransition):
        run.advance(VerificationState.ROLE_ASSIGNING)

    unsaved = VerificationRun(VerificationState.RESOLVING)
    unsaved.advance(VerificationState.FAILED)
    assert unsaved.state.is_terminal
