# models/domain/verification_domain.py
"""
Domain models for member verification.

Covers guild role configuration, the member <-> subject identity mapping,
pending verification sessions and the verification state machine.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RoleMode(StrEnum):
    """Guild policy selecting which attribute family drives role assignment."""

    NONE = "none"
    LEVELS = "levels"
    CLASSES = "classes"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: str | None) -> "RoleMode":
        """Unknown or missing stored values fall back to ``none``."""
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.NONE


class GuildConfig(BaseModel):
    """Role assignment configuration for one guild."""

    guild_id: str
    role_mode: RoleMode = RoleMode.NONE
    verified_role: str | None = None
    level_roles: dict[str, str] = Field(default_factory=dict)
    class_roles: dict[str, str] = Field(default_factory=dict)
    custom_levels: set[str] = Field(default_factory=set)
    custom_classes: set[str] = Field(default_factory=set)
    log_channel: str | None = None

    def managed_roles(self) -> set[str]:
        """Every role id the role engine is responsible for in this guild."""
        roles = set(self.level_roles.values()) | set(self.class_roles.values())
        if self.verified_role:
            roles.add(self.verified_role)
        return roles

    def assigns_level_roles(self) -> bool:
        return self.role_mode in (RoleMode.LEVELS, RoleMode.CUSTOM)

    def assigns_class_roles(self) -> bool:
        return self.role_mode in (RoleMode.CLASSES, RoleMode.CUSTOM)

    def restricted_to(self, existing_role_ids: set[str]) -> "GuildConfig":
        """Copy of this config without roles that no longer exist in the guild."""
        verified = self.verified_role if self.verified_role in existing_role_ids else None
        return self.model_copy(
            update={
                "verified_role": verified,
                "level_roles": {
                    name: role for name, role in self.level_roles.items() if role in existing_role_ids
                },
                "class_roles": {
                    name: role for name, role in self.class_roles.items() if role in existing_role_ids
                },
            }
        )


class IdentityMapping(BaseModel):
    """Link between a chat platform member and an identity provider subject."""

    member_id: str
    subject_id: str
    verified_at: datetime

    @property
    def verified_at_timestamp(self) -> int:
        return int(self.verified_at.timestamp())


class PendingVerification(BaseModel):
    """Short-lived verification session, consumed at most once."""

    model_config = ConfigDict(frozen=True)

    token: str
    guild_id: str
    member_id: str
    member_name: str = ""
    oauth_state: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        current = now or datetime.now(UTC)
        return current >= self.expires_at

    @property
    def provider_state(self) -> str:
        """Value sent as the OAuth ``state`` parameter to the identity provider."""
        return f"{self.token}.{self.oauth_state}"


class VerifiedIdentity(BaseModel):
    """Identity provider answer: who the member is and what is vouched for."""

    subject_id: str
    attributes: dict[str, Any] = Field(default_factory=dict)


class SubjectProfile(BaseModel):
    """Display details of a Keycloak user."""

    subject_id: str
    username: str | None = None
    full_name: str | None = None
    email: str | None = None


class RoleDiff(BaseModel):
    """Roles to add and remove for one member in one guild."""

    model_config = ConfigDict(frozen=True)

    to_add: frozenset[str] = frozenset()
    to_remove: frozenset[str] = frozenset()

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


class VerificationState(StrEnum):
    STARTED = "started"
    AWAITING_CALLBACK = "awaiting_callback"
    RESOLVING = "resolving"
    ROLE_ASSIGNING = "role_assigning"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CONFLICT = "conflict"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        VerificationState.COMPLETED,
        VerificationState.EXPIRED,
        VerificationState.CONFLICT,
        VerificationState.FAILED,
    }
)

ALLOWED_TRANSITIONS: dict[VerificationState, frozenset[VerificationState]] = {
    VerificationState.STARTED: frozenset({VerificationState.AWAITING_CALLBACK}),
    VerificationState.AWAITING_CALLBACK: frozenset(
        {VerificationState.RESOLVING, VerificationState.EXPIRED}
    ),
    VerificationState.RESOLVING: frozenset(
        {VerificationState.ROLE_ASSIGNING, VerificationState.CONFLICT, VerificationState.FAILED}
    ),
    VerificationState.ROLE_ASSIGNING: frozenset(
        {VerificationState.COMPLETED, VerificationState.FAILED}
    ),
    VerificationState.COMPLETED: frozenset(),
    VerificationState.EXPIRED: frozenset(),
    VerificationState.CONFLICT: frozenset(),
    VerificationState.FAILED: frozenset(),
}


class VerificationStart(BaseModel):
    """Result of a member asking to verify in a guild."""

    state: VerificationState
    guild_id: str
    member_id: str
    already_verified: bool = False
    token: str | None = None
    verify_url: str | None = None
    expires_at: datetime | None = None
    roles_added: list[str] = Field(default_factory=list)
    roles_removed: list[str] = Field(default_factory=list)


class VerificationOutcome(BaseModel):
    """Terminal result of one verification callback."""

    state: VerificationState
    guild_id: str | None = None
    member_id: str | None = None
    subject_id: str | None = None
    roles_added: list[str] = Field(default_factory=list)
    roles_removed: list[str] = Field(default_factory=list)
    message: str = ""
    retryable: bool = False
    # identity mapping committed; false when the run failed before linking
    verified: bool = False

    @property
    def succeeded(self) -> bool:
        return self.state == VerificationState.COMPLETED


class UnverifyResult(BaseModel):
    """Result of removing a member's verification."""

    guild_id: str
    member_id: str
    subject_id: str
    roles_removed: list[str] = Field(default_factory=list)
    roles_pending: bool = False
