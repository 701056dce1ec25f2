# models/api/verification_request.py
from pydantic import BaseModel, Field

from idlink.models.domain.verification_domain import RoleMode


class StartVerificationRequest(BaseModel):
    """Request from the chat bot when a member runs /verify."""

    guild_id: str = Field(..., min_length=1, description="Guild the member is verifying in")
    member_id: str = Field(..., min_length=1, description="Chat platform member id")
    member_name: str = Field(default="", max_length=100, description="Display name, informational")


class RoleModeRequest(BaseModel):
    """Request for switching a guild's role mode."""

    mode: RoleMode
    custom_levels: list[str] = Field(
        default_factory=list, description="Enabled level values, custom mode only"
    )
    custom_classes: list[str] = Field(
        default_factory=list, description="Enabled class values, custom mode only"
    )


class RoleAssignmentRequest(BaseModel):
    """Set (or clear with null) the role tied to a configuration slot."""

    role_id: str | None = Field(default=None, description="Role id, null clears the mapping")


class LogChannelRequest(BaseModel):
    channel_id: str | None = Field(default=None, description="Channel id, null disables notices")
