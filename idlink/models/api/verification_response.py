# models/api/verification_response.py
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from idlink.models.domain.verification_domain import VerificationState


class VerifyStatusResponse(BaseModel):
    """Status of a verification link."""

    status: Literal["pending", "not_found"]
    member_name: str | None = None
    expires_at: datetime | None = None


class VerificationCallbackResponse(BaseModel):
    """Response after the identity provider redirect was processed."""

    success: bool = Field(..., description="Whether the member is now verified")
    state: VerificationState = Field(..., description="Terminal state of the verification")
    message: str = Field(..., description="User-friendly status message")
    retryable: bool = Field(default=False, description="Whether retrying can succeed")
    roles_added: list[str] = Field(default_factory=list)
    roles_removed: list[str] = Field(default_factory=list)


class MemberInfoResponse(BaseModel):
    """Verification details for one member."""

    member_id: str
    verified: bool
    subject_id: str | None = None
    verified_at: datetime | None = None
    username: str | None = None
    full_name: str | None = None
    email: str | None = None


class ErrorDetail(BaseModel):
    """Body of error responses raised from verification errors."""

    error_code: str
    message: str
    retryable: bool = False
