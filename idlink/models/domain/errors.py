# models/domain/errors.py
"""
Error taxonomy for the verification flow.

Each error carries an ``error_code`` so routes can map it to a response
without string matching.
"""


class VerificationError(Exception):
    """Base exception for verification-related errors."""

    error_code = "verification_error"
    retryable = False

    def __init__(self, message: str, error_code: str | None = None):
        super().__init__(message)
        if error_code:
            self.error_code = error_code


class TokenNotFoundOrExpired(VerificationError):
    """Session token never existed, was already consumed, or outlived its TTL."""

    error_code = "expired"

    def __init__(self, message: str = "Verification expired, please restart verification"):
        super().__init__(message)


class IdentityConflict(VerificationError):
    """Subject is already linked to a different chat platform account."""

    error_code = "already_linked"

    def __init__(self, subject_id: str, existing_member_id: str, requested_member_id: str):
        super().__init__(
            f"Subject {subject_id} is already linked to member {existing_member_id}"
        )
        self.subject_id = subject_id
        self.existing_member_id = existing_member_id
        self.requested_member_id = requested_member_id


class RoleLookupMissing(VerificationError):
    """Configuration names a level or class that does not exist."""

    error_code = "unknown_attribute_value"


class GuildConfigError(VerificationError):
    """Configuration refers to something that does not belong to the guild."""

    error_code = "invalid_guild_config"


class ExternalProviderError(VerificationError):
    """Network or authentication failure talking to the identity provider."""

    error_code = "provider_error"
    retryable = True

    def __init__(
        self, message: str, error_code: str | None = None, response_data: dict | None = None
    ):
        super().__init__(message, error_code)
        self.response_data = response_data or {}


class RoleMutationFailure(VerificationError):
    """Chat platform rejected or failed a role change."""

    error_code = "role_mutation_failed"
    retryable = True

    def __init__(self, message: str, status_code: int | None = None, role_id: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.role_id = role_id


class InvalidTransition(VerificationError):
    """State machine was asked to make a transition it does not allow."""

    error_code = "invalid_transition"


class MemberNotVerified(VerificationError):
    """Member has no identity mapping."""

    error_code = "not_verified"
