"""Two-factor authentication exceptions.

All errors inherit from TwoFactorError. User-facing verification failures
inherit from VerificationError and carry a stable ``error_code`` plus a
``public_message`` safe to show to the account owner.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime

_INVALID_OR_EXPIRED = "Invalid or expired verification code"


class TwoFactorError(Exception):
    """Root exception for the two-factor subsystem."""

    error_code: str = "TWO_FACTOR_ERROR"


# ═══════════════════════════════════════════════════════════════
# VERIFICATION ERRORS
# ═══════════════════════════════════════════════════════════════


class VerificationError(TwoFactorError):
    """Base class for failed code checks.

    Attributes:
        public_message: Message safe to display. Wrong and expired codes
            share the same message so the caller cannot tell them apart.
    """

    error_code = "VERIFICATION_FAILED"
    public_message = _INVALID_OR_EXPIRED

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)


class InvalidCodeError(VerificationError):
    """Raised when a submitted code does not match.

    Attributes:
        remaining_attempts: Attempts left on the current email challenge,
            when one applies.
    """

    error_code = "INVALID_CODE"

    def __init__(
        self,
        message: str | None = None,
        *,
        remaining_attempts: int | None = None,
    ) -> None:
        super().__init__(message)
        self.remaining_attempts = remaining_attempts


class CodeExpiredError(VerificationError):
    """Raised when the pending challenge has passed its expiry."""

    error_code = "CODE_EXPIRED"


class AlreadyUsedError(VerificationError):
    """Raised when a single-use credential was already consumed."""

    error_code = "ALREADY_USED"
    public_message = "This code has already been used"


class TooManyAttemptsError(VerificationError):
    """Raised when attempts are exhausted.

    Attributes:
        retry_after: Seconds until verification may be retried, or None when
            a new code has to be requested instead.
        locked_until: End of the account lockout window, if any.
    """

    error_code = "TOO_MANY_ATTEMPTS"
    public_message = "Too many failed attempts"

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after: int | None = None,
        locked_until: datetime | None = None,
    ) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.locked_until = locked_until


# ═══════════════════════════════════════════════════════════════
# STATE / POLICY ERRORS
# ═══════════════════════════════════════════════════════════════


class NotConfiguredError(TwoFactorError):
    """Raised when an operation needs a method the account has not set up."""

    error_code = "NOT_CONFIGURED"


class PolicyViolationError(TwoFactorError):
    """Raised when disabling 2FA is blocked by organization policy."""

    error_code = "POLICY_VIOLATION"

    def __init__(
        self,
        message: str = (
            "Two-factor authentication is required by your organization's policy"
        ),
    ) -> None:
        super().__init__(message)


class MethodNotAllowedError(TwoFactorError):
    """Raised when policy does not allow the requested method."""

    error_code = "METHOD_NOT_ALLOWED"


class ResendCooldownError(TwoFactorError):
    """Raised when a new email code is requested too soon.

    Attributes:
        retry_after: Seconds until a new code may be requested.
    """

    error_code = "RESEND_COOLDOWN"

    def __init__(self, retry_after: int) -> None:
        super().__init__(
            f"Please wait {retry_after} seconds before requesting a new code"
        )
        self.retry_after = retry_after


# ═══════════════════════════════════════════════════════════════
# INFRASTRUCTURE ERRORS
# ═══════════════════════════════════════════════════════════════


class CodecError(TwoFactorError):
    """Raised when secret encryption or decryption fails.

    Signals a configuration problem (missing or wrong key, corrupted
    ciphertext). Not meant to be shown to end users.
    """

    error_code = "CODEC_ERROR"


class ConcurrentUpdateError(TwoFactorError):
    """Raised when a config record changed since it was loaded."""

    error_code = "CONCURRENT_UPDATE"

    def __init__(self, user_id: str, expected_version: int) -> None:
        self.user_id = user_id
        self.expected_version = expected_version
        super().__init__(
            f"Two-factor config for user {user_id!r} was modified concurrently "
            f"(expected version {expected_version})"
        )


class LockTimeoutError(TwoFactorError):
    """Raised when an account lock could not be acquired in time."""

    error_code = "LOCK_TIMEOUT"


class TwoFactorConfigurationError(TwoFactorError, ValueError):
    """Raised when settings or policy values are out of range."""

    error_code = "CONFIGURATION_ERROR"


__all__: list[str] = [
    "TwoFactorError",
    "VerificationError",
    "InvalidCodeError",
    "CodeExpiredError",
    "AlreadyUsedError",
    "TooManyAttemptsError",
    "NotConfiguredError",
    "PolicyViolationError",
    "MethodNotAllowedError",
    "ResendCooldownError",
    "CodecError",
    "ConcurrentUpdateError",
    "LockTimeoutError",
    "TwoFactorConfigurationError",
]
