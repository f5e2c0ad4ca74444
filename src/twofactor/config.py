"""Two-factor settings.

Immutable values injected at construction time. The library never reads
environment variables; the application builds these from its own config.
"""

from __future__ import annotations

import string
from dataclasses import dataclass, field

from .exceptions import TwoFactorConfigurationError

# Uppercase letters and digits without the ambiguous 0, O, 1, I.
BACKUP_CODE_ALPHABET = "".join(
    c for c in string.ascii_uppercase + string.digits if c not in "0O1I"
)


@dataclass(frozen=True)
class EmailOtpSettings:
    """Email one-time code settings.

    Attributes:
        code_length: Number of digits (6-8).
        ttl_seconds: Lifetime of an issued code.
        max_attempts: Wrong guesses allowed before the code is invalidated.
        resend_cooldown_seconds: Minimum gap between two issued codes.
    """

    code_length: int = 6
    ttl_seconds: int = 600  # 10 minutes
    max_attempts: int = 5
    resend_cooldown_seconds: int = 60

    def __post_init__(self) -> None:
        if not 6 <= self.code_length <= 8:
            raise TwoFactorConfigurationError("code_length must be between 6 and 8")
        if self.ttl_seconds <= 0:
            raise TwoFactorConfigurationError("ttl_seconds must be positive")
        if self.max_attempts < 1:
            raise TwoFactorConfigurationError("max_attempts must be at least 1")
        if self.resend_cooldown_seconds < 0:
            raise TwoFactorConfigurationError(
                "resend_cooldown_seconds cannot be negative"
            )


@dataclass(frozen=True)
class TotpSettings:
    """Authenticator-app (RFC 6238) settings.

    Attributes:
        digits: Code length.
        interval: Time step in seconds.
        valid_window: Steps accepted either side of now for clock drift.
        default_issuer: Issuer label used when no app name is available.
    """

    digits: int = 6
    interval: int = 30
    valid_window: int = 1
    default_issuer: str = "ProsumeAI"

    def __post_init__(self) -> None:
        if self.digits not in (6, 7, 8):
            raise TwoFactorConfigurationError("digits must be 6, 7 or 8")
        if self.interval <= 0:
            raise TwoFactorConfigurationError("interval must be positive")
        if self.valid_window < 0:
            raise TwoFactorConfigurationError("valid_window cannot be negative")


@dataclass(frozen=True)
class BackupCodeSettings:
    """Backup code batch settings.

    Attributes:
        count: Codes per batch.
        length: Characters per code, excluding separators.
        group_size: Characters between dashes in the displayed form.
    """

    count: int = 10
    length: int = 10
    group_size: int = 5

    def __post_init__(self) -> None:
        if self.count < 1:
            raise TwoFactorConfigurationError("count must be at least 1")
        if self.length < 8:
            raise TwoFactorConfigurationError("length must be at least 8")
        if self.group_size < 1:
            raise TwoFactorConfigurationError("group_size must be at least 1")


@dataclass(frozen=True)
class LockoutSettings:
    """Account lockout after repeated failed code checks."""

    max_failed_attempts: int = 10
    lockout_seconds: int = 900  # 15 minutes

    def __post_init__(self) -> None:
        if self.max_failed_attempts < 1:
            raise TwoFactorConfigurationError(
                "max_failed_attempts must be at least 1"
            )
        if self.lockout_seconds <= 0:
            raise TwoFactorConfigurationError("lockout_seconds must be positive")


@dataclass(frozen=True)
class TwoFactorSettings:
    """Top-level settings for the two-factor subsystem.

    Attributes:
        hash_rounds: bcrypt cost factor for stored codes (4-31).
    """

    email_otp: EmailOtpSettings = field(default_factory=EmailOtpSettings)
    totp: TotpSettings = field(default_factory=TotpSettings)
    backup_codes: BackupCodeSettings = field(default_factory=BackupCodeSettings)
    lockout: LockoutSettings = field(default_factory=LockoutSettings)
    hash_rounds: int = 10

    def __post_init__(self) -> None:
        if not 4 <= self.hash_rounds <= 31:
            raise TwoFactorConfigurationError("hash_rounds must be between 4 and 31")


__all__: list[str] = [
    "BACKUP_CODE_ALPHABET",
    "EmailOtpSettings",
    "TotpSettings",
    "BackupCodeSettings",
    "LockoutSettings",
    "TwoFactorSettings",
]
