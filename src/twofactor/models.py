"""Two-factor data model.

Records persisted per account (TwoFactorConfig, PendingChallenge, HashedCode)
and the immutable results returned by the orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4


def utcnow() -> datetime:
    """Current time in UTC (default clock)."""
    return datetime.now(timezone.utc)


class TwoFactorMethod(str, Enum):
    """Methods an account can enable as its primary second factor."""

    EMAIL = "EMAIL"
    AUTHENTICATOR_APP = "AUTHENTICATOR_APP"


class VerificationMethod(str, Enum):
    """Methods accepted on the login verification path."""

    EMAIL = "EMAIL"
    AUTHENTICATOR_APP = "AUTHENTICATOR_APP"
    BACKUP_CODE = "BACKUP_CODE"


class ChallengePurpose(str, Enum):
    """What an emailed one-time code is for."""

    EMAIL_SETUP = "EMAIL_SETUP"
    EMAIL_LOGIN = "EMAIL_LOGIN"


class TwoFactorState(str, Enum):
    """Per-account state machine position."""

    DISABLED = "DISABLED"
    PENDING_SETUP = "PENDING_SETUP"
    ENABLED = "ENABLED"


def resolve_state(
    is_enabled: bool,
    enabled_method: TwoFactorMethod | None,
    pending_method: TwoFactorMethod | None,
) -> tuple[TwoFactorState, TwoFactorMethod | None]:
    """State machine position and effective method for a config's flags."""
    if is_enabled and enabled_method is not None:
        return TwoFactorState.ENABLED, enabled_method
    if pending_method is not None:
        return TwoFactorState.PENDING_SETUP, pending_method
    return TwoFactorState.DISABLED, None


@dataclass
class TwoFactorConfig:
    """Per-account two-factor configuration.

    Created lazily on the first setup call and never hard-deleted:
    disabling zeroes the secret-bearing fields but keeps the row.

    Attributes:
        user_id: Owning account.
        enabled_method: Active method once setup is confirmed.
        pending_method: Method being set up but not yet confirmed.
        is_enabled: Whether the account must pass a second factor.
        totp_secret_encrypted: Active authenticator seed (encrypted).
        pending_totp_secret_encrypted: Seed awaiting confirmation (encrypted).
        last_totp_step: Last accepted TOTP time step (replay guard).
        email: Address email codes are sent to.
        failed_attempts: Consecutive failed code checks.
        locked_until: End of the current lockout window.
        version: Optimistic concurrency counter, bumped on every save.
    """

    user_id: str
    enabled_method: TwoFactorMethod | None = None
    pending_method: TwoFactorMethod | None = None
    is_enabled: bool = False
    totp_secret_encrypted: bytes | None = None
    pending_totp_secret_encrypted: bytes | None = None
    last_totp_step: int | None = None
    email: str | None = None
    failed_attempts: int = 0
    locked_until: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0

    @property
    def state(self) -> TwoFactorState:
        state, _ = resolve_state(
            self.is_enabled, self.enabled_method, self.pending_method
        )
        return state

    @property
    def method(self) -> TwoFactorMethod | None:
        """The enabled method, or the pending one while in setup."""
        return self.enabled_method or self.pending_method

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def clear_secrets(self) -> None:
        """Drop every method-specific secret and return to Disabled.

        The lockout fields survive, so starting a new setup does not lift an
        active lockout.
        """
        self.enabled_method = None
        self.pending_method = None
        self.is_enabled = False
        self.totp_secret_encrypted = None
        self.pending_totp_secret_encrypted = None
        self.last_totp_step = None
        self.email = None

    def reset(self) -> None:
        """Zero the record: secrets and lockout state."""
        self.clear_secrets()
        self.failed_attempts = 0
        self.locked_until = None

    def copy(self) -> TwoFactorConfig:
        return replace(self)


@dataclass(frozen=True)
class PendingChallenge:
    """A short-lived emailed code awaiting confirmation.

    Only the most recent challenge per (user, purpose) is valid.
    """

    user_id: str
    purpose: ChallengePurpose
    code_hash: str
    expires_at: datetime
    attempts_remaining: int
    created_at: datetime = field(default_factory=utcnow)
    challenge_id: str = field(default_factory=lambda: uuid4().hex)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class HashedCode:
    """A stored backup code. ``used`` flips false to true exactly once."""

    user_id: str
    hash: str
    used: bool = False
    used_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    code_id: str = field(default_factory=lambda: uuid4().hex)


# ═══════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class TwoFactorStatus:
    """Read-only view of an account's two-factor state.

    Attributes:
        method: Enabled method, or pending method during setup.
        enabled: Whether a second factor is currently enforced.
        required: Whether policy mandates 2FA for this account.
        setup_required: ``required`` and not yet ``enabled``.
    """

    user_id: str
    state: TwoFactorState
    method: TwoFactorMethod | None
    enabled: bool
    required: bool
    setup_required: bool
    pending_method: TwoFactorMethod | None = None
    email: str | None = None
    backup_codes_remaining: int = 0
    locked_until: datetime | None = None


@dataclass(frozen=True)
class IssuedChallenge:
    """A freshly issued email challenge plus the plaintext to deliver."""

    challenge: PendingChallenge
    code: str = field(repr=False)


@dataclass(frozen=True)
class CodeDelivery:
    """Outcome of sending an email code.

    ``delivered=False`` means the code exists and is valid but the email
    collaborator reported a failure; the caller should offer a resend.
    """

    purpose: ChallengePurpose
    destination: str
    expires_at: datetime
    delivered: bool


@dataclass(frozen=True)
class AuthenticatorSetup:
    """Provisioning data shown once while setting up an authenticator app.

    Attributes:
        secret: Base32 seed.
        otp_uri: ``otpauth://`` URI for QR rendering.
        manual_key: Seed in groups of four for manual entry.
    """

    secret: str = field(repr=False)
    otp_uri: str = field(repr=False)
    manual_key: str = field(repr=False)


@dataclass(frozen=True)
class SetupResult:
    """Returned by a successful setup confirmation.

    ``backup_codes`` holds plaintext that is never retrievable again.
    """

    method: TwoFactorMethod
    backup_codes: tuple[str, ...] = field(repr=False)


@dataclass(frozen=True)
class LoginVerification:
    """Returned by a successful login verification.

    Attributes:
        method: Method that satisfied the check, None for a trusted device.
        device_trusted: True when a remember token let the device skip the code.
        remember_token: Newly minted remember token, if one was requested.
        remember_expires_at: Expiry of ``remember_token``.
        backup_codes_remaining: Unused backup codes left after this login.
    """

    method: VerificationMethod | None
    device_trusted: bool = False
    remember_token: str | None = field(default=None, repr=False)
    remember_expires_at: datetime | None = None
    backup_codes_remaining: int | None = None


@dataclass(frozen=True)
class BackupCodeInfo:
    """Backup code metadata. Plaintext is never exposed after issuance."""

    used: bool
    used_at: datetime | None
    created_at: datetime


def _percentage(part: int | None, total: int | None) -> int | None:
    if part is None or total is None:
        return None
    if total == 0:
        return 0
    # Rounded half up
    return (200 * part + total) // (2 * total)


@dataclass(frozen=True)
class TwoFactorStats:
    """Adoption figures for the administration console.

    Attributes:
        enabled: Accounts with a confirmed method.
        pending: Accounts part-way through setup.
        by_method: Enabled accounts per method.
        total_users: Accounts known to the application, when supplied.
        admins: Administrator accounts, when supplied.
        admins_enabled: Administrators with two-factor enabled.
    """

    enabled: int
    pending: int
    by_method: dict[TwoFactorMethod, int]
    total_users: int | None = None
    admins: int | None = None
    admins_enabled: int | None = None

    @property
    def enabled_percentage(self) -> int | None:
        return _percentage(self.enabled, self.total_users)

    @property
    def admin_percentage(self) -> int | None:
        return _percentage(self.admins_enabled, self.admins)


__all__: list[str] = [
    "utcnow",
    "resolve_state",
    "TwoFactorMethod",
    "VerificationMethod",
    "ChallengePurpose",
    "TwoFactorState",
    "TwoFactorConfig",
    "PendingChallenge",
    "HashedCode",
    "TwoFactorStatus",
    "IssuedChallenge",
    "CodeDelivery",
    "AuthenticatorSetup",
    "SetupResult",
    "LoginVerification",
    "BackupCodeInfo",
    "TwoFactorStats",
]
