"""Two-factor authentication for user accounts.

Supports:
- Email one-time codes (delivery via an application hook)
- Authenticator apps (TOTP: Google Authenticator, Authy, 1Password, ...)
- Backup codes (single-use recovery codes)
- Remembered devices (signed, time-bounded tokens)
- Organization policy (mandatory 2FA for admins or everyone)
"""

from __future__ import annotations

from .audit import InMemoryTwoFactorAuditStore, TwoFactorAuditEvent, TwoFactorEventType
from .codec import SecretCodec
from .config import (
    BackupCodeSettings,
    EmailOtpSettings,
    LockoutSettings,
    TotpSettings,
    TwoFactorSettings,
)
from .devices import DeviceTrustManager, DeviceTrustToken
from .exceptions import (
    AlreadyUsedError,
    CodecError,
    CodeExpiredError,
    ConcurrentUpdateError,
    InvalidCodeError,
    LockTimeoutError,
    MethodNotAllowedError,
    NotConfiguredError,
    PolicyViolationError,
    ResendCooldownError,
    TooManyAttemptsError,
    TwoFactorConfigurationError,
    TwoFactorError,
    VerificationError,
)
from .locking import ILockStrategy, InMemoryLockStrategy
from .models import (
    AuthenticatorSetup,
    BackupCodeInfo,
    ChallengePurpose,
    CodeDelivery,
    LoginVerification,
    SetupResult,
    TwoFactorConfig,
    TwoFactorMethod,
    TwoFactorState,
    TwoFactorStats,
    TwoFactorStatus,
    VerificationMethod,
)
from .observability import TwoFactorMetrics
from .persistence import (
    InMemoryBackupCodeStore,
    InMemoryChallengeStore,
    InMemoryPolicyStore,
    InMemoryTwoFactorConfigStore,
)
from .policy import Policy, PolicyResolver
from .ports import (
    EmailCodeContext,
    IAppSettings,
    IBackupCodeStore,
    IChallengeStore,
    IEmailDelivery,
    IPolicyStore,
    ITwoFactorAuditStore,
    ITwoFactorConfigStore,
)
from .service import AdminUserView, TwoFactorService
from .stores import AuthenticatorStore, BackupCodeStore, EmailOtpStore

__version__ = "0.1.0"

__all__: list[str] = [
    # Orchestrator
    "TwoFactorService",
    "AdminUserView",
    # Components
    "SecretCodec",
    "Policy",
    "PolicyResolver",
    "EmailOtpStore",
    "AuthenticatorStore",
    "BackupCodeStore",
    "DeviceTrustManager",
    "DeviceTrustToken",
    # Models
    "TwoFactorMethod",
    "VerificationMethod",
    "ChallengePurpose",
    "TwoFactorState",
    "TwoFactorConfig",
    "TwoFactorStatus",
    "CodeDelivery",
    "AuthenticatorSetup",
    "SetupResult",
    "LoginVerification",
    "BackupCodeInfo",
    "TwoFactorStats",
    # Settings
    "TwoFactorSettings",
    "EmailOtpSettings",
    "TotpSettings",
    "BackupCodeSettings",
    "LockoutSettings",
    # Ports
    "ITwoFactorConfigStore",
    "IChallengeStore",
    "IBackupCodeStore",
    "IPolicyStore",
    "IEmailDelivery",
    "IAppSettings",
    "ITwoFactorAuditStore",
    "EmailCodeContext",
    "ILockStrategy",
    # Adapters
    "InMemoryTwoFactorConfigStore",
    "InMemoryChallengeStore",
    "InMemoryBackupCodeStore",
    "InMemoryPolicyStore",
    "InMemoryTwoFactorAuditStore",
    "InMemoryLockStrategy",
    # Audit / metrics
    "TwoFactorAuditEvent",
    "TwoFactorEventType",
    "TwoFactorMetrics",
    # Exceptions
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
    "TwoFactorConfigurationError",
    "LockTimeoutError",
]
