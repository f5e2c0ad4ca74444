"""Two-factor orchestrator.

Owns the per-account state machine::

    Disabled -> PendingSetup(method) -> Enabled(method)
    Enabled(method) -> Disabled                 (unless policy requires 2FA)
    Enabled(a) -> PendingSetup(b)               (method switch)
    any -> Disabled                             (administrator reset)

and is the single entry point for every two-factor mutation. Each mutating
operation runs under the account's lock; single-use credentials are
consumed through the stores' conditional updates.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from .audit import TwoFactorAuditEvent, TwoFactorEventType
from .config import TwoFactorSettings
from .exceptions import (
    InvalidCodeError,
    MethodNotAllowedError,
    NotConfiguredError,
    PolicyViolationError,
    TooManyAttemptsError,
    TwoFactorConfigurationError,
    VerificationError,
)
from .locking import InMemoryLockStrategy, ResourceIdentifier, hold
from .models import (
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
    utcnow,
)
from .observability import TwoFactorMetrics
from .policy import Policy, PolicyResolver
from .ports import EmailCodeContext
from .stores import AuthenticatorStore, BackupCodeStore, EmailOtpStore

if TYPE_CHECKING:
    from collections.abc import Callable, Collection
    from contextlib import AbstractAsyncContextManager
    from datetime import datetime

    from .codec import SecretCodec
    from .devices import DeviceTrustManager
    from .locking import ILockStrategy
    from .models import AuthenticatorSetup, BackupCodeInfo, IssuedChallenge
    from .ports import (
        IAppSettings,
        IBackupCodeStore,
        IChallengeStore,
        IEmailDelivery,
        IPolicyStore,
        ITwoFactorAuditStore,
        ITwoFactorConfigStore,
    )

logger = logging.getLogger("twofactor.service")


def mask_email(address: str) -> str:
    """``jane@example.com`` -> ``j***@example.com``."""
    local, sep, domain = address.partition("@")
    if not sep or not local:
        return "***"
    return f"{local[0]}***@{domain}"


@dataclass(frozen=True)
class AdminUserView:
    """One account as an administrator sees it. Never carries secrets."""

    status: TwoFactorStatus
    backup_codes: tuple[BackupCodeInfo, ...]
    recent_events: tuple[TwoFactorAuditEvent, ...]


class TwoFactorService:
    """Setup, verification and disabling of two-factor authentication.

    Example:
        ```python
        service = TwoFactorService(
            configs=InMemoryTwoFactorConfigStore(),
            challenges=InMemoryChallengeStore(),
            backup_codes=InMemoryBackupCodeStore(),
            policies=InMemoryPolicyStore(),
            codec=SecretCodec({"v1": SecretCodec.generate_key()}),
            devices=DeviceTrustManager({"v1": secrets.token_bytes(32)}),
            email_delivery=MyMailer(),
        )

        setup = await service.setup_authenticator("user-123")
        render_qr(setup.otp_uri)
        result = await service.confirm_authenticator("user-123", "492039")
        show_once(result.backup_codes)

        await service.verify_login(
            "user-123", VerificationMethod.AUTHENTICATOR_APP, "118274"
        )
        ```
    """

    def __init__(
        self,
        *,
        configs: ITwoFactorConfigStore,
        challenges: IChallengeStore,
        backup_codes: IBackupCodeStore,
        policies: IPolicyStore,
        codec: SecretCodec,
        devices: DeviceTrustManager,
        email_delivery: IEmailDelivery | None = None,
        app_settings: IAppSettings | None = None,
        audit_store: ITwoFactorAuditStore | None = None,
        lock_strategy: ILockStrategy | None = None,
        settings: TwoFactorSettings | None = None,
        resolver: PolicyResolver | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or TwoFactorSettings()
        self.configs = configs
        self.policies = policies
        self.codec = codec
        self.devices = devices
        self.email_delivery = email_delivery
        self.app_settings = app_settings
        self.audit_store = audit_store
        self.lock_strategy = lock_strategy or InMemoryLockStrategy()
        self.resolver = resolver or PolicyResolver()
        self._clock = clock

        self.email_otp = EmailOtpStore(
            challenges, codec, self.settings.email_otp, clock=clock
        )
        self.authenticator = AuthenticatorStore(
            configs, codec, self.settings.totp, clock=clock
        )
        self.backup_codes = BackupCodeStore(
            backup_codes, codec, self.settings.backup_codes, clock=clock
        )

    # ═══════════════════════════════════════════════════════════════
    # INTERNALS
    # ═══════════════════════════════════════════════════════════════

    def _account(self, user_id: str) -> AbstractAsyncContextManager[None]:
        return hold(self.lock_strategy, ResourceIdentifier.for_account(user_id))

    async def _load(self, user_id: str) -> TwoFactorConfig:
        config = await self.configs.get(user_id)
        if config is None:
            now = self._clock()
            config = TwoFactorConfig(user_id=user_id, created_at=now, updated_at=now)
        return config

    async def _save(self, config: TwoFactorConfig) -> TwoFactorConfig:
        config.updated_at = self._clock()
        return await self.configs.save(config)

    async def _audit(
        self,
        event_type: TwoFactorEventType,
        user_id: str | None,
        *,
        method: str | None = None,
        success: bool = True,
        error_code: str | None = None,
        **metadata: Any,
    ) -> None:
        event = TwoFactorAuditEvent(
            event_type=event_type,
            user_id=user_id,
            method=method,
            timestamp=self._clock(),
            success=success,
            error_code=error_code,
            metadata=metadata,
        )
        TwoFactorMetrics.record_event(event)
        if self.audit_store is not None:
            await self.audit_store.record(event)

    def _check_allowed(self, policy: Policy, method: TwoFactorMethod) -> None:
        if not self.resolver.is_method_allowed(policy, method):
            raise MethodNotAllowedError(
                f"{method.value} is not an allowed two-factor method"
            )

    def _check_lockout(self, config: TwoFactorConfig) -> None:
        now = self._clock()
        if config.is_locked(now):
            assert config.locked_until is not None
            retry_after = math.ceil((config.locked_until - now).total_seconds())
            raise TooManyAttemptsError(
                retry_after=retry_after, locked_until=config.locked_until
            )

    async def _record_failure(
        self, config: TwoFactorConfig, method: str, error: VerificationError
    ) -> None:
        """Count a failed code check; lock the account at the threshold.

        Raises:
            TooManyAttemptsError: If this failure started a lockout window.
        """
        lockout = self.settings.lockout
        config.failed_attempts += 1
        locked = config.failed_attempts >= lockout.max_failed_attempts
        if locked:
            config.locked_until = self._clock() + timedelta(
                seconds=lockout.lockout_seconds
            )
            config.failed_attempts = 0
        await self._save(config)

        logger.warning(
            "Failed %s verification for user %s (%s)",
            method,
            config.user_id,
            error.error_code,
        )
        await self._audit(
            TwoFactorEventType.FAILED,
            config.user_id,
            method=method,
            success=False,
            error_code=error.error_code,
        )
        if locked:
            logger.warning(
                "Locked two-factor verification for user %s until %s",
                config.user_id,
                config.locked_until,
            )
            TwoFactorMetrics.record_lockout(method)
            await self._audit(
                TwoFactorEventType.LOCKED,
                config.user_id,
                method=method,
                success=False,
                error_code=TooManyAttemptsError.error_code,
            )
            raise TooManyAttemptsError(
                retry_after=lockout.lockout_seconds, locked_until=config.locked_until
            ) from error

    async def _clear_failures(self, config: TwoFactorConfig) -> TwoFactorConfig:
        if config.failed_attempts or config.locked_until is not None:
            config.failed_attempts = 0
            config.locked_until = None
            return await self._save(config)
        return config

    async def _reset_methods(self, config: TwoFactorConfig) -> None:
        """Invalidate every secret of the current method before a new setup."""
        if config.state is TwoFactorState.DISABLED and config.email is None:
            return
        previous = config.method
        config.clear_secrets()
        await self.backup_codes.revoke(config.user_id)
        await self.email_otp.invalidate(config.user_id)
        logger.info(
            "Invalidated %s secrets for user %s",
            previous.value if previous else "pending",
            config.user_id,
        )

    async def _deliver(
        self, config: TwoFactorConfig, issued: IssuedChallenge
    ) -> CodeDelivery:
        """Hand a code to the email collaborator.

        A failed delivery is reported, not raised: the code stays valid and
        the caller can offer a resend.
        """
        assert config.email is not None
        challenge = issued.challenge
        delivered = False
        if self.email_delivery is None:
            logger.warning("No email delivery configured for two-factor codes")
        else:
            context = EmailCodeContext(
                user_id=config.user_id,
                purpose=challenge.purpose,
                expires_in_minutes=max(1, self.settings.email_otp.ttl_seconds // 60),
            )
            try:
                delivered = bool(
                    await self.email_delivery.send(config.email, issued.code, context)
                )
            except Exception:
                logger.warning(
                    "Email delivery of %s code for user %s raised",
                    challenge.purpose.value,
                    config.user_id,
                    exc_info=True,
                )

        destination = mask_email(config.email)
        if delivered:
            await self._audit(
                TwoFactorEventType.CODE_SENT,
                config.user_id,
                method=TwoFactorMethod.EMAIL.value,
                purpose=challenge.purpose.value,
                destination=destination,
            )
        else:
            logger.warning(
                "%s code for user %s was not delivered",
                challenge.purpose.value,
                config.user_id,
            )
            await self._audit(
                TwoFactorEventType.CODE_DELIVERY_FAILED,
                config.user_id,
                method=TwoFactorMethod.EMAIL.value,
                success=False,
                error_code="DELIVERY_FAILED",
                purpose=challenge.purpose.value,
            )
        return CodeDelivery(
            purpose=challenge.purpose,
            destination=destination,
            expires_at=challenge.expires_at,
            delivered=delivered,
        )

    async def _complete_setup(
        self, config: TwoFactorConfig, method: TwoFactorMethod
    ) -> SetupResult:
        config.enabled_method = method
        config.is_enabled = True
        config.pending_method = None
        config.pending_totp_secret_encrypted = None
        config.failed_attempts = 0
        config.locked_until = None
        if method is TwoFactorMethod.EMAIL:
            config.totp_secret_encrypted = None
            config.last_totp_step = None
        else:
            config.email = None
        await self._save(config)

        codes = await self.backup_codes.generate(config.user_id)
        await self.email_otp.invalidate(config.user_id)

        logger.info("Enabled %s two-factor for user %s", method.value, config.user_id)
        await self._audit(
            TwoFactorEventType.ENABLED, config.user_id, method=method.value
        )
        await self._audit(
            TwoFactorEventType.BACKUP_CODES_GENERATED,
            config.user_id,
            method=method.value,
            count=len(codes),
        )
        return SetupResult(method=method, backup_codes=tuple(codes))

    # ═══════════════════════════════════════════════════════════════
    # STATUS
    # ═══════════════════════════════════════════════════════════════

    async def status(self, user_id: str, *, is_admin: bool = False) -> TwoFactorStatus:
        """Read-only view of the account's two-factor state."""
        policy = await self.policies.get()
        required = self.resolver.is_required(policy, user_id, is_admin=is_admin)
        config = await self.configs.get(user_id)
        if config is None:
            return TwoFactorStatus(
                user_id=user_id,
                state=TwoFactorState.DISABLED,
                method=None,
                enabled=False,
                required=required,
                setup_required=required,
            )

        enabled = config.state is TwoFactorState.ENABLED
        return TwoFactorStatus(
            user_id=user_id,
            state=config.state,
            method=config.method,
            enabled=enabled,
            required=required,
            setup_required=required and not enabled,
            pending_method=config.pending_method,
            email=config.email,
            backup_codes_remaining=(
                await self.backup_codes.remaining(user_id) if enabled else 0
            ),
            locked_until=(
                config.locked_until if config.is_locked(self._clock()) else None
            ),
        )

    # ═══════════════════════════════════════════════════════════════
    # SETUP
    # ═══════════════════════════════════════════════════════════════

    async def setup_email(self, user_id: str, email: str) -> CodeDelivery:
        """Start email setup and send a setup code to ``email``.

        Any previously enabled method is invalidated immediately.

        Raises:
            MethodNotAllowedError: If policy does not allow email codes.
        """
        method = TwoFactorMethod.EMAIL
        with TwoFactorMetrics.operation("setup_email", method=method.value):
            self._check_allowed(await self.policies.get(), method)
            email = email.strip()
            if "@" not in email:
                raise TwoFactorConfigurationError("A valid email address is required")

            async with self._account(user_id):
                config = await self._load(user_id)
                await self._reset_methods(config)
                config.pending_method = method
                config.email = email
                config = await self._save(config)

                logger.info("Started email two-factor setup for user %s", user_id)
                await self._audit(
                    TwoFactorEventType.SETUP_STARTED, user_id, method=method.value
                )
                issued = await self.email_otp.issue(
                    user_id, ChallengePurpose.EMAIL_SETUP
                )
                return await self._deliver(config, issued)

    async def send_email_code(
        self,
        user_id: str,
        purpose: ChallengePurpose = ChallengePurpose.EMAIL_LOGIN,
    ) -> CodeDelivery:
        """Issue and send a fresh email code, replacing the previous one.

        Raises:
            NotConfiguredError: If email is not the enabled (login) or
                pending (setup) method.
            ResendCooldownError: If the previous code is too recent.
            TooManyAttemptsError: If the account is locked.
        """
        with TwoFactorMetrics.operation(
            "send_email_code", method=TwoFactorMethod.EMAIL.value
        ):
            async with self._account(user_id):
                config = await self._load(user_id)
                if purpose is ChallengePurpose.EMAIL_LOGIN:
                    ready = (
                        config.is_enabled
                        and config.enabled_method is TwoFactorMethod.EMAIL
                    )
                else:
                    ready = config.pending_method is TwoFactorMethod.EMAIL
                if not ready or config.email is None:
                    raise NotConfiguredError("Email two-factor is not configured")
                self._check_lockout(config)

                issued = await self.email_otp.issue(
                    user_id, purpose, enforce_cooldown=True
                )
                return await self._deliver(config, issued)

    async def confirm_email(self, user_id: str, code: str) -> SetupResult:
        """Confirm email setup with the emailed code.

        Returns:
            The enabled method and a fresh backup code batch (shown once).

        Raises:
            NotConfiguredError: If no email setup is pending.
            VerificationError: If the code is wrong, expired or exhausted.
        """
        method = TwoFactorMethod.EMAIL
        with TwoFactorMetrics.operation("confirm_setup", method=method.value):
            async with self._account(user_id):
                config = await self._load(user_id)
                if config.pending_method is not method:
                    raise NotConfiguredError("No email setup in progress")
                self._check_lockout(config)

                try:
                    await self.email_otp.verify(
                        user_id, code, ChallengePurpose.EMAIL_SETUP
                    )
                except VerificationError as e:
                    await self._record_failure(config, method.value, e)
                    raise
                return await self._complete_setup(config, method)

    async def setup_authenticator(
        self,
        user_id: str,
        app_name: str | None = None,
        *,
        account_name: str | None = None,
    ) -> AuthenticatorSetup:
        """Start authenticator setup.

        Args:
            user_id: Account.
            app_name: Issuer label; defaults to the application name from
                the settings collaborator.
            account_name: Account label in the app; defaults to the user id.

        Returns:
            Seed and provisioning URI, shown once.

        Raises:
            MethodNotAllowedError: If policy does not allow authenticator apps.
        """
        method = TwoFactorMethod.AUTHENTICATOR_APP
        with TwoFactorMetrics.operation("setup_authenticator", method=method.value):
            self._check_allowed(await self.policies.get(), method)
            if app_name is None and self.app_settings is not None:
                app_name = await self.app_settings.get_app_name()

            async with self._account(user_id):
                config = await self._load(user_id)
                await self._reset_methods(config)
                setup = self.authenticator.begin_setup(config, app_name, account_name)
                await self._save(config)

                logger.info(
                    "Started authenticator two-factor setup for user %s", user_id
                )
                await self._audit(
                    TwoFactorEventType.SETUP_STARTED, user_id, method=method.value
                )
                return setup

    async def confirm_authenticator(self, user_id: str, code: str) -> SetupResult:
        """Confirm authenticator setup with a code from the app.

        Raises:
            NotConfiguredError: If no authenticator setup is pending.
            InvalidCodeError: If the code does not match the pending seed.
        """
        method = TwoFactorMethod.AUTHENTICATOR_APP
        with TwoFactorMetrics.operation("confirm_setup", method=method.value):
            async with self._account(user_id):
                config = await self._load(user_id)
                if config.pending_method is not method:
                    raise NotConfiguredError("No authenticator setup in progress")
                self._check_lockout(config)

                try:
                    self.authenticator.confirm_setup(config, code)
                except VerificationError as e:
                    await self._record_failure(config, method.value, e)
                    raise
                return await self._complete_setup(config, method)

    async def confirm_setup(
        self, user_id: str, method: TwoFactorMethod, code: str
    ) -> SetupResult:
        """Confirm the pending setup of ``method``."""
        match method:
            case TwoFactorMethod.EMAIL:
                return await self.confirm_email(user_id, code)
            case TwoFactorMethod.AUTHENTICATOR_APP:
                return await self.confirm_authenticator(user_id, code)

    # ═══════════════════════════════════════════════════════════════
    # LOGIN
    # ═══════════════════════════════════════════════════════════════

    async def verify_login(
        self,
        user_id: str,
        method: VerificationMethod,
        code: str | None = None,
        *,
        device_id: str | None = None,
        remember_token: str | None = None,
        remember: bool = False,
    ) -> LoginVerification:
        """Second-factor check during login.

        A valid remember token for ``device_id`` skips the code. Otherwise
        the code is checked with the store for ``method``; on success and
        with ``remember=True`` a new remember token is minted when policy
        allows it.

        Raises:
            NotConfiguredError: If the account has no enabled method.
            VerificationError: If the code is rejected, or the account is
                locked (TooManyAttemptsError).
        """
        with TwoFactorMetrics.operation("verify_login", method=method.value):
            async with self._account(user_id):
                config = await self._load(user_id)
                if config.state is not TwoFactorState.ENABLED:
                    raise NotConfiguredError(
                        "Two-factor authentication is not enabled for this account"
                    )

                if (
                    device_id is not None
                    and remember_token
                    and self.devices.is_remembered(user_id, device_id, remember_token)
                ):
                    await self._audit(
                        TwoFactorEventType.DEVICE_TRUSTED,
                        user_id,
                        method=config.method.value if config.method else None,
                    )
                    return LoginVerification(method=None, device_trusted=True)

                self._check_lockout(config)
                remaining: int | None = None
                try:
                    if not code:
                        raise InvalidCodeError()
                    match method:
                        case VerificationMethod.EMAIL:
                            if config.enabled_method is not TwoFactorMethod.EMAIL:
                                raise InvalidCodeError()
                            await self.email_otp.verify(
                                user_id, code, ChallengePurpose.EMAIL_LOGIN
                            )
                        case VerificationMethod.AUTHENTICATOR_APP:
                            if (
                                config.enabled_method
                                is not TwoFactorMethod.AUTHENTICATOR_APP
                            ):
                                raise InvalidCodeError()
                            await self.authenticator.verify_login(config, code)
                        case VerificationMethod.BACKUP_CODE:
                            remaining = await self.backup_codes.verify_and_consume(
                                user_id, code
                            )
                except VerificationError as e:
                    await self._record_failure(config, method.value, e)
                    raise

                config = await self._clear_failures(config)
                logger.info("Verified %s login for user %s", method.value, user_id)
                await self._audit(
                    TwoFactorEventType.VERIFIED, user_id, method=method.value
                )
                if remaining is not None:
                    await self._audit(
                        TwoFactorEventType.BACKUP_CODE_USED,
                        user_id,
                        method=method.value,
                        remaining=remaining,
                    )

                token, expires_at = await self._remember_device(
                    user_id, device_id, remember
                )
                return LoginVerification(
                    method=method,
                    remember_token=token,
                    remember_expires_at=expires_at,
                    backup_codes_remaining=remaining,
                )

    async def _remember_device(
        self, user_id: str, device_id: str | None, remember: bool
    ) -> tuple[str | None, datetime | None]:
        if not remember or device_id is None:
            return None, None
        policy = await self.policies.get()
        if not policy.remembers_devices:
            logger.debug("Policy disables remembering devices; not minting a token")
            return None, None

        token = self.devices.remember(user_id, device_id, policy)
        decoded = self.devices.decode(token)
        assert decoded is not None
        await self._audit(
            TwoFactorEventType.DEVICE_REMEMBERED,
            user_id,
            days=policy.remember_device_days,
        )
        return token, decoded.expires_at

    # ═══════════════════════════════════════════════════════════════
    # DISABLE / BACKUP CODES
    # ═══════════════════════════════════════════════════════════════

    async def disable(self, user_id: str, *, is_admin: bool = False) -> None:
        """Turn two-factor off and zero the account's secrets.

        The config row is kept (zeroed) for the audit trail.

        Raises:
            PolicyViolationError: If policy requires 2FA for this account.
        """
        with TwoFactorMetrics.operation("disable"):
            policy = await self.policies.get()
            if self.resolver.is_required(policy, user_id, is_admin=is_admin):
                await self._audit(
                    TwoFactorEventType.DISABLED,
                    user_id,
                    success=False,
                    error_code=PolicyViolationError.error_code,
                )
                raise PolicyViolationError()

            async with self._account(user_id):
                config = await self.configs.get(user_id)
                if config is None:
                    return
                previous = config.method
                config.reset()
                await self._save(config)
                await self.backup_codes.revoke(user_id)
                await self.email_otp.invalidate(user_id)

                logger.info("Disabled two-factor for user %s", user_id)
                await self._audit(
                    TwoFactorEventType.DISABLED,
                    user_id,
                    method=previous.value if previous else None,
                )

    async def regenerate_backup_codes(self, user_id: str) -> tuple[str, ...]:
        """Replace the backup code batch; the old codes stop working.

        Raises:
            NotConfiguredError: If two-factor is not enabled.
        """
        with TwoFactorMetrics.operation("regenerate_backup_codes"):
            async with self._account(user_id):
                config = await self._load(user_id)
                if config.state is not TwoFactorState.ENABLED:
                    raise NotConfiguredError(
                        "Two-factor authentication is not enabled for this account"
                    )
                codes = await self.backup_codes.generate(user_id)
                await self._audit(
                    TwoFactorEventType.BACKUP_CODES_GENERATED,
                    user_id,
                    method=config.method.value if config.method else None,
                    count=len(codes),
                    regenerated=True,
                )
                return tuple(codes)

    async def get_backup_codes(self, user_id: str) -> list[BackupCodeInfo]:
        """Backup code metadata. Plaintext is only returned when generated."""
        return await self.backup_codes.describe(user_id)

    # ═══════════════════════════════════════════════════════════════
    # ADMINISTRATION
    # ═══════════════════════════════════════════════════════════════

    async def admin_reset(self, user_id: str, *, actor_id: str | None = None) -> None:
        """Wipe an account's two-factor setup on an administrator's behalf.

        Unlike ``disable`` this ignores policy: it is how an administrator
        recovers an account whose owner lost their device. Secrets, backup
        codes, pending challenges and any lockout are cleared and the zeroed
        row is kept for the audit trail. When policy requires 2FA the owner
        is asked to set it up again (``status().setup_required``).

        Args:
            user_id: Account to reset.
            actor_id: Administrator performing the reset, for the audit trail.
        """
        with TwoFactorMetrics.operation("admin_reset"):
            async with self._account(user_id):
                config = await self.configs.get(user_id)
                previous = config.method if config is not None else None
                if config is not None:
                    config.reset()
                    await self._save(config)
                await self.backup_codes.revoke(user_id)
                await self.email_otp.invalidate(user_id)

                logger.info(
                    "Administrator %s reset two-factor for user %s",
                    actor_id or "unknown",
                    user_id,
                )
                await self._audit(
                    TwoFactorEventType.ADMIN_RESET,
                    user_id,
                    method=previous.value if previous else None,
                    actor_id=actor_id,
                )

    async def admin_view(
        self, user_id: str, *, is_admin: bool = False, event_limit: int = 20
    ) -> AdminUserView:
        """An account's two-factor state as shown in the admin console."""
        status = await self.status(user_id, is_admin=is_admin)
        codes = await self.backup_codes.describe(user_id)
        events: list[TwoFactorAuditEvent] = []
        if self.audit_store is not None:
            events = await self.audit_store.get_events(user_id, limit=event_limit)
        return AdminUserView(
            status=status, backup_codes=tuple(codes), recent_events=tuple(events)
        )

    async def stats(
        self,
        *,
        total_users: int | None = None,
        admin_user_ids: Collection[str] | None = None,
    ) -> TwoFactorStats:
        """Adoption figures across all accounts.

        User accounts and roles belong to the application, so the user total
        and the administrator ids are supplied by the caller; the matching
        figures are None when they are not.
        """
        counts = await self.configs.count_by_state()
        by_method = {
            method: counts.get((TwoFactorState.ENABLED, method), 0)
            for method in TwoFactorMethod
        }
        pending = sum(
            n
            for (state, _), n in counts.items()
            if state is TwoFactorState.PENDING_SETUP
        )

        admins: int | None = None
        admins_enabled: int | None = None
        if admin_user_ids is not None:
            admin_ids = set(admin_user_ids)
            admin_counts = await self.configs.count_by_state(admin_ids)
            admins = len(admin_ids)
            admins_enabled = sum(
                n
                for (state, _), n in admin_counts.items()
                if state is TwoFactorState.ENABLED
            )

        return TwoFactorStats(
            enabled=sum(by_method.values()),
            pending=pending,
            by_method=by_method,
            total_users=total_users,
            admins=admins,
            admins_enabled=admins_enabled,
        )

    # ═══════════════════════════════════════════════════════════════
    # POLICY / HOUSEKEEPING
    # ═══════════════════════════════════════════════════════════════

    async def get_policy(self) -> Policy:
        return await self.policies.get()

    async def update_policy(self, **changes: Any) -> Policy:
        """Replace selected policy fields.

        Raises:
            TwoFactorConfigurationError: If a value is out of range or a
                field is unknown.
        """
        current = await self.policies.get()
        try:
            policy = Policy.model_validate({**current.model_dump(), **changes})
        except ValidationError as e:
            raise TwoFactorConfigurationError(f"Invalid policy: {e}") from e

        await self.policies.save(policy)
        logger.info("Updated two-factor policy: %s", ", ".join(sorted(changes)))
        await self._audit(
            TwoFactorEventType.POLICY_UPDATED, None, changed=sorted(changes)
        )
        return policy

    async def purge_expired_challenges(self) -> int:
        """Delete expired email challenges; returns how many were removed."""
        purged = await self.email_otp.purge_expired()
        if purged:
            logger.debug("Purged %d expired email challenges", purged)
        return purged

    async def rotate_secrets(self) -> int:
        """Re-encrypt every stored TOTP seed under the codec's primary key.

        Returns:
            Number of accounts whose seeds were re-encrypted.
        """
        rotated = 0
        for user_id in await self.configs.list_user_ids():
            async with self._account(user_id):
                config = await self.configs.get(user_id)
                if config is None:
                    continue
                if (
                    config.totp_secret_encrypted is None
                    and config.pending_totp_secret_encrypted is None
                ):
                    continue
                if config.totp_secret_encrypted is not None:
                    config.totp_secret_encrypted = self.codec.rotate(
                        config.totp_secret_encrypted
                    )
                if config.pending_totp_secret_encrypted is not None:
                    config.pending_totp_secret_encrypted = self.codec.rotate(
                        config.pending_totp_secret_encrypted
                    )
                await self._save(config)
                rotated += 1

        logger.info("Re-encrypted two-factor secrets for %d accounts", rotated)
        await self._audit(
            TwoFactorEventType.SECRETS_ROTATED,
            None,
            accounts=rotated,
            key_id=self.codec.primary_key_id,
        )
        return rotated


__all__: list[str] = ["TwoFactorService", "AdminUserView", "mask_email"]
