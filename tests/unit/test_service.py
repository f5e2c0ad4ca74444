"""Tests for the two-factor orchestrator."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from conftest import (
    FakeClock,
    InterleavingBackupCodeStore,
    ReadBarrier,
    RecordingEmailDelivery,
    totp_code,
)
from twofactor import (
    AlreadyUsedError,
    ChallengePurpose,
    InMemoryChallengeStore,
    InMemoryTwoFactorAuditStore,
    InMemoryTwoFactorConfigStore,
    InvalidCodeError,
    LoginVerification,
    MethodNotAllowedError,
    NotConfiguredError,
    Policy,
    PolicyViolationError,
    ResendCooldownError,
    SecretCodec,
    SetupResult,
    TooManyAttemptsError,
    TwoFactorConfigurationError,
    TwoFactorEventType,
    TwoFactorMethod,
    TwoFactorService,
    TwoFactorSettings,
    TwoFactorState,
    VerificationMethod,
)
from twofactor.service import mask_email

EMAIL = VerificationMethod.EMAIL
APP = VerificationMethod.AUTHENTICATOR_APP
BACKUP = VerificationMethod.BACKUP_CODE


def _wrong(code: str) -> str:
    return f"{(int(code) + 1) % 10**len(code):0{len(code)}d}"


async def _enable_authenticator(
    service: TwoFactorService, clock: FakeClock, user_id: str = "user-1"
) -> tuple[str, SetupResult]:
    setup = await service.setup_authenticator(user_id)
    result = await service.confirm_authenticator(
        user_id, totp_code(setup.secret, clock.now)
    )
    # The confirmation step cannot be reused for login
    clock.advance(seconds=30)
    return setup.secret, result


async def _enable_email(
    service: TwoFactorService,
    mailer: RecordingEmailDelivery,
    user_id: str = "user-1",
) -> SetupResult:
    await service.setup_email(user_id, "jane@example.com")
    return await service.confirm_email(user_id, mailer.last_code)


async def _lock_out(
    service: TwoFactorService, clock: FakeClock, user_id: str = "user-1"
) -> None:
    await _enable_authenticator(service, clock, user_id)
    for _ in range(9):
        with pytest.raises(InvalidCodeError):
            await service.verify_login(user_id, BACKUP, "ZZZZZ-ZZZZZ")
    with pytest.raises(TooManyAttemptsError):
        await service.verify_login(user_id, BACKUP, "ZZZZZ-ZZZZZ")


async def _event_types(
    audit_store: InMemoryTwoFactorAuditStore, user_id: str = "user-1"
) -> list[TwoFactorEventType]:
    events = await audit_store.get_events(user_id)
    return [e.event_type for e in reversed(events)]


class TestStatus:
    """Read-only status view."""

    @pytest.mark.asyncio
    async def test_unknown_account_is_disabled(self, service: TwoFactorService) -> None:
        status = await service.status("user-1")

        assert status.state is TwoFactorState.DISABLED
        assert status.enabled is False
        assert status.method is None
        assert status.setup_required is False

    @pytest.mark.asyncio
    async def test_setup_required_when_policy_demands(
        self, service: TwoFactorService
    ) -> None:
        await service.update_policy(require_for_admins=True)

        assert (await service.status("user-1", is_admin=True)).setup_required
        assert not (await service.status("user-1")).setup_required

    @pytest.mark.asyncio
    async def test_pending_setup(self, service: TwoFactorService) -> None:
        await service.setup_authenticator("user-1")

        status = await service.status("user-1")

        assert status.state is TwoFactorState.PENDING_SETUP
        assert status.pending_method is TwoFactorMethod.AUTHENTICATOR_APP
        assert status.enabled is False

    @pytest.mark.asyncio
    async def test_enabled_after_confirmation(
        self, service: TwoFactorService, clock: FakeClock
    ) -> None:
        await _enable_authenticator(service, clock)

        status = await service.status("user-1")

        assert status.state is TwoFactorState.ENABLED
        assert status.method is TwoFactorMethod.AUTHENTICATOR_APP
        assert status.enabled is True
        assert status.backup_codes_remaining == 10


class TestAuthenticatorFlow:
    """Authenticator setup and login."""

    @pytest.mark.asyncio
    async def test_setup_uses_app_name(self, service: TwoFactorService) -> None:
        setup = await service.setup_authenticator("user-1")

        assert "issuer=ProsumeAI" in setup.otp_uri

    @pytest.mark.asyncio
    async def test_explicit_app_name_wins(self, service: TwoFactorService) -> None:
        setup = await service.setup_authenticator(
            "user-1", "Acme", account_name="jane@example.com"
        )

        assert "issuer=Acme" in setup.otp_uri
        assert "jane" in setup.otp_uri

    @pytest.mark.asyncio
    async def test_confirm_returns_backup_codes(
        self, service: TwoFactorService, clock: FakeClock
    ) -> None:
        _, result = await _enable_authenticator(service, clock)

        assert result.method is TwoFactorMethod.AUTHENTICATOR_APP
        assert len(result.backup_codes) == 10

    @pytest.mark.asyncio
    async def test_wrong_confirmation_code_keeps_setup_pending(
        self, service: TwoFactorService, clock: FakeClock
    ) -> None:
        setup = await service.setup_authenticator("user-1")

        with pytest.raises(InvalidCodeError):
            await service.confirm_authenticator(
                "user-1", _wrong(totp_code(setup.secret, clock.now))
            )

        status = await service.status("user-1")
        assert status.state is TwoFactorState.PENDING_SETUP

    @pytest.mark.asyncio
    async def test_confirm_without_setup(self, service: TwoFactorService) -> None:
        with pytest.raises(NotConfiguredError):
            await service.confirm_authenticator("user-1", "123456")

    @pytest.mark.asyncio
    async def test_confirm_setup_dispatches_by_method(
        self, service: TwoFactorService, clock: FakeClock
    ) -> None:
        setup = await service.setup_authenticator("user-1")

        result = await service.confirm_setup(
            "user-1",
            TwoFactorMethod.AUTHENTICATOR_APP,
            totp_code(setup.secret, clock.now),
        )

        assert result.method is TwoFactorMethod.AUTHENTICATOR_APP

    @pytest.mark.asyncio
    async def test_login(self, service: TwoFactorService, clock: FakeClock) -> None:
        secret, _ = await _enable_authenticator(service, clock)

        result = await service.verify_login(
            "user-1", APP, totp_code(secret, clock.now)
        )

        assert result.method is APP
        assert result.device_trusted is False
        assert result.remember_token is None

    @pytest.mark.asyncio
    async def test_replayed_code_rejected(
        self, service: TwoFactorService, clock: FakeClock
    ) -> None:
        secret, _ = await _enable_authenticator(service, clock)
        code = totp_code(secret, clock.now)
        await service.verify_login("user-1", APP, code)

        with pytest.raises(InvalidCodeError):
            await service.verify_login("user-1", APP, code)

    @pytest.mark.asyncio
    async def test_email_method_rejected_for_authenticator_account(
        self, service: TwoFactorService, clock: FakeClock
    ) -> None:
        await _enable_authenticator(service, clock)

        with pytest.raises(InvalidCodeError):
            await service.verify_login("user-1", EMAIL, "123456")

    @pytest.mark.asyncio
    async def test_missing_code(
        self, service: TwoFactorService, clock: FakeClock
    ) -> None:
        await _enable_authenticator(service, clock)

        with pytest.raises(InvalidCodeError):
            await service.verify_login("user-1", APP)

    @pytest.mark.asyncio
    async def test_login_without_two_factor(self, service: TwoFactorService) -> None:
        with pytest.raises(NotConfiguredError):
            await service.verify_login("user-1", APP, "123456")

    @pytest.mark.asyncio
    async def test_login_during_pending_setup(
        self, service: TwoFactorService
    ) -> None:
        await service.setup_authenticator("user-1")

        with pytest.raises(NotConfiguredError):
            await service.verify_login("user-1", APP, "123456")


class TestEmailFlow:
    """Email setup and login."""

    @pytest.mark.asyncio
    async def test_setup_sends_code(
        self, service: TwoFactorService, mailer: RecordingEmailDelivery
    ) -> None:
        delivery = await service.setup_email("user-1", " jane@example.com ")

        assert delivery.delivered is True
        assert delivery.destination == "j***@example.com"
        assert delivery.purpose is ChallengePurpose.EMAIL_SETUP
        to_address, code, context = mailer.sent[-1]
        assert to_address == "jane@example.com"
        assert len(code) == 6
        assert context.purpose is ChallengePurpose.EMAIL_SETUP
        assert context.expires_in_minutes == 10

    @pytest.mark.asyncio
    async def test_invalid_address(self, service: TwoFactorService) -> None:
        with pytest.raises(TwoFactorConfigurationError):
            await service.setup_email("user-1", "not-an-address")

    @pytest.mark.asyncio
    async def test_confirm_enables(
        self, service: TwoFactorService, mailer: RecordingEmailDelivery
    ) -> None:
        result = await _enable_email(service, mailer)

        assert result.method is TwoFactorMethod.EMAIL
        status = await service.status("user-1")
        assert status.enabled
        assert status.email == "jane@example.com"

    @pytest.mark.asyncio
    async def test_login(
        self, service: TwoFactorService, mailer: RecordingEmailDelivery
    ) -> None:
        await _enable_email(service, mailer)

        delivery = await service.send_email_code("user-1")
        result = await service.verify_login("user-1", EMAIL, mailer.last_code)

        assert delivery.purpose is ChallengePurpose.EMAIL_LOGIN
        assert result.method is EMAIL

    @pytest.mark.asyncio
    async def test_setup_code_is_not_a_login_code(
        self, service: TwoFactorService, mailer: RecordingEmailDelivery
    ) -> None:
        await _enable_email(service, mailer)
        setup_code = mailer.last_code

        with pytest.raises(InvalidCodeError):
            await service.verify_login("user-1", EMAIL, setup_code)

    @pytest.mark.asyncio
    async def test_resend_cooldown(
        self,
        service: TwoFactorService,
        mailer: RecordingEmailDelivery,
        clock: FakeClock,
    ) -> None:
        await _enable_email(service, mailer)
        await service.send_email_code("user-1")

        with pytest.raises(ResendCooldownError):
            await service.send_email_code("user-1")

        clock.advance(seconds=60)
        await service.send_email_code("user-1")

    @pytest.mark.asyncio
    async def test_send_code_requires_email_method(
        self, service: TwoFactorService, clock: FakeClock
    ) -> None:
        await _enable_authenticator(service, clock)

        with pytest.raises(NotConfiguredError):
            await service.send_email_code("user-1")

    @pytest.mark.asyncio
    async def test_resend_setup_code(
        self,
        service: TwoFactorService,
        mailer: RecordingEmailDelivery,
        clock: FakeClock,
    ) -> None:
        await service.setup_email("user-1", "jane@example.com")
        clock.advance(seconds=60)

        await service.send_email_code("user-1", ChallengePurpose.EMAIL_SETUP)
        result = await service.confirm_email("user-1", mailer.last_code)

        assert result.method is TwoFactorMethod.EMAIL

    @pytest.mark.asyncio
    async def test_five_wrong_codes_then_correct_one_fails(
        self, service: TwoFactorService, mailer: RecordingEmailDelivery
    ) -> None:
        await _enable_email(service, mailer)
        await service.send_email_code("user-1")
        code = mailer.last_code

        for _ in range(4):
            with pytest.raises(InvalidCodeError):
                await service.verify_login("user-1", EMAIL, _wrong(code))
        with pytest.raises(TooManyAttemptsError):
            await service.verify_login("user-1", EMAIL, _wrong(code))

        with pytest.raises(InvalidCodeError):
            await service.verify_login("user-1", EMAIL, code)


class TestDelivery:
    """Delivery failures are reported, not raised."""

    @pytest.mark.asyncio
    async def test_delivery_returns_false(
        self,
        service: TwoFactorService,
        mailer: RecordingEmailDelivery,
        audit_store: InMemoryTwoFactorAuditStore,
    ) -> None:
        mailer.fail = True

        delivery = await service.setup_email("user-1", "jane@example.com")

        assert delivery.delivered is False
        assert TwoFactorEventType.CODE_DELIVERY_FAILED in await _event_types(
            audit_store
        )
        # The code is still valid
        await service.confirm_email("user-1", mailer.last_code)

    @pytest.mark.asyncio
    async def test_delivery_raises(
        self, service: TwoFactorService, mailer: RecordingEmailDelivery
    ) -> None:
        mailer.raise_error = ConnectionError("smtp down")

        delivery = await service.setup_email("user-1", "jane@example.com")

        assert delivery.delivered is False
        status = await service.status("user-1")
        assert status.pending_method is TwoFactorMethod.EMAIL

    @pytest.mark.asyncio
    async def test_no_delivery_configured(
        self, service_factory: Callable[..., TwoFactorService]
    ) -> None:
        service = service_factory(email_delivery=None)

        delivery = await service.setup_email("user-1", "jane@example.com")

        assert delivery.delivered is False


class TestMethodSwitching:
    """Starting a new setup invalidates the old method immediately."""

    @pytest.mark.asyncio
    async def test_switch_to_email_invalidates_authenticator(
        self,
        service: TwoFactorService,
        clock: FakeClock,
        config_store: InMemoryTwoFactorConfigStore,
    ) -> None:
        secret, result = await _enable_authenticator(service, clock)

        await service.setup_email("user-1", "jane@example.com")

        stored = await config_store.get("user-1")
        assert stored is not None
        assert stored.totp_secret_encrypted is None
        assert stored.last_totp_step is None
        status = await service.status("user-1")
        assert status.state is TwoFactorState.PENDING_SETUP
        with pytest.raises(NotConfiguredError):
            await service.verify_login("user-1", APP, totp_code(secret, clock.now))
        assert await service.backup_codes.remaining("user-1") == 0

    @pytest.mark.asyncio
    async def test_switch_completes_with_new_method_only(
        self,
        service: TwoFactorService,
        clock: FakeClock,
        mailer: RecordingEmailDelivery,
    ) -> None:
        secret, _ = await _enable_authenticator(service, clock)
        await _enable_email(service, mailer)

        with pytest.raises(InvalidCodeError):
            await service.verify_login("user-1", APP, totp_code(secret, clock.now))
        await service.send_email_code("user-1")
        await service.verify_login("user-1", EMAIL, mailer.last_code)

    @pytest.mark.asyncio
    async def test_switch_to_authenticator_drops_email(
        self,
        service: TwoFactorService,
        clock: FakeClock,
        mailer: RecordingEmailDelivery,
    ) -> None:
        await _enable_email(service, mailer)
        await _enable_authenticator(service, clock)

        status = await service.status("user-1")
        assert status.method is TwoFactorMethod.AUTHENTICATOR_APP
        assert status.email is None
        with pytest.raises(NotConfiguredError):
            await service.send_email_code("user-1")


class TestPolicyEnforcement:
    """Allowed methods and required 2FA."""

    @pytest.mark.asyncio
    async def test_method_not_allowed(self, service: TwoFactorService) -> None:
        await service.update_policy(allowed_methods=[TwoFactorMethod.EMAIL])

        with pytest.raises(MethodNotAllowedError):
            await service.setup_authenticator("user-1")

    @pytest.mark.asyncio
    async def test_disable_blocked_for_required_admin(
        self,
        service: TwoFactorService,
        clock: FakeClock,
        audit_store: InMemoryTwoFactorAuditStore,
    ) -> None:
        await _enable_authenticator(service, clock)
        await service.update_policy(require_for_admins=True)

        with pytest.raises(PolicyViolationError):
            await service.disable("user-1", is_admin=True)

        assert (await service.status("user-1")).enabled
        failed = await audit_store.get_events(
            "user-1", event_types=[TwoFactorEventType.DISABLED]
        )
        assert failed[0].success is False
        assert failed[0].error_code == "POLICY_VIOLATION"

    @pytest.mark.asyncio
    async def test_disable_allowed_for_regular_user(
        self, service: TwoFactorService, clock: FakeClock
    ) -> None:
        await _enable_authenticator(service, clock)
        await service.update_policy(require_for_admins=True)

        await service.disable("user-1")

        status = await service.status("user-1")
        assert status.state is TwoFactorState.DISABLED
        assert status.backup_codes_remaining == 0

    @pytest.mark.asyncio
    async def test_disable_zeroes_secrets(
        self,
        service: TwoFactorService,
        clock: FakeClock,
        config_store: InMemoryTwoFactorConfigStore,
    ) -> None:
        await _enable_authenticator(service, clock)

        await service.disable("user-1")

        stored = await config_store.get("user-1")
        assert stored is not None
        assert stored.totp_secret_encrypted is None
        assert stored.email is None
        assert stored.enabled_method is None

    @pytest.mark.asyncio
    async def test_disable_unknown_account_is_noop(
        self, service: TwoFactorService
    ) -> None:
        await service.disable("nobody")

    @pytest.mark.asyncio
    async def test_update_policy_validates(self, service: TwoFactorService) -> None:
        with pytest.raises(TwoFactorConfigurationError):
            await service.update_policy(remember_device_days=400)
        with pytest.raises(TwoFactorConfigurationError):
            await service.update_policy(allowed_methods=[])
        with pytest.raises(TwoFactorConfigurationError):
            await service.update_policy(require_for_robots=True)

        assert await service.get_policy() == Policy()

    @pytest.mark.asyncio
    async def test_update_policy_keeps_other_fields(
        self, service: TwoFactorService
    ) -> None:
        await service.update_policy(remember_device_days=7)
        policy = await service.update_policy(require_for_all_users=True)

        assert policy.remember_device_days == 7
        assert policy.require_for_all_users is True


class TestLockout:
    """Account lockout after repeated failures."""

    @pytest.mark.asyncio
    async def test_tenth_failure_locks(
        self, service: TwoFactorService, clock: FakeClock
    ) -> None:
        secret, _ = await _enable_authenticator(service, clock)
        wrong = "000000"
        if wrong in {totp_code(secret, clock.now, o) for o in (-1, 0, 1)}:
            wrong = "999999"

        for _ in range(9):
            with pytest.raises(InvalidCodeError):
                await service.verify_login("user-1", APP, wrong)
        with pytest.raises(TooManyAttemptsError) as locked:
            await service.verify_login("user-1", APP, wrong)
        assert locked.value.retry_after == 900

        # Even the right code is refused while locked
        with pytest.raises(TooManyAttemptsError) as still_locked:
            await service.verify_login("user-1", APP, totp_code(secret, clock.now))
        assert still_locked.value.retry_after == 900
        assert (await service.status("user-1")).locked_until is not None

        clock.advance(minutes=15)
        await service.verify_login("user-1", APP, totp_code(secret, clock.now))

    @pytest.mark.asyncio
    async def test_success_resets_counter(
        self,
        service: TwoFactorService,
        clock: FakeClock,
        config_store: InMemoryTwoFactorConfigStore,
    ) -> None:
        secret, _ = await _enable_authenticator(service, clock)
        wrong = _wrong(totp_code(secret, clock.now))
        for _ in range(3):
            with pytest.raises(InvalidCodeError):
                await service.verify_login("user-1", APP, wrong)

        await service.verify_login("user-1", APP, totp_code(secret, clock.now))

        stored = await config_store.get("user-1")
        assert stored is not None
        assert stored.failed_attempts == 0

    @pytest.mark.asyncio
    async def test_new_setup_keeps_lockout(
        self,
        service: TwoFactorService,
        clock: FakeClock,
        config_store: InMemoryTwoFactorConfigStore,
    ) -> None:
        await _lock_out(service, clock)

        setup = await service.setup_authenticator("user-1")

        stored = await config_store.get("user-1")
        assert stored is not None
        assert stored.locked_until is not None
        assert (await service.status("user-1")).locked_until == stored.locked_until
        with pytest.raises(TooManyAttemptsError):
            await service.confirm_authenticator(
                "user-1", totp_code(setup.secret, clock.now)
            )

        clock.advance(minutes=15)
        await service.confirm_authenticator(
            "user-1", totp_code(setup.secret, clock.now)
        )
        assert (await service.status("user-1")).locked_until is None

    @pytest.mark.asyncio
    async def test_disable_clears_lockout(
        self,
        service: TwoFactorService,
        clock: FakeClock,
        config_store: InMemoryTwoFactorConfigStore,
    ) -> None:
        await _lock_out(service, clock)

        await service.disable("user-1")

        stored = await config_store.get("user-1")
        assert stored is not None
        assert stored.locked_until is None
        assert stored.failed_attempts == 0

    @pytest.mark.asyncio
    async def test_lockout_is_audited(
        self,
        service: TwoFactorService,
        clock: FakeClock,
        audit_store: InMemoryTwoFactorAuditStore,
    ) -> None:
        await _enable_authenticator(service, clock)
        for _ in range(10):
            with pytest.raises((InvalidCodeError, TooManyAttemptsError)):
                await service.verify_login("user-1", BACKUP, "ZZZZZ-ZZZZZ")

        events = await _event_types(audit_store)
        assert events.count(TwoFactorEventType.FAILED) == 10
        assert events[-1] is TwoFactorEventType.LOCKED


class TestBackupCodes:
    """Backup codes through the service."""

    @pytest.mark.asyncio
    async def test_login_with_backup_code(
        self, service: TwoFactorService, clock: FakeClock
    ) -> None:
        _, result = await _enable_authenticator(service, clock)

        login = await service.verify_login("user-1", BACKUP, result.backup_codes[0])

        assert login.method is BACKUP
        assert login.backup_codes_remaining == 9
        with pytest.raises(AlreadyUsedError):
            await service.verify_login("user-1", BACKUP, result.backup_codes[0])

    @pytest.mark.asyncio
    async def test_same_code_from_two_workers_succeeds_once(
        self,
        service_factory: Callable[..., TwoFactorService],
        clock: FakeClock,
    ) -> None:
        # Two services with their own locks stand in for two processes
        codes_store = InterleavingBackupCodeStore()
        first = service_factory(backup_codes=codes_store)
        second = service_factory(backup_codes=codes_store)
        _, result = await _enable_authenticator(first, clock)
        code = result.backup_codes[0]
        codes_store.barrier = ReadBarrier(parties=2)

        results = await asyncio.gather(
            first.verify_login("user-1", BACKUP, code),
            second.verify_login("user-1", BACKUP, code),
            return_exceptions=True,
        )

        logins = [r for r in results if isinstance(r, LoginVerification)]
        assert len(logins) == 1
        assert logins[0].backup_codes_remaining == 9
        assert sum(isinstance(r, AlreadyUsedError) for r in results) == 1
        assert (await first.status("user-1")).backup_codes_remaining == 9

    @pytest.mark.asyncio
    async def test_regenerate(
        self, service: TwoFactorService, clock: FakeClock
    ) -> None:
        _, result = await _enable_authenticator(service, clock)

        fresh = await service.regenerate_backup_codes("user-1")

        assert len(fresh) == 10
        with pytest.raises(InvalidCodeError):
            await service.verify_login("user-1", BACKUP, result.backup_codes[0])
        await service.verify_login("user-1", BACKUP, fresh[0])

    @pytest.mark.asyncio
    async def test_regenerate_requires_enabled(
        self, service: TwoFactorService
    ) -> None:
        with pytest.raises(NotConfiguredError):
            await service.regenerate_backup_codes("user-1")

    @pytest.mark.asyncio
    async def test_get_backup_codes_returns_metadata_only(
        self, service: TwoFactorService, clock: FakeClock
    ) -> None:
        _, result = await _enable_authenticator(service, clock)
        await service.verify_login("user-1", BACKUP, result.backup_codes[3])

        info = await service.get_backup_codes("user-1")

        assert len(info) == 10
        assert sum(i.used for i in info) == 1


class TestRememberDevice:
    """Remember-this-device tokens."""

    @pytest.mark.asyncio
    async def test_remembered_device_skips_code(
        self,
        service: TwoFactorService,
        clock: FakeClock,
        audit_store: InMemoryTwoFactorAuditStore,
    ) -> None:
        secret, _ = await _enable_authenticator(service, clock)

        first = await service.verify_login(
            "user-1",
            APP,
            totp_code(secret, clock.now),
            device_id="laptop",
            remember=True,
        )
        assert first.remember_token is not None
        assert first.remember_expires_at is not None

        second = await service.verify_login(
            "user-1", APP, device_id="laptop", remember_token=first.remember_token
        )

        assert second.device_trusted is True
        assert second.method is None
        assert TwoFactorEventType.DEVICE_TRUSTED in await _event_types(audit_store)

    @pytest.mark.asyncio
    async def test_token_for_other_device_ignored(
        self, service: TwoFactorService, clock: FakeClock
    ) -> None:
        secret, _ = await _enable_authenticator(service, clock)
        first = await service.verify_login(
            "user-1",
            APP,
            totp_code(secret, clock.now),
            device_id="laptop",
            remember=True,
        )

        with pytest.raises(InvalidCodeError):
            await service.verify_login(
                "user-1", APP, device_id="phone", remember_token=first.remember_token
            )

    @pytest.mark.asyncio
    async def test_expired_token_requires_code(
        self, service: TwoFactorService, clock: FakeClock
    ) -> None:
        secret, _ = await _enable_authenticator(service, clock)
        first = await service.verify_login(
            "user-1",
            APP,
            totp_code(secret, clock.now),
            device_id="laptop",
            remember=True,
        )

        clock.advance(days=31)

        with pytest.raises(InvalidCodeError):
            await service.verify_login(
                "user-1", APP, device_id="laptop", remember_token=first.remember_token
            )

    @pytest.mark.asyncio
    async def test_policy_can_disable_remembering(
        self, service: TwoFactorService, clock: FakeClock
    ) -> None:
        secret, _ = await _enable_authenticator(service, clock)
        await service.update_policy(remember_device_days=0)

        result = await service.verify_login(
            "user-1",
            APP,
            totp_code(secret, clock.now),
            device_id="laptop",
            remember=True,
        )

        assert result.remember_token is None

    @pytest.mark.asyncio
    async def test_disabled_account_ignores_token(
        self, service: TwoFactorService, clock: FakeClock
    ) -> None:
        secret, _ = await _enable_authenticator(service, clock)
        first = await service.verify_login(
            "user-1",
            APP,
            totp_code(secret, clock.now),
            device_id="laptop",
            remember=True,
        )
        await service.disable("user-1")

        with pytest.raises(NotConfiguredError):
            await service.verify_login(
                "user-1", APP, device_id="laptop", remember_token=first.remember_token
            )


class TestAudit:
    """Audit trail of the main lifecycle."""

    @pytest.mark.asyncio
    async def test_lifecycle_events(
        self,
        service: TwoFactorService,
        clock: FakeClock,
        audit_store: InMemoryTwoFactorAuditStore,
    ) -> None:
        secret, _ = await _enable_authenticator(service, clock)
        await service.verify_login("user-1", APP, totp_code(secret, clock.now))
        await service.disable("user-1")

        assert await _event_types(audit_store) == [
            TwoFactorEventType.SETUP_STARTED,
            TwoFactorEventType.ENABLED,
            TwoFactorEventType.BACKUP_CODES_GENERATED,
            TwoFactorEventType.VERIFIED,
            TwoFactorEventType.DISABLED,
        ]

    @pytest.mark.asyncio
    async def test_events_never_carry_codes(
        self,
        service: TwoFactorService,
        mailer: RecordingEmailDelivery,
        audit_store: InMemoryTwoFactorAuditStore,
    ) -> None:
        result = await _enable_email(service, mailer)

        dumped = repr([e.to_dict() for e in audit_store.all_events()])
        for code in (*result.backup_codes, mailer.sent[0][1]):
            assert code not in dumped
        assert "jane@example.com" not in dumped


class TestAdministration:
    """Administrator reset, per-account view and adoption stats."""

    @pytest.mark.asyncio
    async def test_reset_overrides_required_policy(
        self,
        service: TwoFactorService,
        clock: FakeClock,
        audit_store: InMemoryTwoFactorAuditStore,
    ) -> None:
        secret, _ = await _enable_authenticator(service, clock)
        await service.update_policy(require_for_all_users=True)
        with pytest.raises(PolicyViolationError):
            await service.disable("user-1")

        await service.admin_reset("user-1", actor_id="admin-1")

        status = await service.status("user-1")
        assert status.state is TwoFactorState.DISABLED
        assert status.setup_required is True
        assert await service.get_backup_codes("user-1") == []
        with pytest.raises(NotConfiguredError):
            await service.verify_login("user-1", APP, totp_code(secret, clock.now))

        reset = await audit_store.get_events(
            "user-1", event_types=[TwoFactorEventType.ADMIN_RESET]
        )
        assert len(reset) == 1
        assert reset[0].method == "AUTHENTICATOR_APP"
        assert reset[0].metadata == {"actor_id": "admin-1"}

    @pytest.mark.asyncio
    async def test_reset_lifts_lockout(
        self,
        service: TwoFactorService,
        clock: FakeClock,
        config_store: InMemoryTwoFactorConfigStore,
    ) -> None:
        await _lock_out(service, clock)

        await service.admin_reset("user-1")

        stored = await config_store.get("user-1")
        assert stored is not None
        assert stored.locked_until is None
        assert stored.failed_attempts == 0
        # The owner can enrol again straight away
        await _enable_authenticator(service, clock)

    @pytest.mark.asyncio
    async def test_reset_drops_pending_email_code(
        self,
        service: TwoFactorService,
        mailer: RecordingEmailDelivery,
        challenge_store: InMemoryChallengeStore,
    ) -> None:
        await service.setup_email("user-1", "jane@example.com")
        code = mailer.last_code

        await service.admin_reset("user-1")

        assert await challenge_store.get("user-1", ChallengePurpose.EMAIL_SETUP) is None
        with pytest.raises(NotConfiguredError):
            await service.confirm_email("user-1", code)

    @pytest.mark.asyncio
    async def test_reset_unknown_account(
        self,
        service: TwoFactorService,
        audit_store: InMemoryTwoFactorAuditStore,
        config_store: InMemoryTwoFactorConfigStore,
    ) -> None:
        await service.admin_reset("nobody")

        assert await config_store.get("nobody") is None
        events = await audit_store.get_events("nobody")
        assert [e.event_type for e in events] == [TwoFactorEventType.ADMIN_RESET]

    @pytest.mark.asyncio
    async def test_admin_view(
        self, service: TwoFactorService, clock: FakeClock
    ) -> None:
        _, result = await _enable_authenticator(service, clock)
        await service.verify_login("user-1", BACKUP, result.backup_codes[0])

        view = await service.admin_view("user-1", event_limit=2)

        assert view.status.enabled is True
        assert view.status.backup_codes_remaining == 9
        assert len(view.backup_codes) == 10
        assert sum(info.used for info in view.backup_codes) == 1
        assert [e.event_type for e in view.recent_events] == [
            TwoFactorEventType.BACKUP_CODE_USED,
            TwoFactorEventType.VERIFIED,
        ]

    @pytest.mark.asyncio
    async def test_stats(
        self,
        service: TwoFactorService,
        clock: FakeClock,
        mailer: RecordingEmailDelivery,
    ) -> None:
        await _enable_authenticator(service, clock, "user-1")
        await _enable_email(service, mailer, "user-2")
        await service.setup_authenticator("user-3")
        await service.setup_authenticator("user-4")
        await service.disable("user-4")

        stats = await service.stats(
            total_users=8, admin_user_ids=["user-1", "user-9"]
        )

        assert stats.enabled == 2
        assert stats.pending == 1
        assert stats.by_method == {
            TwoFactorMethod.EMAIL: 1,
            TwoFactorMethod.AUTHENTICATOR_APP: 1,
        }
        assert stats.enabled_percentage == 25
        assert stats.admins == 2
        assert stats.admins_enabled == 1
        assert stats.admin_percentage == 50

    @pytest.mark.asyncio
    async def test_stats_without_user_directory(
        self, service: TwoFactorService, clock: FakeClock
    ) -> None:
        await _enable_authenticator(service, clock, "user-1")
        await _enable_authenticator(service, clock, "user-2")

        stats = await service.stats()
        rounded = await service.stats(total_users=3, admin_user_ids=[])

        assert stats.enabled == 2
        assert stats.enabled_percentage is None
        assert stats.admins is None
        assert stats.admin_percentage is None
        assert rounded.enabled_percentage == 67
        assert rounded.admin_percentage == 0


class TestHousekeeping:
    """Purge and key rotation."""

    @pytest.mark.asyncio
    async def test_purge_expired_challenges(
        self,
        service: TwoFactorService,
        clock: FakeClock,
    ) -> None:
        await service.setup_email("user-1", "jane@example.com")
        clock.advance(minutes=11)

        assert await service.purge_expired_challenges() == 1
        assert await service.purge_expired_challenges() == 0

    @pytest.mark.asyncio
    async def test_rotate_secrets(
        self,
        service_factory: Callable[..., TwoFactorService],
        clock: FakeClock,
        settings: TwoFactorSettings,
        config_store: InMemoryTwoFactorConfigStore,
    ) -> None:
        old_key, new_key = SecretCodec.generate_key(), SecretCodec.generate_key()
        before = service_factory(
            codec=SecretCodec.from_settings({"v1": old_key}, settings)
        )
        secret, _ = await _enable_authenticator(before, clock)
        await before.setup_authenticator("user-2")
        await before.disable("user-3")

        rotating = SecretCodec.from_settings(
            {"v1": old_key, "v2": new_key}, settings, primary_key_id="v2"
        )
        after = service_factory(codec=rotating)

        assert await after.rotate_secrets() == 2

        stored = await config_store.get("user-1")
        assert stored is not None
        assert stored.totp_secret_encrypted is not None
        only_new = SecretCodec({"v2": new_key})
        assert only_new.decrypt_secret(stored.totp_secret_encrypted) == secret
        await after.verify_login("user-1", APP, totp_code(secret, clock.now))


def test_mask_email() -> None:
    assert mask_email("jane@example.com") == "j***@example.com"
    assert mask_email("@example.com") == "***"
    assert mask_email("nobody") == "***"
