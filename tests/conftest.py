"""Test configuration and fixtures."""

from __future__ import annotations

import asyncio
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pyotp
import pytest

from twofactor import (
    DeviceTrustManager,
    EmailCodeContext,
    InMemoryBackupCodeStore,
    InMemoryChallengeStore,
    InMemoryPolicyStore,
    InMemoryTwoFactorAuditStore,
    InMemoryTwoFactorConfigStore,
    SecretCodec,
    TwoFactorService,
    TwoFactorSettings,
)
from twofactor.models import ChallengePurpose, HashedCode, PendingChallenge


class FakeClock:
    """Injected clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 14, 9, 26, 53, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingEmailDelivery:
    """Email hook that records every message instead of sending it."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, EmailCodeContext]] = []
        self.fail = False
        self.raise_error: Exception | None = None

    async def send(self, to_address: str, code: str, context: EmailCodeContext) -> bool:
        if self.raise_error is not None:
            raise self.raise_error
        self.sent.append((to_address, code, context))
        return not self.fail

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]


class StaticAppSettings:
    def __init__(self, app_name: str = "ProsumeAI") -> None:
        self.app_name = app_name

    async def get_app_name(self) -> str:
        return self.app_name


class ReadBarrier:
    """Holds readers until ``parties`` of them have read, then releases all.

    Concurrent callers then act on the same snapshot, as two requests served
    by separate processes would.
    """

    def __init__(self, parties: int = 2) -> None:
        self.parties = parties
        self._arrived = 0
        self._released = asyncio.Event()

    async def wait(self) -> None:
        self._arrived += 1
        if self._arrived >= self.parties:
            self._released.set()
        await asyncio.wait_for(self._released.wait(), timeout=1.0)


class InterleavingBackupCodeStore(InMemoryBackupCodeStore):
    """Backup code store whose reads wait at ``barrier`` when one is set."""

    def __init__(self) -> None:
        super().__init__()
        self.barrier: ReadBarrier | None = None

    async def list_codes(self, user_id: str) -> list[HashedCode]:
        codes = await super().list_codes(user_id)
        if self.barrier is not None:
            await self.barrier.wait()
        return codes


class InterleavingChallengeStore(InMemoryChallengeStore):
    """Challenge store whose reads wait at ``barrier`` when one is set."""

    def __init__(self) -> None:
        super().__init__()
        self.barrier: ReadBarrier | None = None

    async def get(
        self, user_id: str, purpose: ChallengePurpose
    ) -> PendingChallenge | None:
        challenge = await super().get(user_id, purpose)
        if self.barrier is not None:
            await self.barrier.wait()
        return challenge


def totp_code(secret: str, when: datetime, offset: int = 0) -> str:
    """Authenticator code for ``secret`` at ``when`` shifted by ``offset`` steps."""
    return pyotp.TOTP(secret).at(when, counter_offset=offset)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> TwoFactorSettings:
    # bcrypt minimum cost keeps the suite fast
    return TwoFactorSettings(hash_rounds=4)


@pytest.fixture
def codec(settings: TwoFactorSettings) -> SecretCodec:
    return SecretCodec.from_settings({"v1": SecretCodec.generate_key()}, settings)


@pytest.fixture
def device_keys() -> dict[str, bytes]:
    return {"d1": secrets.token_bytes(32)}


@pytest.fixture
def devices(device_keys: dict[str, bytes], clock: FakeClock) -> DeviceTrustManager:
    return DeviceTrustManager(device_keys, clock=clock)


@pytest.fixture
def config_store() -> InMemoryTwoFactorConfigStore:
    return InMemoryTwoFactorConfigStore()


@pytest.fixture
def challenge_store() -> InMemoryChallengeStore:
    return InMemoryChallengeStore()


@pytest.fixture
def backup_code_store() -> InMemoryBackupCodeStore:
    return InMemoryBackupCodeStore()


@pytest.fixture
def policy_store() -> InMemoryPolicyStore:
    return InMemoryPolicyStore()


@pytest.fixture
def audit_store() -> InMemoryTwoFactorAuditStore:
    return InMemoryTwoFactorAuditStore()


@pytest.fixture
def mailer() -> RecordingEmailDelivery:
    return RecordingEmailDelivery()


@pytest.fixture
def service_factory(
    config_store: InMemoryTwoFactorConfigStore,
    challenge_store: InMemoryChallengeStore,
    backup_code_store: InMemoryBackupCodeStore,
    policy_store: InMemoryPolicyStore,
    codec: SecretCodec,
    devices: DeviceTrustManager,
    mailer: RecordingEmailDelivery,
    audit_store: InMemoryTwoFactorAuditStore,
    settings: TwoFactorSettings,
    clock: FakeClock,
) -> Callable[..., TwoFactorService]:
    """Builds services over the shared in-memory adapters; kwargs override."""

    def build(**overrides: Any) -> TwoFactorService:
        wiring: dict[str, Any] = {
            "configs": config_store,
            "challenges": challenge_store,
            "backup_codes": backup_code_store,
            "policies": policy_store,
            "codec": codec,
            "devices": devices,
            "email_delivery": mailer,
            "app_settings": StaticAppSettings(),
            "audit_store": audit_store,
            "settings": settings,
            "clock": clock,
        }
        wiring.update(overrides)
        return TwoFactorService(**wiring)

    return build


@pytest.fixture
def service(service_factory: Callable[..., TwoFactorService]) -> TwoFactorService:
    """Fully wired service over in-memory adapters."""
    return service_factory()
