"""In-memory persistence adapters.

Every conditional operation runs to completion without awaiting, so under
asyncio it is atomic with respect to other coroutines. Suitable for tests
and single-process deployments only; state is lost on restart.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import replace
from typing import TYPE_CHECKING

from ..exceptions import ConcurrentUpdateError
from ..models import resolve_state
from ..policy import Policy
from ..ports import (
    IBackupCodeStore,
    IChallengeStore,
    IPolicyStore,
    ITwoFactorConfigStore,
)

if TYPE_CHECKING:
    from collections.abc import Collection
    from datetime import datetime

    from ..models import (
        ChallengePurpose,
        HashedCode,
        PendingChallenge,
        TwoFactorConfig,
        TwoFactorMethod,
        TwoFactorState,
    )

logger = logging.getLogger("twofactor.persistence")


def _merge_totp_step(
    current: TwoFactorConfig | None, incoming: TwoFactorConfig
) -> int | None:
    """Never move the replay marker backwards; None clears it."""
    if current is None or incoming.last_totp_step is None:
        return incoming.last_totp_step
    if current.last_totp_step is None:
        return incoming.last_totp_step
    return max(current.last_totp_step, incoming.last_totp_step)


class InMemoryTwoFactorConfigStore(ITwoFactorConfigStore):
    """Dict-backed config store with optimistic version checks."""

    def __init__(self) -> None:
        self._configs: dict[str, TwoFactorConfig] = {}

    async def get(self, user_id: str) -> TwoFactorConfig | None:
        config = self._configs.get(user_id)
        return config.copy() if config is not None else None

    async def save(self, config: TwoFactorConfig) -> TwoFactorConfig:
        current = self._configs.get(config.user_id)
        current_version = current.version if current is not None else 0
        if current_version != config.version:
            raise ConcurrentUpdateError(config.user_id, config.version)
        stored = replace(config, version=config.version + 1)
        stored.last_totp_step = _merge_totp_step(current, config)
        self._configs[config.user_id] = stored
        logger.debug(
            "Saved 2FA config for %s (version=%d)", config.user_id, stored.version
        )
        return stored.copy()

    async def advance_totp_step(self, user_id: str, step: int) -> bool:
        config = self._configs.get(user_id)
        if config is None:
            return False
        if config.last_totp_step is not None and step <= config.last_totp_step:
            return False
        config.last_totp_step = step
        return True

    async def list_user_ids(self) -> list[str]:
        return list(self._configs)

    async def count_by_state(
        self, user_ids: Collection[str] | None = None
    ) -> dict[tuple[TwoFactorState, TwoFactorMethod | None], int]:
        counts: Counter[tuple[TwoFactorState, TwoFactorMethod | None]] = Counter()
        for user_id, config in self._configs.items():
            if user_ids is not None and user_id not in user_ids:
                continue
            counts[
                resolve_state(
                    config.is_enabled, config.enabled_method, config.pending_method
                )
            ] += 1
        return dict(counts)


class InMemoryChallengeStore(IChallengeStore):
    """Dict-backed pending challenge store, one challenge per (user, purpose)."""

    def __init__(self) -> None:
        self._challenges: dict[tuple[str, ChallengePurpose], PendingChallenge] = {}

    def _find(self, challenge_id: str) -> tuple[str, ChallengePurpose] | None:
        for key, challenge in self._challenges.items():
            if challenge.challenge_id == challenge_id:
                return key
        return None

    async def replace(self, challenge: PendingChallenge) -> None:
        self._challenges[(challenge.user_id, challenge.purpose)] = challenge

    async def get(
        self, user_id: str, purpose: ChallengePurpose
    ) -> PendingChallenge | None:
        return self._challenges.get((user_id, purpose))

    async def decrement_attempts(self, challenge_id: str) -> int | None:
        key = self._find(challenge_id)
        if key is None:
            return None
        challenge = self._challenges[key]
        if challenge.attempts_remaining <= 0:
            return None
        updated = replace(
            challenge, attempts_remaining=challenge.attempts_remaining - 1
        )
        self._challenges[key] = updated
        return updated.attempts_remaining

    async def consume(self, challenge_id: str) -> bool:
        key = self._find(challenge_id)
        if key is None:
            return False
        del self._challenges[key]
        return True

    async def delete(self, user_id: str, purpose: ChallengePurpose) -> None:
        self._challenges.pop((user_id, purpose), None)

    async def delete_for_user(self, user_id: str) -> None:
        for key in [k for k in self._challenges if k[0] == user_id]:
            del self._challenges[key]

    async def purge_expired(self, now: datetime) -> int:
        expired = [k for k, c in self._challenges.items() if c.is_expired(now)]
        for key in expired:
            del self._challenges[key]
        return len(expired)


class InMemoryBackupCodeStore(IBackupCodeStore):
    """Dict-backed hashed backup code store."""

    def __init__(self) -> None:
        self._codes: dict[str, list[HashedCode]] = {}

    async def replace_all(self, user_id: str, codes: list[HashedCode]) -> None:
        self._codes[user_id] = list(codes)

    async def list_codes(self, user_id: str) -> list[HashedCode]:
        return list(self._codes.get(user_id, []))

    async def mark_used(self, code_id: str, used_at: datetime) -> bool:
        for user_codes in self._codes.values():
            for i, code in enumerate(user_codes):
                if code.code_id != code_id:
                    continue
                if code.used:
                    return False
                user_codes[i] = replace(code, used=True, used_at=used_at)
                return True
        return False

    async def revoke_all(self, user_id: str) -> None:
        self._codes.pop(user_id, None)

    async def count_unused(self, user_id: str) -> int:
        return sum(1 for code in self._codes.get(user_id, []) if not code.used)


class InMemoryPolicyStore(IPolicyStore):
    """Holds the singleton policy; starts with the default policy."""

    def __init__(self, policy: Policy | None = None) -> None:
        self._policy = policy or Policy()

    async def get(self) -> Policy:
        return self._policy

    async def save(self, policy: Policy) -> None:
        self._policy = policy


__all__: list[str] = [
    "InMemoryTwoFactorConfigStore",
    "InMemoryChallengeStore",
    "InMemoryBackupCodeStore",
    "InMemoryPolicyStore",
]
