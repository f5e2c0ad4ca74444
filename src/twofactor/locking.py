"""Per-account serialization of two-factor mutations.

Every state-changing two-factor operation on an account runs while holding
that account's lock. The in-memory strategy covers a single process; a
multi-process deployment plugs in a distributed ILockStrategy (Redis,
``SELECT ... FOR UPDATE``) with the same shape.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable
from uuid import uuid4

from .exceptions import LockTimeoutError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger("twofactor.locking")

ACCOUNT_RESOURCE_TYPE = "TwoFactorConfig"


@dataclass(frozen=True)
class ResourceIdentifier:
    """Identifies a lockable resource."""

    resource_type: str
    resource_id: str

    def __str__(self) -> str:
        return f"{self.resource_type}:{self.resource_id}"

    @classmethod
    def for_account(cls, user_id: str) -> ResourceIdentifier:
        return cls(ACCOUNT_RESOURCE_TYPE, user_id)


@runtime_checkable
class ILockStrategy(Protocol):
    """Lock strategy protocol for per-resource mutual exclusion."""

    async def acquire(
        self, resource: ResourceIdentifier, *, timeout: float = 10.0
    ) -> str:
        """Acquire the lock and return an ownership token.

        Raises:
            LockTimeoutError: If the lock is not acquired within ``timeout``.
        """
        ...

    async def release(self, resource: ResourceIdentifier, token: str) -> None:
        """Release a lock held under ``token``. Unknown tokens are ignored."""
        ...


@dataclass
class _LockState:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    token: str | None = None
    waiters: int = 0


class InMemoryLockStrategy(ILockStrategy):
    """Single-process lock strategy.

    Waiters are served in arrival order (``asyncio.Lock`` is FIFO). State for
    a resource is dropped once nobody holds or waits for it.
    """

    def __init__(self) -> None:
        self._locks: dict[ResourceIdentifier, _LockState] = {}

    async def acquire(
        self, resource: ResourceIdentifier, *, timeout: float = 10.0
    ) -> str:
        state = self._locks.setdefault(resource, _LockState())
        state.waiters += 1
        try:
            await asyncio.wait_for(state.lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError as err:
            logger.warning("Lock on %s timed out after %.1fs", resource, timeout)
            raise LockTimeoutError(
                f"Could not lock {resource} within {timeout}s"
            ) from err
        finally:
            state.waiters -= 1

        state.token = uuid4().hex
        logger.debug("Lock acquired: %s", resource)
        return state.token

    async def release(self, resource: ResourceIdentifier, token: str) -> None:
        state = self._locks.get(resource)
        if state is None or state.token != token:
            logger.warning("Attempted to release invalid lock: %s", resource)
            return

        state.token = None
        state.lock.release()
        if state.waiters == 0 and not state.lock.locked():
            self._locks.pop(resource, None)
        logger.debug("Lock released: %s", resource)

    def is_locked(self, resource: ResourceIdentifier) -> bool:
        state = self._locks.get(resource)
        return state is not None and state.lock.locked()


@asynccontextmanager
async def hold(
    strategy: ILockStrategy, resource: ResourceIdentifier, *, timeout: float = 10.0
) -> AsyncIterator[None]:
    """Hold ``resource`` for the duration of the block."""
    token = await strategy.acquire(resource, timeout=timeout)
    try:
        yield
    finally:
        await strategy.release(resource, token)


__all__: list[str] = [
    "ACCOUNT_RESOURCE_TYPE",
    "ResourceIdentifier",
    "ILockStrategy",
    "InMemoryLockStrategy",
    "hold",
]
