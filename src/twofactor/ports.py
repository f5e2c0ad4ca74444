"""Ports (protocols) for two-factor collaborators.

Persistence, email delivery, application settings, policy storage and
audit storage are provided by the application. In-memory adapters live in
``twofactor.persistence.memory`` and ``twofactor.audit``; a SQLAlchemy
adapter lives in ``twofactor.persistence.sql``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Collection
    from datetime import datetime

    from .audit import TwoFactorAuditEvent, TwoFactorEventType
    from .models import (
        ChallengePurpose,
        HashedCode,
        PendingChallenge,
        TwoFactorConfig,
        TwoFactorMethod,
        TwoFactorState,
    )
    from .policy import Policy


# ═══════════════════════════════════════════════════════════════
# PERSISTENCE
# ═══════════════════════════════════════════════════════════════


@runtime_checkable
class ITwoFactorConfigStore(Protocol):
    """Storage for per-account TwoFactorConfig records."""

    async def get(self, user_id: str) -> TwoFactorConfig | None:
        """Load the config for a user, or None if never set up."""
        ...

    async def save(self, config: TwoFactorConfig) -> TwoFactorConfig:
        """Insert or update a config.

        The stored version must equal ``config.version``; the returned copy
        carries the bumped version.

        Raises:
            ConcurrentUpdateError: If the stored version differs.
        """
        ...

    async def advance_totp_step(self, user_id: str, step: int) -> bool:
        """Record an accepted TOTP step, only if it is newer than the last.

        Must be a single conditional update so two requests presenting the
        same code cannot both succeed.

        Returns:
            True if the step was recorded, False if it was a replay.
        """
        ...

    async def list_user_ids(self) -> list[str]:
        """Every user id with a stored config."""
        ...

    async def count_by_state(
        self, user_ids: Collection[str] | None = None
    ) -> dict[tuple[TwoFactorState, TwoFactorMethod | None], int]:
        """Number of configs per (state, effective method).

        Disabled configs count under ``(DISABLED, None)``. With ``user_ids``
        only those accounts are counted.
        """
        ...


@runtime_checkable
class IChallengeStore(Protocol):
    """Storage for pending email challenges."""

    async def replace(self, challenge: PendingChallenge) -> None:
        """Store a challenge, invalidating any earlier one of the same purpose."""
        ...

    async def get(
        self, user_id: str, purpose: ChallengePurpose
    ) -> PendingChallenge | None:
        """The current challenge for (user, purpose), if any."""
        ...

    async def decrement_attempts(self, challenge_id: str) -> int | None:
        """Use up one attempt, only while attempts remain.

        Returns:
            Attempts left after the decrement, or None if the challenge no
            longer exists or had none left.
        """
        ...

    async def consume(self, challenge_id: str) -> bool:
        """Delete a challenge after a successful check.

        Returns:
            True for the single caller that removed it, False otherwise.
        """
        ...

    async def delete(self, user_id: str, purpose: ChallengePurpose) -> None:
        """Delete the challenge for (user, purpose), if any."""
        ...

    async def delete_for_user(self, user_id: str) -> None:
        """Delete every challenge of a user."""
        ...

    async def purge_expired(self, now: datetime) -> int:
        """Delete expired challenges and return how many were removed."""
        ...


@runtime_checkable
class IBackupCodeStore(Protocol):
    """Storage for hashed backup codes."""

    async def replace_all(self, user_id: str, codes: list[HashedCode]) -> None:
        """Replace a user's whole batch."""
        ...

    async def list_codes(self, user_id: str) -> list[HashedCode]:
        """Every stored code of a user, used ones included."""
        ...

    async def mark_used(self, code_id: str, used_at: datetime) -> bool:
        """Flip ``used`` to true, only if it is currently false.

        Returns:
            True for the single caller that made the transition.
        """
        ...

    async def revoke_all(self, user_id: str) -> None:
        """Delete a user's whole batch."""
        ...

    async def count_unused(self, user_id: str) -> int:
        """Number of unused codes."""
        ...


@runtime_checkable
class IPolicyStore(Protocol):
    """Storage for the singleton Policy record."""

    async def get(self) -> Policy:
        """The current policy; a default one is created on first read."""
        ...

    async def save(self, policy: Policy) -> None:
        """Replace the policy."""
        ...


# ═══════════════════════════════════════════════════════════════
# APPLICATION HOOKS
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class EmailCodeContext:
    """Extra data handed to the email collaborator with a code.

    Attributes:
        user_id: Recipient account.
        purpose: Setup or login.
        expires_in_minutes: Code lifetime, for the email body.
    """

    user_id: str
    purpose: ChallengePurpose
    expires_in_minutes: int


@runtime_checkable
class IEmailDelivery(Protocol):
    """Sends verification codes by email.

    The two-factor package does not send email itself; the application
    implements this with its mail service.
    """

    async def send(
        self, to_address: str, code: str, context: EmailCodeContext
    ) -> bool:
        """Send a code.

        Returns:
            True if the message was accepted for delivery.
        """
        ...


@runtime_checkable
class IAppSettings(Protocol):
    """Application settings used by the two-factor package."""

    async def get_app_name(self) -> str:
        """Application name, shown as issuer in authenticator apps."""
        ...


@runtime_checkable
class ITwoFactorAuditStore(Protocol):
    """Storage for two-factor audit events."""

    async def record(self, event: TwoFactorAuditEvent) -> None:
        """Record an event."""
        ...

    async def get_events(
        self,
        user_id: str,
        *,
        event_types: list[TwoFactorEventType] | None = None,
        limit: int = 100,
    ) -> list[TwoFactorAuditEvent]:
        """Most recent events of a user, newest first."""
        ...


__all__: list[str] = [
    "ITwoFactorConfigStore",
    "IChallengeStore",
    "IBackupCodeStore",
    "IPolicyStore",
    "EmailCodeContext",
    "IEmailDelivery",
    "IAppSettings",
    "ITwoFactorAuditStore",
]
