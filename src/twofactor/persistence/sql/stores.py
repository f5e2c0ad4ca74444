"""SQLAlchemy (async) persistence adapters.

Every conditional operation is one ``UPDATE ... WHERE`` or ``DELETE ...
WHERE`` statement whose ``rowcount`` tells the caller whether it won, so
concurrent requests across processes resolve to exactly one winner.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError

from ...exceptions import ConcurrentUpdateError
from ...models import (
    ChallengePurpose,
    HashedCode,
    PendingChallenge,
    TwoFactorConfig,
    TwoFactorMethod,
    resolve_state,
)
from ...policy import Policy
from ...ports import (
    IBackupCodeStore,
    IChallengeStore,
    IPolicyStore,
    ITwoFactorConfigStore,
)
from .models import Base, BackupCodeRow, ChallengeRow, PolicyRow, TwoFactorConfigRow

if TYPE_CHECKING:
    from collections.abc import Callable, Collection

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

    from ...models import TwoFactorState

    AsyncSessionFactory = Callable[[], AsyncSession]

logger = logging.getLogger("twofactor.persistence")

POLICY_ROW_ID = 1


def _to_db(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _method(value: str | None) -> TwoFactorMethod | None:
    return TwoFactorMethod(value) if value is not None else None


async def create_schema(engine: AsyncEngine) -> None:
    """Create the two-factor tables if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ═══════════════════════════════════════════════════════════════
# CONFIGS
# ═══════════════════════════════════════════════════════════════


class SQLAlchemyTwoFactorConfigStore(ITwoFactorConfigStore):
    """Config store over ``two_factor_configs`` with optimistic versioning."""

    def __init__(self, session_factory: AsyncSessionFactory) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _to_domain(row: TwoFactorConfigRow) -> TwoFactorConfig:
        return TwoFactorConfig(
            user_id=row.user_id,
            enabled_method=_method(row.enabled_method),
            pending_method=_method(row.pending_method),
            is_enabled=row.is_enabled,
            totp_secret_encrypted=row.totp_secret_encrypted,
            pending_totp_secret_encrypted=row.pending_totp_secret_encrypted,
            last_totp_step=row.last_totp_step,
            email=row.email,
            failed_attempts=row.failed_attempts,
            locked_until=_from_db(row.locked_until),
            created_at=_from_db(row.created_at),  # type: ignore[arg-type]
            updated_at=_from_db(row.updated_at),  # type: ignore[arg-type]
            version=row.version,
        )

    @staticmethod
    def _values(config: TwoFactorConfig) -> dict[str, Any]:
        return {
            "enabled_method": (
                config.enabled_method.value if config.enabled_method else None
            ),
            "pending_method": (
                config.pending_method.value if config.pending_method else None
            ),
            "is_enabled": config.is_enabled,
            "totp_secret_encrypted": config.totp_secret_encrypted,
            "pending_totp_secret_encrypted": config.pending_totp_secret_encrypted,
            "email": config.email,
            "failed_attempts": config.failed_attempts,
            "locked_until": _to_db(config.locked_until),
            "updated_at": _to_db(config.updated_at),
        }

    async def get(self, user_id: str) -> TwoFactorConfig | None:
        async with self._session_factory() as session:
            row = await session.get(TwoFactorConfigRow, user_id)
            return self._to_domain(row) if row is not None else None

    async def save(self, config: TwoFactorConfig) -> TwoFactorConfig:
        values = self._values(config)
        async with self._session_factory() as session:
            if config.version == 0:
                session.add(
                    TwoFactorConfigRow(
                        user_id=config.user_id,
                        last_totp_step=config.last_totp_step,
                        created_at=_to_db(config.created_at),
                        version=1,
                        **values,
                    )
                )
                try:
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    raise ConcurrentUpdateError(config.user_id, 0) from e
            else:
                # The replay marker only moves forward; None clears it.
                step = config.last_totp_step
                if step is None:
                    step_value: Any = None
                else:
                    column = TwoFactorConfigRow.last_totp_step
                    step_value = case(
                        (column.is_(None), step),
                        (column > step, column),
                        else_=step,
                    )
                result = await session.execute(
                    update(TwoFactorConfigRow)
                    .where(
                        TwoFactorConfigRow.user_id == config.user_id,
                        TwoFactorConfigRow.version == config.version,
                    )
                    .values(
                        last_totp_step=step_value,
                        version=TwoFactorConfigRow.version + 1,
                        **values,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    raise ConcurrentUpdateError(config.user_id, config.version)
                await session.commit()

            row = await session.get(
                TwoFactorConfigRow, config.user_id, populate_existing=True
            )
            assert row is not None
            logger.debug(
                "Saved 2FA config for %s (version=%d)", config.user_id, row.version
            )
            return self._to_domain(row)

    async def advance_totp_step(self, user_id: str, step: int) -> bool:
        column = TwoFactorConfigRow.last_totp_step
        async with self._session_factory() as session:
            result = await session.execute(
                update(TwoFactorConfigRow)
                .where(
                    TwoFactorConfigRow.user_id == user_id,
                    column.is_(None) | (column < step),
                )
                .values(last_totp_step=step)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return bool(result.rowcount == 1)

    async def list_user_ids(self) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(select(TwoFactorConfigRow.user_id))
            return list(result.scalars())

    async def count_by_state(
        self, user_ids: Collection[str] | None = None
    ) -> dict[tuple[TwoFactorState, TwoFactorMethod | None], int]:
        flags = (
            TwoFactorConfigRow.is_enabled,
            TwoFactorConfigRow.enabled_method,
            TwoFactorConfigRow.pending_method,
        )
        stmt = select(*flags, func.count()).group_by(*flags)
        if user_ids is not None:
            stmt = stmt.where(TwoFactorConfigRow.user_id.in_(list(user_ids)))

        counts: dict[tuple[TwoFactorState, TwoFactorMethod | None], int] = {}
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            for is_enabled, enabled_method, pending_method, count in result:
                key = resolve_state(
                    bool(is_enabled), _method(enabled_method), _method(pending_method)
                )
                counts[key] = counts.get(key, 0) + int(count)
        return counts


# ═══════════════════════════════════════════════════════════════
# CHALLENGES
# ═══════════════════════════════════════════════════════════════


class SQLAlchemyChallengeStore(IChallengeStore):
    """Pending email challenges over ``two_factor_challenges``."""

    def __init__(self, session_factory: AsyncSessionFactory) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _to_domain(row: ChallengeRow) -> PendingChallenge:
        return PendingChallenge(
            user_id=row.user_id,
            purpose=ChallengePurpose(row.purpose),
            code_hash=row.code_hash,
            expires_at=_from_db(row.expires_at),  # type: ignore[arg-type]
            attempts_remaining=row.attempts_remaining,
            created_at=_from_db(row.created_at),  # type: ignore[arg-type]
            challenge_id=row.challenge_id,
        )

    async def replace(self, challenge: PendingChallenge) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(ChallengeRow).where(
                    ChallengeRow.user_id == challenge.user_id,
                    ChallengeRow.purpose == challenge.purpose.value,
                )
            )
            session.add(
                ChallengeRow(
                    challenge_id=challenge.challenge_id,
                    user_id=challenge.user_id,
                    purpose=challenge.purpose.value,
                    code_hash=challenge.code_hash,
                    expires_at=_to_db(challenge.expires_at),
                    attempts_remaining=challenge.attempts_remaining,
                    created_at=_to_db(challenge.created_at),
                )
            )
            await session.commit()

    async def get(
        self, user_id: str, purpose: ChallengePurpose
    ) -> PendingChallenge | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ChallengeRow).where(
                    ChallengeRow.user_id == user_id,
                    ChallengeRow.purpose == purpose.value,
                )
            )
            row = result.scalar_one_or_none()
            return self._to_domain(row) if row is not None else None

    async def decrement_attempts(self, challenge_id: str) -> int | None:
        async with self._session_factory() as session:
            result = await session.execute(
                update(ChallengeRow)
                .where(
                    ChallengeRow.challenge_id == challenge_id,
                    ChallengeRow.attempts_remaining > 0,
                )
                .values(attempts_remaining=ChallengeRow.attempts_remaining - 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                return None
            remaining = await session.scalar(
                select(ChallengeRow.attempts_remaining).where(
                    ChallengeRow.challenge_id == challenge_id
                )
            )
            await session.commit()
            return remaining

    async def consume(self, challenge_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(ChallengeRow).where(ChallengeRow.challenge_id == challenge_id)
            )
            await session.commit()
            return bool(result.rowcount == 1)

    async def delete(self, user_id: str, purpose: ChallengePurpose) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(ChallengeRow).where(
                    ChallengeRow.user_id == user_id,
                    ChallengeRow.purpose == purpose.value,
                )
            )
            await session.commit()

    async def delete_for_user(self, user_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(ChallengeRow).where(ChallengeRow.user_id == user_id)
            )
            await session.commit()

    async def purge_expired(self, now: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(ChallengeRow).where(ChallengeRow.expires_at <= _to_db(now))
            )
            await session.commit()
            return int(result.rowcount or 0)


# ═══════════════════════════════════════════════════════════════
# BACKUP CODES
# ═══════════════════════════════════════════════════════════════


class SQLAlchemyBackupCodeStore(IBackupCodeStore):
    """Hashed backup codes over ``two_factor_backup_codes``."""

    def __init__(self, session_factory: AsyncSessionFactory) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _to_domain(row: BackupCodeRow) -> HashedCode:
        return HashedCode(
            user_id=row.user_id,
            hash=row.hash,
            used=row.used,
            used_at=_from_db(row.used_at),
            created_at=_from_db(row.created_at),  # type: ignore[arg-type]
            code_id=row.code_id,
        )

    async def replace_all(self, user_id: str, codes: list[HashedCode]) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(BackupCodeRow).where(BackupCodeRow.user_id == user_id)
            )
            session.add_all(
                BackupCodeRow(
                    code_id=code.code_id,
                    user_id=user_id,
                    hash=code.hash,
                    used=code.used,
                    used_at=_to_db(code.used_at),
                    created_at=_to_db(code.created_at),
                )
                for code in codes
            )
            await session.commit()

    async def list_codes(self, user_id: str) -> list[HashedCode]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(BackupCodeRow)
                .where(BackupCodeRow.user_id == user_id)
                .order_by(BackupCodeRow.created_at, BackupCodeRow.code_id)
            )
            return [self._to_domain(row) for row in result.scalars()]

    async def mark_used(self, code_id: str, used_at: datetime) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(BackupCodeRow)
                .where(
                    BackupCodeRow.code_id == code_id,
                    BackupCodeRow.used.is_(False),
                )
                .values(used=True, used_at=_to_db(used_at))
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return bool(result.rowcount == 1)

    async def revoke_all(self, user_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(BackupCodeRow).where(BackupCodeRow.user_id == user_id)
            )
            await session.commit()

    async def count_unused(self, user_id: str) -> int:
        async with self._session_factory() as session:
            count = await session.scalar(
                select(func.count())
                .select_from(BackupCodeRow)
                .where(
                    BackupCodeRow.user_id == user_id,
                    BackupCodeRow.used.is_(False),
                )
            )
            return int(count or 0)


# ═══════════════════════════════════════════════════════════════
# POLICY
# ═══════════════════════════════════════════════════════════════


class SQLAlchemyPolicyStore(IPolicyStore):
    """Singleton policy row in ``two_factor_policy``; created on first read."""

    def __init__(self, session_factory: AsyncSessionFactory) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _apply(row: PolicyRow, policy: Policy) -> None:
        row.require_for_admins = policy.require_for_admins
        row.require_for_all_users = policy.require_for_all_users
        row.remember_device_days = policy.remember_device_days
        row.allowed_methods = sorted(m.value for m in policy.allowed_methods)

    async def get(self) -> Policy:
        async with self._session_factory() as session:
            row = await session.get(PolicyRow, POLICY_ROW_ID)
            if row is None:
                policy = Policy()
                row = PolicyRow(id=POLICY_ROW_ID)
                self._apply(row, policy)
                session.add(row)
                await session.commit()
                logger.debug("Created default two-factor policy")
                return policy
            return Policy(
                require_for_admins=row.require_for_admins,
                require_for_all_users=row.require_for_all_users,
                remember_device_days=row.remember_device_days,
                allowed_methods=frozenset(
                    TwoFactorMethod(m) for m in row.allowed_methods
                ),
            )

    async def save(self, policy: Policy) -> None:
        async with self._session_factory() as session:
            row = await session.get(PolicyRow, POLICY_ROW_ID)
            if row is None:
                row = PolicyRow(id=POLICY_ROW_ID)
                session.add(row)
            self._apply(row, policy)
            await session.commit()


__all__: list[str] = [
    "create_schema",
    "SQLAlchemyTwoFactorConfigStore",
    "SQLAlchemyChallengeStore",
    "SQLAlchemyBackupCodeStore",
    "SQLAlchemyPolicyStore",
]
