"""SQLAlchemy 2.0 async persistence for two-factor records.

Requires an async driver (``asyncpg``, ``aiosqlite``).

Example:
    ```python
    engine = create_async_engine("postgresql+asyncpg://...")
    await create_schema(engine)
    sessions = async_sessionmaker(engine, expire_on_commit=False)

    configs = SQLAlchemyTwoFactorConfigStore(sessions)
    challenges = SQLAlchemyChallengeStore(sessions)
    ```
"""

from __future__ import annotations

from .models import Base, BackupCodeRow, ChallengeRow, PolicyRow, TwoFactorConfigRow
from .stores import (
    SQLAlchemyBackupCodeStore,
    SQLAlchemyChallengeStore,
    SQLAlchemyPolicyStore,
    SQLAlchemyTwoFactorConfigStore,
    create_schema,
)

__all__: list[str] = [
    "Base",
    "BackupCodeRow",
    "ChallengeRow",
    "PolicyRow",
    "TwoFactorConfigRow",
    "create_schema",
    "SQLAlchemyBackupCodeStore",
    "SQLAlchemyChallengeStore",
    "SQLAlchemyPolicyStore",
    "SQLAlchemyTwoFactorConfigStore",
]
