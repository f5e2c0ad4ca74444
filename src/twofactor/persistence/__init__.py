"""Persistence adapters for the two-factor ports.

The SQLAlchemy adapter lives in ``twofactor.persistence.sql`` and is not
imported here, so the in-memory adapters work without a database driver.
"""

from __future__ import annotations

from .memory import (
    InMemoryBackupCodeStore,
    InMemoryChallengeStore,
    InMemoryPolicyStore,
    InMemoryTwoFactorConfigStore,
)

__all__: list[str] = [
    "InMemoryBackupCodeStore",
    "InMemoryChallengeStore",
    "InMemoryPolicyStore",
    "InMemoryTwoFactorConfigStore",
]
