"""Backup code store.

Generates single-use recovery codes that users can use when they lose
access to their primary method. Codes are stored bcrypt-hashed and each
one flips from unused to used exactly once.
"""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING

from ..config import BACKUP_CODE_ALPHABET, BackupCodeSettings
from ..exceptions import (
    AlreadyUsedError,
    InvalidCodeError,
    TwoFactorConfigurationError,
)
from ..models import BackupCodeInfo, HashedCode, utcnow

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from ..codec import SecretCodec
    from ..ports import IBackupCodeStore

logger = logging.getLogger("twofactor.backup_codes")


def normalize_code(code: str) -> str:
    """Canonical form used for hashing: upper-case, no spaces or dashes."""
    return code.strip().upper().replace(" ", "").replace("-", "")


class BackupCodeStore:
    """Backup code generation and single-use verification.

    Example:
        ```python
        codes = await store.generate("user-123")
        print("Save these codes:", codes)  # shown once, never again

        remaining = await store.verify_and_consume("user-123", "ABCDE-FGHJK")
        ```
    """

    def __init__(
        self,
        codes: IBackupCodeStore,
        codec: SecretCodec,
        settings: BackupCodeSettings | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.codes = codes
        self.codec = codec
        self.settings = settings or BackupCodeSettings()
        self._clock = clock

    def _generate_code(self) -> str:
        return "".join(
            secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(self.settings.length)
        )

    def _format_code(self, code: str) -> str:
        size = self.settings.group_size
        return "-".join(code[i : i + size] for i in range(0, len(code), size))

    async def generate(self, user_id: str, count: int | None = None) -> list[str]:
        """Replace the user's batch with ``count`` fresh codes.

        Returns:
            Formatted plaintext codes. They are not stored and cannot be
            retrieved again.

        Raises:
            TwoFactorConfigurationError: If ``count`` is below 1.
        """
        if count is None:
            count = self.settings.count
        elif count < 1:
            raise TwoFactorConfigurationError("count must be at least 1")
        now = self._clock()
        plaintext: list[str] = []
        hashed: list[HashedCode] = []
        while len(plaintext) < count:
            code = self._generate_code()
            if code in plaintext:
                continue
            plaintext.append(code)
            hashed.append(
                HashedCode(
                    user_id=user_id,
                    hash=self.codec.hash_code(code),
                    created_at=now,
                )
            )

        await self.codes.replace_all(user_id, hashed)
        logger.debug("Generated %d backup codes for user %s", count, user_id)
        return [self._format_code(code) for code in plaintext]

    async def verify_and_consume(self, user_id: str, code: str) -> int:
        """Consume a backup code.

        The used flag is flipped through a conditional update, so of two
        concurrent requests with the same code exactly one succeeds.

        Returns:
            Unused codes left after this one.

        Raises:
            InvalidCodeError: If the code matches none of the user's codes.
            AlreadyUsedError: If the code was already consumed.
        """
        candidate = normalize_code(code)
        if len(candidate) != self.settings.length:
            raise InvalidCodeError()

        for stored in await self.codes.list_codes(user_id):
            if not self.codec.verify_code(candidate, stored.hash):
                continue
            if stored.used:
                raise AlreadyUsedError()
            if not await self.codes.mark_used(stored.code_id, self._clock()):
                raise AlreadyUsedError()
            remaining = await self.codes.count_unused(user_id)
            logger.info(
                "Backup code consumed for user %s (%d remaining)", user_id, remaining
            )
            return remaining

        raise InvalidCodeError()

    async def revoke(self, user_id: str) -> None:
        await self.codes.revoke_all(user_id)

    async def remaining(self, user_id: str) -> int:
        return await self.codes.count_unused(user_id)

    async def describe(self, user_id: str) -> list[BackupCodeInfo]:
        """Metadata of the user's batch; never the codes themselves."""
        return [
            BackupCodeInfo(used=c.used, used_at=c.used_at, created_at=c.created_at)
            for c in await self.codes.list_codes(user_id)
        ]


__all__: list[str] = ["BackupCodeStore", "normalize_code"]
