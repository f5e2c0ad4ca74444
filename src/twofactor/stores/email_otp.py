"""Email one-time code store.

Issues short numeric codes for email setup and login, keeps only their
bcrypt hash, and verifies them against the single most recent challenge.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import TYPE_CHECKING

from ..config import EmailOtpSettings
from ..exceptions import (
    CodeExpiredError,
    InvalidCodeError,
    ResendCooldownError,
    TooManyAttemptsError,
)
from ..models import ChallengePurpose, IssuedChallenge, PendingChallenge, utcnow

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from ..codec import SecretCodec
    from ..ports import IChallengeStore

logger = logging.getLogger("twofactor.email_otp")


class EmailOtpStore:
    """Email one-time code issuance and verification.

    Example:
        ```python
        store = EmailOtpStore(challenge_store, codec)
        issued = await store.issue("user-123", ChallengePurpose.EMAIL_LOGIN)
        await mailer.send(address, issued.code, ...)

        await store.verify("user-123", "482913", ChallengePurpose.EMAIL_LOGIN)
        ```
    """

    def __init__(
        self,
        challenges: IChallengeStore,
        codec: SecretCodec,
        settings: EmailOtpSettings | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.challenges = challenges
        self.codec = codec
        self.settings = settings or EmailOtpSettings()
        self._clock = clock

    def _generate_code(self) -> str:
        length = self.settings.code_length
        return f"{secrets.randbelow(10**length):0{length}d}"

    async def issue(
        self,
        user_id: str,
        purpose: ChallengePurpose,
        *,
        enforce_cooldown: bool = False,
    ) -> IssuedChallenge:
        """Issue a new code, invalidating any earlier one for the same purpose.

        Args:
            user_id: Account the code is for.
            purpose: Setup or login.
            enforce_cooldown: Refuse when the previous challenge is younger
                than ``resend_cooldown_seconds``.

        Returns:
            The stored challenge plus the plaintext code to deliver. The
            plaintext is not stored anywhere.

        Raises:
            ResendCooldownError: If ``enforce_cooldown`` and a code was issued
                too recently.
        """
        now = self._clock()
        if enforce_cooldown and self.settings.resend_cooldown_seconds:
            previous = await self.challenges.get(user_id, purpose)
            if previous is not None:
                ready_at = previous.created_at + timedelta(
                    seconds=self.settings.resend_cooldown_seconds
                )
                if now < ready_at:
                    retry_after = max(1, int((ready_at - now).total_seconds()))
                    raise ResendCooldownError(retry_after)

        code = self._generate_code()
        challenge = PendingChallenge(
            user_id=user_id,
            purpose=purpose,
            code_hash=self.codec.hash_code(code),
            expires_at=now + timedelta(seconds=self.settings.ttl_seconds),
            attempts_remaining=self.settings.max_attempts,
            created_at=now,
        )
        await self.challenges.replace(challenge)
        logger.debug("Issued %s code for user %s", purpose.value, user_id)
        return IssuedChallenge(challenge=challenge, code=code)

    async def verify(self, user_id: str, code: str, purpose: ChallengePurpose) -> None:
        """Check a submitted code and consume the challenge on success.

        Raises:
            InvalidCodeError: Wrong code, no challenge, or the challenge was
                consumed by a concurrent request.
            CodeExpiredError: The challenge passed its expiry; it is deleted.
            TooManyAttemptsError: This mismatch used up the last attempt; the
                challenge is deleted and a new code must be issued.
        """
        challenge = await self.challenges.get(user_id, purpose)
        if challenge is None:
            raise InvalidCodeError()

        if challenge.is_expired(self._clock()):
            await self.challenges.delete(user_id, purpose)
            raise CodeExpiredError()

        if self.codec.verify_code(code.strip(), challenge.code_hash):
            if not await self.challenges.consume(challenge.challenge_id):
                raise InvalidCodeError()
            logger.debug("Consumed %s code for user %s", purpose.value, user_id)
            return

        remaining = await self.challenges.decrement_attempts(challenge.challenge_id)
        if remaining is None or remaining <= 0:
            await self.challenges.delete(user_id, purpose)
            logger.warning(
                "%s code exhausted its attempts for user %s", purpose.value, user_id
            )
            raise TooManyAttemptsError()
        raise InvalidCodeError(remaining_attempts=remaining)

    async def invalidate(
        self, user_id: str, purpose: ChallengePurpose | None = None
    ) -> None:
        """Drop one pending challenge, or all of them when ``purpose`` is None."""
        if purpose is None:
            await self.challenges.delete_for_user(user_id)
        else:
            await self.challenges.delete(user_id, purpose)

    async def purge_expired(self) -> int:
        return await self.challenges.purge_expired(self._clock())


__all__: list[str] = ["EmailOtpStore"]
