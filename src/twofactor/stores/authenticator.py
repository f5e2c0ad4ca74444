"""Authenticator-app (TOTP) store.

Works with any RFC 6238 authenticator app (Google Authenticator, Microsoft
Authenticator, Authy, 1Password, FreeOTP). Seeds are generated with pyotp
and kept encrypted on the account's TwoFactorConfig: a *pending* slot while
setup is unconfirmed, the active slot afterwards.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import pyotp

from ..config import TotpSettings
from ..exceptions import InvalidCodeError, NotConfiguredError
from ..models import AuthenticatorSetup, TwoFactorMethod, utcnow

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from ..codec import SecretCodec
    from ..models import TwoFactorConfig
    from ..ports import ITwoFactorConfigStore

logger = logging.getLogger("twofactor.authenticator")


def format_manual_key(secret: str) -> str:
    """Seed in groups of four for manual entry."""
    secret = secret.rstrip("=")
    return " ".join(secret[i : i + 4] for i in range(0, len(secret), 4))


class AuthenticatorStore:
    """TOTP setup, confirmation and login verification.

    ``begin_setup`` and ``confirm_setup`` change the config passed in and
    leave saving it to the caller, so the orchestrator can persist the whole
    transition in one write. ``verify_login`` records the accepted time step
    through the config store's conditional update.
    """

    def __init__(
        self,
        configs: ITwoFactorConfigStore,
        codec: SecretCodec,
        settings: TotpSettings | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.configs = configs
        self.codec = codec
        self.settings = settings or TotpSettings()
        self._clock = clock

    def _totp(self, secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(
            secret, digits=self.settings.digits, interval=self.settings.interval
        )

    def _match(self, secret: str, code: str) -> int | None:
        """Time step the code belongs to within the drift window, else None."""
        code = code.strip().replace(" ", "")
        if len(code) != self.settings.digits or not code.isdigit():
            return None

        totp = self._totp(secret)
        now = self._clock()
        current = totp.timecode(now)
        window = self.settings.valid_window
        for offset in range(-window, window + 1):
            if self.codec.constant_time_equals(
                totp.at(now, counter_offset=offset), code
            ):
                return current + offset
        return None

    def begin_setup(
        self,
        config: TwoFactorConfig,
        issuer_name: str | None = None,
        account_name: str | None = None,
    ) -> AuthenticatorSetup:
        """Generate a seed into the pending slot of ``config``.

        Args:
            config: Account config; its active secret is left untouched.
            issuer_name: Issuer label shown in the app.
            account_name: Account label shown in the app; defaults to the
                user id.

        Returns:
            Seed, ``otpauth://`` URI and grouped manual-entry key. Shown once.
        """
        issuer = issuer_name or self.settings.default_issuer
        secret = pyotp.random_base32()
        otp_uri = self._totp(secret).provisioning_uri(
            name=account_name or config.user_id, issuer_name=issuer
        )

        config.pending_totp_secret_encrypted = self.codec.encrypt_secret(secret)
        config.pending_method = TwoFactorMethod.AUTHENTICATOR_APP
        logger.debug("Generated pending TOTP seed for user %s", config.user_id)
        return AuthenticatorSetup(
            secret=secret, otp_uri=otp_uri, manual_key=format_manual_key(secret)
        )

    def confirm_setup(self, config: TwoFactorConfig, code: str) -> None:
        """Promote the pending seed to active if ``code`` matches it.

        The matched step is recorded so the confirmation code cannot be
        replayed as a login code.

        Raises:
            NotConfiguredError: If no authenticator setup is pending.
            InvalidCodeError: If the code does not match.
            CodecError: If the pending seed cannot be decrypted.
        """
        if config.pending_totp_secret_encrypted is None:
            raise NotConfiguredError("No authenticator setup in progress")

        secret = self.codec.decrypt_secret(config.pending_totp_secret_encrypted)
        step = self._match(secret, code)
        if step is None:
            raise InvalidCodeError()

        config.totp_secret_encrypted = config.pending_totp_secret_encrypted
        config.pending_totp_secret_encrypted = None
        config.last_totp_step = step

    async def verify_login(self, config: TwoFactorConfig, code: str) -> int:
        """Check a login code against the active seed.

        Returns:
            The accepted time step.

        Raises:
            NotConfiguredError: If no active seed exists.
            InvalidCodeError: If the code does not match, or its time step
                was already accepted (replay).
            CodecError: If the seed cannot be decrypted.
        """
        if config.totp_secret_encrypted is None:
            raise NotConfiguredError("Authenticator app is not configured")

        secret = self.codec.decrypt_secret(config.totp_secret_encrypted)
        step = self._match(secret, code)
        if step is None:
            raise InvalidCodeError()

        if not await self.configs.advance_totp_step(config.user_id, step):
            logger.warning("Rejected replayed TOTP code for user %s", config.user_id)
            raise InvalidCodeError()
        config.last_totp_step = step
        return step


__all__: list[str] = ["AuthenticatorStore", "format_manual_key"]
