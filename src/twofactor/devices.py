"""Device trust (remember-this-device) tokens.

A remembered device carries a self-contained signed token; the server keeps
no per-device rows. Format::

    base64url(json payload) "." base64url(HMAC-SHA256(payload))

The payload names the signing key id, so tokens signed with an older key
keep verifying until that key is removed from the key ring. Removing a key
(or shortening ``remember_device_days``) is how remembered devices are
revoked.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from .exceptions import TwoFactorConfigurationError
from .models import utcnow

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from .policy import Policy

logger = logging.getLogger("twofactor.devices")

MIN_KEY_BYTES = 32


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


@dataclass(frozen=True)
class DeviceTrustToken:
    """Decoded device-remember token payload.

    Attributes:
        user_id: Account the device was verified for.
        device_id: Opaque device identifier chosen by the web layer.
        issued_at: When the device was remembered.
        expires_at: When the token stops being accepted.
        key_id: Id of the signing key.
    """

    user_id: str
    device_id: str
    issued_at: datetime
    expires_at: datetime
    key_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.user_id,
            "did": self.device_id,
            "iat": int(self.issued_at.timestamp()),
            "exp": int(self.expires_at.timestamp()),
            "kid": self.key_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeviceTrustToken:
        """Create from a payload dictionary.

        Raises:
            ValueError: If a field is missing or has the wrong type.
        """
        try:
            return cls(
                user_id=str(data["uid"]),
                device_id=str(data["did"]),
                issued_at=datetime.fromtimestamp(int(data["iat"]), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(int(data["exp"]), tz=timezone.utc),
                key_id=str(data["kid"]),
            )
        except (KeyError, TypeError, OverflowError, OSError) as e:
            raise ValueError(f"Malformed device token payload: {e}") from e


class DeviceTrustManager:
    """Issues and checks signed, time-bounded device-remember tokens.

    Stateless apart from the key ring; safe to share across requests.

    Example:
        ```python
        devices = DeviceTrustManager(
            keys={"k1": secrets.token_bytes(32)}, primary_key_id="k1"
        )
        token = devices.remember("user-123", "device-abc", policy)
        # ... later, on the next login from that device
        if devices.is_remembered("user-123", "device-abc", token):
            skip_second_factor()
        ```
    """

    def __init__(
        self,
        keys: Mapping[str, bytes | str],
        *,
        primary_key_id: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the manager.

        Args:
            keys: HMAC secrets by key id, at least 32 bytes each.
            primary_key_id: Key used to sign new tokens. Defaults to the
                first key in ``keys``.
            clock: Current UTC time.

        Raises:
            TwoFactorConfigurationError: If no key is given, a key is too
                short, or the primary id is unknown.
        """
        if not keys:
            raise TwoFactorConfigurationError(
                "At least one device signing key is required"
            )

        self._keys: dict[str, bytes] = {}
        for kid, key in keys.items():
            raw = key.encode("utf-8") if isinstance(key, str) else bytes(key)
            if len(raw) < MIN_KEY_BYTES:
                raise TwoFactorConfigurationError(
                    f"Device signing key {kid!r} must be at least "
                    f"{MIN_KEY_BYTES} bytes"
                )
            self._keys[kid] = raw

        self.primary_key_id = primary_key_id or next(iter(self._keys))
        if self.primary_key_id not in self._keys:
            raise TwoFactorConfigurationError(
                f"Primary device key id {self.primary_key_id!r} is not configured"
            )
        self._clock = clock

    def _sign(self, key_id: str, payload: bytes) -> bytes:
        return hmac.new(self._keys[key_id], payload, hashlib.sha256).digest()

    def remember(self, user_id: str, device_id: str, policy: Policy) -> str:
        """Mint a token for a device that just passed verification.

        Raises:
            ValueError: If the policy disables remembering devices.
        """
        if not policy.remembers_devices:
            raise ValueError("Policy does not allow remembering devices")

        now = self._clock()
        payload = DeviceTrustToken(
            user_id=user_id,
            device_id=device_id,
            issued_at=now,
            expires_at=now + timedelta(days=policy.remember_device_days),
            key_id=self.primary_key_id,
        )
        body = json.dumps(payload.to_dict(), separators=(",", ":")).encode("utf-8")
        signature = self._sign(self.primary_key_id, body)
        logger.debug("Minted device token for user %s", user_id)
        return f"{_b64encode(body)}.{_b64encode(signature)}"

    def decode(self, token: str) -> DeviceTrustToken | None:
        """Verify the signature and return the payload, or None.

        Expiry is not checked here.
        """
        try:
            body_part, signature_part = token.split(".")
            body = _b64decode(body_part)
            signature = _b64decode(signature_part)
            data = json.loads(body)
            key_id = data["kid"]
            if key_id not in self._keys:
                return None
            if not hmac.compare_digest(self._sign(key_id, body), signature):
                return None
            return DeviceTrustToken.from_dict(data)
        except (ValueError, TypeError, KeyError, AttributeError, binascii.Error):
            return None

    def is_remembered(self, user_id: str, device_id: str, token: str | None) -> bool:
        """Whether ``token`` is a valid, unexpired token for this user and device.

        Never raises: tampered, foreign, expired and garbage tokens all
        return False so the caller falls back to a normal challenge.
        """
        if not token:
            return False

        payload = self.decode(token)
        if payload is None:
            logger.warning("Rejected device token with bad signature")
            return False
        if not (
            hmac.compare_digest(payload.user_id.encode(), user_id.encode())
            and hmac.compare_digest(payload.device_id.encode(), device_id.encode())
        ):
            logger.warning("Rejected device token for another user or device")
            return False
        if self._clock() >= payload.expires_at:
            logger.debug("Device token for user %s expired", user_id)
            return False
        return True


__all__: list[str] = ["DeviceTrustToken", "DeviceTrustManager"]
