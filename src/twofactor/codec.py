"""Secret codec.

Encrypts TOTP seeds at rest with Fernet (versioned keys through
MultiFernet) and hashes one-time codes with bcrypt.
"""

from __future__ import annotations

import hmac
import logging
from typing import TYPE_CHECKING

import bcrypt
from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from .exceptions import CodecError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .config import TwoFactorSettings

logger = logging.getLogger("twofactor.codec")


class SecretCodec:
    """Encryption and hashing of two-factor secret material.

    Encryption keys are keyed by version id. New ciphertexts always use the
    primary key; every configured key is tried on decryption so ciphertexts
    written before a rotation stay readable until re-encrypted.

    Example:
        ```python
        codec = SecretCodec(
            keys={"2024-01": old_key, "2025-06": new_key},
            primary_key_id="2025-06",
        )
        blob = codec.encrypt_secret("JBSWY3DPEHPK3PXP")
        assert codec.decrypt_secret(blob) == "JBSWY3DPEHPK3PXP"

        hashed = codec.hash_code("123456")
        assert codec.verify_code("123456", hashed)
        ```
    """

    def __init__(
        self,
        keys: Mapping[str, bytes | str] | None = None,
        *,
        primary_key_id: str | None = None,
        hash_rounds: int = 10,
    ) -> None:
        """Initialize the codec.

        Args:
            keys: Fernet keys (urlsafe base64, 32 bytes) by key id.
            primary_key_id: Key used for new ciphertexts. Defaults to the
                first key in ``keys``.
            hash_rounds: bcrypt cost factor.

        Raises:
            CodecError: If a key is malformed or the primary id is unknown.
        """
        self.hash_rounds = hash_rounds
        self._fernet: MultiFernet | None = None
        self.primary_key_id: str | None = None
        if keys:
            self._fernet = self._build(keys, primary_key_id)

    def _build(
        self, keys: Mapping[str, bytes | str], primary_key_id: str | None
    ) -> MultiFernet:
        primary = primary_key_id or next(iter(keys))
        if primary not in keys:
            raise CodecError(f"Primary key id {primary!r} is not configured")

        ordered = [primary, *(kid for kid in keys if kid != primary)]
        fernets = []
        for kid in ordered:
            try:
                fernets.append(Fernet(keys[kid]))
            except (ValueError, TypeError) as e:
                raise CodecError(f"Encryption key {kid!r} is malformed") from e

        self.primary_key_id = primary
        return MultiFernet(fernets)

    @classmethod
    def from_settings(
        cls,
        keys: Mapping[str, bytes | str],
        settings: TwoFactorSettings,
        *,
        primary_key_id: str | None = None,
    ) -> SecretCodec:
        return cls(
            keys, primary_key_id=primary_key_id, hash_rounds=settings.hash_rounds
        )

    @staticmethod
    def generate_key() -> bytes:
        """Generate a new Fernet key."""
        return Fernet.generate_key()

    def _require_fernet(self) -> MultiFernet:
        if self._fernet is None:
            raise CodecError("No encryption key configured for two-factor secrets")
        return self._fernet

    def encrypt_secret(self, plaintext: str) -> bytes:
        """Encrypt a secret with the primary key.

        Raises:
            CodecError: If no key is configured.
        """
        return self._require_fernet().encrypt(plaintext.encode("utf-8"))

    def decrypt_secret(self, ciphertext: bytes) -> str:
        """Decrypt a secret written under any configured key.

        Raises:
            CodecError: If no key is configured or the ciphertext is malformed
                or was written under an unknown key.
        """
        fernet = self._require_fernet()
        try:
            return fernet.decrypt(ciphertext).decode("utf-8")
        except (InvalidToken, TypeError, UnicodeDecodeError) as e:
            logger.warning("Failed to decrypt two-factor secret")
            raise CodecError("Two-factor secret could not be decrypted") from e

    def rotate(self, ciphertext: bytes) -> bytes:
        """Re-encrypt a ciphertext under the primary key.

        Raises:
            CodecError: If the ciphertext cannot be decrypted.
        """
        fernet = self._require_fernet()
        try:
            return fernet.rotate(ciphertext)
        except (InvalidToken, TypeError) as e:
            raise CodecError("Two-factor secret could not be rotated") from e

    def hash_code(self, code: str, salt: bytes | None = None) -> str:
        """Hash a one-time code or backup code (bcrypt).

        Args:
            code: Plaintext code.
            salt: bcrypt salt; a fresh one is generated when omitted.
        """
        salt = salt or bcrypt.gensalt(rounds=self.hash_rounds)
        return bcrypt.hashpw(code.encode("utf-8"), salt).decode("ascii")

    def verify_code(self, code: str, hashed: str) -> bool:
        """Check a plaintext code against a stored hash."""
        try:
            return bool(bcrypt.checkpw(code.encode("utf-8"), hashed.encode("ascii")))
        except ValueError:
            # Malformed hash
            return False

    @staticmethod
    def constant_time_equals(a: str, b: str) -> bool:
        return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


__all__: list[str] = ["SecretCodec"]
