"""Credential stores: email one-time codes, authenticator apps, backup codes."""

from __future__ import annotations

from .authenticator import AuthenticatorStore
from .backup_codes import BackupCodeStore
from .email_otp import EmailOtpStore

__all__: list[str] = ["AuthenticatorStore", "BackupCodeStore", "EmailOtpStore"]
