"""SQLAlchemy table models for two-factor persistence.

Timestamps are stored as naive UTC ``DateTime`` columns and converted back
to aware datetimes when rows are mapped to domain records.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Integer,
    LargeBinary,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for the two-factor tables."""


class TwoFactorConfigRow(Base):
    __tablename__ = "two_factor_configs"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    enabled_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    pending_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    totp_secret_encrypted: Mapped[bytes | None] = mapped_column(
        LargeBinary, nullable=True
    )
    pending_totp_secret_encrypted: Mapped[bytes | None] = mapped_column(
        LargeBinary, nullable=True
    )
    last_totp_step: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime)
    version: Mapped[int] = mapped_column(Integer, default=1)


class ChallengeRow(Base):
    __tablename__ = "two_factor_challenges"
    __table_args__ = (
        UniqueConstraint("user_id", "purpose", name="uq_two_factor_challenge"),
    )

    challenge_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    purpose: Mapped[str] = mapped_column(String(32))
    code_hash: Mapped[str] = mapped_column(String(128))
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    attempts_remaining: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime)


class BackupCodeRow(Base):
    __tablename__ = "two_factor_backup_codes"

    code_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    hash: Mapped[str] = mapped_column(String(128))
    used: Mapped[bool] = mapped_column(Boolean, default=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime)


class PolicyRow(Base):
    __tablename__ = "two_factor_policy"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    require_for_admins: Mapped[bool] = mapped_column(Boolean, default=False)
    require_for_all_users: Mapped[bool] = mapped_column(Boolean, default=False)
    remember_device_days: Mapped[int] = mapped_column(Integer, default=30)
    allowed_methods: Mapped[list[str]] = mapped_column(JSON)


__all__: list[str] = [
    "Base",
    "TwoFactorConfigRow",
    "ChallengeRow",
    "BackupCodeRow",
    "PolicyRow",
]
