"""Organization-wide two-factor policy and its resolver."""

from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import TwoFactorMethod

logger = logging.getLogger("twofactor.policy")

MAX_REMEMBER_DEVICE_DAYS = 365


class Policy(BaseModel):
    """Global two-factor policy snapshot.

    Immutable; administrators replace it through the policy store.

    Attributes:
        require_for_admins: Admin accounts must keep 2FA enabled.
        require_for_all_users: Every account must keep 2FA enabled.
        remember_device_days: Lifetime of device-remember tokens; 0 disables
            remembering.
        allowed_methods: Methods accounts may set up.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    require_for_admins: bool = False
    require_for_all_users: bool = False
    remember_device_days: int = Field(default=30, ge=0, le=MAX_REMEMBER_DEVICE_DAYS)
    allowed_methods: frozenset[TwoFactorMethod] = frozenset(
        {TwoFactorMethod.EMAIL, TwoFactorMethod.AUTHENTICATOR_APP}
    )

    @field_validator("allowed_methods")
    @classmethod
    def _at_least_one_method(
        cls, value: frozenset[TwoFactorMethod]
    ) -> frozenset[TwoFactorMethod]:
        if not value:
            raise ValueError("allowed_methods must contain at least one method")
        return value

    @property
    def remembers_devices(self) -> bool:
        return self.remember_device_days > 0


class PolicyResolver:
    """Decides whether 2FA is mandatory for an account.

    Pure over the policy snapshot the caller passes in plus the caller's
    role flag.
    """

    def is_required(self, policy: Policy, user_id: str, *, is_admin: bool) -> bool:
        required = policy.require_for_all_users or (
            policy.require_for_admins and is_admin
        )
        logger.debug(
            "2FA required for user %s (admin=%s): %s", user_id, is_admin, required
        )
        return required

    def is_method_allowed(self, policy: Policy, method: TwoFactorMethod) -> bool:
        return method in policy.allowed_methods


__all__: list[str] = ["MAX_REMEMBER_DEVICE_DAYS", "Policy", "PolicyResolver"]
