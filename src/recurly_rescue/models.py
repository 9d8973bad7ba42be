"""Pydantic models for the Recurly resources the rescue flow reads."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

RESCUABLE_ACCOUNT_STATES = frozenset({"closed", "inactive", "active"})
ACTIVE_SUBSCRIPTION_STATES = frozenset({"active", "trial"})


class Subscription(BaseModel):
    """A subscription as returned by ``/accounts/{ref}/subscriptions``."""

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    uuid: str | None = None
    state: str | None = None
    expiration_reason: str | None = None
    created_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_SUBSCRIPTION_STATES

    @property
    def expired_for_nonpayment(self) -> bool:
        return self.state == "expired" and self.expiration_reason == "nonpayment"


class Account(BaseModel):
    """A Recurly account. Unknown API fields are preserved."""

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    code: str | None = None
    state: str | None = None
    email: str | None = None
    closed_at: datetime | None = None
    subscriptions: list[Subscription] = Field(default_factory=list)

    @field_validator("closed_at", mode="after")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def reference(self) -> str | None:
        """Identifier used for state tracking and API paths: code, else id."""
        return self.code or self.id

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> Account:
        return cls.model_validate(payload)


class RescueVerdict(BaseModel):
    """Rescue eligibility derived from an account's newest subscription."""

    model_config = ConfigDict(frozen=True)

    has_active_subscription: bool = False
    expired_for_nonpayment: bool = False

    @property
    def needs_rescue(self) -> bool:
        return self.expired_for_nonpayment and not self.has_active_subscription

    @property
    def is_conflict(self) -> bool:
        """Both flags set: an active subscription supersedes the expired one."""
        return self.expired_for_nonpayment and self.has_active_subscription

    @classmethod
    def from_subscriptions(cls, subscriptions: list[Subscription]) -> RescueVerdict:
        """Compute the verdict from the most recently created subscription.

        Subscriptions without a creation time sort last. An empty list
        never needs rescue.
        """
        newest = newest_subscription(subscriptions)
        if newest is None:
            return cls()
        return cls(
            has_active_subscription=newest.is_active,
            expired_for_nonpayment=newest.expired_for_nonpayment,
        )


def newest_subscription(subscriptions: list[Subscription]) -> Subscription | None:
    """Return the most recently created subscription; undated ones sort last."""
    if not subscriptions:
        return None
    return sorted(subscriptions, key=_created_sort_key, reverse=True)[0]


def _created_sort_key(subscription: Subscription) -> float:
    created = subscription.created_at
    if created is None:
        return 0.0
    if created.tzinfo is None:
        created = created.replace(tzinfo=UTC)
    return created.timestamp()
