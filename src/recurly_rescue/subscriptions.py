"""Rescue subscription creation, decline classification, and rollback calls."""

from __future__ import annotations

import itertools
import re
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import structlog

from recurly_rescue.exceptions import ApiError, ConfigurationError, RequestError
from recurly_rescue.state import OutcomeStatus

if TYPE_CHECKING:
    from recurly_rescue.client import RecurlyClient

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

THREE_DS_DECLINE_CODE = "three_d_secure_action_required"
_HEX_UUID_RE = re.compile(r"^[a-f0-9]{32}$", re.IGNORECASE)

_dry_run_counter = itertools.count(1)


@dataclass(slots=True)
class RescueOutcome:
    """Result of one rescue attempt. Never represents an exception."""

    status: OutcomeStatus
    account_code: str
    subscription: dict[str, Any] | None = None
    error: str | None = None
    decline_code: str | None = None
    decline_reason: str | None = None

    @property
    def subscription_id(self) -> str | None:
        return extract_subscription_id(self.subscription)


def trial_end(trial_days: int, now: datetime | None = None) -> datetime:
    """Return the trial end for ``trial_days``; zero means now (charge at once)."""
    if trial_days < 0:
        raise ConfigurationError("Trial days must be a non-negative number")
    now = now or datetime.now(tz=UTC)
    return now + timedelta(days=trial_days)


def build_subscription_payload(
    account_code: str,
    plan_code: str,
    currency: str,
    trial_days: int = 1,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Build the ``POST /subscriptions`` body for a rescue."""
    required = (
        (account_code, "Account code"),
        (plan_code, "Plan code"),
        (currency, "Currency"),
    )
    for value, what in required:
        if not isinstance(value, str) or not value.strip():
            raise ConfigurationError(f"{what} must be a non-empty string")

    return {
        "plan_code": plan_code.strip(),
        "currency": currency.strip().upper(),
        "collection_method": "automatic",
        "trial_ends_at": trial_end(trial_days, now).isoformat(),
        "tax_inclusive": True,
        "account": {"code": account_code.strip()},
    }


def extract_subscription_id(subscription: dict[str, Any] | None) -> str | None:
    if not subscription:
        return None
    return subscription.get("uuid") or subscription.get("id")


def subscription_url(
    project: str,
    subscription_id: str,
    app_base_url: str = "https://app.recurly.com",
) -> str:
    """Return the web console link for a subscription."""
    return (
        f"{app_base_url.rstrip('/')}/go/{quote(project, safe='')}"
        f"/subscriptions/{quote(subscription_id, safe='')}"
    )


def _transaction_error(exc: ApiError) -> dict[str, Any] | None:
    body = exc.body if isinstance(exc, RequestError) else None
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if not isinstance(error, dict):
        return None
    tx_error = error.get("transaction_error")
    return tx_error if isinstance(tx_error, dict) else None


def rescue_account(
    client: RecurlyClient,
    account_code: str,
    plan_code: str,
    currency: str,
    trial_days: int = 1,
    dry_run: bool = False,
) -> RescueOutcome:
    """Create the rescue subscription for one account.

    API failures are folded into the outcome: a 3-D Secure challenge
    yields ``REQUIRES_3DS``, anything else ``FAILED`` with the decline
    details when the gateway supplied them.

    Args:
        client: API client.
        account_code: Code of the account to rescue.
        plan_code: Rescue plan code.
        currency: Subscription currency.
        trial_days: Days before the first charge.
        dry_run: Return a placeholder subscription without calling the API.

    Returns:
        The rescue outcome.
    """
    payload = build_subscription_payload(account_code, plan_code, currency, trial_days)
    code = payload["account"]["code"]

    if dry_run:
        stamp = time.time_ns() // 1_000_000
        counter = next(_dry_run_counter)
        logger.info("rescue_dry_run", account_code=code, plan_code=plan_code)
        return RescueOutcome(
            status=OutcomeStatus.RESCUED,
            account_code=code,
            subscription={
                "id": f"sub_dryrun_{stamp}_{counter}",
                "uuid": f"dryrun-{stamp}-{counter}",
                "account": {"code": code},
                "plan": {"code": plan_code},
                "state": "active",
                "dry_run": True,
            },
        )

    try:
        response = client.post("/subscriptions", body=payload)
    except ApiError as exc:
        error = f"Failed to assign rescue plan to {code}: {exc}"
        tx_error = _transaction_error(exc)
        decline_code = decline_reason = None
        if tx_error is not None:
            decline_code = tx_error.get("code") or tx_error.get("decline_code")
            decline_reason = tx_error.get("merchant_advice") or tx_error.get("message")

        if decline_code == THREE_DS_DECLINE_CODE:
            logger.warning("rescue_requires_3ds", account_code=code)
            status = OutcomeStatus.REQUIRES_3DS
        else:
            logger.warning(
                "rescue_failed",
                account_code=code,
                status_code=exc.status_code,
                decline_code=decline_code,
                error=str(exc),
            )
            status = OutcomeStatus.FAILED
        return RescueOutcome(
            status=status,
            account_code=code,
            error=error,
            decline_code=decline_code,
            decline_reason=decline_reason,
        )

    subscription = response.data if isinstance(response.data, dict) else {}
    logger.info(
        "account_rescued",
        account_code=code,
        subscription_id=extract_subscription_id(subscription),
    )
    return RescueOutcome(
        status=OutcomeStatus.RESCUED,
        account_code=code,
        subscription=subscription,
    )


# ---------------------------------------------------------------------------
# Rollback operations
# ---------------------------------------------------------------------------


def subscription_ref(subscription_id: str) -> str:
    """Return the URL-encoded path segment addressing a subscription.

    Bare 32-character hex UUIDs need the ``uuid-`` prefix; anything else
    is sent as given.
    """
    if not isinstance(subscription_id, str) or not subscription_id.strip():
        raise ConfigurationError("Subscription ID must be a non-empty string")
    ref = subscription_id.strip()
    if _HEX_UUID_RE.match(ref):
        ref = f"uuid-{ref}"
    return quote(ref, safe="")


def cancel_subscription(client: RecurlyClient, subscription_id: str) -> dict[str, Any]:
    """Cancel a subscription, keeping it on the account as canceled.

    Raises:
        ApiError: If the request fails.
    """
    response = client.put(f"/subscriptions/{subscription_ref(subscription_id)}/cancel")
    logger.info("subscription_canceled", subscription_id=subscription_id)
    return response.data if isinstance(response.data, dict) else {}


def terminate_subscription(client: RecurlyClient, subscription_id: str) -> dict[str, Any]:
    """Terminate a subscription immediately.

    Raises:
        ApiError: If the request fails.
    """
    response = client.delete(f"/subscriptions/{subscription_ref(subscription_id)}")
    logger.info("subscription_terminated", subscription_id=subscription_id)
    return response.data if isinstance(response.data, dict) else {}
