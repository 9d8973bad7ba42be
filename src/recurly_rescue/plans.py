"""Rescue plan lookup and creation."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import structlog

from recurly_rescue.exceptions import ApiError, ConfigurationError, PlanError

if TYPE_CHECKING:
    from recurly_rescue.client import RecurlyClient

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

RESCUE_PLAN_CODE = "4weeks-subscription"
RESCUE_PLAN_NAME = "4 reports every 4 weeks"
PLAN_INTERVAL_DAYS = 28

SUPPORTED_CURRENCIES = ("EUR", "USD", "GBP", "CHF", "CAD")

# Price per 28-day interval
CURRENCY_UNIT_AMOUNTS: dict[str, float] = {
    "EUR": 24.95,
    "USD": 29.99,
    "GBP": 24.95,
    "CAD": 29.99,
    "CHF": 24.95,
}
DEFAULT_UNIT_AMOUNT = 29.90


def normalize_currency(currency: str | None) -> str:
    if not isinstance(currency, str) or not currency.strip():
        raise ConfigurationError("Currency must be a non-empty string")
    return currency.strip().upper()


def unit_amount_for(currency: str, override: float | None = None) -> float:
    if override is not None:
        return override
    return CURRENCY_UNIT_AMOUNTS.get(normalize_currency(currency), DEFAULT_UNIT_AMOUNT)


def build_plan_payload(
    currencies: tuple[str, ...] | list[str] = SUPPORTED_CURRENCIES,
    unit_amount: float | None = None,
    plan_code: str = RESCUE_PLAN_CODE,
    plan_name: str = RESCUE_PLAN_NAME,
) -> dict[str, Any]:
    """Build the ``POST /plans`` body.

    A global ``unit_amount`` applies to every currency; otherwise each
    currency uses its default price.
    """
    return {
        "code": plan_code,
        "name": plan_name,
        "interval_length": PLAN_INTERVAL_DAYS,
        "interval_unit": "days",
        "currencies": [
            {
                "currency": normalize_currency(currency),
                "setup_fee": 0,
                "unit_amount": unit_amount_for(currency, unit_amount),
            }
            for currency in currencies
        ],
    }


def get_plan(client: RecurlyClient, plan_code: str) -> dict[str, Any] | None:
    """Return the plan with ``plan_code``, or None if it does not exist."""
    try:
        response = client.get(f"/plans/{quote(f'code-{plan_code}', safe='')}")
    except ApiError as exc:
        if exc.status_code == 404:
            return None
        raise
    return response.data


def find_or_create_rescue_plan(
    client: RecurlyClient,
    currency: str | None = None,
    unit_amount: float | None = None,
    plan_code: str = RESCUE_PLAN_CODE,
    plan_name: str = RESCUE_PLAN_NAME,
    dry_run: bool = False,
) -> dict[str, Any]:
    """Return the rescue plan, creating it when it does not exist yet.

    Args:
        client: API client.
        currency: Single currency for the plan; None creates a plan priced
            in every supported currency.
        unit_amount: Price override applied to every currency.
        plan_code: Plan code to look up or create.
        plan_name: Display name used on creation.
        dry_run: Skip creation and return a placeholder plan.

    Returns:
        The plan payload.

    Raises:
        PlanError: If creation fails for a reason other than a
            concurrent creation of the same code.
    """
    currencies = (normalize_currency(currency),) if currency else SUPPORTED_CURRENCIES

    existing = get_plan(client, plan_code)
    if existing:
        logger.info("rescue_plan_found", plan_code=plan_code)
        return existing

    payload = build_plan_payload(currencies, unit_amount, plan_code, plan_name)
    if dry_run:
        logger.info("rescue_plan_dry_run", plan_code=plan_code, currencies=list(currencies))
        return {"code": plan_code, "name": plan_name, "state": "active", "dry_run": True}

    logger.info("rescue_plan_creating", plan_code=plan_code, currencies=list(currencies))
    try:
        response = client.post("/plans", body=payload)
    except ApiError as exc:
        if exc.status_code == 422 and "already been taken" in str(exc):
            # Created concurrently; the refetch may lag behind
            logger.info("rescue_plan_exists", plan_code=plan_code)
            try:
                fetched = get_plan(client, plan_code)
            except ApiError:
                fetched = None
            return fetched or {"code": plan_code, "name": plan_name, "state": "active"}
        raise PlanError(f"Failed to create Rescue Plan {plan_code}: {exc}") from exc

    logger.info("rescue_plan_created", plan_code=plan_code)
    return response.data
