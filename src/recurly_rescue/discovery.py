"""Candidate discovery: paginate accounts and filter for rescue eligibility.

The accounts endpoint cannot filter by closure state or closure date, so
discovery asks for accounts *updated* inside the window (ascending) and
filters each page client-side: state, then closure date, then the
subscription verdict of every remaining account.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, quote, urljoin, urlparse

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from recurly_rescue.exceptions import ApiError, ConfigurationError, DiscoveryError
from recurly_rescue.models import (
    RESCUABLE_ACCOUNT_STATES,
    Account,
    RescueVerdict,
    Subscription,
    newest_subscription,
)
from recurly_rescue.sanitize import sanitize_error_message

if TYPE_CHECKING:
    from recurly_rescue.client import RecurlyClient

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

DEFAULT_START_DATE = datetime(2025, 11, 16, 0, 0, 0, tzinfo=UTC)
DEFAULT_END_DATE = datetime(2026, 1, 20, 23, 59, 59, tzinfo=UTC)
MAX_PAGE_SIZE = 200
MAX_PAGES = 1000
SUBSCRIPTION_PAGE_LIMIT = 100
DIAGNOSTIC_LIMIT = 5

_CURSOR_BASE_URL = "https://v3.recurly.com"
_CURSOR_RE = re.compile(r"cursor=([^&]+)")

NO_CURSOR_WARNING = "Pagination stopped: has_more=true but no valid cursor returned"
MAX_PAGES_WARNING = f"Exceeded {MAX_PAGES} pages, stopping pagination"


# ---------------------------------------------------------------------------
# Progress events
# ---------------------------------------------------------------------------


class ProgressKind(StrEnum):
    START = "start"
    PAGE = "page"
    WARNING = "warning"
    SKIP = "skip"
    DIAGNOSTIC = "diagnostic"
    COMPLETE = "complete"


@dataclass(slots=True)
class ProgressEvent:
    """Observational discovery event passed to ``on_progress``."""

    kind: ProgressKind
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)


ProgressCallback = Callable[[ProgressEvent], None]


def _emit(on_progress: ProgressCallback | None, event: ProgressEvent) -> None:
    if on_progress is not None:
        on_progress(event)


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


class DiscoveryOptions(BaseModel):
    """Validated discovery parameters."""

    start_date: datetime = DEFAULT_START_DATE
    end_date: datetime = DEFAULT_END_DATE
    page_size: int = Field(default=MAX_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)
    max_results: int | None = Field(default=None, ge=1)

    @field_validator("start_date", "end_date", mode="after")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @model_validator(mode="after")
    def _check_range(self) -> DiscoveryOptions:
        if self.start_date > self.end_date:
            raise ValueError("Invalid date range: startDate must be before or equal to endDate")
        return self


def build_options(
    start_date: datetime | str | None = None,
    end_date: datetime | str | None = None,
    page_size: int = MAX_PAGE_SIZE,
    max_results: int | None = None,
) -> DiscoveryOptions:
    """Validate discovery parameters.

    Raises:
        ConfigurationError: On an unparseable date, an inverted range, or
            an out-of-range page size.
    """
    values: dict[str, Any] = {"page_size": page_size, "max_results": max_results}
    if start_date is not None:
        values["start_date"] = start_date
    if end_date is not None:
        values["end_date"] = end_date

    try:
        return DiscoveryOptions(**values)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'range'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigurationError(f"Invalid discovery options: {problems}") from exc


# ---------------------------------------------------------------------------
# Cursor extraction
# ---------------------------------------------------------------------------


def extract_cursor(next_value: str | None) -> str | None:
    """Extract the continuation cursor from a list response's ``next``.

    Tries, in order: a URL parse of the ``cursor`` query parameter
    (relative paths resolve against the API root), a regex match on
    ``cursor=``, and finally the raw value when it carries no ``cursor=``
    at all.

    Args:
        next_value: The ``next`` field of a list envelope.

    Returns:
        The cursor, or ``None`` when there is nothing usable.
    """
    if not next_value or not next_value.strip():
        return None

    value = next_value.strip()
    if "cursor=" not in value:
        return value

    try:
        query = urlparse(urljoin(_CURSOR_BASE_URL, value)).query
        cursors = parse_qs(query).get("cursor")
        if cursors and cursors[0]:
            return cursors[0]
    except ValueError:
        logger.debug("cursor_url_parse_failed", next=value)

    match = _CURSOR_RE.search(value)
    if match:
        return match.group(1)
    return None


# ---------------------------------------------------------------------------
# Verdict
# ---------------------------------------------------------------------------


class _DiagnosticBudget:
    """Allows a fixed number of diagnostic events per discovery run."""

    def __init__(self, limit: int = DIAGNOSTIC_LIMIT) -> None:
        self.remaining = limit

    def take(self) -> bool:
        if self.remaining <= 0:
            return False
        self.remaining -= 1
        return True


def check_needs_rescue(
    client: RecurlyClient,
    account_code: str,
    on_progress: ProgressCallback | None = None,
    diagnostics: _DiagnosticBudget | None = None,
) -> RescueVerdict:
    """Compute the rescue verdict for one account.

    Only the most recently created subscription is considered. A failed
    lookup degrades to "no rescue needed" and emits a warning event.

    Args:
        client: API client.
        account_code: The account's code.
        on_progress: Optional progress callback.
        diagnostics: Shared budget for diagnostic events.

    Returns:
        The verdict for the account.
    """
    path = f"/accounts/code-{quote(account_code, safe='')}/subscriptions"
    try:
        response = client.get(path, params={"limit": SUBSCRIPTION_PAGE_LIMIT})
        subscriptions = [
            Subscription.model_validate(item)
            for item in _list_items(response.data)
            if isinstance(item, dict)
        ]
    except (ApiError, ValidationError) as exc:
        message = sanitize_error_message(
            f"Could not check subscriptions for {account_code}: {exc}"
        )
        logger.warning("verdict_lookup_failed", account_code=account_code, error=str(exc))
        _emit(
            on_progress,
            ProgressEvent(ProgressKind.WARNING, message, {"account_code": account_code}),
        )
        return RescueVerdict()

    verdict = RescueVerdict.from_subscriptions(subscriptions)

    if diagnostics is not None and diagnostics.take():
        newest = newest_subscription(subscriptions)
        _emit(
            on_progress,
            ProgressEvent(
                ProgressKind.DIAGNOSTIC,
                "subscription verdict",
                {
                    "account_code": account_code,
                    "subscription_count": len(subscriptions),
                    "newest_state": newest.state if newest else None,
                    "newest_expiration_reason": newest.expiration_reason if newest else None,
                    "needs_rescue": verdict.needs_rescue,
                },
            ),
        )

    if verdict.is_conflict:
        _emit(
            on_progress,
            ProgressEvent(
                ProgressKind.SKIP,
                f"{account_code} has an active subscription and an expired one; skipping",
                {"account_code": account_code},
            ),
        )

    return verdict


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def _list_items(data: Any) -> list[Any]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("data"), list):
        return data["data"]
    return []


def _within(moment: datetime, options: DiscoveryOptions) -> bool:
    return options.start_date <= moment <= options.end_date


def _passes_account_filter(account: Account, options: DiscoveryOptions) -> bool:
    if account.state not in RESCUABLE_ACCOUNT_STATES:
        return False
    # Accounts without a closure date rely on the server-side update-time window
    return account.closed_at is None or _within(account.closed_at, options)


def discover(
    client: RecurlyClient,
    start_date: datetime | str | None = None,
    end_date: datetime | str | None = None,
    page_size: int = MAX_PAGE_SIZE,
    max_results: int | None = None,
    on_progress: ProgressCallback | None = None,
) -> list[Account]:
    """Discover accounts whose newest subscription expired for nonpayment.

    Args:
        client: API client used for every request.
        start_date: Window start (inclusive); defaults to 2025-11-16.
        end_date: Window end (inclusive); defaults to 2026-01-20 23:59:59.
        page_size: Accounts per page, 1 to 200.
        max_results: Stop once this many candidates are found.
        on_progress: Optional observational callback.

    Returns:
        Candidates in server order, at most ``max_results`` long.

    Raises:
        ConfigurationError: If the options are invalid (before any request).
        DiscoveryError: If a page request fails.
    """
    options = build_options(start_date, end_date, page_size, max_results)

    _emit(
        on_progress,
        ProgressEvent(
            ProgressKind.START,
            data={"start_date": options.start_date, "end_date": options.end_date},
        ),
    )
    logger.info(
        "discovery_started",
        start_date=options.start_date.isoformat(),
        end_date=options.end_date.isoformat(),
        page_size=options.page_size,
    )

    candidates: list[Account] = []
    diagnostics = _DiagnosticBudget()
    seen: set[str] = set()
    cursor: str | None = None
    page = 0

    while True:
        page += 1
        if page > MAX_PAGES:
            logger.warning("discovery_page_limit", max_pages=MAX_PAGES)
            _emit(on_progress, ProgressEvent(ProgressKind.WARNING, MAX_PAGES_WARNING))
            break

        params: dict[str, Any] = {
            "limit": options.page_size,
            "sort": "updated_at",
            "order": "asc",
            "begin_time": options.start_date.isoformat(),
            "end_time": options.end_date.isoformat(),
        }
        if cursor:
            params["cursor"] = cursor

        try:
            response = client.get("/accounts", params=params)
        except ApiError as exc:
            raise DiscoveryError(
                f"Failed to query accounts (page {page}): {exc}",
                status_code=exc.status_code,
            ) from exc

        items = _list_items(response.data)

        kept_on_page = 0
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                account = Account.from_api(item)
            except ValidationError as exc:
                logger.warning("account_unparseable", page=page, error=str(exc))
                continue
            ref = account.reference
            if ref is None or ref in seen:
                continue
            seen.add(ref)
            if account.code is None or not _passes_account_filter(account, options):
                continue
            verdict = check_needs_rescue(client, account.code, on_progress, diagnostics)
            if verdict.needs_rescue:
                candidates.append(account)
                kept_on_page += 1

        _emit(
            on_progress,
            ProgressEvent(
                ProgressKind.PAGE,
                data={
                    "page": page,
                    "count": kept_on_page,
                    "fetched": len(items),
                    "total": len(candidates),
                },
            ),
        )
        logger.debug(
            "discovery_page",
            page=page,
            count=kept_on_page,
            fetched=len(items),
            total=len(candidates),
        )

        if options.max_results is not None and len(candidates) >= options.max_results:
            candidates = candidates[: options.max_results]
            break

        envelope = response.data if isinstance(response.data, dict) else {}
        if not envelope.get("has_more"):
            break

        cursor = extract_cursor(envelope.get("next"))
        if not cursor:
            logger.warning("discovery_cursor_missing", page=page)
            _emit(on_progress, ProgressEvent(ProgressKind.WARNING, NO_CURSOR_WARNING))
            break

    _emit(on_progress, ProgressEvent(ProgressKind.COMPLETE, data={"total": len(candidates)}))
    logger.info("discovery_complete", total=len(candidates), pages=min(page, MAX_PAGES))
    return candidates
