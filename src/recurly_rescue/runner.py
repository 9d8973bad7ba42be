"""Driving loop: process rescue candidates one by one with checkpoints.

For every candidate the runner reopens closed accounts, checks billing
info, creates the rescue subscription, and records the outcome in the
execution state store before moving to the next account.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from recurly_rescue.accounts import has_billing_info, reopen_account
from recurly_rescue.exceptions import AccountOperationError
from recurly_rescue.models import Account
from recurly_rescue.state import OutcomeStatus
from recurly_rescue.subscriptions import rescue_account, subscription_url

if TYPE_CHECKING:
    from recurly_rescue.client import RecurlyClient
    from recurly_rescue.results import ResultsWriter
    from recurly_rescue.state import ExecutionStateStore

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

NO_BILLING_INFO_REASON = "No valid billing info for automatic collection"
THREE_DS_STATE_ERROR = "Manual intervention required - 3DS authentication needed"

ConfirmCallback = Callable[[int, int], bool]
AccountCallback = Callable[[str, OutcomeStatus, int, int], None]


# ---------------------------------------------------------------------------
# Confirmation
# ---------------------------------------------------------------------------


class ConfirmationGate:
    """Pause for operator confirmation every ``interval`` accounts.

    Never pauses after the last account. An ``interval`` of 0 or a
    missing callback disables pausing.
    """

    def __init__(self, interval: int, total: int, confirm: ConfirmCallback | None) -> None:
        self.interval = interval
        self.total = total
        self._confirm = confirm

    def should_pause(self, index: int) -> bool:
        if self.interval <= 0 or self._confirm is None:
            return False
        processed = index + 1
        if processed >= self.total:
            return False
        return processed % self.interval == 0

    def expected_pauses(self) -> int:
        if self.interval <= 0 or self.total <= 0:
            return 0
        return (self.total - 1) // self.interval

    def check(self, index: int) -> bool:
        """Return False if the operator asked to stop after ``index``."""
        if not self.should_pause(index) or self._confirm is None:
            return True
        return self._confirm(index + 1, self.total)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class RunSummary:
    processed: int = 0
    rescued: int = 0
    failed: int = 0
    skipped: int = 0
    requires_3ds: int = 0
    stopped_by_user: bool = False
    results_path: Path | None = None

    @property
    def has_failures(self) -> bool:
        return self.failed > 0


def exclude_accounts(accounts: Iterable[Account], excluded: Iterable[str]) -> list[Account]:
    """Drop accounts whose code or id appears in ``excluded`` (case-insensitive)."""
    blocked = {item.strip().lower() for item in excluded if item and item.strip()}
    if not blocked:
        return list(accounts)
    return [
        account
        for account in accounts
        if (account.code or "").lower() not in blocked
        and (account.id or "").lower() not in blocked
    ]


class RescueRunner:
    """Processes candidates sequentially, checkpointing after each one."""

    def __init__(
        self,
        client: RecurlyClient,
        store: ExecutionStateStore,
        results: ResultsWriter,
        *,
        plan_code: str,
        currency: str,
        trial_days: int = 1,
        dry_run: bool = False,
        confirm_every: int = 0,
        confirm: ConfirmCallback | None = None,
        app_base_url: str = "https://app.recurly.com",
        on_account: AccountCallback | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.results = results
        self.plan_code = plan_code
        self.currency = currency
        self.trial_days = trial_days
        self.dry_run = dry_run
        self.confirm_every = confirm_every
        self._confirm = confirm
        self._on_account = on_account
        self.app_base_url = app_base_url

    def run(self, accounts: Sequence[Account]) -> RunSummary:
        """Process ``accounts`` in order.

        The state file is removed when the run finishes with no failures,
        and always after a dry run; otherwise it stays on disk for resume.

        Args:
            accounts: Candidates, normally the store's pending accounts.

        Returns:
            Counters for the run.
        """
        summary = RunSummary()
        gate = ConfirmationGate(self.confirm_every, len(accounts), self._confirm)
        offset = self.store.processed_count()
        total = self.store.total_count() or len(accounts)

        for index, account in enumerate(accounts):
            account_id = account.reference
            if not account_id:
                logger.warning("account_missing_identifier", index=index)
                continue

            status = self._process(account, account_id)
            summary.processed += 1
            match status:
                case OutcomeStatus.RESCUED:
                    summary.rescued += 1
                case OutcomeStatus.FAILED:
                    summary.failed += 1
                case OutcomeStatus.SKIPPED:
                    summary.skipped += 1
                case OutcomeStatus.REQUIRES_3DS:
                    summary.requires_3ds += 1

            if self._on_account is not None:
                self._on_account(account_id, status, offset + index + 1, total)

            if not gate.check(index):
                summary.stopped_by_user = True
                logger.info("run_stopped_by_user", processed=summary.processed)
                break

        if not summary.stopped_by_user:
            summary.results_path = self.results.finalize().path

        if self.dry_run or (not summary.stopped_by_user and not summary.has_failures):
            self.store.cleanup()
        else:
            logger.info("state_preserved", path=str(self.store.path), failed=summary.failed)

        logger.info(
            "run_complete",
            processed=summary.processed,
            rescued=summary.rescued,
            failed=summary.failed,
            skipped=summary.skipped,
            requires_3ds=summary.requires_3ds,
        )
        return summary

    def _process(self, account: Account, account_id: str) -> OutcomeStatus:
        if account.state in ("closed", "inactive"):
            if self.dry_run:
                logger.info("reopen_dry_run", account_id=account_id)
            else:
                try:
                    if account.id:
                        reopen_account(self.client, account.id, internal=True)
                    else:
                        reopen_account(self.client, account_id)
                except AccountOperationError as exc:
                    error = f"Failed to reopen account: {exc}"
                    self._record(account_id, OutcomeStatus.FAILED, error=error)
                    return OutcomeStatus.FAILED

        if not has_billing_info(self.client, account_id):
            logger.info("account_skipped", account_id=account_id, reason="no_billing_info")
            self._record(account_id, OutcomeStatus.SKIPPED, reason=NO_BILLING_INFO_REASON)
            return OutcomeStatus.SKIPPED

        before = {
            "state": account.state,
            "closed_at": account.closed_at.isoformat() if account.closed_at else None,
            "subscriptions": [s.model_dump(mode="json") for s in account.subscriptions],
        }
        outcome = rescue_account(
            self.client,
            account_id,
            self.plan_code,
            self.currency,
            trial_days=self.trial_days,
            dry_run=self.dry_run,
        )

        if outcome.status == OutcomeStatus.RESCUED:
            subscription_id = outcome.subscription_id
            after: dict[str, str | None] = {"state": "active", "subscription_id": subscription_id}
            if subscription_id and not self.dry_run:
                project = self.results.report.execution.project
                after["url"] = subscription_url(project, subscription_id, self.app_base_url)
            self.store.mark_processed(account_id, outcome.status, subscription_id=subscription_id)
            self.results.add(
                account_id,
                outcome.status,
                before=before,
                after=after,
            )
        else:
            state_error = (
                THREE_DS_STATE_ERROR
                if outcome.status == OutcomeStatus.REQUIRES_3DS
                else outcome.error
            )
            self.store.mark_processed(account_id, outcome.status, error=state_error)
            self.results.add(
                account_id,
                outcome.status,
                before=before,
                error=outcome.error,
                decline_code=outcome.decline_code,
                decline_reason=outcome.decline_reason,
            )
        return outcome.status

    def _record(
        self,
        account_id: str,
        status: OutcomeStatus,
        error: str | None = None,
        reason: str | None = None,
    ) -> None:
        self.store.mark_processed(account_id, status, error=error or reason)
        self.results.add(account_id, status, error=error, reason=reason)
