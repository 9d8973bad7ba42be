"""Unit tests for recurly_rescue.runner - driving loop, confirmation, cleanup."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import pytest

from recurly_rescue.exceptions import AccountOperationError
from recurly_rescue.models import Account
from recurly_rescue.results import ResultsWriter
from recurly_rescue.runner import (
    NO_BILLING_INFO_REASON,
    THREE_DS_STATE_ERROR,
    ConfirmationGate,
    RescueRunner,
    exclude_accounts,
)
from recurly_rescue.state import ExecutionStateStore, OutcomeStatus
from recurly_rescue.subscriptions import RescueOutcome

if TYPE_CHECKING:
    from pathlib import Path


def _rescued(code: str) -> RescueOutcome:
    return RescueOutcome(
        status=OutcomeStatus.RESCUED,
        account_code=code,
        subscription={"uuid": f"sub-{code}"},
    )


def _build(
    tmp_path: Path,
    accounts: list[Account],
    dry_run: bool = False,
    **kwargs: object,
) -> tuple[RescueRunner, ExecutionStateStore, ResultsWriter]:
    store = ExecutionStateStore("eur", "sandbox", state_dir=tmp_path)
    store.initialize(accounts)
    results = ResultsWriter("eur", "sandbox", dry_run=dry_run, output_dir=tmp_path)
    runner = RescueRunner(
        MagicMock(),
        store,
        results,
        plan_code="rescue-plan",
        currency="EUR",
        dry_run=dry_run,
        **kwargs,  # type: ignore[arg-type]
    )
    return runner, store, results


# ---- ConfirmationGate -------------------------------------------------------


class TestConfirmationGate:
    """Pause every N accounts, never after the last one."""

    def test_pause_points(self) -> None:
        gate = ConfirmationGate(2, 5, lambda p, t: True)
        assert [gate.should_pause(i) for i in range(5)] == [False, True, False, True, False]

    def test_never_after_last(self) -> None:
        gate = ConfirmationGate(2, 4, lambda p, t: True)
        assert not gate.should_pause(3)
        assert gate.expected_pauses() == 1

    @pytest.mark.parametrize("interval", [0, -1])
    def test_disabled(self, interval: int) -> None:
        gate = ConfirmationGate(interval, 10, lambda p, t: True)
        assert not any(gate.should_pause(i) for i in range(10))
        assert gate.expected_pauses() == 0

    def test_disabled_without_callback(self) -> None:
        assert not ConfirmationGate(1, 10, None).should_pause(0)

    def test_check_passes_progress_to_callback(self) -> None:
        confirm = MagicMock(return_value=False)
        gate = ConfirmationGate(3, 10, confirm)
        assert gate.check(0)
        assert not gate.check(2)
        confirm.assert_called_once_with(3, 10)


# ---- exclude_accounts -------------------------------------------------------


class TestExcludeAccounts:
    """Excluded accounts never reach the state file."""

    def test_matches_code_or_id_case_insensitively(self) -> None:
        accounts = [Account(code="Keep"), Account(code="Drop-Me"), Account(id="xyz123abc456")]
        kept = exclude_accounts(accounts, ["drop-me ", "XYZ123ABC456"])
        assert [a.reference for a in kept] == ["Keep"]

    def test_empty_exclusions(self) -> None:
        accounts = [Account(code="a")]
        assert exclude_accounts(accounts, ["", "  "]) == accounts


# ---- RescueRunner -----------------------------------------------------------


@patch("recurly_rescue.runner.rescue_account")
@patch("recurly_rescue.runner.has_billing_info", return_value=True)
@patch("recurly_rescue.runner.reopen_account")
class TestRescueRunner:
    """Per-account flow and end-of-run bookkeeping."""

    def test_all_rescued_cleans_up_state(
        self,
        reopen: MagicMock,
        billing: MagicMock,
        rescue: MagicMock,
        tmp_path: Path,
    ) -> None:
        rescue.side_effect = lambda client, code, *a, **kw: _rescued(code)
        accounts = [Account(code="a", id="ida", state="closed"), Account(code="b", state="active")]
        runner, store, _ = _build(tmp_path, accounts)
        state_path = store.path

        summary = runner.run(accounts)

        assert (summary.processed, summary.rescued, summary.failed) == (2, 2, 0)
        reopen.assert_called_once_with(runner.client, "ida", internal=True)
        assert summary.results_path is not None and summary.results_path.exists()
        assert state_path is not None and not state_path.exists()

    def test_reopen_failure_marks_failed_and_keeps_state(
        self,
        reopen: MagicMock,
        billing: MagicMock,
        rescue: MagicMock,
        tmp_path: Path,
    ) -> None:
        reopen.side_effect = AccountOperationError("boom", status_code=500)
        accounts = [Account(code="a", state="closed")]
        runner, store, results = _build(tmp_path, accounts)

        summary = runner.run(accounts)

        assert summary.failed == 1
        rescue.assert_not_called()
        assert results.report.clients[0].error == "Failed to reopen account: boom"
        assert store.path is not None and store.path.exists()
        assert summary.has_failures

    def test_missing_billing_info_skips(
        self,
        reopen: MagicMock,
        billing: MagicMock,
        rescue: MagicMock,
        tmp_path: Path,
    ) -> None:
        billing.return_value = False
        accounts = [Account(code="a", state="active")]
        runner, store, results = _build(tmp_path, accounts)

        summary = runner.run(accounts)

        assert summary.skipped == 1
        rescue.assert_not_called()
        assert results.report.clients[0].reason == NO_BILLING_INFO_REASON

    def test_three_ds_outcome(
        self,
        reopen: MagicMock,
        billing: MagicMock,
        rescue: MagicMock,
        tmp_path: Path,
    ) -> None:
        rescue.return_value = RescueOutcome(
            status=OutcomeStatus.REQUIRES_3DS,
            account_code="a",
            error="Failed to assign rescue plan to a: 3ds",
            decline_code="three_d_secure_action_required",
        )
        accounts = [Account(code="a", state="active")]
        runner, store, results = _build(tmp_path, accounts)
        records_before_cleanup: list[str | None] = []
        original_cleanup = store.cleanup

        def capture_cleanup() -> object:
            records_before_cleanup.extend(r.error for r in store.processed_records())
            return original_cleanup()

        with patch.object(store, "cleanup", side_effect=capture_cleanup):
            summary = runner.run(accounts)

        assert summary.requires_3ds == 1
        assert not summary.has_failures
        assert records_before_cleanup == [THREE_DS_STATE_ERROR]
        assert results.summary.skipped == 1

    def test_failed_rescue_records_decline(
        self,
        reopen: MagicMock,
        billing: MagicMock,
        rescue: MagicMock,
        tmp_path: Path,
    ) -> None:
        rescue.return_value = RescueOutcome(
            status=OutcomeStatus.FAILED,
            account_code="a",
            error="Failed to assign rescue plan to a: declined",
            decline_code="insufficient_funds",
            decline_reason="Insufficient funds",
        )
        accounts = [Account(code="a", state="active")]
        runner, store, results = _build(tmp_path, accounts)

        summary = runner.run(accounts)

        assert summary.failed == 1
        entry = results.report.clients[0]
        assert entry.decline_code == "insufficient_funds"
        assert store.processed_records()[0].status == "failed"

    def test_declined_confirmation_stops_and_keeps_state(
        self,
        reopen: MagicMock,
        billing: MagicMock,
        rescue: MagicMock,
        tmp_path: Path,
    ) -> None:
        rescue.side_effect = lambda client, code, *a, **kw: _rescued(code)
        accounts = [Account(code=c, state="active") for c in "abcde"]
        confirm = MagicMock(return_value=False)
        runner, store, _ = _build(tmp_path, accounts, confirm_every=2, confirm=confirm)

        summary = runner.run(accounts)

        assert summary.stopped_by_user
        assert summary.processed == 2
        assert summary.results_path is None
        assert store.pending_ids() == ["c", "d", "e"]
        assert store.path is not None and store.path.exists()
        confirm.assert_called_once_with(2, 5)

    def test_dry_run_skips_writes_and_removes_state(
        self,
        reopen: MagicMock,
        billing: MagicMock,
        rescue: MagicMock,
        tmp_path: Path,
    ) -> None:
        rescue.side_effect = lambda client, code, *a, **kw: _rescued(code)
        accounts = [Account(code="a", id="ida", state="closed")]
        runner, store, _ = _build(tmp_path, accounts, dry_run=True)
        state_path = store.path

        summary = runner.run(accounts)

        reopen.assert_not_called()
        assert rescue.call_args.kwargs["dry_run"] is True
        assert summary.results_path is None
        assert state_path is not None and not state_path.exists()

    def test_accounts_without_identifier_are_skipped(
        self,
        reopen: MagicMock,
        billing: MagicMock,
        rescue: MagicMock,
        tmp_path: Path,
    ) -> None:
        rescue.side_effect = lambda client, code, *a, **kw: _rescued(code)
        accounts = [Account(), Account(code="a", state="active")]
        runner, _, _ = _build(tmp_path, accounts)

        summary = runner.run(accounts)

        assert summary.processed == 1
        assert rescue.call_count == 1

    def test_progress_callback_positions(
        self,
        reopen: MagicMock,
        billing: MagicMock,
        rescue: MagicMock,
        tmp_path: Path,
    ) -> None:
        rescue.side_effect = lambda client, code, *a, **kw: _rescued(code)
        accounts = [Account(code=c, state="active") for c in "abc"]
        on_account = MagicMock()
        runner, _, _ = _build(tmp_path, accounts, on_account=on_account)

        runner.run(accounts)

        positions = [c.args[2:] for c in on_account.call_args_list]
        assert positions == [(1, 3), (2, 3), (3, 3)]

    def test_rescued_result_links_subscription(
        self,
        reopen: MagicMock,
        billing: MagicMock,
        rescue: MagicMock,
        tmp_path: Path,
    ) -> None:
        rescue.side_effect = lambda client, code, *a, **kw: _rescued(code)
        accounts = [Account(code="a", state="active")]
        runner, _, results = _build(tmp_path, accounts)

        runner.run(accounts)

        after = results.report.clients[0].after
        assert after is not None
        assert after["subscription_id"] == "sub-a"
        assert after["url"] == "https://app.recurly.com/go/eur/subscriptions/sub-a"
