"""Undo a rescue run from its results report.

The report written by a rescue run lists every processed account with
its state before the run and the subscription the run created. Rolling
back cancels that subscription, or terminates it when the account had no
subscriptions before, and closes accounts that were closed before the
rescue reopened them. Entries that were never rescued are skipped.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from recurly_rescue.accounts import deactivate_account
from recurly_rescue.exceptions import AccountOperationError, ApiError, RollbackError
from recurly_rescue.results import ClientResult
from recurly_rescue.sanitize import sanitize_error_message
from recurly_rescue.state import OutcomeStatus
from recurly_rescue.subscriptions import cancel_subscription, terminate_subscription

if TYPE_CHECKING:
    from recurly_rescue.client import RecurlyClient
    from recurly_rescue.results import ResultsWriter
    from recurly_rescue.state import ExecutionStateStore

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

ROLLBACK_SOURCE_STATUSES = frozenset(
    status.value
    for status in (
        OutcomeStatus.RESCUED,
        OutcomeStatus.FAILED,
        OutcomeStatus.SKIPPED,
        OutcomeStatus.REQUIRES_3DS,
    )
)
NOT_RESCUED_REASON = "Client was not rescued in original execution"
ALREADY_ROLLED_BACK_NOTE = "Already rolled back or subscription not found"

_ALREADY_DONE_PATTERNS = (
    re.compile(r"already.*cancel", re.IGNORECASE),
    re.compile(r"subscription.*not.*found", re.IGNORECASE),
    re.compile(r"account.*not.*found", re.IGNORECASE),
    re.compile(r"already.*closed", re.IGNORECASE),
)

RollbackAccountCallback = Callable[[str, OutcomeStatus, int, int], None]


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class RollbackPlan:
    """A validated results report split into entries to undo and to skip."""

    source: Path
    timestamp: str
    environment: str
    project: str
    original_mode: str
    to_rollback: list[ClientResult] = field(default_factory=list)
    to_skip: list[ClientResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.to_rollback) + len(self.to_skip)

    @property
    def entries(self) -> list[ClientResult]:
        """Entries in processing order: rescued ones first."""
        return [*self.to_rollback, *self.to_skip]


def check_rollback_path(path: Path | str) -> Path:
    """Resolve ``path`` and require it to sit under the working directory.

    Raises:
        RollbackError: If the path is empty or points outside the working
            directory.
    """
    if not path or not str(path).strip():
        raise RollbackError("Rollback file path is required")
    resolved = Path(path).resolve()
    if not resolved.is_relative_to(Path.cwd().resolve()):
        raise RollbackError("Rollback file must be within current working directory")
    return resolved


def load_rollback_file(path: Path | str) -> RollbackPlan:
    """Read and validate a rescue results report.

    Error messages name the file by its base name only.

    Args:
        path: Results report, inside the working directory.

    Returns:
        The rollback plan for the report.

    Raises:
        RollbackError: If the file is outside the working directory,
            missing, unreadable, not JSON, or not a results report.
    """
    resolved = check_rollback_path(path)
    name = resolved.name
    if not resolved.is_file():
        raise RollbackError(f"Rollback file not found or invalid: {name}")

    try:
        raw = resolved.read_text(encoding="utf-8")
    except OSError as exc:
        raise RollbackError(f"Cannot read rollback file: {name}") from exc

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RollbackError(f"Rollback file is corrupted (invalid JSON): {name}") from exc

    validate_rollback_schema(data)
    plan = plan_rollback(data, resolved)
    logger.info(
        "rollback_file_loaded",
        path=str(resolved),
        to_rollback=len(plan.to_rollback),
        to_skip=len(plan.to_skip),
    )
    return plan


def validate_rollback_schema(data: Any) -> None:
    """Check the structure of a parsed results report.

    Statuses are compared case-insensitively.

    Raises:
        RollbackError: Naming the first missing or invalid field.
    """
    if not isinstance(data, dict):
        raise RollbackError("Rollback file root must be an object")
    if not data.get("version"):
        logger.warning("rollback_file_unversioned")

    execution = data.get("execution")
    if not isinstance(execution, dict):
        raise RollbackError("Rollback file missing execution metadata")
    for key in ("timestamp", "environment", "project"):
        if not execution.get(key):
            raise RollbackError(f"Rollback file missing execution {key}")

    summary = data.get("summary")
    if not isinstance(summary, dict):
        raise RollbackError("Rollback file missing summary")
    total = summary.get("total")
    if not isinstance(total, int | float) or isinstance(total, bool):
        raise RollbackError("Rollback file has invalid summary.total")

    clients = data.get("clients")
    if not isinstance(clients, list):
        raise RollbackError("Rollback file missing clients array")
    for index, client in enumerate(clients):
        if not isinstance(client, dict) or not client.get("id"):
            raise RollbackError(f"Rollback file client at index {index} missing id")
        status = client.get("status")
        if not status:
            raise RollbackError(f"Rollback file client at index {index} missing status")
        if str(status).lower() not in ROLLBACK_SOURCE_STATUSES:
            raise RollbackError(
                f"Rollback file client at index {index} has invalid status: {status}"
            )


def plan_rollback(data: dict[str, Any], source: Path) -> RollbackPlan:
    """Split a validated report into entries to roll back and to skip."""
    execution = data["execution"]
    plan = RollbackPlan(
        source=source,
        timestamp=execution["timestamp"],
        environment=execution["environment"],
        project=execution["project"],
        original_mode=execution.get("mode") or "rescue",
    )
    seen: set[str] = set()
    for raw in data["clients"]:
        if str(raw["id"]) in seen:
            logger.warning("rollback_duplicate_entry", account_id=str(raw["id"]))
            continue
        seen.add(str(raw["id"]))
        fields = {key: value for key, value in raw.items() if value is not None}
        try:
            entry = ClientResult.model_validate(
                {**fields, "id": str(raw["id"]), "status": str(raw["status"]).lower()}
            )
        except ValidationError as exc:
            raise RollbackError(f"Rollback file client {raw['id']} is invalid: {exc}") from exc
        if entry.status == OutcomeStatus.RESCUED:
            plan.to_rollback.append(entry)
        else:
            plan.to_skip.append(entry)
    return plan


def check_rollback_target(plan: RollbackPlan, environment: str, project: str) -> None:
    """Refuse to roll back a report into another environment or project.

    Raises:
        RollbackError: On either mismatch.
    """
    if plan.environment != environment:
        raise RollbackError(
            f"Environment mismatch: file is for {plan.environment!r} "
            f"but you specified --env={environment}"
        )
    if plan.project != project:
        raise RollbackError(
            f"Project mismatch: file is for {plan.project!r} "
            f"but you specified --project={project}"
        )


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class RollbackRunSummary:
    processed: int = 0
    rolled_back: int = 0
    skipped: int = 0
    failed: int = 0
    results_path: Path | None = None

    @property
    def has_failures(self) -> bool:
        return self.failed > 0


def is_already_rolled_back(exc: ApiError | AccountOperationError) -> bool:
    """Return True if ``exc`` means the rescue was already undone."""
    if exc.status_code == 404:
        return True
    message = str(exc)
    return any(pattern.search(message) for pattern in _ALREADY_DONE_PATTERNS)


class RollbackRunner:
    """Undoes rescued entries one by one, checkpointing after each."""

    def __init__(
        self,
        client: RecurlyClient,
        store: ExecutionStateStore,
        results: ResultsWriter,
        *,
        on_account: RollbackAccountCallback | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.results = results
        self._on_account = on_account

    def run(self, entries: Sequence[ClientResult]) -> RollbackRunSummary:
        """Process ``entries`` in order and write the rollback report.

        The state file is removed when no entry failed; otherwise it is
        kept for inspection.
        """
        summary = RollbackRunSummary()
        total = len(entries)

        for position, entry in enumerate(entries, start=1):
            status = self._process(entry)
            summary.processed += 1
            match status:
                case OutcomeStatus.ROLLED_BACK:
                    summary.rolled_back += 1
                case OutcomeStatus.SKIPPED:
                    summary.skipped += 1
                case OutcomeStatus.FAILED:
                    summary.failed += 1
            if self._on_account is not None:
                self._on_account(entry.id, status, position, total)

        summary.results_path = self.results.finalize().path
        if summary.has_failures:
            logger.info("state_preserved", path=str(self.store.path), failed=summary.failed)
        else:
            self.store.cleanup()

        logger.info(
            "rollback_complete",
            processed=summary.processed,
            rolled_back=summary.rolled_back,
            skipped=summary.skipped,
            failed=summary.failed,
        )
        return summary

    def _process(self, entry: ClientResult) -> OutcomeStatus:
        if entry.status != OutcomeStatus.RESCUED:
            logger.info("rollback_skipped", account_id=entry.id, original_status=entry.status)
            self.store.mark_processed(entry.id, OutcomeStatus.SKIPPED)
            self.results.add(
                entry.id,
                OutcomeStatus.SKIPPED,
                before=entry.after,
                reason=NOT_RESCUED_REASON,
            )
            return OutcomeStatus.SKIPPED

        subscription_id = (entry.after or {}).get("subscription_id")
        if not subscription_id:
            return self._fail(entry, "No subscription_id in rollback data")

        note: str | None = None
        try:
            if entry.before.get("subscriptions"):
                cancel_subscription(self.client, subscription_id)
            else:
                terminate_subscription(self.client, subscription_id)
            if entry.before.get("state") == "closed":
                deactivate_account(self.client, entry.id)
        except (ApiError, AccountOperationError) as exc:
            if not is_already_rolled_back(exc):
                return self._fail(entry, str(exc))
            logger.info("rollback_already_done", account_id=entry.id)
            note = ALREADY_ROLLED_BACK_NOTE
        else:
            logger.info(
                "account_rolled_back", account_id=entry.id, subscription_id=subscription_id
            )

        self.store.mark_processed(
            entry.id, OutcomeStatus.ROLLED_BACK, subscription_id=subscription_id
        )
        self.results.add(
            entry.id,
            OutcomeStatus.ROLLED_BACK,
            before=entry.after,
            after=entry.before,
            note=note,
        )
        return OutcomeStatus.ROLLED_BACK

    def _fail(self, entry: ClientResult, error: str) -> OutcomeStatus:
        error = sanitize_error_message(error)
        logger.warning("rollback_failed", account_id=entry.id, error=error)
        self.store.mark_processed(entry.id, OutcomeStatus.FAILED, error=error)
        self.results.add(entry.id, OutcomeStatus.FAILED, before=entry.after, error=error)
        return OutcomeStatus.FAILED
