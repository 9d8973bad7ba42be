"""JSON results report written at the end of a rescue or rollback run.

A rescue report is also the input of a later rollback, so every rescued
entry keeps the account state from before the run and the subscription
created by it.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field

from recurly_rescue.exceptions import ConfigurationError, RescueError
from recurly_rescue.sanitize import sanitize_optional
from recurly_rescue.state import OutcomeStatus, RunMode

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

RESULTS_VERSION = "1.0.0"
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S"
_FILE_PREFIXES = {RunMode.RESCUE: "rescue-results", RunMode.ROLLBACK: "rollback-results"}


class ExecutionInfo(BaseModel):
    timestamp: str
    environment: str
    project: str
    mode: str = RunMode.RESCUE
    source_file: str | None = None


class ResultsSummary(BaseModel):
    total: int = 0
    rescued: int = 0
    skipped: int = 0
    failed: int = 0


class RollbackSummary(BaseModel):
    total: int = 0
    rolled_back: int = 0
    skipped: int = 0
    failed: int = 0


class ClientResult(BaseModel):
    """One account's entry in the report."""

    id: str
    status: str
    before: dict[str, Any] = Field(
        default_factory=lambda: {"state": "unknown", "subscriptions": []}
    )
    after: dict[str, Any] | None = None
    error: str | None = None
    reason: str | None = None
    note: str | None = None
    decline_code: str | None = None
    decline_reason: str | None = None


class ResultsReport(BaseModel):
    version: str = RESULTS_VERSION
    execution: ExecutionInfo
    summary: ResultsSummary | RollbackSummary = Field(default_factory=ResultsSummary)
    clients: list[ClientResult] = Field(default_factory=list)


class FinalizeResult(BaseModel):
    path: Path | None = None
    summary: ResultsSummary | RollbackSummary
    skipped: bool = False


class ResultsWriter:
    """Accumulates per-account outcomes and writes the report once.

    Attributes:
        mode: ``rescue`` or ``rollback``; picks the summary counters and
            the file name prefix.
        dry_run: When set, ``finalize`` writes nothing.
        output_dir: Existing directory the report is written into.
    """

    def __init__(
        self,
        project: str,
        environment: str,
        dry_run: bool = False,
        output_dir: Path | str = Path("."),
        mode: RunMode = RunMode.RESCUE,
        source_file: Path | str | None = None,
    ) -> None:
        if not project or not project.strip():
            raise ConfigurationError("Project is required for the results report")
        if not environment or not environment.strip():
            raise ConfigurationError("Environment is required for the results report")
        self.mode = RunMode(mode)
        self.dry_run = dry_run
        self.output_dir = Path(output_dir)
        self._started = datetime.now(tz=UTC)
        self._report = ResultsReport(
            execution=ExecutionInfo(
                timestamp=self._started.isoformat(),
                environment=environment,
                project=project,
                mode=self.mode,
                # File name only
                source_file=Path(source_file).name if source_file else None,
            ),
            summary=RollbackSummary() if self.mode == RunMode.ROLLBACK else ResultsSummary(),
        )

    @property
    def report(self) -> ResultsReport:
        return self._report

    @property
    def summary(self) -> ResultsSummary | RollbackSummary:
        return self._report.summary.model_copy()

    def add(
        self,
        account_id: str,
        status: OutcomeStatus,
        *,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
        error: str | None = None,
        reason: str | None = None,
        note: str | None = None,
        decline_code: str | None = None,
        decline_reason: str | None = None,
    ) -> None:
        """Record one account outcome and update the summary counters.

        ``REQUIRES_3DS`` counts as skipped: the account needs manual work
        but nothing went wrong on our side.
        """
        if not account_id:
            raise RescueError("Client ID is required for a results entry")

        entry = ClientResult(
            id=account_id,
            status=str(status),
            after=after,
            error=sanitize_optional(error),
            reason=reason,
            note=note,
            decline_code=decline_code,
            decline_reason=decline_reason,
        )
        if before is not None:
            entry.before = before
        self._report.clients.append(entry)

        summary = self._report.summary
        summary.total += 1
        match status:
            case OutcomeStatus.SKIPPED | OutcomeStatus.REQUIRES_3DS:
                summary.skipped += 1
            case OutcomeStatus.FAILED:
                summary.failed += 1
            case OutcomeStatus.RESCUED if isinstance(summary, ResultsSummary):
                summary.rescued += 1
            case OutcomeStatus.ROLLED_BACK if isinstance(summary, RollbackSummary):
                summary.rolled_back += 1

    def finalize(self) -> FinalizeResult:
        """Write the report, unless this is a dry run.

        Raises:
            RescueError: If the output directory is missing or the write fails.
        """
        if self.dry_run:
            return FinalizeResult(summary=self.summary, skipped=True)

        if not self.output_dir.is_dir():
            raise RescueError(f"Output directory does not exist: {self.output_dir}")

        name = (
            f"{_FILE_PREFIXES[self.mode]}-{self._report.execution.project}-"
            f"{self._started.strftime(_TIMESTAMP_FORMAT)}.json"
        )
        path = self.output_dir / name
        try:
            path.write_text(self._report.model_dump_json(indent=2), encoding="utf-8")
        except OSError as exc:
            raise RescueError(f"Failed to write results file: {exc}") from exc

        logger.info("results_written", path=str(path), **self._report.summary.model_dump())
        return FinalizeResult(path=path, summary=self.summary)
