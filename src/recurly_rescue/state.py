"""Crash-recoverable execution state for rescue runs.

One JSON file per run records which candidate accounts are still pending
and the outcome of every processed one. Each outcome is a checkpoint:
the file is rewritten via temp file -> fsync -> os.replace so a crash
leaves either the previous or the new version on disk, never a torn one.
"""

from __future__ import annotations

import contextlib
import glob
import json
import os
import re
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from recurly_rescue.exceptions import (
    ConfigurationError,
    StateCorruptionError,
    StateError,
    StateSchemaError,
)
from recurly_rescue.models import Account
from recurly_rescue.sanitize import sanitize_error_message

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

STATE_VERSION = "1.0.0"
STATE_FILE_PREFIX = "rescue-state"
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def state_file_name(project: str, started_at: datetime) -> str:
    """Return the state file name for a run of ``project`` started at ``started_at``.

    Example: ``rescue-state-eur-2026-01-05T10-20-30.json``.
    """
    stamp = started_at.astimezone(UTC).strftime(_TIMESTAMP_FORMAT)
    return f"{STATE_FILE_PREFIX}-{project}-{stamp}.json"


def _unused_state_path(state_dir: Path, project: str, started_at: datetime) -> Path:
    """Return a state file path for ``started_at`` that no earlier run has taken.

    Names have one-second resolution; a clash moves the stamp forward.
    """
    path = state_dir / state_file_name(project, started_at)
    while path.exists():
        started_at += timedelta(seconds=1)
        path = state_dir / state_file_name(project, started_at)
    return path


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class OutcomeStatus(StrEnum):
    RESCUED = "rescued"
    FAILED = "failed"
    REQUIRES_3DS = "requires_3ds"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"


class RunMode(StrEnum):
    RESCUE = "rescue"
    ROLLBACK = "rollback"


class _StateModel(BaseModel):
    """Base for state models; JSON keys are camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StateMetadata(_StateModel):
    project: str
    environment: str
    mode: str = RunMode.RESCUE
    started_at: str = Field(default_factory=_now_iso)
    last_updated: str = Field(default_factory=_now_iso)


class StateProgress(_StateModel):
    total: int = Field(default=0, ge=0)
    processed: int = Field(default=0, ge=0)
    current_index: int = Field(default=0, ge=0)


class ProcessedRecord(_StateModel):
    """Outcome of one processed account."""

    id: str
    status: str
    subscription_id: str | None = None
    error: str | None = None
    processed_at: str = Field(default_factory=_now_iso)


class StateAccounts(_StateModel):
    processed: list[ProcessedRecord] = Field(default_factory=list)
    pending: list[str] = Field(default_factory=list)


class ExecutionState(_StateModel):
    """Persisted progress of one rescue run."""

    version: str = STATE_VERSION
    metadata: StateMetadata
    progress: StateProgress = Field(default_factory=StateProgress)
    accounts: StateAccounts = Field(default_factory=StateAccounts)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


@dataclass(slots=True, frozen=True)
class PersistResult:
    """Outcome of a best-effort save or cleanup.

    Failures are logged by the store and reported here; they are never
    raised, so the run's business logic continues.
    """

    ok: bool
    path: Path | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


def _candidate_id(candidate: Account | Mapping[str, Any] | str) -> str | None:
    if isinstance(candidate, str):
        return candidate or None
    if isinstance(candidate, Account):
        return candidate.reference
    return candidate.get("code") or candidate.get("id")


class ExecutionStateStore:
    """Single-writer, file-backed progress tracker for one run.

    Attributes:
        project: Project identifier used in the file name.
        environment: ``sandbox`` or ``production``.
        mode: Execution mode recorded in the metadata.
        state_dir: Directory holding state files.
    """

    def __init__(
        self,
        project: str,
        environment: str,
        mode: str = RunMode.RESCUE,
        state_dir: Path | str = Path("."),
    ) -> None:
        """Initialize the store.

        Raises:
            ConfigurationError: If ``project`` or ``environment`` is empty.
        """
        if not project:
            raise ConfigurationError("Project is required for state management")
        if not environment:
            raise ConfigurationError("Environment is required for state management")

        self.project = project
        self.environment = environment
        self.mode = mode
        self.state_dir = Path(state_dir)
        self._state: ExecutionState | None = None
        self._path: Path | None = None

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def state(self) -> ExecutionState | None:
        return self._state

    def initialize(
        self, candidates: Iterable[Account | Mapping[str, Any] | str]
    ) -> ExecutionState:
        """Start a new run for ``candidates`` and write the first checkpoint.

        Candidates are identified by account code, falling back to id;
        candidates with neither are ignored and duplicates are collapsed.

        Args:
            candidates: Accounts, account payloads, or bare identifiers.

        Returns:
            The freshly created state.
        """
        ids: list[str] = []
        for candidate in candidates:
            candidate_id = _candidate_id(candidate)
            if candidate_id and candidate_id not in ids:
                ids.append(candidate_id)

        started = datetime.now(tz=UTC)
        self._path = _unused_state_path(self.state_dir, self.project, started)
        self._state = ExecutionState(
            metadata=StateMetadata(
                project=self.project,
                environment=self.environment,
                mode=self.mode,
                started_at=started.isoformat(),
                last_updated=started.isoformat(),
            ),
            progress=StateProgress(total=len(ids)),
            accounts=StateAccounts(pending=ids),
        )

        self.save()
        logger.info("state_initialized", path=str(self._path), total=len(ids))
        return self._state

    def mark_processed(
        self,
        account_id: str,
        status: OutcomeStatus | str,
        subscription_id: str | None = None,
        error: str | None = None,
    ) -> PersistResult:
        """Record the outcome for one account and checkpoint immediately.

        Args:
            account_id: Identifier from the pending list.
            status: Outcome of processing.
            subscription_id: New subscription id when rescued.
            error: Error text; sanitized before it is stored.

        Returns:
            The result of the checkpoint write.

        Raises:
            StateError: If the store is not initialized or ``account_id``
                is not pending.
        """
        if self._state is None:
            raise StateError("State not initialized. Call initialize() first.")

        pending = self._state.accounts.pending
        if account_id not in pending:
            raise StateError(f"Account {account_id} is not pending in this run")

        self._state.accounts.processed.append(
            ProcessedRecord(
                id=account_id,
                status=str(status),
                subscription_id=subscription_id,
                error=sanitize_error_message(error) if error else None,
            )
        )
        pending.remove(account_id)
        self._state.progress.processed += 1
        self._state.progress.current_index += 1
        self._state.metadata.last_updated = _now_iso()

        return self.save()

    def save(self) -> PersistResult:
        """Atomically persist the current state.

        Returns:
            ``PersistResult`` with ``ok=False`` and the sanitized error if
            the write failed; the failure is also logged as a warning.
        """
        if self._state is None or self._path is None:
            return PersistResult(ok=False, error="State not initialized")

        payload = self._state.to_json().encode("utf-8")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(self._path, payload)
        except OSError as exc:
            error = sanitize_error_message(str(exc))
            logger.warning("state_save_failed", path=str(self._path), error=error)
            return PersistResult(ok=False, path=self._path, error=error)

        logger.debug(
            "state_saved",
            path=str(self._path),
            processed=self._state.progress.processed,
            size_bytes=len(payload),
        )
        return PersistResult(ok=True, path=self._path)

    def cleanup(self) -> PersistResult:
        """Delete the state file and orphaned temp files from this run.

        Returns:
            ``PersistResult``; failures are logged as warnings, never raised.
        """
        if self._path is None:
            return PersistResult(ok=True)

        errors: list[str] = []
        targets = [self._path, *self._path.parent.glob(f"{glob.escape(self._path.name)}.tmp.*")]
        for target in targets:
            try:
                target.unlink(missing_ok=True)
            except OSError as exc:
                errors.append(f"{target.name}: {exc}")

        if errors:
            error = sanitize_error_message("; ".join(errors))
            logger.warning("state_cleanup_failed", path=str(self._path), error=error)
            return PersistResult(ok=False, path=self._path, error=error)

        logger.info("state_cleaned_up", path=str(self._path))
        return PersistResult(ok=True, path=self._path)

    def resume_from(self, state: ExecutionState, path: Path | str) -> None:
        """Adopt a previously loaded state and keep checkpointing to ``path``.

        ``total`` is kept as loaded; it is not re-derived from the lists.
        """
        self._state = state.model_copy(deep=True)
        self._path = Path(path)
        logger.info(
            "state_resumed",
            path=str(self._path),
            processed=self._state.progress.processed,
            pending=len(self._state.accounts.pending),
            total=self._state.progress.total,
        )

    def pending_ids(self) -> list[str]:
        if self._state is None:
            return []
        return list(self._state.accounts.pending)

    def processed_records(self) -> list[ProcessedRecord]:
        if self._state is None:
            return []
        return list(self._state.accounts.processed)

    def processed_count(self) -> int:
        if self._state is None:
            return 0
        return self._state.progress.processed

    def total_count(self) -> int:
        if self._state is None:
            return 0
        return self._state.progress.total


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def find_latest_state_file(project: str, state_dir: Path | str = Path(".")) -> Path | None:
    """Return the most recently modified state file for ``project``, or ``None``."""
    directory = Path(state_dir)
    if not directory.is_dir():
        return None

    name_re = re.compile(
        rf"^{re.escape(STATE_FILE_PREFIX)}-{re.escape(project)}-"
        r"\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}\.json$"
    )
    candidates = [p for p in directory.iterdir() if p.is_file() and name_re.match(p.name)]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.stat().st_mtime)


def load_state_file(path: Path | str) -> ExecutionState:
    """Read, parse, and schema-validate a state file.

    Args:
        path: State file to load.

    Returns:
        The validated state.

    Raises:
        StateError: If the file is missing or unreadable.
        StateCorruptionError: If the file is not valid JSON.
        StateSchemaError: If the document violates the state schema.
    """
    path = Path(path)
    if not path.exists():
        raise StateError(f"State file not found: {path}")

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise StateError(f"Cannot read state file: {exc}") from exc

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StateCorruptionError(f"State file is corrupted (invalid JSON): {exc}") from exc

    validate_state_schema(data)

    try:
        state = ExecutionState.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(part) for part in first["loc"])
        raise StateSchemaError(f"State file has invalid {loc}: {first['msg']}") from exc

    logger.info("state_loaded", path=str(path), processed=state.progress.processed)
    return state


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def validate_state_schema(data: Any) -> None:
    """Check the structure of a parsed state document.

    Raises:
        StateSchemaError: Naming the first missing or invalid field.
    """
    if not isinstance(data, dict):
        raise StateSchemaError("State file root must be an object")
    if not data.get("version"):
        raise StateSchemaError("State file missing version field")

    metadata = data.get("metadata")
    if not isinstance(metadata, dict):
        raise StateSchemaError("State file missing metadata section")
    if not metadata.get("project"):
        raise StateSchemaError("State file missing project in metadata")
    if not metadata.get("environment"):
        raise StateSchemaError("State file missing environment in metadata")

    progress = data.get("progress")
    if not isinstance(progress, dict):
        raise StateSchemaError("State file missing progress section")
    for key in ("total", "processed", "currentIndex"):
        if not _is_number(progress.get(key)):
            raise StateSchemaError(f"State file has invalid progress.{key}")

    accounts = data.get("accounts")
    if not isinstance(accounts, dict):
        raise StateSchemaError("State file missing accounts section")
    for key in ("processed", "pending"):
        if not isinstance(accounts.get(key), list):
            raise StateSchemaError(f"State file has invalid accounts.{key}")

    if progress["processed"] != len(accounts["processed"]):
        raise StateSchemaError(
            "State file inconsistency: progress.processed does not match "
            "accounts.processed count"
        )


# ---------------------------------------------------------------------------
# Atomic write
# ---------------------------------------------------------------------------


def _atomic_write(path: Path, data: bytes) -> None:
    """Write data atomically using temp file -> fsync -> os.replace.

    The temp name carries the pid and a millisecond timestamp so two
    processes writing into the same directory never share a temp file.

    Args:
        path: Target file path.
        data: Bytes to write.
    """
    tmp_path = path.with_name(f"{path.name}.tmp.{os.getpid()}.{time.time_ns() // 1_000_000}")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    fd_closed = False
    try:
        os.write(fd, data)
        os.fsync(fd)
        os.close(fd)
        fd_closed = True
        os.replace(tmp_path, path)
    except BaseException:
        if not fd_closed:
            os.close(fd)
        with contextlib.suppress(OSError):
            tmp_path.unlink()
        raise
