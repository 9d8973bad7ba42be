"""Typer CLI entry point for recurly-rescue."""

from __future__ import annotations

from datetime import UTC, datetime, time
from enum import StrEnum
from pathlib import Path
from typing import Annotated, Any

import structlog
import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from recurly_rescue import __version__
from recurly_rescue.accounts import get_account
from recurly_rescue.client import RecurlyClient, RetryPolicy
from recurly_rescue.config import ProjectConfig, Settings, format_validation_error
from recurly_rescue.discovery import ProgressEvent, ProgressKind, discover
from recurly_rescue.exceptions import AccountOperationError, RescueError
from recurly_rescue.logging import configure_logging, run_logging_context
from recurly_rescue.models import Account
from recurly_rescue.plans import find_or_create_rescue_plan
from recurly_rescue.results import ResultsWriter
from recurly_rescue.rollback import (
    RollbackPlan,
    RollbackRunner,
    RollbackRunSummary,
    check_rollback_target,
    load_rollback_file,
)
from recurly_rescue.runner import RescueRunner, RunSummary, exclude_accounts
from recurly_rescue.state import (
    ExecutionStateStore,
    OutcomeStatus,
    RunMode,
    find_latest_state_file,
    load_state_file,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="recurly-rescue",
    help="Re-subscribe Recurly accounts whose subscription expired for nonpayment.",
    no_args_is_help=True,
)
state_app = typer.Typer(help="Inspect execution state files.")
app.add_typer(state_app, name="state")

DEFAULT_SUBSCRIPTION_CURRENCY = "EUR"


class Env(StrEnum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_settings(
    config_path: Path | None = None,
    **overrides: Any,
) -> Settings:
    """Load settings with error handling and user-friendly messages."""
    from pydantic import ValidationError

    try:
        return Settings.load(config_path=config_path, **overrides)
    except ValidationError as exc:
        err_console.print(
            Panel(
                format_validation_error(exc),
                title="Configuration Error",
                border_style="red",
            )
        )
        raise typer.Exit(code=1) from exc


def _display_error(exc: Exception, title: str = "Error") -> None:
    err_console.print(Panel(f"[red bold]{exc}[/red bold]", title=title, border_style="red"))


def _parse_day(value: str | None, end_of_day: bool = False) -> datetime | None:
    """Parse ``YYYY-MM-DD`` into a UTC datetime at start (or end) of day."""
    if value is None:
        return None
    try:
        day = datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid date {value!r}: expected YYYY-MM-DD") from exc
    moment = time(23, 59, 59) if end_of_day else time(0, 0, 0)
    return datetime.combine(day, moment, tzinfo=UTC)


def _build_client(settings: Settings, environment: str, project: ProjectConfig) -> RecurlyClient:
    policy = RetryPolicy(
        max_retries=settings.retry.count,
        backoff_base=settings.retry.backoff_base,
        backoff_max_seconds=settings.retry.backoff_max_seconds,
        rate_limit_threshold=settings.api.rate_limit_threshold,
        request_timeout_ms=settings.api.request_timeout_ms,
    )
    return RecurlyClient(
        settings.api_key_for(environment),
        base_url=settings.api.base_url,
        site_id=project.site_id,
        policy=policy,
    )


def _create_progress() -> Progress:
    """Create a Rich progress bar with spinner, count, bar, and time columns."""
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
    )


def _print_discovery_event(event: ProgressEvent) -> None:
    if event.kind == ProgressKind.PAGE:
        console.print(
            f"[dim]Page {event.data['page']}: {event.data['count']} candidate(s), "
            f"{event.data['total']} so far ({event.data['fetched']} listed)[/dim]"
        )
    elif event.kind in (ProgressKind.WARNING, ProgressKind.SKIP):
        err_console.print(f"[yellow]{event.message}[/yellow]")


def _display_candidates(accounts: list[Account]) -> None:
    table = Table(title="Rescue Candidates", show_lines=False)
    table.add_column("#", style="cyan", justify="right", width=5)
    table.add_column("Account Code", style="white")
    table.add_column("State")
    table.add_column("Closed At", style="dim")

    for index, account in enumerate(accounts, start=1):
        table.add_row(
            str(index),
            account.code or account.id or "",
            account.state or "",
            account.closed_at.isoformat() if account.closed_at else "",
        )
    console.print(table)


def _display_summary(summary: RunSummary, dry_run: bool) -> None:
    title = "Rescue Summary (dry run)" if dry_run else "Rescue Summary"
    table = Table(title=title, show_lines=True)
    table.add_column("Outcome", style="cyan")
    table.add_column("Count", justify="right")

    table.add_row("Processed", str(summary.processed))
    table.add_row("[green]Rescued[/green]", str(summary.rescued))
    table.add_row("[yellow]Skipped[/yellow]", str(summary.skipped))
    table.add_row("[yellow]Requires 3DS[/yellow]", str(summary.requires_3ds))
    table.add_row("[red]Failed[/red]", str(summary.failed))
    console.print(table)

    if summary.results_path:
        console.print(f"[green]Results saved:[/green] {summary.results_path}")


def _display_rollback_plan(plan: RollbackPlan) -> None:
    table = Table(title="Rollback Summary", show_lines=True)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Source file", f"{plan.source.name} ({plan.timestamp})")
    table.add_row("Environment", plan.environment)
    table.add_row("Project", plan.project)
    table.add_row("Original mode", plan.original_mode)
    table.add_row("Clients in file", str(plan.total))
    table.add_row("[green]To roll back[/green]", str(len(plan.to_rollback)))
    table.add_row("[yellow]To skip[/yellow]", f"{len(plan.to_skip)} (were not rescued)")
    console.print(table)


def _display_rollback_summary(summary: RollbackRunSummary) -> None:
    table = Table(title="Rollback Results", show_lines=True)
    table.add_column("Outcome", style="cyan")
    table.add_column("Count", justify="right")
    table.add_row("Processed", str(summary.processed))
    table.add_row("[green]Rolled back[/green]", str(summary.rolled_back))
    table.add_row("[yellow]Skipped (not rescued)[/yellow]", str(summary.skipped))
    table.add_row("[red]Failed[/red]", str(summary.failed))
    eligible = summary.processed - summary.skipped
    if eligible > 0:
        table.add_row("Success rate", f"{summary.rolled_back / eligible:.1%}")
    console.print(table)

    if summary.results_path:
        console.print(f"[green]Results saved:[/green] {summary.results_path}")


def _prompt_continue(processed: int, total: int) -> bool:
    console.print(f"\n[bold]Processed {processed} of {total} accounts.[/bold]")
    return typer.confirm("Continue?", default=True)


def _resume_accounts(
    client: RecurlyClient,
    store: ExecutionStateStore,
    project: str,
    environment: str,
    state_dir: Path,
) -> list[Account]:
    """Adopt the newest state file for ``project`` and return its pending accounts.

    Pending accounts are looked up again so closed ones still get reopened.
    An account that cannot be fetched is returned by code only and the
    runner records whatever happens to it.
    """
    path = find_latest_state_file(project, state_dir)
    if path is None:
        raise RescueError(f"No state file found for project {project!r} in {state_dir}")

    state = load_state_file(path)
    if state.metadata.environment != environment:
        raise RescueError(
            f"State file environment mismatch: file has "
            f"{state.metadata.environment!r}, requested {environment!r}"
        )
    if state.metadata.project != project:
        raise RescueError(
            f"State file project mismatch: file has "
            f"{state.metadata.project!r}, requested {project!r}"
        )
    if state.metadata.mode != RunMode.RESCUE:
        raise RescueError(
            f"State file {path.name} belongs to a {state.metadata.mode} run and cannot be resumed"
        )

    store.resume_from(state, path)
    console.print(
        f"[green]Resuming from:[/green] {path} "
        f"({state.progress.processed}/{state.progress.total} processed)"
    )
    accounts: list[Account] = []
    for account_id in store.pending_ids():
        try:
            accounts.append(get_account(client, account_id))
        except AccountOperationError as exc:
            logger.warning("resume_lookup_failed", account_id=account_id, error=str(exc))
            accounts.append(Account(code=account_id))
    return accounts


# ---------------------------------------------------------------------------
# Version callback
# ---------------------------------------------------------------------------


def _version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]recurly-rescue[/bold] {__version__}")
        raise typer.Exit


@app.callback()
def common(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=_version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Recurly rescue global options."""


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def run(
    env: Annotated[Env, typer.Option("--env", "-e", help="Target Recurly environment.")],
    project: Annotated[str, typer.Option("--project", "-p", help="Project identifier.")],
    start_date: Annotated[
        str | None,
        typer.Option("--start-date", help="Window start, YYYY-MM-DD (inclusive)."),
    ] = None,
    end_date: Annotated[
        str | None,
        typer.Option("--end-date", help="Window end, YYYY-MM-DD (inclusive)."),
    ] = None,
    limit: Annotated[
        int | None,
        typer.Option("--limit", "-l", min=1, help="Maximum number of accounts to process."),
    ] = None,
    client_id: Annotated[
        str | None,
        typer.Option("--client-id", help="Rescue a single account by code or id."),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Read from the API but simulate every write."),
    ] = False,
    resume: Annotated[
        bool,
        typer.Option("--resume", "-r", help="Resume from the newest state file."),
    ] = False,
    no_trial: Annotated[
        bool,
        typer.Option("--no-trial", help="Charge immediately instead of a 1-day trial."),
    ] = False,
    confirm_every: Annotated[
        int | None,
        typer.Option("--confirm-every", min=1, help="Pause for confirmation every N accounts."),
    ] = None,
    no_confirm: Annotated[
        bool,
        typer.Option("--no-confirm", help="Run without confirmation pauses."),
    ] = False,
    unit_amount: Annotated[
        float | None,
        typer.Option("--unit-amount", min=0, help="Override the rescue plan price."),
    ] = None,
    config: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to config YAML file."),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip the production confirmation prompt."),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose logging."),
    ] = False,
) -> None:
    """Discover expired accounts and re-subscribe them to the rescue plan."""
    if confirm_every is not None and no_confirm:
        raise typer.BadParameter("Cannot use both --confirm-every and --no-confirm")
    if resume and client_id:
        raise typer.BadParameter("Cannot use --resume together with --client-id")
    start = _parse_day(start_date)
    end = _parse_day(end_date, end_of_day=True)

    overrides: dict[str, Any] = {}
    if verbose:
        overrides["logging"] = {"level": "DEBUG"}
    settings = _load_settings(config, **overrides)
    configure_logging(
        level=settings.logging.level,
        fmt=settings.logging.format,
        log_file=settings.logging.file,
    )

    interval = 0 if no_confirm else confirm_every or settings.rescue.confirm_every
    environment = env.value

    try:
        project_cfg = settings.project(project)
        if env == Env.PRODUCTION and not dry_run and not yes:
            console.print(
                Panel(
                    f"You are about to modify [bold]PRODUCTION[/bold] data for "
                    f"[bold]{project_cfg.name}[/bold].",
                    title="Production",
                    border_style="red",
                )
            )
            if not typer.confirm("Proceed?", default=False):
                console.print("[yellow]Aborted.[/yellow]")
                raise typer.Exit(code=0)

        with (
            run_logging_context(project, environment, dry_run=dry_run),
            _build_client(settings, environment, project_cfg) as client,
        ):
            summary = _run_rescue(
                client,
                settings,
                project_cfg,
                environment,
                start=start,
                end=end,
                limit=limit,
                client_id=client_id,
                dry_run=dry_run,
                resume=resume,
                trial_days=0 if no_trial else settings.rescue.trial_days,
                confirm_every=interval,
                unit_amount=unit_amount,
            )
    except typer.Exit:
        raise
    except RescueError as exc:
        _display_error(exc)
        raise typer.Exit(code=1) from exc

    if summary is None:
        return
    _display_summary(summary, dry_run)
    if summary.stopped_by_user:
        console.print(
            "[yellow]Stopped by user. Resume with:[/yellow] "
            f"[bold]recurly-rescue run --env {environment} --project {project} --resume[/bold]"
        )
    if summary.has_failures:
        raise typer.Exit(code=1)


def _run_rescue(
    client: RecurlyClient,
    settings: Settings,
    project: ProjectConfig,
    environment: str,
    *,
    start: datetime | None,
    end: datetime | None,
    limit: int | None,
    client_id: str | None,
    dry_run: bool,
    resume: bool,
    trial_days: int,
    confirm_every: int,
    unit_amount: float | None,
) -> RunSummary | None:
    """Plan setup, candidate selection, and the driving loop for ``run``."""
    store = ExecutionStateStore(project.id, environment, state_dir=settings.state.directory)

    if resume:
        accounts = _resume_accounts(
            client, store, project.id, environment, settings.state.directory
        )
        if not accounts:
            console.print("[green]Nothing left to process in this state file.[/green]")
            store.cleanup()
            return None
    else:
        if client_id:
            accounts = [get_account(client, client_id)]
        else:
            console.print("[bold]Discovering candidates...[/bold]")
            accounts = discover(
                client,
                start_date=start or settings.discovery.start_date,
                end_date=end or settings.discovery.end_date,
                page_size=settings.discovery.page_size,
                max_results=limit,
                on_progress=_print_discovery_event,
            )

        before = len(accounts)
        accounts = exclude_accounts(accounts, settings.rescue.exclude_accounts)
        if len(accounts) < before:
            console.print(f"[dim]Excluded {before - len(accounts)} account(s)[/dim]")
        if not accounts:
            console.print("[yellow]No accounts to rescue.[/yellow]")
            return None

        store.initialize(accounts)
        console.print(f"[dim]State file:[/dim] {store.path}")

    console.print(f"Found [bold]{len(accounts)}[/bold] account(s) to process")

    find_or_create_rescue_plan(
        client,
        currency=project.currency,
        unit_amount=unit_amount,
        plan_code=settings.rescue.plan_code,
        plan_name=settings.rescue.plan_name,
        dry_run=dry_run,
    )

    results = ResultsWriter(
        project.id,
        environment,
        dry_run=dry_run,
        output_dir=settings.rescue.results_directory,
    )

    with _create_progress() as progress:
        task = progress.add_task(
            "Rescuing",
            total=store.total_count() or len(accounts),
            completed=store.processed_count(),
        )

        def on_account(account_id: str, status: OutcomeStatus, position: int, total: int) -> None:
            progress.update(task, completed=position, description=f"{account_id} [{status}]")

        def confirm(processed: int, total: int) -> bool:
            progress.stop()
            try:
                return _prompt_continue(processed, total)
            finally:
                progress.start()

        runner = RescueRunner(
            client,
            store,
            results,
            plan_code=settings.rescue.plan_code,
            currency=project.currency or DEFAULT_SUBSCRIPTION_CURRENCY,
            trial_days=trial_days,
            dry_run=dry_run,
            confirm_every=confirm_every,
            confirm=confirm,
            on_account=on_account,
            app_base_url=settings.api.app_base_url,
        )
        return runner.run(accounts)


@app.command(name="discover")
def discover_cmd(
    env: Annotated[Env, typer.Option("--env", "-e", help="Target Recurly environment.")],
    project: Annotated[str, typer.Option("--project", "-p", help="Project identifier.")],
    start_date: Annotated[
        str | None,
        typer.Option("--start-date", help="Window start, YYYY-MM-DD (inclusive)."),
    ] = None,
    end_date: Annotated[
        str | None,
        typer.Option("--end-date", help="Window end, YYYY-MM-DD (inclusive)."),
    ] = None,
    limit: Annotated[
        int | None,
        typer.Option("--limit", "-l", min=1, help="Stop after this many candidates."),
    ] = None,
    config: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to config YAML file."),
    ] = None,
) -> None:
    """List rescue candidates without changing anything."""
    start = _parse_day(start_date)
    end = _parse_day(end_date, end_of_day=True)
    settings = _load_settings(config)
    configure_logging(level=settings.logging.level, fmt=settings.logging.format)

    try:
        project_cfg = settings.project(project)
        with _build_client(settings, env.value, project_cfg) as client:
            accounts = discover(
                client,
                start_date=start or settings.discovery.start_date,
                end_date=end or settings.discovery.end_date,
                page_size=settings.discovery.page_size,
                max_results=limit,
                on_progress=_print_discovery_event,
            )
    except RescueError as exc:
        _display_error(exc)
        raise typer.Exit(code=1) from exc

    if not accounts:
        console.print("[yellow]No accounts need rescue in this window.[/yellow]")
        return
    _display_candidates(accounts)


@app.command()
def rollback(
    results_file: Annotated[
        Path,
        typer.Argument(help="rescue-results JSON file of the run to undo."),
    ],
    env: Annotated[Env, typer.Option("--env", "-e", help="Target Recurly environment.")],
    project: Annotated[str, typer.Option("--project", "-p", help="Project identifier.")],
    config: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to config YAML file."),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip the confirmation prompt."),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose logging."),
    ] = False,
) -> None:
    """Undo a rescue run: cancel its subscriptions and re-close reopened accounts."""
    overrides: dict[str, Any] = {}
    if verbose:
        overrides["logging"] = {"level": "DEBUG"}
    settings = _load_settings(config, **overrides)
    configure_logging(
        level=settings.logging.level,
        fmt=settings.logging.format,
        log_file=settings.logging.file,
    )
    environment = env.value

    try:
        project_cfg = settings.project(project)
        console.print(f"Loading rollback file: {results_file}")
        plan = load_rollback_file(results_file)
        check_rollback_target(plan, environment, project_cfg.id)
    except RescueError as exc:
        _display_error(exc, title="Rollback Error")
        raise typer.Exit(code=1) from exc

    _display_rollback_plan(plan)
    if not plan.to_rollback:
        console.print(
            "[yellow]No clients to roll back. All clients in the file were "
            "failed or skipped.[/yellow]"
        )
        return

    if not yes:
        prompt = (
            f"Roll back {len(plan.to_rollback)} account(s) in "
            f"{environment.upper()} for {project_cfg.name}?"
        )
        if not typer.confirm(prompt, default=False):
            console.print("[yellow]Rollback cancelled.[/yellow]")
            raise typer.Exit(code=0)

    try:
        with (
            run_logging_context(project_cfg.id, environment, mode=RunMode.ROLLBACK.value),
            _build_client(settings, environment, project_cfg) as client,
        ):
            summary = _run_rollback(client, settings, project_cfg.id, environment, plan)
    except RescueError as exc:
        _display_error(exc)
        raise typer.Exit(code=1) from exc

    _display_rollback_summary(summary)
    if summary.has_failures:
        console.print(
            f"[yellow]{summary.failed} account(s) failed; state file kept for "
            "investigation.[/yellow]"
        )
        raise typer.Exit(code=1)


def _run_rollback(
    client: RecurlyClient,
    settings: Settings,
    project: str,
    environment: str,
    plan: RollbackPlan,
) -> RollbackRunSummary:
    """State tracking, report and the driving loop for ``rollback``."""
    store = ExecutionStateStore(
        project,
        environment,
        mode=RunMode.ROLLBACK,
        state_dir=settings.state.directory,
    )
    entries = plan.entries
    store.initialize([entry.id for entry in entries])
    console.print(f"[dim]State file:[/dim] {store.path}")

    results = ResultsWriter(
        project,
        environment,
        output_dir=settings.rescue.results_directory,
        mode=RunMode.ROLLBACK,
        source_file=plan.source,
    )

    with _create_progress() as progress:
        task = progress.add_task("Rolling back", total=len(entries))

        def on_account(account_id: str, status: OutcomeStatus, position: int, total: int) -> None:
            progress.update(task, completed=position, description=f"{account_id} [{status}]")

        runner = RollbackRunner(client, store, results, on_account=on_account)
        return runner.run(entries)


@state_app.command("show")
def state_show(
    project: Annotated[str, typer.Option("--project", "-p", help="Project identifier.")],
    directory: Annotated[
        Path | None,
        typer.Option("--dir", "-d", help="Directory holding state files."),
    ] = None,
    config: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to config YAML file."),
    ] = None,
) -> None:
    """Show the newest state file for a project."""
    state_dir = directory or _load_settings(config).state.directory
    path = find_latest_state_file(project, state_dir)
    if path is None:
        console.print(f"[yellow]No state file for project {project!r} in {state_dir}.[/yellow]")
        raise typer.Exit(code=1)

    try:
        state = load_state_file(path)
    except RescueError as exc:
        _display_error(exc, title="State Error")
        raise typer.Exit(code=1) from exc

    table = Table(title=f"State: {path.name}", show_lines=True)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Project", state.metadata.project)
    table.add_row("Environment", state.metadata.environment)
    table.add_row("Mode", state.metadata.mode)
    table.add_row("Started", state.metadata.started_at)
    table.add_row("Last updated", state.metadata.last_updated)
    table.add_row("Processed", f"{state.progress.processed}/{state.progress.total}")
    table.add_row("Pending", str(len(state.accounts.pending)))
    console.print(table)

    counts: dict[str, int] = {}
    for record in state.accounts.processed:
        counts[record.status] = counts.get(record.status, 0) + 1
    for status, count in sorted(counts.items()):
        console.print(f"  {status}: {count}")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
