from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table
from rich.text import Text

from scriptflow.config import (
    ScriptFlowConfig,
    SyncTargetRegistry,
    find_config,
    load_config,
    lock_settings_from_env,
    normalize_resource_id,
    save_config,
)
from scriptflow.errors import ConflictError, ScriptFlowError, SyncPlanError, ValidationError
from scriptflow.executor import SyncExecutor
from scriptflow.fingerprint import git_blob_hash
from scriptflow.fuzzy import DEFAULT_THRESHOLD, EditRequest
from scriptflow.lock_manager import LockManager
from scriptflow.models import FileDescriptor, FileKind, SyncDirection
from scriptflow.module_wrapper import to_wire
from scriptflow.operations import FileOperation, execute_operation
from scriptflow.planner import PlanOptions, SyncPlan, SyncPlanner
from scriptflow.remote import DirectoryRemoteStore, RetryingRemoteStore
from scriptflow.scanner import remote_name_for
from scriptflow.strategies import (
    CopyOperation,
    DeleteOperation,
    EditOperation,
    ExactEdit,
    FuzzyEditOperation,
    MoveOperation,
    WriteOperation,
)


app = typer.Typer(help="scriptflow CLI")
console = Console()


def setup_logging(verbose: bool = False) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG" if verbose else "INFO",
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <7}</level> | {message}",
    )


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")) -> None:
    setup_logging(verbose)


class _Services:
    def __init__(self, config: ScriptFlowConfig) -> None:
        remote_root = config.remote_root_path
        if remote_root is None:
            raise FileNotFoundError(
                f"remote_root is not configured in {find_config()}. Run `sf init <resource_id> --remote-root <dir>`."
            )
        self.config = config
        self.store = RetryingRemoteStore(DirectoryRemoteStore(remote_root))
        self.lock_manager = LockManager(lock_settings_from_env())
        self.registry = SyncTargetRegistry()
        self.planner = SyncPlanner(self.store, self.lock_manager, self.registry)

    async def close(self) -> None:
        released = await self.lock_manager.release_all()
        if released:
            logger.debug(f"released {released} lock(s) at shutdown")


def _render_error(exc: Exception) -> None:
    if isinstance(exc, SyncPlanError):
        console.print(f"[red]{exc.code.value}:[/red] {exc.message}")
        if exc.hint:
            console.print(f"[yellow]Hint:[/yellow] {exc.hint}")
        return
    if isinstance(exc, ConflictError):
        conflict = exc.conflict
        console.print(f"[red]Conflict:[/red] {exc.message}")
        console.print(f"Expected ({conflict.hash_source}): {conflict.expected_hash}")
        console.print(f"Current:  {conflict.current_hash}")
        console.print(Text(conflict.diff.content))
        if conflict.diff.truncated:
            console.print("[yellow]Diff truncated.[/yellow]")
        return
    console.print(f"[red]{exc}[/red]")


def _render_descriptors(title: str, descriptors: list[FileDescriptor], style: str) -> None:
    if not descriptors:
        return
    table = Table(title=Text(title, style=style))
    table.add_column("Name")
    table.add_column("Kind")
    table.add_column("Size", justify="right")
    table.add_column("Blob hash")
    for descriptor in descriptors:
        table.add_row(
            descriptor.path,
            descriptor.kind.name.lower(),
            str(descriptor.fingerprint.size),
            descriptor.content_hash,
        )
    console.print(table)


def _render_plan(plan: SyncPlan) -> None:
    console.print(f"Plan [bold]{plan.plan_id}[/bold] for {plan.resource_id} ({plan.local_path})")
    for warning in plan.warnings:
        console.print(f"[yellow]{warning}[/yellow]")
    _render_descriptors("Add", plan.diff.add, "green")
    _render_descriptors("Update", plan.diff.update, "cyan")
    _render_descriptors("Delete", plan.diff.delete, "red")
    console.print(plan.summary_text)
    console.print(plan.next_step)


async def _init_async(resource_id: str, remote_root: str | None) -> int:
    root = Path.cwd().resolve()
    config = ScriptFlowConfig(
        resource_id=normalize_resource_id(resource_id),
        local_root=str(root),
        remote_root=str(Path(remote_root).expanduser().resolve()) if remote_root else "",
    )
    try:
        path = save_config(config, root)
    except ValidationError as exc:
        console.print(f"[red]{exc}[/red]")
        return 1
    SyncTargetRegistry().register(config.resource_id, root)
    console.print(f"[green]Initialized scriptflow[/green] at {root}")
    console.print(f"Config: {path}")
    console.print(f"Sync target registered: {config.resource_id} -> {root}")
    if not (root / ".git").exists():
        console.print("[yellow]No .git directory here. Run `git init` before syncing.[/yellow]")
    if config.resource_id != resource_id.strip():
        console.print(f"Resource ID normalized: {resource_id} -> {config.resource_id}")
    return 0


@app.command()
def init(
    resource_id: str,
    remote_root: str | None = typer.Option(
        None,
        "--remote-root",
        help="Directory holding the mirrored remote projects.",
    ),
) -> None:
    """Initialize scriptflow in the current directory and register it as the sync target."""
    raise typer.Exit(code=asyncio.run(_init_async(resource_id, remote_root)))


async def _sync_async(
    direction: SyncDirection,
    *,
    force: bool,
    exclude: tuple[str, ...],
    allow_dirty_push: bool,
    confirm_deletions: bool,
    dry_run: bool,
) -> int:
    try:
        services = _Services(load_config())
    except (FileNotFoundError, ValidationError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 1

    try:
        await services.lock_manager.cleanup_stale_locks()
        plan = await services.planner.create_plan(
            PlanOptions(
                resource_id=services.config.resource_id,
                direction=direction,
                force=force,
                exclude_patterns=exclude,
                allow_dirty_push=allow_dirty_push,
            )
        )
        _render_plan(plan)
        if dry_run or not plan.diff.has_changes:
            return 0
        result = await SyncExecutor(services.planner).execute(plan, confirm_deletions=confirm_deletions)
    except KeyboardInterrupt:
        console.print(f"[yellow]{direction.value.capitalize()} interrupted.[/yellow] Files may be partially synced.")
        return 130
    except ScriptFlowError as exc:
        _render_error(exc)
        return 1
    finally:
        await services.close()

    console.print(
        f"[green]{direction.value.capitalize()} complete:[/green] "
        f"{len(result.added)} added, {len(result.updated)} updated, {len(result.deleted)} deleted"
    )
    console.print(f"Baseline updated: {result.baseline_count} file(s)")
    return 0


@app.command()
def pull(
    force: bool = typer.Option(False, "--force", help="Skip the uncommitted-changes check."),
    exclude: list[str] | None = typer.Option(None, "--exclude", help="Path prefix or glob to skip (repeatable)."),
    confirm_deletions: bool = typer.Option(False, "--confirm-deletions", help="Allow the plan to delete local files."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the plan without applying it."),
) -> None:
    """Bring remote changes into the local working copy."""
    raise typer.Exit(
        code=asyncio.run(
            _sync_async(
                SyncDirection.PULL,
                force=force,
                exclude=tuple(exclude or ()),
                allow_dirty_push=False,
                confirm_deletions=confirm_deletions,
                dry_run=dry_run,
            )
        )
    )


@app.command()
def push(
    force: bool = typer.Option(False, "--force", help="Skip the uncommitted-changes check."),
    allow_dirty: bool = typer.Option(False, "--allow-dirty", help="Push even with uncommitted local changes."),
    exclude: list[str] | None = typer.Option(None, "--exclude", help="Path prefix or glob to skip (repeatable)."),
    confirm_deletions: bool = typer.Option(False, "--confirm-deletions", help="Allow the plan to delete remote files."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the plan without applying it."),
) -> None:
    """Send local changes to the remote project."""
    raise typer.Exit(
        code=asyncio.run(
            _sync_async(
                SyncDirection.PUSH,
                force=force,
                exclude=tuple(exclude or ()),
                allow_dirty_push=allow_dirty,
                confirm_deletions=confirm_deletions,
                dry_run=dry_run,
            )
        )
    )


@app.command()
def plan(
    direction: SyncDirection = typer.Argument(..., help="pull or push"),
    force: bool = typer.Option(False, "--force", help="Skip the uncommitted-changes check."),
    exclude: list[str] | None = typer.Option(None, "--exclude", help="Path prefix or glob to skip (repeatable)."),
) -> None:
    """Show what a pull or push would change, without changing anything."""
    raise typer.Exit(
        code=asyncio.run(
            _sync_async(
                direction,
                force=force,
                exclude=tuple(exclude or ()),
                allow_dirty_push=True,
                confirm_deletions=False,
                dry_run=True,
            )
        )
    )


async def _run_operation_async(build) -> int:
    try:
        services = _Services(load_config())
    except (FileNotFoundError, ValidationError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 1

    try:
        operation: FileOperation = build(services)
        outcome = await execute_operation(operation, lock_manager=services.lock_manager)
    finally:
        await services.close()

    if not outcome.ok:
        _render_error(outcome.error)
        if outcome.rollback is not None and not outcome.rollback.succeeded:
            console.print(f"[red]Rollback {outcome.rollback.status.value}:[/red] {outcome.rollback.message}")
        return 1

    result = outcome.result
    console.print(f"[green]{operation.describe()}[/green]")
    if result.content_hash:
        console.print(f"Content hash: {result.content_hash}")
    return 0


@app.command()
def write(
    name: str,
    source: Path = typer.Argument(..., exists=True, dir_okay=False, help="Local file with the new content."),
    expected_hash: str | None = typer.Option(None, "--expected-hash", help="Refuse to overwrite unless the remote has this hash."),
    force: bool = typer.Option(False, "--force", help="Overwrite even if the remote changed."),
) -> None:
    """Write one remote file from a local file."""
    content = source.read_text(encoding="utf-8")
    kind = FileKind.for_local_path(source.name) or FileKind.CODE
    raise typer.Exit(
        code=asyncio.run(
            _run_operation_async(
                lambda s: WriteOperation(
                    s.store,
                    s.config.resource_id,
                    name,
                    content,
                    kind=kind,
                    expected_hash=expected_hash,
                    force=force,
                )
            )
        )
    )


@app.command()
def rm(
    name: str,
    expected_hash: str | None = typer.Option(None, "--expected-hash", help="Refuse to delete unless the remote has this hash."),
) -> None:
    """Delete one remote file."""
    raise typer.Exit(
        code=asyncio.run(
            _run_operation_async(
                lambda s: DeleteOperation(s.store, s.config.resource_id, name, expected_hash=expected_hash)
            )
        )
    )


@app.command()
def mv(
    source: str,
    destination: str,
    to: str | None = typer.Option(None, "--to", help="Move into another resource."),
    overwrite: bool = typer.Option(False, "--overwrite", help="Replace an existing destination file."),
) -> None:
    """Rename a remote file, optionally into another project."""
    raise typer.Exit(
        code=asyncio.run(
            _run_operation_async(
                lambda s: MoveOperation(
                    s.store,
                    s.config.resource_id,
                    source,
                    destination,
                    to_resource_id=normalize_resource_id(to) if to else None,
                    overwrite=overwrite,
                )
            )
        )
    )


@app.command()
def edit(
    name: str,
    search: list[str] = typer.Option(..., "--search", help="Text to find (repeatable, paired with --replace)."),
    replace: list[str] = typer.Option(..., "--replace", help="Replacement text (repeatable)."),
    threshold: float = typer.Option(DEFAULT_THRESHOLD, "--threshold", help="Minimum similarity between 0 and 1."),
    exact: bool = typer.Option(False, "--exact", help="Require exact matches instead of approximate ones."),
    expected_hash: str | None = typer.Option(None, "--expected-hash"),
) -> None:
    """Apply search/replace edits to one remote file."""
    if len(search) != len(replace):
        console.print("[red]--search and --replace must be given the same number of times.[/red]")
        raise typer.Exit(code=1)

    def build(s):
        if exact:
            edits = [ExactEdit(old, new) for old, new in zip(search, replace)]
            return EditOperation(s.store, s.config.resource_id, name, edits, expected_hash=expected_hash)
        requests = [EditRequest(old, new, threshold) for old, new in zip(search, replace)]
        return FuzzyEditOperation(s.store, s.config.resource_id, name, requests, expected_hash=expected_hash)

    raise typer.Exit(code=asyncio.run(_run_operation_async(build)))


@app.command()
def cp(
    source: str,
    destination: str,
    to: str | None = typer.Option(None, "--to", help="Copy into another resource."),
    overwrite: bool = typer.Option(False, "--overwrite", help="Replace an existing destination file."),
) -> None:
    """Copy a remote file, optionally into another project."""
    raise typer.Exit(
        code=asyncio.run(
            _run_operation_async(
                lambda s: CopyOperation(
                    s.store,
                    s.config.resource_id,
                    source,
                    destination,
                    to_resource_id=normalize_resource_id(to) if to else None,
                    overwrite=overwrite,
                )
            )
        )
    )


@app.command("hash")
def hash_command(
    paths: list[Path] = typer.Argument(..., exists=True, dir_okay=False),
    raw: bool = typer.Option(False, "--raw", help="Hash file bytes as-is instead of the stored form."),
) -> None:
    """Print git blob hashes, comparable with `git hash-object` and remote fingerprints."""
    for path in paths:
        if raw:
            digest = git_blob_hash(path.read_bytes())
        else:
            kind = FileKind.for_local_path(path.name) or FileKind.CODE
            digest = git_blob_hash(to_wire(kind, remote_name_for(path.name), path.read_text(encoding="utf-8")))
        console.print(f"{digest}  {path}")


async def _locks_async(cleanup: bool) -> int:
    manager = LockManager(lock_settings_from_env())
    if cleanup:
        removed = await manager.cleanup_stale_locks()
        console.print(f"Removed {removed} stale lock(s) from {manager.lock_dir}")
        return 0

    statuses = manager.list_locks()
    if not statuses:
        console.print(f"[green]No locks in {manager.lock_dir}[/green]")
        return 0
    table = Table(title="Locks")
    table.add_column("Resource")
    table.add_column("Holder")
    table.add_column("State")
    for status in statuses:
        holder = status.holder.describe() if status.holder is not None else "unreadable"
        table.add_row(status.resource_id, holder, "[yellow]stale[/yellow]" if status.stale else "active")
    console.print(table)
    return 0


@app.command()
def locks(
    cleanup: bool = typer.Option(False, "--cleanup", help="Remove stale lock records."),
) -> None:
    """List resource locks, or reclaim stale ones."""
    raise typer.Exit(code=asyncio.run(_locks_async(cleanup)))
