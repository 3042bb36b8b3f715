"""Read-only sync planning.

`SyncPlanner.create_plan` checks the preconditions of a sync in a fixed order,
each failure surfacing as a `SyncPlanError` with a machine-readable code, and
returns the add/update/delete plan for one direction. Nothing is written while
planning; the resource lock is only held so the snapshot is consistent.
"""

from __future__ import annotations

import configparser
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite
from loguru import logger

from scriptflow.config import SyncTargetRegistry
from scriptflow.diff import (
    compute_diff,
    describe_local_files,
    describe_remote_files,
    exclude_descriptors,
    format_summary,
    module_options,
)
from scriptflow.errors import (
    LockTimeoutError,
    NotFoundError,
    SyncPlanError,
    SyncPlanErrorCode,
)
from scriptflow.filters import SyncFilter, build_sync_filter, load_gitignore_patterns
from scriptflow.git_status import GitCommandError, GitStatusProbe
from scriptflow.lock_manager import LockManager
from scriptflow.manifest import ManifestStore
from scriptflow.models import FileDescriptor, SyncDiffResult, SyncDirection, SyncManifest
from scriptflow.module_wrapper import unwrap
from scriptflow.remote import RemoteStore
from scriptflow.scanner import scan_local_tree


BREADCRUMB_NAME = ".git/config"
PLAN_TTL_SECONDS = 300.0


@dataclass(slots=True)
class PlanOptions:
    resource_id: str
    direction: SyncDirection
    force: bool = False
    exclude_patterns: tuple[str, ...] = ()
    allow_dirty_push: bool = False
    lock_timeout: float | None = None


@dataclass(slots=True)
class SyncPlan:
    plan_id: str
    resource_id: str
    direction: SyncDirection
    local_path: Path
    is_bootstrap: bool
    diff: SyncDiffResult
    exclude_patterns: tuple[str, ...] = ()
    warnings: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)

    def summary(self) -> dict[str, int]:
        return {
            "add": len(self.diff.add),
            "update": len(self.diff.update),
            "delete": len(self.diff.delete),
            "unchanged": len(self.diff.unchanged),
            "untouched": len(self.diff.untouched),
            "total": self.diff.total_operations,
        }

    @property
    def summary_text(self) -> str:
        return format_summary(self.diff, self.direction)

    @property
    def next_step(self) -> str:
        if not self.diff.has_changes:
            return "Nothing to sync."
        if self.diff.delete:
            return f"Review the plan, then run `sf {self.direction.value} --confirm-deletions` to apply it."
        return f"Run `sf {self.direction.value}` to apply the plan."

    def is_expired(self, now: float | None = None) -> bool:
        return ((now or time.time()) - self.created_at) > PLAN_TTL_SECONDS

    @property
    def created_at_iso(self) -> str:
        return datetime.fromtimestamp(self.created_at, tz=timezone.utc).isoformat(timespec="seconds")


def parse_breadcrumb(content: str) -> Path | None:
    parser = configparser.ConfigParser()
    try:
        parser.read_string(unwrap(content).inner_content)
    except configparser.Error as exc:
        logger.warning(f"ignoring unparseable sync breadcrumb: {exc}")
        return None
    value = parser.get("sync", "localpath", fallback=None)
    return Path(value).expanduser() if value else None


class SyncPlanner:
    def __init__(
        self,
        store: RemoteStore,
        lock_manager: LockManager,
        registry: SyncTargetRegistry,
        *,
        git: GitStatusProbe | None = None,
    ) -> None:
        self.store = store
        self.lock_manager = lock_manager
        self.registry = registry
        self.git = git or GitStatusProbe()

    async def resolve_local_path(self, resource_id: str) -> Path:
        registered = self.registry.get(resource_id)
        if registered is not None:
            return registered

        try:
            breadcrumb = await self.store.read_file(resource_id, BREADCRUMB_NAME)
        except NotFoundError:
            breadcrumb = None
        except Exception as exc:
            raise SyncPlanError(
                SyncPlanErrorCode.API_ERROR,
                f"Could not read sync breadcrumb for {resource_id}: {exc}",
                hint="Check connectivity to the remote store and retry.",
            ) from exc

        local_path = parse_breadcrumb(breadcrumb.content) if breadcrumb is not None else None
        if local_path is None:
            raise SyncPlanError(
                SyncPlanErrorCode.BREADCRUMB_MISSING,
                f"No local sync target registered for {resource_id}",
                hint=f"Run `sf init {resource_id}` in the local working copy first.",
                details={"resource_id": resource_id},
            )
        return local_path

    def _validate_local_path(self, local_path: Path) -> Path:
        if not local_path.is_dir():
            raise SyncPlanError(
                SyncPlanErrorCode.GIT_NOT_FOUND,
                f"Local sync path does not exist: {local_path}",
                hint="Create the directory or re-register the sync target.",
                details={"local_path": str(local_path)},
            )
        if not (local_path / ".git").exists():
            raise SyncPlanError(
                SyncPlanErrorCode.GIT_NOT_FOUND,
                f"Local sync path is not a git repository: {local_path}",
                hint=f"Run `git init` in {local_path}.",
                details={"local_path": str(local_path)},
            )
        return local_path.resolve()

    async def _check_working_copy(self, options: PlanOptions, local_path: Path, warnings: list[str]) -> None:
        needs_clean = not options.force and not (
            options.direction is SyncDirection.PUSH and options.allow_dirty_push
        )
        try:
            status = await self.git.status(local_path)
        except FileNotFoundError as exc:
            raise SyncPlanError(
                SyncPlanErrorCode.GIT_NOT_FOUND,
                "git executable not found",
                hint="Install git and make sure it is on PATH.",
            ) from exc
        except GitCommandError as exc:
            raise SyncPlanError(
                SyncPlanErrorCode.GIT_NOT_FOUND,
                str(exc),
                hint=f"Check that {local_path} is a valid git working copy.",
            ) from exc

        if status.detached:
            warnings.append("Local repository is in detached HEAD state.")
        if status.clean:
            return
        if needs_clean:
            raise SyncPlanError(
                SyncPlanErrorCode.UNCOMMITTED_CHANGES,
                f"Local working copy has uncommitted changes: {status.describe_changes()}",
                hint="Commit or stash local changes, or pass --force.",
                details={"changed_files": status.changed_files},
            )
        warnings.append(f"Proceeding with {len(status.changed_files)} uncommitted local change(s).")

    async def _load_manifest(self, resource_id: str, local_path: Path, warnings: list[str]) -> SyncManifest:
        store = ManifestStore.for_local_root(local_path)
        try:
            manifest = await store.load()
        except (aiosqlite.Error, OSError, ValueError) as exc:
            raise SyncPlanError(
                SyncPlanErrorCode.LOCAL_READ_ERROR,
                f"Could not read sync manifest {store.db_path}: {exc}",
                hint="Delete the manifest file to start over with a first sync (no deletions).",
                details={"manifest": str(store.db_path)},
            ) from exc
        if manifest.exists and manifest.resource_id and manifest.resource_id != resource_id:
            warnings.append(
                f"Manifest belongs to {manifest.resource_id}; treating this sync as a first sync."
            )
            return SyncManifest(resource_id=resource_id, exists=False)
        if manifest.is_bootstrap:
            warnings.append("First sync for this working copy: no files will be deleted.")
        return manifest

    def build_filter(self, local_path: Path, exclude_patterns: tuple[str, ...]) -> SyncFilter:
        """One filter for both sides: user patterns plus the working copy's `.gitignore`."""
        try:
            gitignore = load_gitignore_patterns(local_path)
        except (OSError, UnicodeDecodeError) as exc:
            raise SyncPlanError(
                SyncPlanErrorCode.LOCAL_READ_ERROR,
                f"Could not read .gitignore in {local_path}: {exc}",
                hint="Check file permissions and encodings (UTF-8 is required).",
            ) from exc
        return build_sync_filter([*exclude_patterns, *gitignore], skip_system=True)

    async def fetch_remote(self, resource_id: str, sync_filter: SyncFilter) -> list[FileDescriptor]:
        try:
            files = await self.store.list_files(resource_id)
        except Exception as exc:
            raise SyncPlanError(
                SyncPlanErrorCode.API_ERROR,
                f"Could not list remote files for {resource_id}: {exc}",
                hint="Check connectivity to the remote store and retry.",
            ) from exc
        return exclude_descriptors(describe_remote_files(files), sync_filter)

    def scan_local(
        self,
        local_path: Path,
        sync_filter: SyncFilter,
        wire_options: dict[str, dict[str, Any]] | None = None,
    ) -> list[FileDescriptor]:
        try:
            files = scan_local_tree(local_path, exclude_patterns=sync_filter.excludes, use_gitignore=False)
        except (OSError, UnicodeDecodeError) as exc:
            raise SyncPlanError(
                SyncPlanErrorCode.LOCAL_READ_ERROR,
                f"Could not read local files in {local_path}: {exc}",
                hint="Check file permissions and encodings (UTF-8 is required).",
            ) from exc
        return exclude_descriptors(describe_local_files(files, wire_options), sync_filter)

    async def create_plan(self, options: PlanOptions) -> SyncPlan:
        resource_id = options.resource_id
        local_path = self._validate_local_path(await self.resolve_local_path(resource_id))

        try:
            await self.lock_manager.acquire(resource_id, f"sync-plan:{options.direction.value}", options.lock_timeout)
        except LockTimeoutError as exc:
            raise SyncPlanError(
                SyncPlanErrorCode.LOCK_TIMEOUT,
                str(exc),
                hint="Another sync or edit is running against this project; retry shortly.",
                details=exc.details,
            ) from exc

        warnings: list[str] = []
        try:
            await self._check_working_copy(options, local_path, warnings)
            manifest = await self._load_manifest(resource_id, local_path, warnings)
            sync_filter = self.build_filter(local_path, options.exclude_patterns)
            remote = await self.fetch_remote(resource_id, sync_filter)
            local = self.scan_local(local_path, sync_filter, module_options(remote))
        finally:
            await self.lock_manager.release(resource_id)

        if options.direction is SyncDirection.PULL:
            diff = compute_diff(options.direction, remote, local, manifest)
        else:
            diff = compute_diff(options.direction, local, remote, manifest)

        plan = SyncPlan(
            plan_id=uuid.uuid4().hex[:12],
            resource_id=resource_id,
            direction=options.direction,
            local_path=local_path,
            is_bootstrap=manifest.is_bootstrap,
            diff=diff,
            exclude_patterns=options.exclude_patterns,
            warnings=warnings,
        )
        logger.info(f"plan {plan.plan_id}: {plan.summary_text}")
        return plan
