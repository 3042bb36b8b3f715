from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from scriptflow.diff import detect_drift, module_options
from scriptflow.errors import LockTimeoutError, SyncExecuteError, SyncExecuteErrorCode
from scriptflow.manifest import ManifestStore
from scriptflow.models import FileDescriptor, RemoteFile, SyncDirection
from scriptflow.planner import SyncPlan, SyncPlanner
from scriptflow.scanner import local_path_for, scan_local_tree


@dataclass(slots=True)
class SyncExecutionResult:
    plan_id: str
    direction: SyncDirection
    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    baseline_count: int = 0

    @property
    def total(self) -> int:
        return len(self.added) + len(self.updated) + len(self.deleted)


class SyncExecutor:
    """Applies a SyncPlan under the resource lock and records the new baseline."""

    def __init__(self, planner: SyncPlanner) -> None:
        self.planner = planner

    def _check_plan(self, plan: SyncPlan, confirm_deletions: bool) -> None:
        if plan.is_expired():
            raise SyncExecuteError(
                SyncExecuteErrorCode.PLAN_EXPIRED,
                f"Plan {plan.plan_id} is older than allowed; create a new plan",
            )
        if plan.diff.delete and plan.is_bootstrap:
            raise SyncExecuteError(
                SyncExecuteErrorCode.BOOTSTRAP_DELETE_REFUSED,
                "Deletions are never applied on a first sync",
                details={"paths": [d.path for d in plan.diff.delete]},
            )
        if plan.diff.delete and not confirm_deletions:
            raise SyncExecuteError(
                SyncExecuteErrorCode.DELETION_REQUIRES_CONFIRMATION,
                f"Plan deletes {len(plan.diff.delete)} file(s); confirm deletions to proceed",
                details={"paths": [d.path for d in plan.diff.delete]},
            )

    async def execute(
        self,
        plan: SyncPlan,
        *,
        confirm_deletions: bool = False,
        lock_timeout: float | None = None,
    ) -> SyncExecutionResult:
        self._check_plan(plan, confirm_deletions)
        lock_manager = self.planner.lock_manager
        try:
            await lock_manager.acquire(plan.resource_id, f"sync-apply:{plan.direction.value}", lock_timeout)
        except LockTimeoutError as exc:
            raise SyncExecuteError(SyncExecuteErrorCode.LOCK_TIMEOUT, str(exc), details=exc.details) from exc

        try:
            return await self._execute_locked(plan)
        finally:
            await lock_manager.release(plan.resource_id)

    async def _execute_locked(self, plan: SyncPlan) -> SyncExecutionResult:
        sync_filter = self.planner.build_filter(plan.local_path, plan.exclude_patterns)
        remote = await self.planner.fetch_remote(plan.resource_id, sync_filter)
        local = self.planner.scan_local(plan.local_path, sync_filter, module_options(remote))
        source, dest = (remote, local) if plan.direction is SyncDirection.PULL else (local, remote)

        drift = detect_drift(plan.diff, source, dest)
        if drift.has_drift:
            raise SyncExecuteError(
                SyncExecuteErrorCode.DRIFT_DETECTED,
                f"Files changed since planning: {', '.join(drift.drifted[:10])}",
                details={"paths": drift.drifted},
            )

        if plan.direction is SyncDirection.PULL:
            self._apply_pull(plan)
        else:
            await self._apply_push(plan)

        baseline = {descriptor.path: descriptor.content_hash for descriptor in source}
        try:
            await ManifestStore.for_local_root(plan.local_path).save(plan.resource_id, plan.direction, baseline)
        except Exception as exc:
            raise SyncExecuteError(
                SyncExecuteErrorCode.MANIFEST_ERROR,
                f"Sync applied but the manifest could not be saved: {exc}",
            ) from exc

        result = SyncExecutionResult(
            plan_id=plan.plan_id,
            direction=plan.direction,
            added=[d.path for d in plan.diff.add],
            updated=[d.path for d in plan.diff.update],
            deleted=[d.path for d in plan.diff.delete],
            baseline_count=len(baseline),
        )
        logger.info(f"plan {plan.plan_id} applied: {result.total} change(s), baseline of {len(baseline)} file(s)")
        return result

    def _apply_pull(self, plan: SyncPlan) -> None:
        root = plan.local_path
        existing = {
            file.name: file.local_path
            for file in scan_local_tree(root, exclude_patterns=plan.exclude_patterns, use_gitignore=False)
        }
        try:
            for descriptor in [*plan.diff.add, *plan.diff.update]:
                target = root / local_path_for(descriptor.path, descriptor.kind, existing)
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(descriptor.content, encoding="utf-8")
            for descriptor in plan.diff.delete:
                target = root / local_path_for(descriptor.path, descriptor.kind, existing)
                target.unlink(missing_ok=True)
                _prune_empty_parents(target.parent, root)
        except OSError as exc:
            raise SyncExecuteError(
                SyncExecuteErrorCode.LOCAL_WRITE_ERROR,
                f"Could not update local files: {exc}",
            ) from exc

    async def _apply_push(self, plan: SyncPlan) -> None:
        store = self.planner.store
        try:
            current = await store.list_files(plan.resource_id)
        except Exception as exc:
            raise SyncExecuteError(SyncExecuteErrorCode.API_ERROR, f"Could not list remote files: {exc}") from exc

        changed: dict[str, FileDescriptor] = {d.path: d for d in [*plan.diff.add, *plan.diff.update]}
        removed = {d.path for d in plan.diff.delete}
        files: list[RemoteFile] = []
        for file in current:
            if file.name in removed:
                continue
            descriptor = changed.pop(file.name, None)
            files.append(file if descriptor is None else file.with_content(descriptor.content))
        files.extend(
            RemoteFile(name=d.path, kind=d.kind, content=d.content) for d in changed.values()
        )

        try:
            await store.replace_all_files(plan.resource_id, files)
        except Exception as exc:
            raise SyncExecuteError(SyncExecuteErrorCode.API_ERROR, f"Could not update remote files: {exc}") from exc


def _prune_empty_parents(directory: Path, root: Path) -> None:
    while directory != root and root in directory.parents:
        try:
            directory.rmdir()
        except OSError:
            return
        directory = directory.parent
