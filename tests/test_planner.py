from pathlib import Path

import pytest

from conftest import FakeGit, FakeRemoteStore, code
from scriptflow.config import LockSettings, SyncTargetRegistry
from scriptflow.errors import SyncPlanError, SyncPlanErrorCode
from scriptflow.fingerprint import git_blob_hash
from scriptflow.lock_manager import LockManager
from scriptflow.manifest import ManifestStore
from scriptflow.models import SyncDirection
from scriptflow.module_wrapper import wrap
from scriptflow.planner import PlanOptions, SyncPlanner, parse_breadcrumb


PROJECT = "proj1"


def make_planner(store, lock_manager, registry, git=None) -> SyncPlanner:
    return SyncPlanner(store, lock_manager, registry, git=git or FakeGit())


async def plan_error(planner: SyncPlanner, **kwargs) -> SyncPlanError:
    options = PlanOptions(resource_id=PROJECT, direction=kwargs.pop("direction", SyncDirection.PULL), **kwargs)
    with pytest.raises(SyncPlanError) as exc_info:
        await planner.create_plan(options)
    return exc_info.value


def test_parse_breadcrumb():
    assert parse_breadcrumb("[sync]\nlocalpath = /tmp/work\n") == Path("/tmp/work")
    assert parse_breadcrumb("[core]\nbare = false\n") is None
    assert parse_breadcrumb("not an ini file") is None


@pytest.mark.asyncio
async def test_unregistered_project_without_breadcrumb(store: FakeRemoteStore, lock_manager, registry):
    store.seed(PROJECT, code("Code", "x"))

    error = await plan_error(make_planner(store, lock_manager, registry))

    assert error.code is SyncPlanErrorCode.BREADCRUMB_MISSING
    assert error.hint
    assert "[BREADCRUMB_MISSING]" in str(error)


@pytest.mark.asyncio
async def test_breadcrumb_resolves_local_path(store: FakeRemoteStore, lock_manager, registry, work_dir: Path):
    store.seed(PROJECT, code(".git/config", f"[sync]\nlocalpath = {work_dir}\n"), code("Code", "x"))

    plan = await make_planner(store, lock_manager, registry).create_plan(
        PlanOptions(resource_id=PROJECT, direction=SyncDirection.PULL)
    )

    assert plan.local_path == work_dir.resolve()
    # The breadcrumb itself is never synced.
    assert [d.path for d in plan.diff.add] == ["Code"]


@pytest.mark.asyncio
async def test_local_path_must_be_a_git_repository(store, lock_manager, registry, tmp_path: Path):
    plain = tmp_path / "plain"
    plain.mkdir()
    registry.register(PROJECT, plain)

    error = await plan_error(make_planner(store, lock_manager, registry))

    assert error.code is SyncPlanErrorCode.GIT_NOT_FOUND


@pytest.mark.asyncio
async def test_missing_git_executable(store, lock_manager, registry, work_dir: Path):
    registry.register(PROJECT, work_dir)

    error = await plan_error(make_planner(store, lock_manager, registry, FakeGit(missing=True)))

    assert error.code is SyncPlanErrorCode.GIT_NOT_FOUND
    assert not lock_manager.lock_path(PROJECT).exists()


@pytest.mark.asyncio
async def test_uncommitted_changes_block_pull(store, lock_manager, registry, work_dir: Path):
    registry.register(PROJECT, work_dir)
    git = FakeGit(changed_files=["Code.gs"])

    error = await plan_error(make_planner(store, lock_manager, registry, git))

    assert error.code is SyncPlanErrorCode.UNCOMMITTED_CHANGES
    assert error.details["changed_files"] == ["Code.gs"]


@pytest.mark.asyncio
async def test_dirty_push_allowed_when_requested(store, lock_manager, registry, work_dir: Path):
    registry.register(PROJECT, work_dir)
    store.seed(PROJECT)
    git = FakeGit(changed_files=["Code.gs"])
    planner = make_planner(store, lock_manager, registry, git)

    blocked = await plan_error(planner, direction=SyncDirection.PUSH)
    plan = await planner.create_plan(
        PlanOptions(resource_id=PROJECT, direction=SyncDirection.PUSH, allow_dirty_push=True)
    )

    assert blocked.code is SyncPlanErrorCode.UNCOMMITTED_CHANGES
    assert any("uncommitted" in warning for warning in plan.warnings)


@pytest.mark.asyncio
async def test_busy_project_reports_lock_timeout(store, registry, work_dir: Path, lock_settings: LockSettings):
    registry.register(PROJECT, work_dir)
    other = LockManager(lock_settings)
    await other.acquire(PROJECT, "sync-apply:push")
    git = FakeGit()

    error = await plan_error(make_planner(store, LockManager(lock_settings), registry, git), lock_timeout=0.1)

    assert error.code is SyncPlanErrorCode.LOCK_TIMEOUT
    assert git.calls == 0


@pytest.mark.asyncio
async def test_remote_failure_is_api_error(store, lock_manager, registry, work_dir: Path):
    registry.register(PROJECT, work_dir)
    store.fail_list = True

    error = await plan_error(make_planner(store, lock_manager, registry))

    assert error.code is SyncPlanErrorCode.API_ERROR
    assert not lock_manager.lock_path(PROJECT).exists()


@pytest.mark.asyncio
async def test_first_pull_plan(store, lock_manager, registry, work_dir: Path):
    registry.register(PROJECT, work_dir)
    (work_dir / "Local.gs").write_text("const local = 1;", encoding="utf-8")
    (work_dir / "notes.txt").write_text("ignored", encoding="utf-8")
    store.seed(PROJECT, code("Code", wrap("const x = 1;", "Code")), code("__mcp_exec", "runtime"))

    plan = await make_planner(store, lock_manager, registry).create_plan(
        PlanOptions(resource_id=PROJECT, direction=SyncDirection.PULL)
    )

    assert plan.is_bootstrap
    assert [d.path for d in plan.diff.add] == ["Code"]
    assert plan.diff.untouched == ["Local"]
    assert plan.diff.delete == []
    assert plan.summary()["add"] == 1
    assert any("First sync" in warning for warning in plan.warnings)
    assert "sf pull" in plan.next_step
    assert not plan.is_expired()
    assert not lock_manager.lock_path(PROJECT).exists()
    assert not ManifestStore.for_local_root(work_dir).db_path.exists()


@pytest.mark.asyncio
async def test_manifest_from_other_project_counts_as_first_sync(store, lock_manager, registry, work_dir: Path):
    registry.register(PROJECT, work_dir)
    await ManifestStore.for_local_root(work_dir).save("someone-else", SyncDirection.PULL, {"Old": "a" * 40})
    (work_dir / "Old.gs").write_text("x", encoding="utf-8")
    store.seed(PROJECT)

    plan = await make_planner(store, lock_manager, registry).create_plan(
        PlanOptions(resource_id=PROJECT, direction=SyncDirection.PULL)
    )

    assert plan.is_bootstrap
    assert plan.diff.delete == []
    assert any("someone-else" in warning for warning in plan.warnings)


@pytest.mark.asyncio
async def test_exclude_patterns_apply_to_both_sides(store, lock_manager, registry: SyncTargetRegistry, work_dir: Path):
    registry.register(PROJECT, work_dir)
    (work_dir / "vendor").mkdir()
    (work_dir / "vendor" / "lib.gs").write_text("x", encoding="utf-8")
    store.seed(PROJECT, code("vendor/remote", "y"), code("Code", "z"))

    plan = await make_planner(store, lock_manager, registry).create_plan(
        PlanOptions(resource_id=PROJECT, direction=SyncDirection.PUSH, exclude_patterns=("vendor/",))
    )

    assert plan.diff.add == []
    assert plan.diff.untouched == ["Code"]


@pytest.mark.asyncio
@pytest.mark.parametrize("excluded_by", ["option", "gitignore"])
async def test_excluded_local_file_is_not_deleted_remotely(
    excluded_by: str, store, lock_manager, registry: SyncTargetRegistry, work_dir: Path
):
    registry.register(PROJECT, work_dir)
    for name in ("helpers", "Code"):
        (work_dir / f"{name}.gs").write_text(f"const {name} = 1;", encoding="utf-8")
    store.seed(
        PROJECT,
        code("helpers", wrap("const helpers = 1;", "helpers")),
        code("Code", wrap("const Code = 1;", "Code")),
    )
    await ManifestStore.for_local_root(work_dir).save(
        PROJECT, SyncDirection.PUSH, {"helpers": git_blob_hash("h"), "Code": git_blob_hash("c")}
    )
    exclude_patterns: tuple[str, ...] = ()
    if excluded_by == "option":
        exclude_patterns = ("helpers.gs",)
    else:
        (work_dir / ".gitignore").write_text("helpers.gs\n", encoding="utf-8")

    plan = await make_planner(store, lock_manager, registry).create_plan(
        PlanOptions(resource_id=PROJECT, direction=SyncDirection.PUSH, exclude_patterns=exclude_patterns)
    )

    assert not plan.is_bootstrap
    assert plan.diff.delete == []
    assert plan.diff.unchanged == ["Code"]
    assert plan.diff.untouched == []


@pytest.mark.asyncio
async def test_unwrapped_local_code_keeps_remote_module_options(store, lock_manager, registry, work_dir: Path):
    registry.register(PROJECT, work_dir)
    (work_dir / "Lib.gs").write_text("const x = 2;", encoding="utf-8")
    store.seed(PROJECT, code("Lib", wrap("const x = 1;", "Lib", {"loadNow": True})))

    plan = await make_planner(store, lock_manager, registry).create_plan(
        PlanOptions(resource_id=PROJECT, direction=SyncDirection.PUSH)
    )

    assert [d.path for d in plan.diff.update] == ["Lib"]
    assert plan.diff.update[0].content == wrap("const x = 2;", "Lib", {"loadNow": True})


@pytest.mark.asyncio
async def test_corrupt_manifest_is_a_local_read_error(store, lock_manager, registry, work_dir: Path):
    registry.register(PROJECT, work_dir)
    store.seed(PROJECT, code("Code", "x"))
    ManifestStore.for_local_root(work_dir).db_path.write_bytes(b"definitely not sqlite " * 20)

    error = await plan_error(make_planner(store, lock_manager, registry))

    assert error.code is SyncPlanErrorCode.LOCAL_READ_ERROR
    assert "manifest" in str(error)
    assert error.hint
    assert not lock_manager.lock_path(PROJECT).exists()
