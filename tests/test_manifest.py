from pathlib import Path

import pytest

from scriptflow.manifest import ManifestStore
from scriptflow.models import SyncDirection


@pytest.mark.asyncio
async def test_missing_manifest_is_bootstrap_and_not_created(work_dir: Path):
    store = ManifestStore.for_local_root(work_dir)

    manifest = await store.load()

    assert manifest.is_bootstrap
    assert manifest.baseline_hashes == {}
    assert not store.db_path.exists()


@pytest.mark.asyncio
async def test_save_then_load(work_dir: Path):
    store = ManifestStore.for_local_root(work_dir)
    hashes = {"Code": "a" * 40, "utils/helpers": "b" * 40}

    saved = await store.save("proj1", SyncDirection.PULL, hashes)
    loaded = await store.load()

    assert store.db_path.parent == work_dir / ".git"
    assert not loaded.is_bootstrap
    assert loaded.resource_id == "proj1"
    assert loaded.baseline_hashes == hashes
    assert loaded.last_sync_direction is SyncDirection.PULL
    assert loaded.last_sync_at == saved.last_sync_at
    assert loaded.in_baseline("Code")


@pytest.mark.asyncio
async def test_save_replaces_previous_baseline(work_dir: Path):
    store = ManifestStore.for_local_root(work_dir)
    await store.save("proj1", SyncDirection.PULL, {"Old": "a" * 40})
    await store.save("proj1", SyncDirection.PUSH, {})

    loaded = await store.load()

    # An empty baseline is still a baseline, unlike a missing manifest.
    assert not loaded.is_bootstrap
    assert loaded.baseline_hashes == {}
    assert loaded.last_sync_direction is SyncDirection.PUSH


@pytest.mark.asyncio
async def test_delete(work_dir: Path):
    store = ManifestStore.for_local_root(work_dir)
    assert await store.delete() is False

    await store.save("proj1", SyncDirection.PULL, {})
    assert await store.delete() is True
    assert (await store.load()).is_bootstrap
