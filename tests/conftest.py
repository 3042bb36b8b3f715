"""Common test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from scriptflow.config import LockSettings, SyncTargetRegistry
from scriptflow.errors import NotFoundError
from scriptflow.git_status import GitStatus
from scriptflow.lock_manager import LockManager
from scriptflow.models import FileKind, RemoteFile


class FakeRemoteStore:
    """In-memory remote store that counts mutations and can fail on demand."""

    def __init__(self) -> None:
        self.projects: dict[str, list[RemoteFile]] = {}
        self.mutations = 0
        self.fail_after_write = False
        self.fail_on_delete = False
        self.fail_list = False

    def seed(self, resource_id: str, *files: RemoteFile) -> None:
        self.projects[resource_id] = list(files)

    def content(self, resource_id: str, name: str) -> str | None:
        for file in self.projects.get(resource_id, []):
            if file.name == name:
                return file.content
        return None

    def names(self, resource_id: str) -> list[str]:
        return [file.name for file in self.projects.get(resource_id, [])]

    async def list_files(self, resource_id: str) -> list[RemoteFile]:
        if self.fail_list:
            raise ConnectionError("remote unavailable")
        return list(self.projects.get(resource_id, []))

    async def read_file(self, resource_id: str, name: str) -> RemoteFile:
        for file in self.projects.get(resource_id, []):
            if file.name == name:
                return file
        raise NotFoundError(name)

    async def write_file(self, resource_id: str, file: RemoteFile) -> None:
        files = self.projects.setdefault(resource_id, [])
        for index, existing in enumerate(files):
            if existing.name == file.name:
                files[index] = file
                break
        else:
            files.append(file)
        self.mutations += 1
        if self.fail_after_write:
            self.fail_after_write = False
            raise RuntimeError("synthetic failure after write")

    async def delete_file(self, resource_id: str, name: str) -> None:
        if self.fail_on_delete:
            raise RuntimeError("synthetic delete failure")
        files = self.projects.get(resource_id, [])
        remaining = [file for file in files if file.name != name]
        if len(remaining) == len(files):
            raise NotFoundError(name)
        self.projects[resource_id] = remaining
        self.mutations += 1

    async def replace_all_files(self, resource_id: str, files: list[RemoteFile]) -> None:
        self.projects[resource_id] = list(files)
        self.mutations += 1


class FakeGit:
    def __init__(self, changed_files: list[str] | None = None, branch: str = "main", missing: bool = False) -> None:
        self.changed_files = changed_files or []
        self.branch = branch
        self.missing = missing
        self.calls = 0

    async def status(self, repo: Path) -> GitStatus:
        self.calls += 1
        if self.missing:
            raise FileNotFoundError("git")
        return GitStatus(changed_files=list(self.changed_files), branch=self.branch)


def code(name: str, content: str) -> RemoteFile:
    return RemoteFile(name=name, kind=FileKind.CODE, content=content)


@pytest.fixture
def store() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def lock_settings(tmp_path: Path) -> LockSettings:
    return LockSettings(lock_dir=tmp_path / "locks", timeout=1.0, poll_interval=0.02, stale_after=300.0)


@pytest.fixture
def lock_manager(lock_settings: LockSettings) -> LockManager:
    return LockManager(lock_settings)


@pytest.fixture
def registry(tmp_path: Path) -> SyncTargetRegistry:
    return SyncTargetRegistry(tmp_path / "targets.json")


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    root = tmp_path / "work"
    (root / ".git").mkdir(parents=True)
    return root
