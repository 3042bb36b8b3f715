from pathlib import Path

import pytest

from conftest import code
from scriptflow.errors import NotFoundError, RemoteStoreError
from scriptflow.git_status import GitStatus, _parse_porcelain
from scriptflow.models import FileKind, RemoteFile
from scriptflow.remote import DirectoryRemoteStore, RetryingRemoteStore


class FlakyStore:
    def __init__(self, failures: list[Exception]) -> None:
        self.failures = failures
        self.calls = 0

    async def list_files(self, resource_id: str) -> list[RemoteFile]:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return [code("Code", "x")]

    async def read_file(self, resource_id: str, name: str) -> RemoteFile:
        self.calls += 1
        raise RuntimeError("HTTP 404: not found")


@pytest.mark.asyncio
async def test_directory_store_round_trip(tmp_path: Path):
    store = DirectoryRemoteStore(tmp_path)
    await store.create_project("proj1", [code("Code", "a")])

    await store.write_file("proj1", RemoteFile("index", FileKind.MARKUP, "<p/>"))
    await store.write_file("proj1", code("Code", "b"))
    await store.delete_file("proj1", "index")

    files = await store.list_files("proj1")
    assert files == [code("Code", "b")]
    assert (await store.read_file("proj1", "Code")).content == "b"
    with pytest.raises(NotFoundError):
        await store.delete_file("proj1", "index")
    with pytest.raises(RemoteStoreError):
        await store.list_files("missing")


@pytest.mark.asyncio
async def test_transient_failures_are_retried():
    inner = FlakyStore([TimeoutError("read timed out"), RuntimeError("HTTP 429: Rate Limit Exceeded")])
    store = RetryingRemoteStore(inner, base_delay=0)

    files = await store.list_files("proj1")

    assert [f.name for f in files] == ["Code"]
    assert inner.calls == 3


@pytest.mark.asyncio
async def test_permanent_errors_are_not_retried():
    inner = FlakyStore([ConnectionError("connection refused")])
    store = RetryingRemoteStore(inner, base_delay=0)

    with pytest.raises(RemoteStoreError):
        await store.list_files("proj1")
    assert inner.calls == 1


@pytest.mark.asyncio
async def test_not_found_is_mapped():
    store = RetryingRemoteStore(FlakyStore([]), base_delay=0)
    with pytest.raises(NotFoundError):
        await store.read_file("proj1", "Code")


def test_parse_porcelain():
    output = " M Code.gs\n?? new.html\nR  old.gs -> renamed.gs\n?? .scriptflow.json\n"
    assert _parse_porcelain(output) == ["Code.gs", "new.html", "renamed.gs"]


def test_git_status_description():
    status = GitStatus(changed_files=[f"f{i}.gs" for i in range(12)], branch="HEAD")
    assert status.detached
    assert not status.clean
    assert status.describe_changes().endswith("and 2 more")
