from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Awaitable, Callable, Iterator, Protocol, TypeVar

from loguru import logger

from scriptflow.errors import NotFoundError, RemoteStoreError, ScriptFlowError, ValidationError
from scriptflow.models import FileKind, RemoteFile


T = TypeVar("T")


class RemoteStore(Protocol):
    """Script-project storage: a flat, ordered list of files per resource."""

    async def list_files(self, resource_id: str) -> list[RemoteFile]: ...

    async def read_file(self, resource_id: str, name: str) -> RemoteFile: ...

    async def write_file(self, resource_id: str, file: RemoteFile) -> None: ...

    async def delete_file(self, resource_id: str, name: str) -> None: ...

    async def replace_all_files(self, resource_id: str, files: list[RemoteFile]) -> None: ...


def find_file(files: list[RemoteFile], name: str) -> RemoteFile | None:
    return next((file for file in files if file.name == name), None)


# Failures worth another attempt: timeouts, throttling and transient backend errors.
TRANSIENT_MARKERS = ("timed out", "timeout", "rate limit", "quota exceeded", "429", "503", "backend error")
TRANSIENT_TYPES = (TimeoutError, ConnectionResetError)


def _causes(exc: BaseException) -> Iterator[BaseException]:
    visited: set[int] = set()
    node: BaseException | None = exc
    while node is not None and id(node) not in visited:
        visited.add(id(node))
        yield node
        node = node.__cause__ or node.__context__


def is_transient(exc: BaseException) -> bool:
    for cause in _causes(exc):
        if isinstance(cause, TRANSIENT_TYPES):
            return True
        text = str(cause).lower()
        if any(marker in text for marker in TRANSIENT_MARKERS):
            return True
    return False


def is_missing(exc: BaseException) -> bool:
    for cause in _causes(exc):
        if isinstance(cause, NotFoundError):
            return True
        text = str(cause).lower()
        if "404" in text or "not found" in text:
            return True
    return False


async def call_with_retries(
    call: Callable[[], Awaitable[T]],
    *,
    label: str,
    attempts: int = 3,
    base_delay: float = 1.0,
) -> T:
    """Run `call`, retrying transient failures with exponential back-off.

    ScriptFlowError subclasses are already classified and pass straight through.
    """
    attempt = 1
    while True:
        try:
            return await call()
        except ScriptFlowError:
            raise
        except Exception as exc:
            if attempt >= attempts or not is_transient(exc):
                raise
            delay = base_delay * 2 ** (attempt - 1)
            logger.warning(f"{label}: transient failure ({exc}), attempt {attempt}/{attempts}, retrying in {delay:.1f}s")
            await asyncio.sleep(delay)
            attempt += 1


class RetryingRemoteStore:
    """Wraps another store: retries transient failures, maps the rest to ScriptFlowError."""

    def __init__(self, inner: RemoteStore, *, attempts: int = 3, base_delay: float = 1.0) -> None:
        self.inner = inner
        self.attempts = attempts
        self.base_delay = base_delay

    async def _call(self, label: str, call: Callable[[], Awaitable[T]], *, name: str | None = None) -> T:
        try:
            return await call_with_retries(call, label=label, attempts=self.attempts, base_delay=self.base_delay)
        except ScriptFlowError:
            raise
        except Exception as exc:
            if name is not None and is_missing(exc):
                raise NotFoundError(name) from exc
            raise RemoteStoreError(f"{label} failed: {exc}", details={"label": label}) from exc

    async def list_files(self, resource_id: str) -> list[RemoteFile]:
        return await self._call(f"list {resource_id}", lambda: self.inner.list_files(resource_id))

    async def read_file(self, resource_id: str, name: str) -> RemoteFile:
        return await self._call(f"read {name}", lambda: self.inner.read_file(resource_id, name), name=name)

    async def write_file(self, resource_id: str, file: RemoteFile) -> None:
        await self._call(f"write {file.name}", lambda: self.inner.write_file(resource_id, file))

    async def delete_file(self, resource_id: str, name: str) -> None:
        await self._call(f"delete {name}", lambda: self.inner.delete_file(resource_id, name), name=name)

    async def replace_all_files(self, resource_id: str, files: list[RemoteFile]) -> None:
        await self._call(f"replace {resource_id}", lambda: self.inner.replace_all_files(resource_id, files))


class DirectoryRemoteStore:
    """A remote store mirrored on disk: one JSON document per resource under `root`."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _document_path(self, resource_id: str) -> Path:
        if not resource_id or "/" in resource_id or resource_id.startswith("."):
            raise ValidationError(f"Invalid resource id: {resource_id!r}")
        return self.root / f"{resource_id}.json"

    def _load(self, resource_id: str) -> list[RemoteFile]:
        path = self._document_path(resource_id)
        if not path.exists():
            raise RemoteStoreError(f"Remote project not found: {resource_id}")
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
        return [
            RemoteFile(name=item["name"], kind=FileKind(item["type"]), content=item["content"])
            for item in data.get("files", [])
        ]

    def _store(self, resource_id: str, files: list[RemoteFile]) -> None:
        path = self._document_path(resource_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "resource_id": resource_id,
            "files": [{"name": f.name, "type": f.kind.value, "content": f.content} for f in files],
        }
        tmp_path = path.with_suffix(".json.tmp")
        with tmp_path.open("w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
            fh.write("\n")
        os.replace(tmp_path, path)

    async def create_project(self, resource_id: str, files: list[RemoteFile] | None = None) -> None:
        self._store(resource_id, list(files or []))

    async def list_files(self, resource_id: str) -> list[RemoteFile]:
        return self._load(resource_id)

    async def read_file(self, resource_id: str, name: str) -> RemoteFile:
        found = find_file(self._load(resource_id), name)
        if found is None:
            raise NotFoundError(name)
        return found

    async def write_file(self, resource_id: str, file: RemoteFile) -> None:
        files = self._load(resource_id)
        for index, existing in enumerate(files):
            if existing.name == file.name:
                files[index] = file
                break
        else:
            files.append(file)
        self._store(resource_id, files)

    async def delete_file(self, resource_id: str, name: str) -> None:
        files = self._load(resource_id)
        remaining = [file for file in files if file.name != name]
        if len(remaining) == len(files):
            raise NotFoundError(name)
        self._store(resource_id, remaining)

    async def replace_all_files(self, resource_id: str, files: list[RemoteFile]) -> None:
        self._store(resource_id, list(files))
