from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Iterator


MANIFEST_FILENAME = "appsscript.json"
CODE_EXTENSIONS = (".js", ".gs")
MARKUP_EXTENSIONS = (".html",)


class FileKind(str, Enum):
    CODE = "SERVER_JS"
    MARKUP = "HTML"
    DATA = "JSON"

    @property
    def local_extension(self) -> str:
        if self is FileKind.CODE:
            return ".gs"
        if self is FileKind.MARKUP:
            return ".html"
        return ".json"

    def local_forms(self, name: str) -> tuple[str, ...]:
        """Every local path a remote name of this kind can be stored under."""
        if self is FileKind.DATA:
            return (name if name.endswith(".json") else f"{name}.json",)
        extensions = CODE_EXTENSIONS if self is FileKind.CODE else MARKUP_EXTENSIONS
        return tuple(f"{name}{extension}" for extension in extensions)

    @classmethod
    def for_local_path(cls, path: str) -> FileKind | None:
        """Return the remote kind a local file maps to, or None when it is not syncable."""
        name = PurePosixPath(path).name
        if name == MANIFEST_FILENAME:
            return cls.DATA
        suffix = PurePosixPath(path).suffix.lower()
        if suffix in CODE_EXTENSIONS:
            return cls.CODE
        if suffix in MARKUP_EXTENSIONS:
            return cls.MARKUP
        return None


class SyncDirection(str, Enum):
    PULL = "pull"
    PUSH = "push"

    @property
    def source(self) -> SyncSide:
        return SyncSide.REMOTE if self is SyncDirection.PULL else SyncSide.LOCAL

    @property
    def destination(self) -> SyncSide:
        return SyncSide.LOCAL if self is SyncDirection.PULL else SyncSide.REMOTE


class SyncSide(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class Tombstone(Enum):
    DELETED = "deleted"


DELETED = Tombstone.DELETED


@dataclass(frozen=True, slots=True)
class RemoteFile:
    name: str
    kind: FileKind
    content: str

    def with_content(self, content: str) -> RemoteFile:
        return RemoteFile(name=self.name, kind=self.kind, content=content)


@dataclass(frozen=True, slots=True)
class FileFingerprint:
    path: str
    content_hash: str
    size: int
    last_modified: datetime


@dataclass(slots=True)
class ChangeSet:
    """Ordered filename -> new content (or DELETED) produced by a compute phase."""

    changes: dict[str, str | Tombstone] = field(default_factory=dict)

    def set(self, name: str, content: str) -> None:
        self.changes[name] = content

    def delete(self, name: str) -> None:
        self.changes[name] = DELETED

    def is_deletion(self, name: str) -> bool:
        return self.changes.get(name) is DELETED

    def content_for(self, name: str) -> str:
        value = self.changes[name]
        if value is DELETED:
            raise KeyError(f"{name} is marked for deletion")
        return value

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self.changes)

    def items(self) -> Iterator[tuple[str, str | Tombstone]]:
        return iter(self.changes.items())

    def copy(self) -> ChangeSet:
        return ChangeSet(changes=dict(self.changes))

    def __contains__(self, name: object) -> bool:
        return name in self.changes

    def __len__(self) -> int:
        return len(self.changes)


@dataclass(frozen=True, slots=True)
class WriteResult:
    success: bool
    affected_paths: tuple[str, ...]
    content_hash: str | None
    created: bool = False


@dataclass(frozen=True, slots=True)
class DeleteResult:
    success: bool
    affected_paths: tuple[str, ...]
    content_hash: str | None = None
    deleted_hash: str | None = None


@dataclass(frozen=True, slots=True)
class MoveResult:
    success: bool
    affected_paths: tuple[str, ...]
    content_hash: str | None
    source: str = ""
    destination: str = ""


@dataclass(frozen=True, slots=True)
class FuzzyEditResult:
    success: bool
    affected_paths: tuple[str, ...]
    content_hash: str | None
    edits_applied: int = 0
    similarities: tuple[float, ...] = ()


@dataclass(frozen=True, slots=True)
class EditResult:
    success: bool
    affected_paths: tuple[str, ...]
    content_hash: str | None
    edits_applied: int = 0


@dataclass(frozen=True, slots=True)
class CopyResult:
    success: bool
    affected_paths: tuple[str, ...]
    content_hash: str | None
    source: str = ""
    destination: str = ""


OperationResult = WriteResult | DeleteResult | MoveResult | FuzzyEditResult | EditResult | CopyResult


@dataclass(frozen=True, slots=True)
class LockRecord:
    resource_id: str
    owner_pid: int
    hostname: str
    acquired_at: float
    operation: str

    def age_seconds(self, now: float) -> float:
        return max(0.0, now - self.acquired_at)

    def to_json(self) -> dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "owner_pid": self.owner_pid,
            "hostname": self.hostname,
            "acquired_at": self.acquired_at,
            "operation": self.operation,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> LockRecord:
        return cls(
            resource_id=str(data["resource_id"]),
            owner_pid=int(data["owner_pid"]),
            hostname=str(data["hostname"]),
            acquired_at=float(data["acquired_at"]),
            operation=str(data.get("operation", "")),
        )

    def describe(self) -> str:
        when = datetime.fromtimestamp(self.acquired_at, tz=timezone.utc).isoformat(timespec="seconds")
        return f"pid {self.owner_pid} on {self.hostname} ({self.operation}) since {when}"


@dataclass(frozen=True, slots=True)
class DiffPreview:
    format: str
    content: str
    lines_added: int = 0
    lines_removed: int = 0
    truncated: bool = False


@dataclass(frozen=True, slots=True)
class ConflictDetails:
    path: str
    expected_hash: str
    current_hash: str
    hash_source: str
    diff: DiffPreview


@dataclass(slots=True)
class SyncManifest:
    resource_id: str | None
    exists: bool
    baseline_hashes: dict[str, str] = field(default_factory=dict)
    last_sync_direction: SyncDirection | None = None
    last_sync_at: str | None = None

    @property
    def is_bootstrap(self) -> bool:
        return not self.exists

    def in_baseline(self, path: str) -> bool:
        return path in self.baseline_hashes


@dataclass(frozen=True, slots=True)
class FileDescriptor:
    path: str
    content: str
    fingerprint: FileFingerprint
    origin: SyncSide
    kind: FileKind
    display_content: str | None = None
    local_path: str | None = None

    @property
    def content_hash(self) -> str:
        return self.fingerprint.content_hash


@dataclass(slots=True)
class SyncDiffResult:
    add: list[FileDescriptor] = field(default_factory=list)
    update: list[FileDescriptor] = field(default_factory=list)
    delete: list[FileDescriptor] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    untouched: list[str] = field(default_factory=list)
    destination_hashes: dict[str, str] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return bool(self.add or self.update or self.delete)

    @property
    def total_operations(self) -> int:
        return len(self.add) + len(self.update) + len(self.delete)

    @property
    def has_destructive_changes(self) -> bool:
        return bool(self.delete)
