from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from loguru import logger

from scriptflow.conflicts import HASH_SOURCE_COMPUTE, check_for_conflict, raise_on_conflict
from scriptflow.errors import MatchError, NotFoundError, ValidationError
from scriptflow.fingerprint import git_blob_hash
from scriptflow.fuzzy import EditMatch, EditRequest, FuzzyMatcher
from scriptflow.models import (
    ChangeSet,
    CopyResult,
    DeleteResult,
    EditResult,
    FileKind,
    FuzzyEditResult,
    MoveResult,
    RemoteFile,
    WriteResult,
)
from scriptflow.module_wrapper import is_wrapped, module_name_for, should_wrap, unwrap, wrap
from scriptflow.operations import FileOperation
from scriptflow.remote import RemoteStore, find_file


MAX_EDITS = 20
MAX_SEARCH_TEXT_LENGTH = 1000


def _validate_filename(name: str) -> str:
    value = (name or "").strip()
    if not value:
        raise ValidationError("Filename is required")
    if value.startswith("/") or "\\" in value:
        raise ValidationError(f"Invalid filename: {name!r}", details={"path": name})
    if any(part in {"", ".", ".."} for part in value.split("/")):
        raise ValidationError(f"Invalid filename: {name!r}", details={"path": name})
    return value


async def _delete_if_present(store: RemoteStore, resource_id: str, name: str) -> None:
    try:
        await store.delete_file(resource_id, name)
    except NotFoundError:
        logger.debug(f"{name} already absent during rollback")


def _edit_module_body(file: RemoteFile, filename: str, edit: Callable[[str], str]) -> str:
    """Run `edit` on the user code of `file`, keeping its module wrapper and options."""
    parsed = unwrap(file.content) if should_wrap(file.kind, filename) and is_wrapped(file.content) else None
    edited = edit(parsed.inner_content if parsed is not None else file.content)
    if parsed is not None:
        edited = wrap(edited, module_name_for(filename), parsed.options)
    return edited


async def _ensure_unchanged(
    store: RemoteStore,
    resource_id: str,
    captured: RemoteFile,
    *,
    expected_hash: str | None,
    force: bool,
) -> None:
    """Raise ConflictError when the remote copy moved away from what compute read."""
    current = await store.read_file(resource_id, captured.name)
    check = check_for_conflict(
        captured.name,
        current.content,
        expected_hash=expected_hash or git_blob_hash(captured.content),
        local_content=captured.content,
        hash_source=None if expected_hash else HASH_SOURCE_COMPUTE,
        force=force,
    )
    raise_on_conflict(check)


class WriteOperation(FileOperation):
    """Create or overwrite one remote file with caller-prepared content."""

    operation_type = "write"

    def __init__(
        self,
        store: RemoteStore,
        resource_id: str,
        filename: str,
        content: str,
        *,
        kind: FileKind = FileKind.CODE,
        expected_hash: str | None = None,
        local_content: str | None = None,
        module_options: dict | None = None,
        force: bool = False,
    ) -> None:
        super().__init__(store, resource_id)
        self.filename = filename
        self.content = content
        self.kind = kind
        self.expected_hash = expected_hash
        self.local_content = local_content
        self.module_options = module_options
        self.force = force
        self._original: RemoteFile | None = None

    async def _compute(self) -> ChangeSet:
        self.filename = _validate_filename(self.filename)
        wire = self.content
        if should_wrap(self.kind, self.filename) and (self.module_options or not is_wrapped(wire)):
            wire = wrap(wire, module_name_for(self.filename), self.module_options)
        changes = ChangeSet()
        changes.set(self.filename, wire)
        return changes

    async def _apply(self, validated: ChangeSet) -> WriteResult:
        content = validated.content_for(self.filename)
        files = await self.store.list_files(self.resource_id)
        self._original = find_file(files, self.filename)

        check = check_for_conflict(
            self.filename,
            self._original.content if self._original is not None else None,
            expected_hash=self.expected_hash,
            local_content=self.local_content,
            force=self.force,
        )
        raise_on_conflict(check)

        self._mutated = True
        await self.store.write_file(
            self.resource_id, RemoteFile(name=self.filename, kind=self.kind, content=content)
        )
        return WriteResult(
            success=True,
            affected_paths=(self.filename,),
            content_hash=git_blob_hash(content),
            created=self._original is None,
        )

    async def _restore(self) -> None:
        if self._original is None:
            await _delete_if_present(self.store, self.resource_id, self.filename)
        else:
            await self.store.write_file(self.resource_id, self._original)

    def affected_paths(self) -> tuple[str, ...]:
        return (self.filename,)

    def describe(self) -> str:
        return f"write {self.resource_id}/{self.filename}"


class DeleteOperation(FileOperation):
    operation_type = "delete"

    def __init__(
        self,
        store: RemoteStore,
        resource_id: str,
        filename: str,
        *,
        expected_hash: str | None = None,
        force: bool = False,
    ) -> None:
        super().__init__(store, resource_id)
        self.filename = filename
        self.expected_hash = expected_hash
        self.force = force
        self._captured: RemoteFile | None = None

    async def _compute(self) -> ChangeSet:
        self.filename = _validate_filename(self.filename)
        self._captured = await self.store.read_file(self.resource_id, self.filename)
        changes = ChangeSet()
        changes.delete(self.filename)
        return changes

    async def _apply(self, validated: ChangeSet) -> DeleteResult:
        if not validated.is_deletion(self.filename):
            raise ValidationError(f"Change set no longer deletes {self.filename}")
        captured = self._computed(self._captured)
        await _ensure_unchanged(
            self.store, self.resource_id, captured, expected_hash=self.expected_hash, force=self.force
        )

        self._mutated = True
        await self.store.delete_file(self.resource_id, self.filename)
        return DeleteResult(
            success=True,
            affected_paths=(self.filename,),
            deleted_hash=git_blob_hash(captured.content),
        )

    async def _restore(self) -> None:
        if self._captured is not None:
            await self.store.write_file(self.resource_id, self._captured)

    def affected_paths(self) -> tuple[str, ...]:
        return (self.filename,)

    def describe(self) -> str:
        return f"delete {self.resource_id}/{self.filename}"


class MoveOperation(FileOperation):
    """Rename a file, optionally into another resource.

    Applied as create-at-destination followed by delete-at-source; rollback
    undoes whichever leg went through.
    """

    operation_type = "move"

    def __init__(
        self,
        store: RemoteStore,
        resource_id: str,
        source: str,
        destination: str,
        *,
        to_resource_id: str | None = None,
        expected_hash: str | None = None,
        overwrite: bool = False,
        force: bool = False,
    ) -> None:
        super().__init__(store, resource_id)
        self.source = source
        self.destination = destination
        self.to_resource_id = to_resource_id or resource_id
        self.expected_hash = expected_hash
        self.overwrite = overwrite
        self.force = force
        self._source_file: RemoteFile | None = None
        self._prior_destination: RemoteFile | None = None
        self._source_deleted = False

    @property
    def is_cross_resource(self) -> bool:
        return self.to_resource_id != self.resource_id

    @property
    def destination_key(self) -> str:
        if self.is_cross_resource:
            return f"{self.to_resource_id}/{self.destination}"
        return self.destination

    def lock_resources(self) -> tuple[str, ...]:
        return (self.resource_id, self.to_resource_id)

    async def _compute(self) -> ChangeSet:
        self.source = _validate_filename(self.source)
        self.destination = _validate_filename(self.destination)
        if not self.is_cross_resource and self.source == self.destination:
            raise ValidationError("Source and destination are the same file")

        self._source_file = await self.store.read_file(self.resource_id, self.source)
        destination_files = await self.store.list_files(self.to_resource_id)
        self._prior_destination = find_file(destination_files, self.destination)
        if self._prior_destination is not None and not self.overwrite:
            raise ValidationError(
                f"Destination already exists: {self.destination_key}",
                details={"path": self.destination_key},
            )

        changes = ChangeSet()
        changes.set(self.destination_key, self._source_file.content)
        changes.delete(self.source)
        return changes

    async def _apply(self, validated: ChangeSet) -> MoveResult:
        source_file = self._computed(self._source_file)
        content = validated.content_for(self.destination_key)
        await _ensure_unchanged(
            self.store, self.resource_id, source_file, expected_hash=self.expected_hash, force=self.force
        )

        self._mutated = True
        moved = RemoteFile(name=self.destination, kind=source_file.kind, content=content)
        await self.store.write_file(self.to_resource_id, moved)
        if validated.is_deletion(self.source):
            await self.store.delete_file(self.resource_id, self.source)
            self._source_deleted = True

        return MoveResult(
            success=True,
            affected_paths=(self.source, self.destination_key),
            content_hash=git_blob_hash(content),
            source=self.source,
            destination=self.destination_key,
        )

    async def _restore(self) -> None:
        failures: list[str] = []
        try:
            if self._prior_destination is not None:
                await self.store.write_file(self.to_resource_id, self._prior_destination)
            else:
                await _delete_if_present(self.store, self.to_resource_id, self.destination)
        except Exception as exc:
            failures.append(f"destination {self.destination_key}: {exc}")
        if self._source_deleted and self._source_file is not None:
            try:
                await self.store.write_file(self.resource_id, self._source_file)
            except Exception as exc:
                failures.append(f"source {self.source}: {exc}")
        if failures:
            raise RuntimeError("; ".join(failures))

    def affected_paths(self) -> tuple[str, ...]:
        return (self.source, self.destination_key)

    def describe(self) -> str:
        return f"move {self.resource_id}/{self.source} -> {self.to_resource_id}/{self.destination}"


class FuzzyEditOperation(FileOperation):
    """Apply several approximate search/replace edits to one file."""

    operation_type = "fuzzy_edit"

    def __init__(
        self,
        store: RemoteStore,
        resource_id: str,
        filename: str,
        edits: list[EditRequest],
        *,
        expected_hash: str | None = None,
        force: bool = False,
        matcher: FuzzyMatcher | None = None,
    ) -> None:
        super().__init__(store, resource_id)
        self.filename = filename
        self.edits = list(edits)
        self.expected_hash = expected_hash
        self.force = force
        self.matcher = matcher or FuzzyMatcher()
        self.matches: list[EditMatch] = []
        self._original: RemoteFile | None = None

    def _validate_edits(self) -> None:
        if not self.edits:
            raise ValidationError("At least one edit is required")
        if len(self.edits) > MAX_EDITS:
            raise ValidationError(
                f"Too many edits: {len(self.edits)} (maximum {MAX_EDITS})",
                details={"edit_count": len(self.edits)},
            )
        for index, edit in enumerate(self.edits):
            if not edit.search_text:
                raise ValidationError(f"Edit {index + 1}: search text is empty")
            if len(edit.search_text) > MAX_SEARCH_TEXT_LENGTH:
                raise ValidationError(
                    f"Edit {index + 1}: search text exceeds {MAX_SEARCH_TEXT_LENGTH} characters",
                    details={"edit_index": index, "length": len(edit.search_text)},
                )
            if not 0.0 <= edit.threshold <= 1.0:
                raise ValidationError(f"Edit {index + 1}: threshold must be between 0 and 1")

    async def _compute(self) -> ChangeSet:
        self.filename = _validate_filename(self.filename)
        self._validate_edits()
        self._original = await self.store.read_file(self.resource_id, self.filename)

        def edit(inner: str) -> str:
            self.matches = self.matcher.find_all_matches(inner, self.edits)
            return self.matcher.apply_edits(inner, self.edits, self.matches)

        edited = _edit_module_body(self._original, self.filename, edit)
        changes = ChangeSet()
        changes.set(self.filename, edited)
        return changes

    async def _apply(self, validated: ChangeSet) -> FuzzyEditResult:
        original = self._computed(self._original)
        content = validated.content_for(self.filename)
        await _ensure_unchanged(
            self.store, self.resource_id, original, expected_hash=self.expected_hash, force=self.force
        )

        self._mutated = True
        await self.store.write_file(self.resource_id, original.with_content(content))
        return FuzzyEditResult(
            success=True,
            affected_paths=(self.filename,),
            content_hash=git_blob_hash(content),
            edits_applied=len(self.matches),
            similarities=tuple(match.similarity for match in sorted(self.matches, key=lambda m: m.edit_index)),
        )

    async def _restore(self) -> None:
        if self._original is not None:
            await self.store.write_file(self.resource_id, self._original)

    def affected_paths(self) -> tuple[str, ...]:
        return (self.filename,)

    def describe(self) -> str:
        return f"edit {self.resource_id}/{self.filename} ({len(self.edits)} edits)"


@dataclass(frozen=True, slots=True)
class ExactEdit:
    old_text: str
    new_text: str
    # Which match to replace when old_text occurs more than once (0-based).
    occurrence: int | None = None


def _occurrences(content: str, text: str) -> list[int]:
    positions: list[int] = []
    start = content.find(text)
    while start != -1:
        positions.append(start)
        start = content.find(text, start + len(text))
    return positions


class EditOperation(FileOperation):
    """Exact search/replace edits, applied in order to one file."""

    operation_type = "edit"

    def __init__(
        self,
        store: RemoteStore,
        resource_id: str,
        filename: str,
        edits: list[ExactEdit],
        *,
        expected_hash: str | None = None,
        force: bool = False,
    ) -> None:
        super().__init__(store, resource_id)
        self.filename = filename
        self.edits = list(edits)
        self.expected_hash = expected_hash
        self.force = force
        self._original: RemoteFile | None = None

    def _validate_edits(self) -> None:
        if not self.edits:
            raise ValidationError("At least one edit is required")
        if len(self.edits) > MAX_EDITS:
            raise ValidationError(
                f"Too many edits: {len(self.edits)} (maximum {MAX_EDITS})",
                details={"edit_count": len(self.edits)},
            )
        for index, edit in enumerate(self.edits):
            if not edit.old_text:
                raise ValidationError(f"Edit {index + 1}: search text is empty")
            if edit.occurrence is not None and edit.occurrence < 0:
                raise ValidationError(f"Edit {index + 1}: occurrence must not be negative")

    def _replace(self, content: str, index: int, edit: ExactEdit) -> str:
        positions = _occurrences(content, edit.old_text)
        details = {"edit_index": index, "occurrences": len(positions)}
        if not positions:
            raise MatchError(f"Edit {index + 1}: text not found: {edit.old_text[:50]!r}", details=details)
        if len(positions) > 1 and edit.occurrence is None:
            raise MatchError(
                f"Edit {index + 1}: text occurs {len(positions)} times; choose one with an occurrence index",
                details=details,
            )
        target = edit.occurrence or 0
        if target >= len(positions):
            raise MatchError(
                f"Edit {index + 1}: occurrence {target} out of range ({len(positions)} found)",
                details=details,
            )
        start = positions[target]
        return content[:start] + edit.new_text + content[start + len(edit.old_text):]

    async def _compute(self) -> ChangeSet:
        self.filename = _validate_filename(self.filename)
        self._validate_edits()
        self._original = await self.store.read_file(self.resource_id, self.filename)

        def edit(inner: str) -> str:
            for index, request in enumerate(self.edits):
                inner = self._replace(inner, index, request)
            return inner

        changes = ChangeSet()
        changes.set(self.filename, _edit_module_body(self._original, self.filename, edit))
        return changes

    async def _apply(self, validated: ChangeSet) -> EditResult:
        original = self._computed(self._original)
        content = validated.content_for(self.filename)
        await _ensure_unchanged(
            self.store, self.resource_id, original, expected_hash=self.expected_hash, force=self.force
        )

        self._mutated = True
        await self.store.write_file(self.resource_id, original.with_content(content))
        return EditResult(
            success=True,
            affected_paths=(self.filename,),
            content_hash=git_blob_hash(content),
            edits_applied=len(self.edits),
        )

    async def _restore(self) -> None:
        if self._original is not None:
            await self.store.write_file(self.resource_id, self._original)

    def affected_paths(self) -> tuple[str, ...]:
        return (self.filename,)

    def describe(self) -> str:
        return f"edit {self.resource_id}/{self.filename} ({len(self.edits)} exact edits)"


class CopyOperation(FileOperation):
    """Copy a file, optionally into another resource.

    Module code is re-wrapped under the destination's module name. Rollback
    removes the copy, or restores what the destination held before.
    """

    operation_type = "copy"

    def __init__(
        self,
        store: RemoteStore,
        resource_id: str,
        source: str,
        destination: str,
        *,
        to_resource_id: str | None = None,
        overwrite: bool = False,
        force: bool = False,
    ) -> None:
        super().__init__(store, resource_id)
        self.source = source
        self.destination = destination
        self.to_resource_id = to_resource_id or resource_id
        self.overwrite = overwrite
        self.force = force
        self._source_file: RemoteFile | None = None
        self._prior_destination: RemoteFile | None = None

    @property
    def is_cross_resource(self) -> bool:
        return self.to_resource_id != self.resource_id

    @property
    def destination_key(self) -> str:
        if self.is_cross_resource:
            return f"{self.to_resource_id}/{self.destination}"
        return self.destination

    def lock_resources(self) -> tuple[str, ...]:
        return (self.resource_id, self.to_resource_id)

    async def _compute(self) -> ChangeSet:
        self.source = _validate_filename(self.source)
        self.destination = _validate_filename(self.destination)
        if not self.is_cross_resource and self.source == self.destination:
            raise ValidationError("Source and destination are the same file")

        self._source_file = await self.store.read_file(self.resource_id, self.source)
        self._prior_destination = find_file(await self.store.list_files(self.to_resource_id), self.destination)
        if self._prior_destination is not None and not self.overwrite:
            raise ValidationError(
                f"Destination already exists: {self.destination_key}",
                details={"path": self.destination_key},
            )

        content = self._source_file.content
        if should_wrap(self._source_file.kind, self.destination) and is_wrapped(content):
            parsed = unwrap(content)
            content = wrap(parsed.inner_content, module_name_for(self.destination), parsed.options)

        changes = ChangeSet()
        changes.set(self.destination_key, content)
        return changes

    async def _apply(self, validated: ChangeSet) -> CopyResult:
        source_file = self._computed(self._source_file)
        content = validated.content_for(self.destination_key)

        current = find_file(await self.store.list_files(self.to_resource_id), self.destination)
        if current is not None and self._prior_destination is None and not self.overwrite:
            raise ValidationError(
                f"Destination was created since the copy was planned: {self.destination_key}",
                details={"path": self.destination_key},
            )
        if self._prior_destination is not None:
            await _ensure_unchanged(
                self.store, self.to_resource_id, self._prior_destination, expected_hash=None, force=self.force
            )

        self._mutated = True
        await self.store.write_file(
            self.to_resource_id, RemoteFile(name=self.destination, kind=source_file.kind, content=content)
        )
        return CopyResult(
            success=True,
            affected_paths=(self.destination_key,),
            content_hash=git_blob_hash(content),
            source=self.source,
            destination=self.destination_key,
        )

    async def _restore(self) -> None:
        if self._prior_destination is not None:
            await self.store.write_file(self.to_resource_id, self._prior_destination)
        else:
            await _delete_if_present(self.store, self.to_resource_id, self.destination)

    def affected_paths(self) -> tuple[str, ...]:
        return (self.destination_key,)

    def describe(self) -> str:
        return f"copy {self.resource_id}/{self.source} -> {self.to_resource_id}/{self.destination}"
