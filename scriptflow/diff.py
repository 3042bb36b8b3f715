"""Classify the difference between a sync source and destination."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from scriptflow.filters import SyncFilter
from scriptflow.fingerprint import fingerprint
from scriptflow.models import (
    FileDescriptor,
    RemoteFile,
    SyncDiffResult,
    SyncDirection,
    SyncManifest,
    SyncSide,
)
from scriptflow.module_wrapper import to_display, to_wire, unwrap
from scriptflow.scanner import LocalScriptFile


def describe_remote_files(files: list[RemoteFile]) -> list[FileDescriptor]:
    return [
        FileDescriptor(
            path=file.name,
            content=file.content,
            fingerprint=fingerprint(file.name, file.content),
            origin=SyncSide.REMOTE,
            kind=file.kind,
            display_content=to_display(file.kind, file.name, file.content),
        )
        for file in files
    ]


def module_options(descriptors: list[FileDescriptor]) -> dict[str, dict[str, Any]]:
    """Module options of every wrapped descriptor, by name."""
    options: dict[str, dict[str, Any]] = {}
    for descriptor in descriptors:
        unwrapped = unwrap(descriptor.content)
        if unwrapped.was_wrapped and unwrapped.options:
            options[descriptor.path] = unwrapped.options
    return options


def describe_local_files(
    files: list[LocalScriptFile],
    wire_options: dict[str, dict[str, Any]] | None = None,
) -> list[FileDescriptor]:
    wire_options = wire_options or {}
    descriptors: list[FileDescriptor] = []
    for file in files:
        # Hash what the remote would hold, so wrapper-only changes still register.
        wire = to_wire(file.kind, file.name, file.content, wire_options.get(file.name))
        descriptors.append(
            FileDescriptor(
                path=file.name,
                content=wire,
                fingerprint=fingerprint(file.name, wire, file.last_modified),
                origin=SyncSide.LOCAL,
                kind=file.kind,
                display_content=to_display(file.kind, file.name, wire),
                local_path=file.local_path,
            )
        )
    return descriptors


def local_forms(descriptor: FileDescriptor) -> tuple[str, ...]:
    forms = descriptor.kind.local_forms(descriptor.path)
    if descriptor.local_path and descriptor.local_path not in forms:
        forms = (*forms, descriptor.local_path)
    return forms


def exclude_descriptors(descriptors: list[FileDescriptor], sync_filter: SyncFilter) -> list[FileDescriptor]:
    """Drop descriptors the filter rejects under their remote name or any local form."""
    return [d for d in descriptors if sync_filter.allows_file(d.path, local_forms(d))]


def compute_diff(
    direction: SyncDirection,
    source: list[FileDescriptor],
    dest: list[FileDescriptor],
    manifest: SyncManifest,
) -> SyncDiffResult:
    source_map = {descriptor.path: descriptor for descriptor in source}
    dest_map = {descriptor.path: descriptor for descriptor in dest}
    result = SyncDiffResult(
        destination_hashes={path: d.content_hash for path, d in dest_map.items()},
    )

    for path, descriptor in source_map.items():
        existing = dest_map.get(path)
        if existing is None:
            result.add.append(descriptor)
        elif existing.content_hash == descriptor.content_hash:
            result.unchanged.append(path)
        else:
            result.update.append(descriptor)

    for path, descriptor in dest_map.items():
        if path in source_map:
            continue
        # Without a baseline nothing on the destination may be inferred as removed.
        if not manifest.is_bootstrap and manifest.in_baseline(path):
            result.delete.append(descriptor)
        else:
            result.untouched.append(path)

    result.add.sort(key=lambda d: d.path)
    result.update.sort(key=lambda d: d.path)
    result.delete.sort(key=lambda d: d.path)
    result.unchanged.sort()
    result.untouched.sort()
    return result


@dataclass(slots=True)
class DriftReport:
    drifted: list[str] = field(default_factory=list)

    @property
    def has_drift(self) -> bool:
        return bool(self.drifted)


def detect_drift(
    diff: SyncDiffResult,
    current_source: list[FileDescriptor],
    current_dest: list[FileDescriptor],
) -> DriftReport:
    """Report planned paths whose source or destination changed since planning."""
    source_hashes = {d.path: d.content_hash for d in current_source}
    dest_hashes = {d.path: d.content_hash for d in current_dest}
    report = DriftReport()

    for descriptor in diff.add:
        if source_hashes.get(descriptor.path) != descriptor.content_hash or descriptor.path in dest_hashes:
            report.drifted.append(descriptor.path)
    for descriptor in diff.update:
        if (
            source_hashes.get(descriptor.path) != descriptor.content_hash
            or dest_hashes.get(descriptor.path) != diff.destination_hashes.get(descriptor.path)
        ):
            report.drifted.append(descriptor.path)
    for descriptor in diff.delete:
        if dest_hashes.get(descriptor.path) != descriptor.content_hash or descriptor.path in source_hashes:
            report.drifted.append(descriptor.path)

    report.drifted.sort()
    return report


def format_summary(diff: SyncDiffResult, direction: SyncDirection) -> str:
    if not diff.has_changes:
        return f"{direction.value}: already in sync ({len(diff.unchanged)} unchanged)"
    parts = [
        f"{len(diff.add)} to add",
        f"{len(diff.update)} to update",
        f"{len(diff.delete)} to delete",
    ]
    summary = f"{direction.value}: " + ", ".join(parts)
    if diff.untouched:
        summary += f" ({len(diff.untouched)} destination-only left untouched)"
    return summary
