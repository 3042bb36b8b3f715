from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath

from scriptflow.config import CONFIG_FILENAME
from scriptflow.filters import SyncFilter, build_sync_filter, load_gitignore_patterns
from scriptflow.models import MANIFEST_FILENAME, FileKind


EXCLUDED_DIRS = {".git", "node_modules", ".idea", ".vscode"}
EXCLUDED_FILENAMES = {CONFIG_FILENAME, ".clasp.json", ".gitignore", ".rsync-manifest.json"}
MANIFEST_REMOTE_NAME = "appsscript"


@dataclass(slots=True)
class LocalScriptFile:
    local_path: str
    name: str
    kind: FileKind
    content: str
    last_modified: datetime


def remote_name_for(local_path: str) -> str:
    """utils/helpers.gs -> utils/helpers, page.html -> page, appsscript.json -> appsscript."""
    path = PurePosixPath(local_path.replace("\\", "/"))
    if path.name == MANIFEST_FILENAME:
        return path.with_name(MANIFEST_REMOTE_NAME).as_posix()
    if path.suffix.lower() in {".js", ".gs", ".html"}:
        return path.with_suffix("").as_posix()
    return path.as_posix()


def local_path_for(name: str, kind: FileKind, existing: dict[str, str] | None = None) -> str:
    """Map a remote name to its local path, keeping the extension of an existing local copy."""
    if existing and name in existing:
        return existing[name]
    if kind is FileKind.DATA:
        return name if name.endswith(".json") else f"{name}.json"
    return f"{name}{kind.local_extension}"


def _discover_candidates(root: Path, sync_filter: SyncFilter) -> list[tuple[Path, str, FileKind]]:
    candidates: list[tuple[Path, str, FileKind]] = []

    for file_path in sorted(root.rglob("*")):
        rel_parts = file_path.relative_to(root).parts
        if any(part in EXCLUDED_DIRS for part in rel_parts[:-1]):
            continue
        if not file_path.is_file():
            continue
        if file_path.name in EXCLUDED_FILENAMES:
            continue

        relative_path = Path(*rel_parts).as_posix()
        kind = FileKind.for_local_path(relative_path)
        if kind is None:
            continue
        if not sync_filter.allows(relative_path):
            continue
        candidates.append((file_path, relative_path, kind))

    return candidates


def scan_local_tree(
    root: Path,
    *,
    exclude_patterns: list[str] | tuple[str, ...] = (),
    use_gitignore: bool = True,
) -> list[LocalScriptFile]:
    """Read every syncable file under `root`.

    Raises OSError or UnicodeDecodeError when a candidate can not be read.
    """
    root = root.resolve()
    patterns = list(exclude_patterns)
    if use_gitignore:
        patterns.extend(load_gitignore_patterns(root))
    sync_filter = build_sync_filter(patterns)

    files: list[LocalScriptFile] = []
    for file_path, relative_path, kind in _discover_candidates(root, sync_filter):
        content = file_path.read_text(encoding="utf-8")
        stat = file_path.stat()
        files.append(
            LocalScriptFile(
                local_path=relative_path,
                name=remote_name_for(relative_path),
                kind=kind,
                content=content,
                last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            )
        )
    return files
