from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterable

from loguru import logger


# Remote names under these prefixes belong to the runtime, never to the user.
SYSTEM_PREFIXES = (".git/", "__mcp_", "common-js/", "CommonJS")


def _clean(pattern: str) -> str:
    cleaned = pattern.strip().replace("\\", "/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned


def _pattern_hits(name: str, pattern: str) -> bool:
    """True when `pattern` selects `name`.

    Patterns follow gitignore loosely: `/x` is anchored at the root, `x/`
    selects a directory at any depth, anything else is a prefix, a basename
    or a glob.
    """
    if not pattern:
        return False
    candidate = PurePosixPath(name)
    if pattern.startswith("/"):
        anchored = pattern[1:]
        return name == anchored or name.startswith(anchored.rstrip("/") + "/") or candidate.match(anchored)
    if pattern.endswith("/"):
        return f"/{pattern}" in f"/{name}"
    if name == pattern or name.startswith(pattern) or candidate.name == pattern:
        return True
    return candidate.match(pattern) or candidate.match(f"**/{pattern}")


def is_system_file(name: str) -> bool:
    return name.startswith(SYSTEM_PREFIXES)


@dataclass(frozen=True, slots=True)
class SyncFilter:
    """Decides which file names take part in a sync."""

    excludes: tuple[str, ...] = ()
    includes: tuple[str, ...] = ()
    skip_system: bool = False

    def allows(self, name: str) -> bool:
        if self.skip_system and is_system_file(name):
            return False
        if self.includes and not any(_pattern_hits(name, p) for p in self.includes):
            return False
        return not any(_pattern_hits(name, p) for p in self.excludes)

    def allows_file(self, name: str, local_forms: Iterable[str] = ()) -> bool:
        """Like `allows`, but a pattern matching any local form of `name` counts too."""
        if self.skip_system and is_system_file(name):
            return False
        forms = (name, *local_forms)
        if self.includes and not any(_pattern_hits(f, p) for f in forms for p in self.includes):
            return False
        return not any(_pattern_hits(f, p) for f in forms for p in self.excludes)


def build_sync_filter(
    excludes: list[str] | tuple[str, ...] = (),
    *,
    includes: list[str] | tuple[str, ...] = (),
    skip_system: bool = False,
) -> SyncFilter:
    return SyncFilter(
        excludes=tuple(_clean(p) for p in excludes if p and _clean(p)),
        includes=tuple(_clean(p) for p in includes if p and _clean(p)),
        skip_system=skip_system,
    )


def load_gitignore_patterns(root: Path) -> list[str]:
    """Read `.gitignore` entries under `root`. Negations are not supported and are skipped."""
    gitignore = root / ".gitignore"
    if not gitignore.exists():
        return []

    patterns: list[str] = []
    with gitignore.open("r", encoding="utf-8") as fh:
        for line in fh:
            entry = line.strip()
            if not entry or entry.startswith("#"):
                continue
            if entry.startswith("!"):
                logger.debug(f"skipping negated gitignore pattern {entry}")
                continue
            patterns.append(entry)
    return patterns
