"""Optimistic-concurrency gate for remote mutations."""

from __future__ import annotations

import difflib
from dataclasses import dataclass

from loguru import logger

from scriptflow.errors import ConflictError
from scriptflow.fingerprint import git_blob_hash, hashes_equal
from scriptflow.models import ConflictDetails, DiffPreview
from scriptflow.module_wrapper import unwrap


MAX_DIFF_CHARS = 10_000
HASH_SOURCE_PARAM = "param"
HASH_SOURCE_LOCAL = "local_file"
HASH_SOURCE_COMPUTE = "computed"


@dataclass(frozen=True, slots=True)
class ConflictCheck:
    has_conflict: bool
    expected_hash: str | None
    current_hash: str | None
    hash_source: str | None
    details: ConflictDetails | None = None
    bypassed: bool = False


def _display(content: str) -> str:
    return unwrap(content).inner_content


def build_diff_preview(path: str, local_content: str | None, remote_content: str | None) -> DiffPreview:
    if local_content is None or remote_content is None:
        return DiffPreview(
            format="info",
            content=(
                f"Remote content of {path} changed since it was last read. "
                "Re-read the file to see the current version."
            ),
        )

    lines = list(
        difflib.unified_diff(
            _display(local_content).splitlines(keepends=True),
            _display(remote_content).splitlines(keepends=True),
            fromfile=f"expected/{path}",
            tofile=f"remote/{path}",
        )
    )
    added = sum(1 for line in lines if line.startswith("+") and not line.startswith("+++"))
    removed = sum(1 for line in lines if line.startswith("-") and not line.startswith("---"))
    text = "".join(lines)
    truncated = len(text) > MAX_DIFF_CHARS
    if truncated:
        text = text[:MAX_DIFF_CHARS] + "\n... diff truncated ...\n"
    return DiffPreview(
        format="unified",
        content=text,
        lines_added=added,
        lines_removed=removed,
        truncated=truncated,
    )


def build_conflict_details(
    path: str,
    expected_hash: str,
    current_hash: str,
    hash_source: str,
    *,
    local_content: str | None = None,
    remote_content: str | None = None,
) -> ConflictDetails:
    return ConflictDetails(
        path=path,
        expected_hash=expected_hash,
        current_hash=current_hash,
        hash_source=hash_source,
        diff=build_diff_preview(path, local_content, remote_content),
    )


def check_for_conflict(
    path: str,
    current_content: str | None,
    *,
    expected_hash: str | None = None,
    local_content: str | None = None,
    hash_source: str | None = None,
    force: bool = False,
) -> ConflictCheck:
    """Compare the caller's view of `path` against the remote's current content.

    The expected hash comes from `expected_hash` when given, otherwise from the
    last known local copy. A missing remote file or a missing expectation is
    never a conflict.
    """
    if expected_hash is None and local_content is not None:
        expected_hash = git_blob_hash(local_content)
        hash_source = hash_source or HASH_SOURCE_LOCAL
    elif expected_hash is not None:
        hash_source = hash_source or HASH_SOURCE_PARAM

    if expected_hash is None or current_content is None:
        return ConflictCheck(False, expected_hash, None, hash_source)

    current_hash = git_blob_hash(current_content)
    if hashes_equal(expected_hash, current_hash):
        return ConflictCheck(False, expected_hash, current_hash, hash_source)

    if force:
        logger.warning(
            f"force overwrite of {path}: expected {expected_hash[:8]}, remote is {current_hash[:8]}"
        )
        return ConflictCheck(False, expected_hash, current_hash, hash_source, bypassed=True)

    details = build_conflict_details(
        path,
        expected_hash,
        current_hash,
        hash_source or HASH_SOURCE_PARAM,
        local_content=local_content,
        remote_content=current_content,
    )
    return ConflictCheck(True, expected_hash, current_hash, hash_source, details=details)


def raise_on_conflict(check: ConflictCheck) -> None:
    if check.has_conflict and check.details is not None:
        raise ConflictError(check.details)
