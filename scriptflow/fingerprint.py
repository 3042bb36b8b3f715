"""Git-compatible content fingerprints.

A fingerprint is the blob hash `git hash-object` would print for the same
bytes, so any file in the remote store can be checked against a file on disk
with ordinary git tooling.
"""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone

from scriptflow.models import FileFingerprint


BOM = "\ufeff"
_HASH_PATTERN = re.compile(r"^[0-9a-f]{40}$")


def normalize_for_hashing(text: str) -> str:
    """Strip a leading BOM and convert CRLF line endings to LF."""
    if text.startswith(BOM):
        text = text[1:]
    return text.replace("\r\n", "\n")


def git_blob_hash(content: bytes | str) -> str:
    if isinstance(content, str):
        data = normalize_for_hashing(content).encode("utf-8")
    else:
        data = content
    digest = hashlib.sha1()
    digest.update(b"blob " + str(len(data)).encode("ascii") + b"\0")
    digest.update(data)
    return digest.hexdigest()


def hashes_equal(a: str | None, b: str | None) -> bool:
    if a is None or b is None:
        return False
    return a == b


def is_valid_hash(value: str | None) -> bool:
    return bool(value) and _HASH_PATTERN.match(value) is not None


def content_size(content: str) -> int:
    return len(normalize_for_hashing(content).encode("utf-8"))


def fingerprint(
    path: str,
    content: str,
    last_modified: datetime | None = None,
) -> FileFingerprint:
    return FileFingerprint(
        path=path,
        content_hash=git_blob_hash(content),
        size=content_size(content),
        last_modified=last_modified or datetime.now(timezone.utc),
    )
