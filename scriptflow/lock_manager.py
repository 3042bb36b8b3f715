"""Cross-process advisory locks, one JSON record file per remote resource.

A lock is taken by creating `<lock_dir>/<resource_id>.lock` with O_EXCL, so at
most one record per resource can exist. Records left behind by crashed holders
are reclaimed: on the same host when the owner pid is gone, on another host
once the record is older than `stale_after`.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import socket
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable

from loguru import logger

from scriptflow.config import LockSettings
from scriptflow.errors import LockTimeoutError, ValidationError
from scriptflow.models import LockRecord


LOCK_SUFFIX = ".lock"
RECLAIM_SUFFIX = ".reclaim"
RECLAIM_GUARD_STALE_SECONDS = 10.0
_RESOURCE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]{0,199}$")


@dataclass(slots=True)
class LockMetrics:
    acquisitions: int = 0
    contentions: int = 0
    timeouts: int = 0
    stale_removed: int = 0
    releases: int = 0


@dataclass(frozen=True, slots=True)
class LockStatus:
    resource_id: str
    locked: bool
    holder: LockRecord | None = None
    held_by_me: bool = False
    stale: bool = False


def _is_process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user.
        return True
    except OSError:
        return False
    return True


class LockManager:
    def __init__(
        self,
        settings: LockSettings,
        *,
        hostname: str | None = None,
        pid: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.hostname = hostname or socket.gethostname()
        self.pid = pid if pid is not None else os.getpid()
        self.metrics = LockMetrics()
        self._clock = clock
        self._held: dict[str, LockRecord] = {}
        self._cleanup_running = False

    @property
    def lock_dir(self) -> Path:
        return self.settings.lock_dir

    @property
    def held_resources(self) -> tuple[str, ...]:
        return tuple(sorted(self._held))

    def is_held(self, resource_id: str) -> bool:
        return resource_id in self._held

    def lock_path(self, resource_id: str) -> Path:
        if not _RESOURCE_ID_PATTERN.match(resource_id or ""):
            raise ValidationError(
                f"Invalid resource id for locking: {resource_id!r}",
                details={"resource_id": resource_id},
            )
        return self.lock_dir / f"{resource_id}{LOCK_SUFFIX}"

    def _ensure_lock_dir(self) -> None:
        if not self.lock_dir.exists():
            self.lock_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(self.lock_dir, 0o700)

    def _try_create(self, path: Path, record: LockRecord) -> bool:
        try:
            fd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            return False
        try:
            os.write(fd, json.dumps(record.to_json()).encode("utf-8"))
            os.fsync(fd)
        finally:
            os.close(fd)
        return True

    def read_lock(self, resource_id: str) -> LockRecord | None:
        """Return the current record, or None when absent or unreadable."""
        return self._read_record(self.lock_path(resource_id))

    def _read_record(self, path: Path) -> LockRecord | None:
        try:
            with path.open("r", encoding="utf-8") as fh:
                return LockRecord.from_json(json.load(fh))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.debug(f"unreadable lock record {path}: {exc}")
            return None

    def is_stale(self, record: LockRecord) -> bool:
        if record.hostname == self.hostname:
            return not _is_process_alive(record.owner_pid)
        return record.age_seconds(self._clock()) > self.settings.stale_after

    def _is_path_stale(self, path: Path, record: LockRecord | None) -> bool:
        if record is not None:
            return self.is_stale(record)
        # Corrupt or half-written record: only trust its age.
        try:
            age = self._clock() - path.stat().st_mtime
        except FileNotFoundError:
            return False
        return age > self.settings.stale_after

    def _claim_reclaim_guard(self, guard: Path) -> bool:
        try:
            fd = os.open(str(guard), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            # Only a crashed reclaimer leaves a guard this old.
            try:
                if time.time() - guard.stat().st_mtime > RECLAIM_GUARD_STALE_SECONDS:
                    guard.unlink(missing_ok=True)
                    logger.warning(f"removed abandoned reclaim guard {guard.name}")
            except OSError as exc:
                logger.debug(f"could not inspect reclaim guard {guard.name}: {exc}")
            return False
        os.close(fd)
        return True

    def _remove_stale(self, path: Path, record: LockRecord | None) -> bool:
        """Delete the stale record `record` judged earlier, if it is still the one on disk.

        Reclaims are serialised behind an O_EXCL guard file and re-read under it,
        so a record created by a concurrent reclaimer is never removed.
        """
        guard = path.with_name(path.name + RECLAIM_SUFFIX)
        if not self._claim_reclaim_guard(guard):
            return False
        try:
            current = self._read_record(path)
            if current != record or not self._is_path_stale(path, current):
                logger.debug(f"lock {path.name} changed before it could be reclaimed")
                return False
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning(f"failed to remove stale lock {path}: {exc}")
            return False
        finally:
            guard.unlink(missing_ok=True)
        self.metrics.stale_removed += 1
        holder = record.describe() if record is not None else "unreadable record"
        logger.info(f"removed stale lock {path.name} ({holder})")
        return True

    async def acquire(
        self,
        resource_id: str,
        operation: str = "",
        timeout: float | None = None,
    ) -> LockRecord:
        path = self.lock_path(resource_id)
        self._ensure_lock_dir()
        timeout = self.settings.timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        contended = False

        while True:
            record = LockRecord(
                resource_id=resource_id,
                owner_pid=self.pid,
                hostname=self.hostname,
                acquired_at=self._clock(),
                operation=operation,
            )
            if self._try_create(path, record):
                self._held[resource_id] = record
                self.metrics.acquisitions += 1
                logger.debug(f"acquired lock {resource_id} for {operation or 'unnamed operation'}")
                return record

            holder = self.read_lock(resource_id)
            if self._is_path_stale(path, holder) and self._remove_stale(path, holder):
                continue

            if not contended:
                contended = True
                self.metrics.contentions += 1
                logger.debug(f"lock {resource_id} busy, waiting")

            if time.monotonic() >= deadline:
                self.metrics.timeouts += 1
                raise LockTimeoutError(resource_id, timeout, self.read_lock(resource_id))
            await asyncio.sleep(self.settings.poll_interval)

    async def release(self, resource_id: str) -> bool:
        """Remove a lock this process holds. Never raises."""
        mine = self._held.pop(resource_id, None)
        if mine is None:
            return False
        try:
            path = self.lock_path(resource_id)
            current = self.read_lock(resource_id)
            if current is not None and (
                current.owner_pid != mine.owner_pid or current.hostname != mine.hostname
            ):
                logger.warning(f"lock {resource_id} was taken over by {current.describe()}; leaving it")
                return False
            path.unlink(missing_ok=True)
        except Exception as exc:
            logger.error(f"failed to release lock {resource_id}: {exc}")
            return False
        self.metrics.releases += 1
        logger.debug(f"released lock {resource_id}")
        return True

    async def release_all(self) -> int:
        released = 0
        for resource_id in list(self._held):
            if await self.release(resource_id):
                released += 1
        return released

    @asynccontextmanager
    async def hold(
        self,
        resource_id: str,
        operation: str = "",
        timeout: float | None = None,
    ) -> AsyncIterator[LockRecord]:
        record = await self.acquire(resource_id, operation, timeout)
        try:
            yield record
        finally:
            await self.release(resource_id)

    async def cleanup_stale_locks(self) -> int:
        if self._cleanup_running:
            return 0
        self._cleanup_running = True
        removed = 0
        try:
            if not self.lock_dir.exists():
                return 0
            for path in sorted(self.lock_dir.glob(f"*{LOCK_SUFFIX}")):
                record = self._read_record(path)
                if self._is_path_stale(path, record) and self._remove_stale(path, record):
                    removed += 1
        finally:
            self._cleanup_running = False
        if removed:
            logger.info(f"cleaned up {removed} stale lock(s)")
        return removed

    def lock_status(self, resource_id: str) -> LockStatus:
        path = self.lock_path(resource_id)
        if not path.exists():
            return LockStatus(resource_id=resource_id, locked=False)
        holder = self.read_lock(resource_id)
        return LockStatus(
            resource_id=resource_id,
            locked=True,
            holder=holder,
            held_by_me=resource_id in self._held,
            stale=self._is_path_stale(path, holder),
        )

    def list_locks(self) -> list[LockStatus]:
        if not self.lock_dir.exists():
            return []
        return [
            self.lock_status(path.name[: -len(LOCK_SUFFIX)])
            for path in sorted(self.lock_dir.glob(f"*{LOCK_SUFFIX}"))
        ]

    def metrics_snapshot(self) -> dict[str, int]:
        return {
            "acquisitions": self.metrics.acquisitions,
            "contentions": self.metrics.contentions,
            "timeouts": self.metrics.timeouts,
            "stale_removed": self.metrics.stale_removed,
            "releases": self.metrics.releases,
            "currently_held": len(self._held),
        }
