from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import aiosqlite
from loguru import logger

from scriptflow.config import manifest_db_path
from scriptflow.models import SyncDirection, SyncManifest


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS baseline_state (
    path TEXT PRIMARY KEY,
    content_hash TEXT NOT NULL
);
"""

META_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

META_RESOURCE_ID = "resource_id"
META_DIRECTION = "last_sync_direction"
META_SYNCED_AT = "last_sync_at"


async def ensure_db(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(db_path) as db:
        await db.execute(SCHEMA_SQL)
        await db.execute(META_SCHEMA_SQL)
        await db.commit()


async def _has_baseline_table(db: aiosqlite.Connection) -> bool:
    cursor = await db.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'baseline_state'"
    )
    row = await cursor.fetchone()
    await cursor.close()
    return row is not None


async def _get_meta(db: aiosqlite.Connection, key: str) -> str | None:
    cursor = await db.execute("SELECT value FROM sync_meta WHERE key = ?", (key,))
    row = await cursor.fetchone()
    await cursor.close()
    if row is None:
        return None
    return str(row[0])


class ManifestStore:
    """Baseline hashes from the last successful sync of one working copy."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    @classmethod
    def for_local_root(cls, local_root: Path) -> ManifestStore:
        return cls(manifest_db_path(local_root))

    async def load(self) -> SyncManifest:
        # Read-only: a missing database means bootstrap and is not created here.
        if not self.db_path.exists():
            return SyncManifest(resource_id=None, exists=False)

        async with aiosqlite.connect(self.db_path) as db:
            if not await _has_baseline_table(db):
                return SyncManifest(resource_id=None, exists=False)
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT path, content_hash FROM baseline_state ORDER BY path")
            rows = await cursor.fetchall()
            await cursor.close()
            resource_id = await _get_meta(db, META_RESOURCE_ID)
            direction = await _get_meta(db, META_DIRECTION)
            synced_at = await _get_meta(db, META_SYNCED_AT)

        return SyncManifest(
            resource_id=resource_id,
            exists=True,
            baseline_hashes={str(row["path"]): str(row["content_hash"]) for row in rows},
            last_sync_direction=SyncDirection(direction) if direction else None,
            last_sync_at=synced_at,
        )

    async def save(self, resource_id: str, direction: SyncDirection, hashes: dict[str, str]) -> SyncManifest:
        await ensure_db(self.db_path)
        synced_at = datetime.now(timezone.utc).isoformat(timespec="seconds")
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM baseline_state")
            if hashes:
                await db.executemany(
                    "INSERT INTO baseline_state (path, content_hash) VALUES (?, ?)",
                    sorted(hashes.items()),
                )
            await db.executemany(
                "INSERT OR REPLACE INTO sync_meta (key, value) VALUES (?, ?)",
                [
                    (META_RESOURCE_ID, resource_id),
                    (META_DIRECTION, direction.value),
                    (META_SYNCED_AT, synced_at),
                ],
            )
            await db.commit()
        logger.debug(f"saved manifest for {resource_id}: {len(hashes)} baseline file(s)")
        return SyncManifest(
            resource_id=resource_id,
            exists=True,
            baseline_hashes=dict(hashes),
            last_sync_direction=direction,
            last_sync_at=synced_at,
        )

    async def delete(self) -> bool:
        if not self.db_path.exists():
            return False
        self.db_path.unlink()
        return True
