from __future__ import annotations

import json
import os
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from urllib.parse import urlparse

from loguru import logger

from scriptflow.errors import ValidationError


CONFIG_FILENAME = ".scriptflow.json"
MANIFEST_DB_FILENAME = "scriptflow-manifest.db"
TARGETS_FILENAME = "targets.json"

DEFAULT_LOCK_TIMEOUT_SECONDS = 30.0
MIN_LOCK_TIMEOUT_MS = 1000
DEFAULT_POLL_INTERVAL_SECONDS = 0.1
DEFAULT_STALE_AFTER_SECONDS = 300.0

_SCRIPT_ID_IN_PATH = re.compile(r"/d/([A-Za-z0-9_-]+)")


@dataclass(slots=True)
class ScriptFlowConfig:
    resource_id: str
    local_root: str
    remote_root: str = ""

    @property
    def local_root_path(self) -> Path:
        return Path(self.local_root).resolve()

    @property
    def manifest_db_path(self) -> Path:
        return manifest_db_path(self.local_root_path)

    @property
    def remote_root_path(self) -> Path | None:
        if not self.remote_root:
            return None
        return Path(self.remote_root).expanduser().resolve()


def manifest_db_path(local_root: Path) -> Path:
    # Kept inside .git so the manifest never shows up as an uncommitted change.
    return local_root / ".git" / MANIFEST_DB_FILENAME


def find_config(base_dir: Path | None = None) -> Path:
    """Nearest config file at or above `base_dir`, or where `sf init` would put it."""
    start = (base_dir or Path.cwd()).resolve()
    for directory in (start, *start.parents):
        candidate = directory / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return start / CONFIG_FILENAME


def _config_from_json(data: object, path: Path) -> ScriptFlowConfig:
    if not isinstance(data, dict):
        raise ValidationError(f"Config file {path} must hold a JSON object")
    resource_id = normalize_resource_id(str(data.get("resource_id") or ""))
    if not resource_id:
        raise ValidationError(f"Config file {path} has no resource_id", details={"path": str(path)})

    # Relative roots are relative to the directory holding the config file.
    local_root = (path.parent / str(data.get("local_root") or ".")).resolve()
    remote_root = str(data.get("remote_root") or "")
    if remote_root:
        remote_root = str((path.parent / Path(remote_root).expanduser()).resolve())
        if Path(remote_root) == local_root:
            raise ValidationError(
                f"remote_root must differ from local_root in {path}",
                details={"remote_root": remote_root},
            )
    return ScriptFlowConfig(resource_id=resource_id, local_root=str(local_root), remote_root=remote_root)


def load_config(base_dir: Path | None = None) -> ScriptFlowConfig:
    path = find_config(base_dir)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}. Run `sf init <resource_id>` first.")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Config file {path} is not valid JSON: {exc}", details={"path": str(path)}) from exc
    config = _config_from_json(data, path)
    logger.debug(f"loaded config for {config.resource_id} from {path}")
    return config


def save_config(config: ScriptFlowConfig, base_dir: Path | None = None) -> Path:
    """Validate `config` and write it into `base_dir`, replacing any previous file atomically."""
    path = (base_dir or Path.cwd()).resolve() / CONFIG_FILENAME
    checked = _config_from_json(asdict(config), path)
    tmp_path = path.with_suffix(".json.tmp")
    with tmp_path.open("w", encoding="utf-8") as fh:
        json.dump(asdict(checked), fh, indent=2)
        fh.write("\n")
    os.replace(tmp_path, path)
    return path


def normalize_resource_id(resource_id: str) -> str:
    """Accept a bare script id or an editor URL (`.../projects/<id>/edit`, `.../d/<id>/edit`)."""
    value = (resource_id or "").strip()
    if "://" not in value:
        return value.strip("/")

    parsed = urlparse(value)
    match = _SCRIPT_ID_IN_PATH.search(parsed.path)
    if match:
        return match.group(1)
    parts = [part for part in parsed.path.split("/") if part]
    if "projects" in parts:
        index = parts.index("projects")
        if index + 1 < len(parts):
            return parts[index + 1]
    return value


def scriptflow_home() -> Path:
    override = os.getenv("SCRIPTFLOW_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "scriptflow"


class SyncTargetRegistry:
    """Maps resource ids to the local working copy they sync with."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or scriptflow_home() / TARGETS_FILENAME

    def load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
        return {str(key): str(value) for key, value in data.items()}

    def get(self, resource_id: str) -> Path | None:
        value = self.load().get(resource_id)
        return Path(value) if value else None

    def register(self, resource_id: str, local_path: Path) -> None:
        targets = self.load()
        targets[resource_id] = str(local_path.resolve())
        self._write(targets)

    def unregister(self, resource_id: str) -> bool:
        targets = self.load()
        if targets.pop(resource_id, None) is None:
            return False
        self._write(targets)
        return True

    def _write(self, targets: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as fh:
            json.dump(dict(sorted(targets.items())), fh, indent=2)
            fh.write("\n")


@dataclass(slots=True)
class LockSettings:
    lock_dir: Path
    timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    stale_after: float = DEFAULT_STALE_AFTER_SECONDS


def default_lock_dir() -> Path:
    override = os.getenv("SCRIPTFLOW_LOCK_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".scriptflow" / "locks"


def _timeout_from_env() -> float:
    raw = os.getenv("SCRIPTFLOW_LOCK_TIMEOUT")
    if not raw:
        return DEFAULT_LOCK_TIMEOUT_SECONDS
    try:
        millis = int(raw)
    except ValueError:
        logger.warning(f"ignoring non-numeric SCRIPTFLOW_LOCK_TIMEOUT={raw!r}")
        return DEFAULT_LOCK_TIMEOUT_SECONDS
    if millis < MIN_LOCK_TIMEOUT_MS:
        logger.warning(f"SCRIPTFLOW_LOCK_TIMEOUT must be at least {MIN_LOCK_TIMEOUT_MS}ms, got {millis}")
        return DEFAULT_LOCK_TIMEOUT_SECONDS
    return millis / 1000


def lock_settings_from_env() -> LockSettings:
    return LockSettings(lock_dir=default_lock_dir(), timeout=_timeout_from_env())
