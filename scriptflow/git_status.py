from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

from scriptflow.config import CONFIG_FILENAME
from scriptflow.errors import ScriptFlowError


MAX_LISTED_CHANGES = 10


class GitCommandError(ScriptFlowError):
    code = "GIT_COMMAND_FAILED"


@dataclass(slots=True)
class GitStatus:
    changed_files: list[str] = field(default_factory=list)
    branch: str | None = None

    @property
    def clean(self) -> bool:
        return not self.changed_files

    @property
    def detached(self) -> bool:
        return self.branch == "HEAD"

    def describe_changes(self) -> str:
        listed = ", ".join(self.changed_files[:MAX_LISTED_CHANGES])
        extra = len(self.changed_files) - MAX_LISTED_CHANGES
        if extra > 0:
            listed += f" and {extra} more"
        return listed


def _parse_porcelain(output: str) -> list[str]:
    changed: list[str] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        path = path.strip().strip('"')
        if path == CONFIG_FILENAME:
            continue
        changed.append(path)
    return changed


class GitStatusProbe:
    """Runs `git` to inspect a working copy. Raises FileNotFoundError when git is missing."""

    def __init__(self, git_binary: str = "git") -> None:
        self.git_binary = git_binary

    async def _run(self, repo: Path, *args: str) -> str:
        process = await asyncio.create_subprocess_exec(
            self.git_binary,
            *args,
            cwd=str(repo),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise GitCommandError(
                f"git {' '.join(args)} failed: {stderr.decode('utf-8', 'replace').strip()}",
                details={"returncode": process.returncode},
            )
        return stdout.decode("utf-8", "replace")

    async def status(self, repo: Path) -> GitStatus:
        changed = _parse_porcelain(await self._run(repo, "status", "--porcelain"))
        try:
            branch = (await self._run(repo, "rev-parse", "--abbrev-ref", "HEAD")).strip() or None
        except GitCommandError:
            # Fresh repository without commits.
            branch = None
        return GitStatus(changed_files=changed, branch=branch)
