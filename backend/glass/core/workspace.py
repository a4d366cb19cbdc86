"""
Glass - Workspace Manager
=========================

Isolated git worktrees for fix sessions. Each fix runs on its own branch
in its own directory so the project checkout is never written to.
"""

import asyncio
import re
import shlex
from dataclasses import dataclass
from pathlib import Path

import structlog

from glass.core.config import settings
from glass.core.errors import WorkspaceError

logger = structlog.get_logger()


@dataclass(frozen=True)
class Workspace:
    path: str
    branch: str


def _slug(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-") or "issue"


class WorkspaceManager:
    """Creates and removes worktrees with configurable shell commands."""

    def __init__(
        self,
        project_path: str = None,
        parent_directory: str = None,
        branch_prefix: str = None,
        create_command: str = None,
        remove_command: str = None,
    ):
        self.project_path = Path(project_path or settings.PROJECT_PATH).resolve()
        parent = Path(parent_directory or settings.WORKTREE_PARENT_DIRECTORY)
        if not parent.is_absolute():
            parent = self.project_path / parent
        self.parent_directory = parent.resolve()
        self.branch_prefix = branch_prefix if branch_prefix is not None else settings.WORKTREE_BRANCH_PREFIX
        self.create_command = create_command or settings.WORKTREE_CREATE_COMMAND
        self.remove_command = remove_command or settings.WORKTREE_REMOVE_COMMAND

    def workspace_for(self, issue_id: str) -> Workspace:
        slug = _slug(issue_id)
        return Workspace(
            path=str(self.parent_directory / slug),
            branch=f"{self.branch_prefix}{slug}",
        )

    async def _run(self, template: str, workspace: Workspace) -> None:
        args = [
            part.format(branch=workspace.branch, path=workspace.path)
            for part in shlex.split(template)
        ]
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.project_path),
            )
        except OSError as e:
            raise WorkspaceError(f"Failed to run '{args[0]}': {e}") from e

        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            detail = (stderr or stdout).decode(errors="replace").strip()
            raise WorkspaceError(
                f"Command '{' '.join(args)}' exited with code {proc.returncode}: {detail}"
            )

    async def create(self, issue_id: str) -> Workspace:
        """Create a fresh worktree and branch for the issue, replacing a stale one."""
        workspace = self.workspace_for(issue_id)
        # Left behind by a fix that failed before cleanup
        await self.remove(workspace)
        self.parent_directory.mkdir(parents=True, exist_ok=True)
        await self._run(self.create_command, workspace)
        logger.info("workspace_created", issue_id=issue_id, path=workspace.path, branch=workspace.branch)
        return workspace

    async def remove(self, workspace: Workspace) -> None:
        if not Path(workspace.path).exists():
            return
        await self._run(self.remove_command, workspace)
        logger.info("workspace_removed", path=workspace.path)
