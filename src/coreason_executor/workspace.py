# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_executor

import shutil
import time
from collections.abc import Callable
from pathlib import Path
from uuid import uuid4

import anyio
from loguru import logger

from coreason_executor.exceptions import ResourceError
from coreason_executor.models import Workspace

WORKSPACE_PREFIX = "exec_"


class WorkspaceManager:
    """Creates and destroys per-request workspace directories under a common root.

    Every workspace created here is tracked until it has been destroyed. A workspace
    is either leased (its request is still running) or released (the request has
    finished and the directory is waiting on outstanding download tokens).
    """

    def __init__(self, root: Path, clock: Callable[[], float] = time.time):
        """Initializes the WorkspaceManager.

        Args:
            root: Directory under which workspaces are allocated.
            clock: Source of the current POSIX time.
        """
        self.root = Path(root).absolute()
        self._clock = clock
        self._workspaces: dict[str, Workspace] = {}
        self._released: set[str] = set()

    def __len__(self) -> int:
        return len(self._workspaces)

    def __contains__(self, workspace_id: object) -> bool:
        return workspace_id in self._workspaces

    def get(self, workspace_id: str) -> Workspace | None:
        return self._workspaces.get(workspace_id)

    async def create(self) -> Workspace:
        """Allocate a fresh, uniquely named directory.

        Returns:
            Workspace: The newly leased workspace.

        Raises:
            ResourceError: If the directory cannot be created.
        """
        workspace_id = uuid4().hex
        path = self.root / f"{WORKSPACE_PREFIX}{workspace_id}"
        try:
            await anyio.Path(path).mkdir(parents=True, exist_ok=False)
        except OSError as e:
            logger.error(f"Failed to create workspace {path}: {e}")
            raise ResourceError(f"Failed to create workspace: {e}") from e

        workspace = Workspace(id=workspace_id, root=path, created_at=self._clock())
        self._workspaces[workspace_id] = workspace
        logger.debug(f"Created workspace {workspace_id}")
        return workspace

    def release(self, workspace: Workspace) -> None:
        """Hand a still-existing workspace over to the sweeper."""
        if workspace.id in self._workspaces:
            self._released.add(workspace.id)

    def released(self) -> list[Workspace]:
        return [self._workspaces[wid] for wid in list(self._released) if wid in self._workspaces]

    async def destroy(self, workspace: Workspace) -> bool:
        """Recursively remove a workspace directory.

        Idempotent: destroying a workspace that is already gone is a no-op.

        Returns:
            bool: True if this call removed the directory, False if it was already gone.

        Raises:
            ResourceError: If the directory exists but cannot be removed. The workspace
                stays tracked so a later sweep can retry.
        """

        def _remove() -> bool:
            try:
                shutil.rmtree(workspace.root)
            except FileNotFoundError:
                return False
            return True

        try:
            removed = await anyio.to_thread.run_sync(_remove)
        except OSError as e:
            raise ResourceError(f"Failed to remove workspace {workspace.root}: {e}") from e

        self._workspaces.pop(workspace.id, None)
        self._released.discard(workspace.id)
        if removed:
            logger.info(f"Cleaned up execution directory: {workspace.root}")
        return removed

    async def orphans(self, older_than: float) -> list[Path]:
        """List workspace directories on disk that nothing tracks.

        These are left behind by an earlier process that exited before its sweeper
        could reclaim them.

        Args:
            older_than: Only directories last modified before this POSIX time qualify.
        """
        root = anyio.Path(self.root)
        if not await root.exists():
            return []

        tracked = {ws.root.name for ws in self._workspaces.values()}
        found: list[Path] = []
        async for entry in root.iterdir():
            if not entry.name.startswith(WORKSPACE_PREFIX) or entry.name in tracked:
                continue
            try:
                stat = await entry.stat()
            except FileNotFoundError:
                continue
            if stat.st_mtime < older_than and await entry.is_dir():
                found.append(Path(entry))
        return found

    async def remove_orphan(self, path: Path) -> None:
        await anyio.to_thread.run_sync(shutil.rmtree, path)
        logger.info(f"Removed orphaned workspace directory: {path}")
