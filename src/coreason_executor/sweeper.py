# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_executor

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial

from loguru import logger

from coreason_executor.config import SWEEP_INTERVAL_SECONDS, TOKEN_TTL_SECONDS
from coreason_executor.registry import TokenRegistry
from coreason_executor.workspace import WorkspaceManager


@dataclass
class SweepReport:
    expired_tokens: int = 0
    reclaimed_workspaces: int = 0
    removed_orphans: int = 0
    failures: int = 0


class ExpirySweeper:
    """Periodically drops expired tokens and reclaims workspaces nothing points into.

    Only released workspaces are candidates; a workspace whose request is still
    running is never touched. Directories under the workspace root that no manager
    tracks (left over from a previous process) are removed once they are older than
    ``orphan_age``.
    """

    def __init__(
        self,
        registry: TokenRegistry,
        workspaces: WorkspaceManager,
        interval: float = SWEEP_INTERVAL_SECONDS,
        orphan_age: float = TOKEN_TTL_SECONDS + SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.workspaces = workspaces
        self.interval = interval
        self.orphan_age = orphan_age
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background sweep task if it is not already running."""
        if not self.running:
            self._task = asyncio.create_task(self._loop())

    async def _loop(self) -> None:
        logger.info(f"Expiry sweeper started (interval {self.interval}s)")
        try:
            while True:
                await asyncio.sleep(self.interval)
                try:
                    await self.sweep()
                except Exception as e:
                    logger.error(f"Sweep failed: {e}")
        except asyncio.CancelledError:
            logger.info("Expiry sweeper cancelled")

    async def sweep(self) -> SweepReport:
        """Run one sweep. A failure on one workspace does not stop the others."""
        report = SweepReport()
        expired = await self.registry.expire()
        report.expired_tokens = len(expired)

        for workspace in self.workspaces.released():
            try:
                if await self.registry.has_live(workspace.id):
                    continue
                await self.registry.revoke_all(workspace.id, finalizer=partial(self.workspaces.destroy, workspace))
                report.reclaimed_workspaces += 1
            except Exception as e:
                report.failures += 1
                logger.error(f"Cleanup failed for {workspace.root}: {e}")

        try:
            orphans = await self.workspaces.orphans(older_than=self._clock() - self.orphan_age)
        except OSError as e:
            orphans = []
            report.failures += 1
            logger.error(f"Failed to scan {self.workspaces.root} for orphans: {e}")
        for path in orphans:
            try:
                await self.workspaces.remove_orphan(path)
                report.removed_orphans += 1
            except OSError as e:
                report.failures += 1
                logger.error(f"Cleanup failed for {path}: {e}")

        if report.expired_tokens or report.reclaimed_workspaces or report.removed_orphans or report.failures:
            logger.info(
                f"Sweep: {report.expired_tokens} token(s) expired, "
                f"{report.reclaimed_workspaces} workspace(s) reclaimed, "
                f"{report.removed_orphans} orphan(s) removed, {report.failures} failure(s)"
            )
        return report

    async def stop(self) -> None:
        """Cancel the background task and wait for it to finish."""
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
