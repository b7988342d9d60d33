# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_executor

import mimetypes
import os
import platform
import shutil
import stat
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, Protocol

import aiofiles
import anyio
from loguru import logger

from coreason_executor.config import HEALTH_CHECK_TIMEOUT_SECONDS, TOKEN_TTL_SECONDS, ExecutorConfig
from coreason_executor.exceptions import (
    ExecutionError,
    ExecutionTimeoutError,
    ExecutorError,
    InvalidInputError,
    ResourceError,
    SpawnError,
    TokenNotFoundError,
    UploadTooLargeError,
)
from coreason_executor.models import (
    DownloadToken,
    ExecutionResult,
    Exited,
    GeneratedFile,
    HealthReport,
    HostedFile,
    ProcessOutcome,
    SpawnFailed,
    TimedOut,
    Workspace,
    isoformat,
)
from coreason_executor.registry import TokenRegistry
from coreason_executor.runner import ProcessRunner, build_environment
from coreason_executor.workspace import WorkspaceManager

NO_OUTPUT = "Code executed successfully (no output)"
UPLOAD_CHUNK_SIZE = 64 * 1024
DEFAULT_MIME_TYPE = "application/octet-stream"


class ExecutionState(str, Enum):
    CREATING = "creating"
    RUNNING = "running"
    COLLECTING = "collecting"
    RESPONDING = "responding"
    CLEANING = "cleaning"
    DONE = "done"
    ERROR = "error"


class AsyncReader(Protocol):
    """Anything with an awaitable ``read(size)``, e.g. Starlette's ``UploadFile``."""

    async def read(self, size: int = -1) -> bytes: ...


@dataclass
class Download:
    """A token resolved to an already-open file handle."""

    token: DownloadToken
    handle: Any
    size: int

    @property
    def filename(self) -> str:
        return self.token.path.name

    @property
    def mime_type(self) -> str:
        return guess_mime_type(self.token.path)


def guess_mime_type(path: Path) -> str:
    mime_type, _ = mimetypes.guess_type(path.name)
    return mime_type or DEFAULT_MIME_TYPE


class LifecycleCoordinator:
    """Drives execute and upload requests through their workspace lifecycle.

    Each request gets its own workspace. Files that end up behind a download token
    outlive the request; everything else is removed before the request completes.
    Workspaces that still hold tokenised files are released to the expiry sweeper.
    """

    def __init__(
        self,
        config: ExecutorConfig | None = None,
        registry: TokenRegistry | None = None,
        workspaces: WorkspaceManager | None = None,
        runner: ProcessRunner | None = None,
        token_ttl: float = TOKEN_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """Initializes the LifecycleCoordinator.

        Args:
            config: Service configuration. Defaults are used if omitted.
            registry: Token registry shared with the sweeper and download handler.
            workspaces: Workspace allocator; defaults to one rooted at ``config.temp_dir``.
            runner: Process runner; defaults to one bounded by the configured timeouts.
            token_ttl: Lifetime of minted download tokens, in seconds.
            clock: Source of the current POSIX time.
        """
        self.config = config or ExecutorConfig()
        self.clock = clock
        self.registry = registry or TokenRegistry(clock=clock)
        self.workspaces = workspaces or WorkspaceManager(self.config.temp_dir, clock=clock)
        self.runner = runner or ProcessRunner(
            min_timeout=self.config.min_timeout,
            max_timeout=self.config.max_timeout,
            default_timeout=self.config.default_timeout,
        )
        self.token_ttl = token_ttl
        self.started_at = clock()

    async def prepare(self) -> None:
        """Ensure the workspace root exists."""
        try:
            await anyio.Path(self.workspaces.root).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ResourceError(f"Failed to create temp directory {self.workspaces.root}: {e}") from e

    async def execute(self, code: str, timeout: float | None = None, allow_network: bool = False) -> ExecutionResult:
        """Run ``code`` in a fresh workspace and expose the files it leaves behind.

        Args:
            code: Python source.
            timeout: Requested wall-clock limit in seconds, clamped by the runner.
            allow_network: Keep proxy variables in the child's environment.

        Returns:
            ExecutionResult: stdout and download descriptors for generated files.

        Raises:
            ResourceError: Workspace or script could not be written.
            SpawnError: The interpreter could not be started.
            ExecutionTimeoutError: The deadline passed; the process tree was killed.
            ExecutionError: The script exited with a non-zero status.
        """
        if not code or not isinstance(code, str):
            raise InvalidInputError("No valid code provided")

        self._transition(None, ExecutionState.CREATING)
        workspace = await self.workspaces.create()
        try:
            script = workspace.root / f"script_{workspace.id}.py"
            try:
                async with aiofiles.open(script, "w", encoding="utf-8") as f:
                    await f.write(code)
            except UnicodeError as e:
                raise InvalidInputError("No valid code provided", details=f"Code is not valid UTF-8: {e}") from e
            except OSError as e:
                raise ResourceError(f"Failed to write script: {e}") from e

            self._transition(workspace, ExecutionState.RUNNING)
            outcome = await self.runner.run(
                [self.config.python_executable, str(script)],
                cwd=workspace.root,
                timeout=timeout,
                env=build_environment(allow_network),
            )
            stdout = self._check_outcome(outcome).stdout

            self._transition(workspace, ExecutionState.COLLECTING)
            generated = await self._collect(workspace, script)

            self._transition(workspace, ExecutionState.RESPONDING)
            logger.info(f"Execution successful for workspace {workspace.id}")
            return ExecutionResult(
                output=stdout or NO_OUTPUT,
                generated_files=generated,
                execution_time=isoformat(self.clock()),
            )
        except ExecutorError as e:
            self._transition(workspace, ExecutionState.ERROR)
            logger.error(f"Execution failed for workspace {workspace.id}: {e}")
            raise
        finally:
            self._transition(workspace, ExecutionState.CLEANING)
            await self._clean(workspace)
            self._transition(workspace, ExecutionState.DONE)

    async def host(self, filename: str | None, source: AsyncReader) -> HostedFile:
        """Store an uploaded file and mint a download token for it.

        Raises:
            InvalidInputError: No usable filename was supplied.
            UploadTooLargeError: The upload exceeds ``max_upload_bytes``.
            ResourceError: The file could not be written.
        """
        name = Path(filename or "").name
        if not name or name in {".", ".."}:
            raise InvalidInputError("No file uploaded")

        workspace = await self.workspaces.create()
        try:
            target = workspace.root / name
            size = 0
            try:
                async with aiofiles.open(target, "wb") as out:
                    while True:
                        chunk = await source.read(UPLOAD_CHUNK_SIZE)
                        if not chunk:
                            break
                        size += len(chunk)
                        if size > self.config.max_upload_bytes:
                            raise UploadTooLargeError(
                                details=f"Maximum upload size is {self.config.max_upload_bytes} bytes"
                            )
                        await out.write(chunk)
            except OSError as e:
                raise ResourceError(f"Failed to store upload: {e}") from e

            entry = await self.registry.mint(target, workspace.id, self.token_ttl)
            logger.info(f"Hosted file {name} ({size} bytes) in workspace {workspace.id}")
            return HostedFile(
                download_url=f"/download/{entry.token}",
                expires=isoformat(entry.expires_at),
                filename=name,
                size=size,
            )
        finally:
            await self._clean(workspace)

    async def open_download(self, token: str) -> Download:
        """Resolve ``token`` and open its file for streaming.

        Raises:
            TokenNotFoundError: Unknown token, or its file has vanished.
            TokenExpiredError: The token's expiry has passed.
        """

        async def _open(path: Path) -> tuple[Any, int]:
            handle = await aiofiles.open(path, "rb")
            try:
                return handle, os.fstat(handle.fileno()).st_size
            except OSError:
                await handle.close()
                raise

        try:
            entry, (handle, size) = await self.registry.open(token, _open)
        except OSError as e:
            entry = await self.registry.resolve(token)
            logger.error(f"Download failed for token {token[:8]}...: {e}")
            await self.reclaim(entry.workspace_id)
            raise TokenNotFoundError("File not found") from e

        logger.info(f"File download started for token {token[:8]}...")
        return Download(token=entry, handle=handle, size=size)

    async def reclaim(self, workspace_id: str) -> None:
        """Revoke a workspace's tokens and delete its directory as one step."""
        workspace = self.workspaces.get(workspace_id)
        finalizer = partial(self.workspaces.destroy, workspace) if workspace else None
        await self.registry.revoke_all(workspace_id, finalizer=finalizer)

    async def health(self) -> HealthReport:
        """Probe the interpreter and report service state.

        Raises:
            SpawnError: The interpreter is missing.
            ExecutionError: The interpreter failed to report its version.
        """
        await self.prepare()
        outcome = await self.runner.run(
            [self.config.python_executable, "--version"],
            cwd=self.workspaces.root,
            timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
        )
        exited = self._check_outcome(outcome)
        version = (exited.stdout or exited.stderr).strip()
        now = self.clock()
        return HealthReport(
            status="healthy",
            python_version=version,
            platform=platform.system().lower(),
            architecture=platform.machine(),
            temp_dir=str(self.workspaces.root),
            uptime=int(now - self.started_at),
            active_downloads=self.registry.live_count(),
            timestamp=isoformat(now),
        )

    def _check_outcome(self, outcome: ProcessOutcome) -> Exited:
        """Return a clean exit unchanged, raise the matching error otherwise."""
        if isinstance(outcome, SpawnFailed):
            raise SpawnError(f"Failed to start process: {outcome.reason}", details=outcome.reason)
        if isinstance(outcome, TimedOut):
            raise ExecutionTimeoutError(
                f"Execution exceeded {outcome.timeout:g} seconds limit.",
                details=f"Execution exceeded {outcome.timeout:g} seconds limit.",
            )
        if not outcome.ok:
            message = f"Process exited with status {outcome.returncode}"
            raise ExecutionError(message, details=outcome.stderr or message)
        return outcome

    async def _collect(self, workspace: Workspace, script: Path) -> list[GeneratedFile]:
        """Mint download tokens for regular files the script left in its workspace."""
        generated: list[GeneratedFile] = []
        try:
            entries = sorted([entry async for entry in anyio.Path(workspace.root).iterdir()], key=str)
            for entry in entries:
                if entry.name == script.name or entry.name.endswith(".py"):
                    continue
                info = await entry.lstat()
                # Symlinks and directories are never exposed
                if not stat.S_ISREG(info.st_mode):
                    continue
                token = await self.registry.mint(Path(entry), workspace.id, self.token_ttl)
                generated.append(
                    GeneratedFile(
                        filename=entry.name,
                        download_url=f"/download/{token.token}",
                        expires=isoformat(token.expires_at),
                        mime_type=guess_mime_type(Path(entry)),
                        size=info.st_size,
                    )
                )
        except OSError as e:
            logger.error(f"Directory read error for workspace {workspace.id}: {e}")
        return generated

    async def _clean(self, workspace: Workspace) -> None:
        """Remove everything not behind a live token; destroy the workspace if that empties it.

        Never raises. On failure the workspace is released so the sweeper retries.
        """
        try:
            referenced = await self.registry.live_paths(workspace.id)
            root = anyio.Path(workspace.root)
            for entry in [entry async for entry in root.iterdir()]:
                if Path(entry) in referenced:
                    continue
                if await entry.is_dir() and not await entry.is_symlink():
                    await anyio.to_thread.run_sync(shutil.rmtree, Path(entry))
                else:
                    await entry.unlink(missing_ok=True)

            remaining = [entry async for entry in root.iterdir()]
            if remaining:
                self.workspaces.release(workspace)
                logger.debug(f"Workspace {workspace.id} retained for {len(remaining)} download(s)")
            else:
                await self.reclaim(workspace.id)
        except Exception as e:
            logger.error(f"Cleanup failed for {workspace.root}: {e}")
            self.workspaces.release(workspace)

    @staticmethod
    def _transition(workspace: Workspace | None, state: ExecutionState) -> None:
        logger.debug(f"Workspace {workspace.id if workspace else '-'}: {state.value}")
