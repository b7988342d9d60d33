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
import math
import os
import signal
from collections.abc import Mapping, Sequence
from pathlib import Path

import psutil
from loguru import logger

from coreason_executor.models import Exited, ProcessOutcome, SpawnFailed, TimedOut

# Compared case-insensitively against inherited variable names
PROXY_VARIABLES = frozenset({"http_proxy", "https_proxy", "all_proxy", "ftp_proxy"})

# stderr lines containing any of these are interpreter chatter, not user-facing errors
NOISY_STDERR_MARKERS = ("DEPRECATION", "Python 2.7", "WARNING")


def clamp_timeout(value: float | None, minimum: float, maximum: float, default: float) -> float:
    """Bound a caller-supplied timeout to ``[minimum, maximum]``.

    Missing or non-finite values fall back to ``default`` (itself clamped).
    """
    if value is None or not math.isfinite(value):
        value = default
    return max(minimum, min(float(value), maximum))


def build_environment(allow_network: bool, base: Mapping[str, str] | None = None) -> dict[str, str]:
    """Derive the child environment from ``base`` (the current process by default).

    With network access disabled, proxy variables are removed outright so the child
    cannot reach upstream services through a pre-configured proxy. Direct outbound
    connections are not blocked.
    """
    env = dict(os.environ if base is None else base)
    if not allow_network:
        for key in list(env):
            if key.lower() in PROXY_VARIABLES:
                del env[key]
    return env


def filter_stderr(stderr: str) -> str:
    lines = [
        line
        for line in stderr.splitlines()
        if line.strip() and not any(marker in line for marker in NOISY_STDERR_MARKERS)
    ]
    return "\n".join(lines)


def _decode(data: bytes | None) -> str:
    return data.decode("utf-8", errors="replace") if data else ""


class ProcessRunner:
    """Runs one external command with a wall-clock bound.

    Stateless between calls: any number of runs may be in flight concurrently.
    """

    def __init__(self, min_timeout: float = 1.0, max_timeout: float = 60.0, default_timeout: float = 30.0):
        self.min_timeout = min_timeout
        self.max_timeout = max_timeout
        self.default_timeout = default_timeout

    def bound(self, timeout: float | None) -> float:
        return clamp_timeout(timeout, self.min_timeout, self.max_timeout, self.default_timeout)

    async def run(
        self,
        command: Sequence[str],
        cwd: Path,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProcessOutcome:
        """Execute ``command`` in ``cwd`` and wait for it to finish or time out.

        Args:
            command: Program and arguments.
            cwd: Working directory for the child.
            timeout: Requested limit in seconds; clamped to the configured range.
            env: Full child environment; inherits the current one when omitted.

        Returns:
            ProcessOutcome: ``Exited`` with captured output, ``TimedOut`` after the
            process tree has been killed, or ``SpawnFailed`` if nothing was started.
        """
        limit = self.bound(timeout)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd),
                env=dict(env) if env is not None else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"Failed to spawn {command[0]}: {e}")
            return SpawnFailed(reason=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=limit)
        except asyncio.TimeoutError:
            logger.warning(f"Process {process.pid} exceeded {limit}s limit. Killing process tree.")
            await self._kill_tree(process)
            return TimedOut(timeout=limit)
        except asyncio.CancelledError:
            await self._kill_tree(process)
            raise

        return Exited(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=_decode(stdout),
            stderr=filter_stderr(_decode(stderr)),
        )

    async def _kill_tree(self, process: asyncio.subprocess.Process) -> None:
        """Kill the child and every descendant, then reap the child."""
        try:
            descendants = psutil.Process(process.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            descendants = []

        if os.name == "posix":
            # The child leads its own session, so its group holds the whole tree
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                pass

        # Descendants that moved to another process group
        for proc in descendants:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()
