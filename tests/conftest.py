# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_executor


import sys
from pathlib import Path
from typing import Any

import pytest
from coreason_executor.config import ExecutorConfig
from coreason_executor.coordinator import LifecycleCoordinator
from coreason_executor.registry import TokenRegistry
from coreason_executor.workspace import WorkspaceManager


class FakeClock:
    """Manually advanced replacement for ``time.time``."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUpload:
    """Minimal async reader standing in for an uploaded file."""

    def __init__(self, data: bytes):
        self._data = data
        self._offset = 0

    async def read(self, size: int = -1) -> bytes:
        if size < 0:
            size = len(self._data) - self._offset
        chunk = self._data[self._offset : self._offset + size]
        self._offset += len(chunk)
        return chunk


def workspace_dirs(root: Path) -> list[Path]:
    if not root.exists():
        return []
    return sorted(p for p in root.iterdir() if p.name.startswith("exec_"))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config(tmp_path: Path) -> ExecutorConfig:
    return ExecutorConfig(
        temp_dir=tmp_path / "work",
        log_dir=tmp_path / "logs",
        python_executable=sys.executable,
        min_timeout=0.2,
    )


@pytest.fixture
def workspaces(config: ExecutorConfig) -> WorkspaceManager:
    return WorkspaceManager(config.temp_dir)


@pytest.fixture
def coordinator(config: ExecutorConfig) -> LifecycleCoordinator:
    return LifecycleCoordinator(config)


@pytest.fixture
def clocked_coordinator(config: ExecutorConfig, clock: FakeClock) -> LifecycleCoordinator:
    return LifecycleCoordinator(config, registry=TokenRegistry(clock=clock), clock=clock)


@pytest.fixture
def fake_upload() -> Any:
    return FakeUpload
