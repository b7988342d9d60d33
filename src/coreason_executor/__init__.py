# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_executor

"""
coreason-executor
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .config import ExecutorConfig
from .coordinator import LifecycleCoordinator
from .exceptions import (
    ExecutionError,
    ExecutionTimeoutError,
    ExecutorError,
    InvalidInputError,
    ResourceError,
    SpawnError,
    TokenExpiredError,
    TokenNotFoundError,
)
from .models import DownloadToken, ExecutionResult, GeneratedFile, HostedFile, Workspace
from .registry import TokenRegistry
from .runner import ProcessRunner
from .sweeper import ExpirySweeper
from .workspace import WorkspaceManager

__all__ = [
    "DownloadToken",
    "ExecutionError",
    "ExecutionResult",
    "ExecutionTimeoutError",
    "ExecutorConfig",
    "ExecutorError",
    "ExpirySweeper",
    "GeneratedFile",
    "HostedFile",
    "InvalidInputError",
    "LifecycleCoordinator",
    "ProcessRunner",
    "ResourceError",
    "SpawnError",
    "TokenExpiredError",
    "TokenNotFoundError",
    "TokenRegistry",
    "Workspace",
    "WorkspaceManager",
]
