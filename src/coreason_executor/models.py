# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_executor

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def isoformat(timestamp: float) -> str:
    """Render a POSIX timestamp as an ISO-8601 UTC string with millisecond precision."""
    moment = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class Workspace:
    """A disposable directory owned by a single execute/upload request.

    Attributes:
        id: Opaque unique identifier, also used in the directory name.
        root: Absolute path of the directory.
        created_at: POSIX timestamp of creation.
    """

    id: str
    root: Path
    created_at: float


@dataclass(frozen=True)
class DownloadToken:
    """An opaque handle onto one file inside a workspace, valid until ``expires_at``."""

    token: str
    path: Path
    workspace_id: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


# Process outcomes returned by the runner. Exactly one variant describes a run.


@dataclass(frozen=True)
class Exited:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True)
class TimedOut:
    timeout: float
    stderr: str = ""


@dataclass(frozen=True)
class SpawnFailed:
    reason: str


ProcessOutcome = Exited | TimedOut | SpawnFailed


class ApiModel(BaseModel):
    """Base for wire payloads: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExecuteRequest(BaseModel):
    code: str = Field(..., min_length=1, description="Python source to execute.")
    timeout: float | None = Field(default=None, description="Requested wall-clock limit in seconds.")
    allow_network: bool = Field(default=False, description="Keep proxy variables in the environment.")


class GeneratedFile(ApiModel):
    filename: str
    download_url: str
    expires: str
    mime_type: str
    size: int


class ExecutionResult(ApiModel):
    """The outcome of one successful execution request. Never persisted."""

    output: str
    success: bool = True
    generated_files: list[GeneratedFile] = Field(default_factory=list)
    execution_time: str


class HostedFile(ApiModel):
    download_url: str
    expires: str
    filename: str
    size: int


class ErrorResponse(ApiModel):
    error: str
    details: str | None = None
    success: bool = False
    timestamp: str
    request_id: str | None = None
    code: str | None = None


class HealthReport(ApiModel):
    status: str
    python_version: str
    platform: str
    architecture: str
    temp_dir: str
    uptime: int
    active_downloads: int
    timestamp: str
