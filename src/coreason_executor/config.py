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
import tempfile
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Operational constants. These are not read from the environment; constructors accept
# overrides so tests can shrink them.
TOKEN_TTL_SECONDS = 5 * 60
SWEEP_INTERVAL_SECONDS = 60.0
HEALTH_CHECK_TIMEOUT_SECONDS = 5.0


class ExecutorConfig(BaseSettings):
    """
    Configuration for the code executor service.
    """

    host: str = "0.0.0.0"
    port: int = Field(default=8000, validation_alias=AliasChoices("COREASON_EXECUTOR_PORT", "PORT", "port"))
    environment: Literal["development", "production"] = Field(
        default="development",
        validation_alias=AliasChoices("COREASON_EXECUTOR_ENVIRONMENT", "ENVIRONMENT", "environment"),
    )

    # Hosts the browser-facing client may connect to (CSP connect-src and CORS)
    allowed_hosts: Annotated[list[str], NoDecode] = []

    temp_dir: Path = Path(tempfile.gettempdir()) / "coreason-executor"
    log_dir: Path = Path("logs")
    log_level: str = "INFO"
    python_executable: str = sys.executable

    default_timeout: float = 30.0
    min_timeout: float = 1.0
    max_timeout: float = 60.0

    max_upload_bytes: int = 20 * 1024 * 1024
    shutdown_grace_period: float = 15.0

    model_config = SettingsConfigDict(
        env_prefix="COREASON_EXECUTOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("allowed_hosts", mode="before")
    @classmethod
    def _split_hosts(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [host.strip() for host in value.split(",") if host.strip()]
        return value

    @field_validator("max_timeout")
    @classmethod
    def _check_timeout_range(cls, value: float, info: ValidationInfo) -> float:
        min_timeout = info.data.get("min_timeout")
        if min_timeout is not None and value < min_timeout:
            raise ValueError("max_timeout must not be lower than min_timeout")
        return value

    @property
    def is_development(self) -> bool:
        return self.environment == "development"
