# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_executor

"""Error taxonomy shared by the executor core and the HTTP surface."""


class ExecutorError(Exception):
    """Base class for all executor failures.

    Attributes:
        status_code: HTTP status the error maps to at the API boundary.
        error: Short, client-facing summary of the failure.
        details: Optional longer explanation (e.g. filtered stderr).
    """

    status_code = 500
    error = "Internal server error"

    def __init__(self, message: str | None = None, details: str | None = None):
        super().__init__(message or self.error)
        self.details = details


class ResourceError(ExecutorError):
    """Workspace or file I/O failure."""

    error = "Failed to allocate execution resources"


class SpawnError(ExecutorError):
    """The command could not be started."""

    error = "Failed to start Python process"


class ExecutionError(ExecutorError):
    """The process exited with a non-zero status."""

    status_code = 422
    error = "Error executing Python code"


class ExecutionTimeoutError(ExecutorError, TimeoutError):
    """The process exceeded its wall-clock deadline and was killed."""

    status_code = 422
    error = "Execution timed out"


class TokenNotFoundError(ExecutorError):
    status_code = 404
    error = "Invalid or expired download token"


class TokenExpiredError(TokenNotFoundError):
    status_code = 410
    error = "Download link has expired"


class InvalidInputError(ExecutorError):
    status_code = 400
    error = "Invalid request"


class UploadTooLargeError(InvalidInputError):
    status_code = 413
    error = "File too large"


class ServiceUnavailableError(ExecutorError):
    status_code = 503
    error = "Server is shutting down"
