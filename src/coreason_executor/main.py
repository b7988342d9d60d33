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
import signal
from types import FrameType
from typing import Any

import uvicorn
from loguru import logger

from coreason_executor.api import ServiceState, create_app
from coreason_executor.config import ExecutorConfig
from coreason_executor.utils.logger import configure_logging, intercept_stdlib_logging


class ExecutorServer(uvicorn.Server):
    """uvicorn server that puts the service into draining mode as soon as exit is requested.

    uvicorn stops accepting connections and waits up to ``timeout_graceful_shutdown``
    for open ones; requests that still arrive on kept-alive connections are refused
    with 503 by the request middleware.
    """

    def __init__(self, config: uvicorn.Config, state: ServiceState):
        super().__init__(config)
        self.service_state = state

    def handle_exit(self, sig: int, frame: FrameType | None) -> None:
        try:
            reason = signal.Signals(sig).name
        except ValueError:
            reason = str(sig)
        self.service_state.begin_shutdown(reason)
        super().handle_exit(sig, frame)

    def request_shutdown(self, reason: str) -> None:
        self.service_state.begin_shutdown(reason)
        self.should_exit = True


def install_fault_handler(server: ExecutorServer) -> None:
    """Treat faults nobody handled in the event loop like a termination signal."""

    def _handler(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        exc = context.get("exception")
        logger.opt(exception=exc).error(f"Unhandled fault: {context.get('message', exc)}")
        server.request_shutdown("UNHANDLED_FAULT")

    asyncio.get_running_loop().set_exception_handler(_handler)


async def serve(config: ExecutorConfig) -> None:
    app = create_app(config)
    server = ExecutorServer(
        uvicorn.Config(
            app,
            host=config.host,
            port=config.port,
            log_config=None,
            timeout_graceful_shutdown=int(config.shutdown_grace_period),
        ),
        app.state.service,
    )
    install_fault_handler(server)
    logger.info(f"Server running on port {config.port}")
    await server.serve()


def main() -> None:
    """Entry point for the executor server."""
    config = ExecutorConfig()
    configure_logging(config.log_dir, config.log_level)
    intercept_stdlib_logging("uvicorn", "uvicorn.error", "uvicorn.access", "asyncio")
    asyncio.run(serve(config))


if __name__ == "__main__":  # pragma: no cover
    main()
