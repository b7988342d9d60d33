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
import secrets
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

from loguru import logger

from coreason_executor.exceptions import TokenExpiredError, TokenNotFoundError
from coreason_executor.models import DownloadToken

T = TypeVar("T")


class TokenRegistry:
    """In-memory map from opaque download token to a file inside a workspace.

    All reads and writes go through one asyncio lock. Revoking a workspace's tokens
    and deleting its directory happen under that same lock (see ``revoke_all``), and
    opening a file for download does too (see ``open``), so a download either opens
    the file before the directory goes away or sees the token as unknown.

    Downloads do not consume tokens: a token stays valid for any number of
    downloads until it expires or its workspace is reclaimed.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: dict[str, DownloadToken] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, token: object) -> bool:
        return token in self._entries

    def live_count(self) -> int:
        """Number of tokens that have not yet expired."""
        now = self._clock()
        return sum(1 for entry in self._entries.values() if not entry.is_expired(now))

    async def mint(self, path: Path, workspace_id: str, ttl: float) -> DownloadToken:
        """Register ``path`` for download and return its token.

        The token is 256 bits from the OS CSPRNG, URL-safe encoded.
        """
        entry = DownloadToken(
            token=secrets.token_urlsafe(32),
            path=Path(path),
            workspace_id=workspace_id,
            expires_at=self._clock() + ttl,
        )
        async with self._lock:
            self._entries[entry.token] = entry
        logger.info(f"Generated download token {entry.token[:8]}... for {entry.path.name}")
        return entry

    def _lookup(self, token: str) -> DownloadToken:
        entry = self._entries.get(token)
        if entry is None:
            raise TokenNotFoundError()
        # Expired entries may still be present until the next sweep
        if entry.is_expired(self._clock()):
            raise TokenExpiredError()
        return entry

    async def resolve(self, token: str) -> DownloadToken:
        """Look up a live token.

        Raises:
            TokenNotFoundError: If the token is unknown or has been revoked.
            TokenExpiredError: If the token exists but its expiry has passed.
        """
        async with self._lock:
            return self._lookup(token)

    async def open(self, token: str, opener: Callable[[Path], Awaitable[T]]) -> tuple[DownloadToken, T]:
        """Resolve ``token`` and run ``opener`` on its path while holding the lock.

        An open file handle stays readable after its directory is removed, so the
        caller can stream the result without racing workspace destruction.
        """
        async with self._lock:
            entry = self._lookup(token)
            return entry, await opener(entry.path)

    async def revoke_all(
        self,
        workspace_id: str,
        finalizer: Callable[[], Awaitable[object]] | None = None,
    ) -> list[DownloadToken]:
        """Remove every token that points into ``workspace_id``.

        Args:
            workspace_id: The owning workspace.
            finalizer: Awaited after revocation while the lock is still held, typically
                the physical deletion of the workspace.

        Returns:
            list[DownloadToken]: The revoked entries.
        """
        async with self._lock:
            revoked = [entry for entry in self._entries.values() if entry.workspace_id == workspace_id]
            for entry in revoked:
                del self._entries[entry.token]
            if revoked:
                logger.info(f"Revoked {len(revoked)} download token(s) for workspace {workspace_id}")
            if finalizer is not None:
                await finalizer()
            return revoked

    async def expire(self) -> list[DownloadToken]:
        """Drop every expired entry and return what was dropped."""
        now = self._clock()
        async with self._lock:
            expired = [entry for entry in self._entries.values() if entry.is_expired(now)]
            for entry in expired:
                del self._entries[entry.token]
            return expired

    async def live_paths(self, workspace_id: str) -> set[Path]:
        now = self._clock()
        async with self._lock:
            return {
                entry.path
                for entry in self._entries.values()
                if entry.workspace_id == workspace_id and not entry.is_expired(now)
            }

    async def has_live(self, workspace_id: str) -> bool:
        return bool(await self.live_paths(workspace_id))
