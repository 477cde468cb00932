"""
Owns the bearer token used by every remote call.

The token is refreshed on demand (when a caller finds it past its lease)
and by a background task when the lease runs out, so long-running
categories don't stall on an expired token mid-loop. All refreshes run
under one asyncio.Lock; concurrent callers wait for the single refresh in
flight and then share its result.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Protocol

from cloud_gateway import CredentialRelocatedError

log = logging.getLogger(__name__)


## the server's token lives longer; refreshing early keeps in-flight calls valid
DEFAULT_LEASE_SECONDS = 10 * 60


class MissingCredentialError(RuntimeError):
    """
    No seed token is stored, so nothing can be refreshed.
    """


class CredentialIssuer(Protocol):
    async def issue_credential(self, token: str) -> str: ...


class CredentialStore:
    """
    Keeps the latest token in a plain-text file.
    An empty file is the cleared state and reads back as None.
    """

    def __init__(self, path: Path) -> None:
        self.path: Path = path

    def load(self) -> str | None:
        if not self.path.exists():
            return None
        token: str = self.path.read_text(encoding='utf-8').strip()
        return token or None

    def save(self, token: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path: Path = self.path.with_name(f'{self.path.name}.tmp')
        tmp_path.write_text(token, encoding='utf-8')
        os.replace(tmp_path, self.path)


class CredentialManager:
    """
    Single owner of the current token and its expiry deadline.
    - Loads the seed token from the store on first use and refreshes it immediately.
    - Refreshes again whenever a caller arrives after the deadline.
    - Runs one background task that refreshes when the deadline passes with no caller around.
    - Persists every new token; clears the stored token when the server says it's dead.
    - Serializes every refresh behind one lock, so at most one is ever in flight.
    """

    def __init__(
        self,
        store: CredentialStore,
        issuer: CredentialIssuer,
        *,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        auto_refresh: bool = True,
    ) -> None:
        self.store: CredentialStore = store
        self.issuer: CredentialIssuer = issuer
        self.lease_seconds: float = lease_seconds
        self.clock: Callable[[], float] = clock
        self.sleep: Callable[[float], Awaitable[None]] = sleep
        self.auto_refresh: bool = auto_refresh
        self._lock: asyncio.Lock = asyncio.Lock()
        self._token: str | None = None
        self._deadline: float | None = None
        self._timer: asyncio.Task[None] | None = None

    @property
    def deadline(self) -> float | None:
        return self._deadline

    def _is_expired(self) -> bool:
        return self._deadline is None or self.clock() >= self._deadline

    async def get_credential(self) -> str:
        async with self._lock:
            if self._token is None:
                seed: str | None = self.store.load()
                if seed is None:
                    raise MissingCredentialError(f'no starting token found in ``{self.store.path}``')
                self._token = seed
                await self._refresh_locked()
            elif self._is_expired():
                await self._refresh_locked()
            assert self._token is not None
            return self._token

    async def _refresh_locked(self) -> None:
        """
        Issues a new token from the current one. Caller must hold the lock.
        """
        if self._token is None:
            raise MissingCredentialError('no token held to refresh from')
        log.info('generating new token...')
        try:
            new_token: str = await self.issuer.issue_credential(self._token)
        except CredentialRelocatedError:
            log.error('token no longer valid; clearing stored token')
            self.store.save('')
            self._token = None
            self._deadline = None
            raise
        self._token = new_token
        self._deadline = self.clock() + self.lease_seconds
        self.store.save(new_token)
        self._ensure_timer()
        log.info('new token generated')

    def _ensure_timer(self) -> None:
        if not self.auto_refresh:
            return
        if self._timer is None or self._timer.done():
            self._timer = asyncio.create_task(self._refresh_when_due(), name='credential-refresh')

    async def _refresh_when_due(self) -> None:
        while True:
            deadline: float | None = self._deadline
            if deadline is None:
                return
            await self.sleep(max(0.0, deadline - self.clock()))
            async with self._lock:
                if not self._is_expired():
                    continue  # a caller already refreshed
                try:
                    await self._refresh_locked()
                except Exception:
                    # the next get_credential() call retries and re-arms this task
                    log.exception('failed to refresh token in background')
                    return

    async def close(self) -> None:
        timer: asyncio.Task[None] | None = self._timer
        self._timer = None
        if timer is None or timer.done():
            return
        timer.cancel()
        try:
            await timer
        except asyncio.CancelledError:
            pass
