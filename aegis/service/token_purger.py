"""Background worker that deletes long-expired refresh tokens.

Each pass is a single idempotent delete, so it can overlap with logins and
rotations without coordination.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING, Optional

from aegis.logging import get_logger

if TYPE_CHECKING:
    from aegis.service.auth import AuthService

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 3600
DEFAULT_RETENTION = timedelta(days=7)
MAX_BACKOFF_SECONDS = 3 * 3600


class TokenPurgeWorker:
    def __init__(
        self,
        auth: "AuthService",
        *,
        interval: int = DEFAULT_INTERVAL_SECONDS,
        retention: timedelta = DEFAULT_RETENTION,
    ) -> None:
        self.auth = auth
        self.interval = interval
        self.retention = retention
        self.last_purged: int = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background worker."""
        if self._running:
            logger.warning("token_purger_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("token_purger_started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the background worker."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("token_purger_stopped")

    async def run_once(self) -> int:
        purged = await self.auth.purge_expired_tokens(self.retention)
        self.last_purged = purged
        if purged:
            logger.info("expired_refresh_tokens_purged", count=purged)
        return purged

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "token_purger_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS, self.interval * (2 ** (consecutive_errors - 3))
                    )
                    logger.warning(
                        "token_purger_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(self.interval)
