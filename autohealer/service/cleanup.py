from __future__ import annotations

import asyncio
from typing import Optional

from autohealer.logging import get_logger
from autohealer.service.sessions import SessionManager

logger = get_logger(__name__)


class SessionCleanupTask:
    """Recurring sweep of expired and revoked sessions.

    A failed tick is logged and the loop waits for the next one. Skipping a
    tick entirely is harmless since validation never relies on the sweep.
    """

    def __init__(self, sessions: SessionManager, interval_seconds: int) -> None:
        self.sessions = sessions
        self.interval_seconds = interval_seconds
        self.last_removed: Optional[int] = None

    def run_once(self) -> int:
        removed = self.sessions.cleanup_expired()
        self.last_removed = removed
        return removed

    async def run_forever(self) -> None:
        logger.info("session_cleanup_started", interval_seconds=self.interval_seconds)
        try:
            while True:
                try:
                    await asyncio.to_thread(self.run_once)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning(
                        "session_cleanup_failed",
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("session_cleanup_cancelled")
            raise
