"""Fire-and-forget transition notifications.

The dispatcher schedules each notice on the running loop and returns
immediately; a failing notifier is logged and never reaches the caller, so
a committed transition is never rolled back by a notification problem.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from escrow_marketplace.logging_config import get_logger

if TYPE_CHECKING:
    from escrow_marketplace.domain.ports import Notifier, TransitionNotice

logger = get_logger(__name__)


class LoggingNotifier:
    """Notifier that only writes a structured log line per notice."""

    async def notify(self, notice: TransitionNotice) -> None:
        logger.info(
            "notification.sent",
            escrow_id=notice.escrow_id,
            notice_event=notice.event.value,
            status=notice.status.value,
            recipients=list(notice.recipients),
        )


class NotificationDispatcher:
    def __init__(self, notifier: Notifier | None = None) -> None:
        self._notifier = notifier
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, notice: TransitionNotice) -> None:
        if self._notifier is None:
            return
        task = asyncio.create_task(self._deliver(notice))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, notice: TransitionNotice) -> None:
        try:
            await self._notifier.notify(notice)
        except Exception as exc:
            logger.warning(
                "notification.failed",
                escrow_id=notice.escrow_id,
                notice_event=notice.event.value,
                error=str(exc),
            )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight notices (used on shutdown and in tests)."""
        if not self._tasks:
            return
        _, still_pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if still_pending:
            logger.warning("notification.drain_timeout", pending=len(still_pending))
