"""Fan-out of session events from the watcher's queue to collaborators."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from sessionpulse.models import SessionEvent, SessionEventType
from sessionpulse.status_machine import format_status, status_key

logger = logging.getLogger("sessionpulse.dispatcher")

SessionEventHandler = Callable[[SessionEvent], Awaitable[None]]


class SessionEventDispatcher:
    """Single consumer of the watcher queue; handlers run in subscription order."""

    def __init__(self, queue: asyncio.Queue[SessionEvent]):
        self._queue = queue
        self._handlers: list[SessionEventHandler] = []
        self._task: Optional[asyncio.Task] = None

    def subscribe(self, handler: SessionEventHandler) -> None:
        self._handlers.append(handler)

    async def start(self) -> None:
        if self._task is not None:
            logger.warning("Session event dispatcher already running")
            return
        self._task = asyncio.create_task(self._run(), name="sessionpulse-dispatcher")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def drain(self) -> int:
        """Deliver everything currently queued; returns the number of events."""
        delivered = 0
        while not self._queue.empty():
            await self.dispatch(self._queue.get_nowait())
            delivered += 1
        return delivered

    async def dispatch(self, event: SessionEvent) -> None:
        for handler in self._handlers:
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "Session event handler %s failed for %s",
                    getattr(handler, "__name__", handler),
                    event.session.sessionId[:8],
                )

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            await self.dispatch(event)


def _short_prompt(prompt: str, max_len: int = 60) -> str:
    text = " ".join(prompt.split())
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


async def log_session_event(event: SessionEvent) -> None:
    """Log subscriber reporting each published event."""
    session = event.session
    short_id = session.sessionId[:8]
    if event.type == SessionEventType.CREATED:
        logger.info(
            "New session %s [%s] %s: %s",
            short_id,
            format_status(session.status),
            session.gitRepoId or session.cwd,
            _short_prompt(session.originalPrompt),
        )
    elif event.type == SessionEventType.DELETED:
        logger.info("Session %s removed", short_id)
    elif event.previousStatus and status_key(event.previousStatus) != status_key(session.status):
        logger.info(
            "Session %s: %s -> %s",
            short_id,
            format_status(event.previousStatus),
            format_status(session.status),
        )
    else:
        logger.debug(
            "Session %s updated (%d messages)",
            short_id,
            session.status.messageCount,
        )
