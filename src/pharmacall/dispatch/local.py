"""
In-process delayed dispatcher for local development and tests.

Each scheduled invocation is an asyncio task that sleeps for the delay and
then calls the bound handler. Nothing survives a restart.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from pharmacall.dispatch.interface import ProcessJobPayload
from pharmacall.shared.exceptions import DispatchError
from pharmacall.shared.logging import get_logger

logger = get_logger(__name__)

JobHandler = Callable[[ProcessJobPayload], Awaitable[Any]]


class LocalTaskDispatcher:
    def __init__(self, handler: JobHandler | None = None, time_scale: float = 1.0) -> None:
        """
        Args:
            handler: Coroutine invoked with each payload when its delay elapses.
            time_scale: Multiplier applied to delays (0 runs everything immediately).
        """
        if time_scale < 0:
            raise ValueError("time_scale must be >= 0")
        self._handler = handler
        self._time_scale = time_scale
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def bind(self, handler: JobHandler) -> None:
        self._handler = handler

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def schedule(self, payload: ProcessJobPayload, delay_seconds: int) -> str:
        if self._handler is None:
            raise DispatchError(message="Local dispatcher has no handler bound")

        message_id = f"local-{uuid.uuid4().hex}"
        task = asyncio.create_task(
            self._run(message_id, payload, max(0, delay_seconds) * self._time_scale),
            name=f"pharmacall-job-{message_id}",
        )
        self._tasks[message_id] = task
        task.add_done_callback(lambda _t, mid=message_id: self._tasks.pop(mid, None))

        logger.info(
            "Job invocation scheduled locally",
            extra={
                "message_id": message_id,
                "search_id": str(payload.search_id),
                "pharmacy_id": payload.pharmacy_id,
                "attempt": payload.attempt,
                "delay_seconds": delay_seconds,
            },
        )
        return message_id

    async def _run(self, message_id: str, payload: ProcessJobPayload, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        assert self._handler is not None
        try:
            await self._handler(payload)
        except Exception:
            # a real dispatcher would redeliver; locally we only report it
            logger.exception(
                "Local job invocation failed",
                extra={"message_id": message_id, "pharmacy_id": payload.pharmacy_id},
            )

    async def drain(self) -> None:
        """Wait until every scheduled invocation (including ones they schedule) ran."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def aclose(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
