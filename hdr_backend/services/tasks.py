#  HDR Backend - Background Task Runner
#
#  Fire-and-forget coroutines (webhook follow-up work, cache refreshes)
#  with tracked handles so shutdown can wait for in-flight work.
#
#  Depends on: logging_config.py
#  Used by:    container.py, app.py, services/completion.py, services/orders.py

import asyncio
import logging
from typing import Coroutine

from hdr_backend.logging_config import set_order_id

logger = logging.getLogger("hdr.tasks")


class TaskRunner:
    """Spawns background coroutines and remembers them until they finish."""

    def __init__(self):
        self._in_flight: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._in_flight)

    def spawn(self, coro: Coroutine, name: str, order_id: str | None = None) -> asyncio.Task:
        """Schedule coro on the running loop. Errors are logged, not raised."""
        task = asyncio.create_task(self._guard(coro, name, order_id), name=name)
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def _guard(self, coro: Coroutine, name: str, order_id: str | None):
        set_order_id(order_id)
        try:
            return await coro
        except asyncio.CancelledError:
            logger.warning("Background task %s cancelled", name)
            raise
        except Exception as e:
            logger.error("Background task %s failed: %s", name, e, exc_info=True)
        finally:
            set_order_id(None)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight tasks; cancel whatever is still running after timeout."""
        if not self._in_flight:
            return
        pending = list(self._in_flight)
        logger.info("Waiting for %d background task(s)", len(pending))
        done, still_running = await asyncio.wait(pending, timeout=timeout)
        for t in still_running:
            t.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("Cancelled %d background task(s) at shutdown", len(still_running))
