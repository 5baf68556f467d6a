"""In-process poller dispatcher on asyncio tasks.

Each spawned job gets its own task running ``poll_fn(job_id)``. A poller that
raises is logged and dropped; it never takes the event loop or other pollers
down with it.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from app.config import settings
from app.jobs.dispatcher import PollerDispatcher

logger = logging.getLogger(__name__)


class InProcessPollerQueue(PollerDispatcher):
    def __init__(
        self,
        poll_fn: Callable[[str], Awaitable[None]],
        shutdown_grace: Optional[float] = None,
    ):
        """
        poll_fn: coroutine function(job_id) that drives one job to a terminal state.
        shutdown_grace: seconds ``stop`` waits for running pollers before cancelling them.
        """
        self._poll_fn = poll_fn
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = False
        self._grace = settings.poller_shutdown_grace_seconds if shutdown_grace is None else shutdown_grace

    @property
    def active(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def start(self) -> None:
        self._running = True

    def spawn(self, job_id: str) -> None:
        if not self._running:
            logger.warning("Dispatcher not running; poller for job %s not started", job_id)
            return
        existing = self._tasks.get(job_id)
        if existing is not None and not existing.done():
            logger.debug("Poller for job %s already running", job_id)
            return
        task = asyncio.get_running_loop().create_task(self._run(job_id), name=f"poller-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda t, jid=job_id: self._forget(jid, t))

    def _forget(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]

    async def _run(self, job_id: str) -> None:
        try:
            await self._poll_fn(job_id)
        except asyncio.CancelledError:
            logger.info("Poller for job %s cancelled", job_id)
            raise
        except Exception:
            logger.exception("Poller for job %s crashed", job_id)

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until every running poller has finished."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    async def stop(self) -> None:
        self._running = False
        tasks = [t for t in self._tasks.values() if not t.done()]
        if not tasks:
            return
        logger.info("Waiting up to %.1fs for %d poller(s)", self._grace, len(tasks))
        _, pending = await asyncio.wait(tasks, timeout=self._grace)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("Cancelled %d poller(s); they resume on next startup", len(pending))
