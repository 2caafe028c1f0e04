"""Per-queue worker loop with bounded concurrency and backoff retries"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Set

from dunning_scheduler.domain.exceptions import QueueError
from dunning_scheduler.infrastructure.observability.metrics import queue_task_failures_counter
from dunning_scheduler.infrastructure.queue.base import QueueBackend, Task
from dunning_scheduler.utils.date_utils import utc_now

logger = logging.getLogger(__name__)

TaskHandler = Callable[[Task], Awaitable[None]]


class QueueWorker:
    """Polls one queue for due tasks and runs them through a handler

    At most `concurrency` handlers run at once. A handler exception is
    retried with the task's exponential backoff unless the exception is
    marked non-retryable or the task has used all attempts, in which case
    the task is filed in the queue's failed set.

    Claims older than `stall_timeout` that were never settled are handed
    back to the queue before each poll, so a task outlives a crashed
    worker. A handler that runs longer than the timeout may run twice.
    """

    def __init__(
        self,
        backend: QueueBackend,
        queue: str,
        handler: TaskHandler,
        concurrency: int = 1,
        poll_interval: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
        stall_timeout: timedelta = timedelta(minutes=5),
    ):
        self.backend = backend
        self.queue = queue
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self.clock = clock
        self.stall_timeout = stall_timeout

        self._in_flight: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def run_once(self) -> int:
        """Claim due tasks, process them, and wait for completion"""
        await self.requeue_stalled()
        claimed = await self.backend.claim_due(self.queue, self.clock(), self.concurrency)
        await asyncio.gather(*(self._process(task) for task in claimed))
        return len(claimed)

    async def requeue_stalled(self) -> int:
        count = await self.backend.requeue_stalled(self.queue, self.clock() - self.stall_timeout)
        if count:
            logger.warning("Stalled tasks requeued", extra={"queue": self.queue, "count": count})
        return count

    def start(self) -> None:
        if self.is_running:
            return
        self._stopping = False
        self._loop_task = asyncio.create_task(self._loop(), name=f"worker:{self.queue}")
        logger.info("Worker started", extra={"queue": self.queue, "concurrency": self.concurrency})

    async def stop(self) -> None:
        """Stop polling and wait for in-flight tasks to finish"""
        self._stopping = True
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        logger.info("Worker stopped", extra={"queue": self.queue})

    async def _loop(self) -> None:
        while not self._stopping:
            claimed = []
            free = self.concurrency - len(self._in_flight)
            if free > 0:
                try:
                    await self.requeue_stalled()
                    claimed = await self.backend.claim_due(self.queue, self.clock(), free)
                except QueueError as e:
                    logger.error("Claiming tasks failed", extra={"queue": self.queue, "error": str(e)})

            for task in claimed:
                running = asyncio.create_task(self._process(task))
                self._in_flight.add(running)
                running.add_done_callback(self._in_flight.discard)

            if not claimed:
                await asyncio.sleep(self.poll_interval)

    async def _process(self, task: Task) -> None:
        try:
            try:
                await self.handler(task)
            except Exception as e:
                await self._handle_failure(task, e)
                return
            await self.backend.complete(task)
        except QueueError as e:
            # Left claimed; requeue_stalled hands it back after stall_timeout
            logger.error(
                "Could not settle task",
                extra={"queue": self.queue, "task_id": task.task_id, "error": str(e)},
            )

    async def _handle_failure(self, task: Task, error: Exception) -> None:
        attempt = task.attempts_made + 1
        retryable = getattr(error, "retryable", True)
        message = f"{type(error).__name__}: {error}"

        if retryable and attempt < task.max_attempts:
            run_at = self.clock() + task.backoff.delay_for(attempt)
            await self.backend.retry_later(task, run_at, message)
            queue_task_failures_counter.labels(queue=self.queue, final="false").inc()
            logger.warning(
                "Task failed, retry scheduled",
                extra={"queue": self.queue, "task_id": task.task_id, "attempt": attempt, "error": message},
            )
            return

        await self.backend.fail(task, message)
        queue_task_failures_counter.labels(queue=self.queue, final="true").inc()
        logger.error(
            "Task failed permanently",
            extra={"queue": self.queue, "task_id": task.task_id, "attempt": attempt, "error": message},
        )
