"""Queue runtime: channel workers, the status-check worker and its periodic trigger"""

import logging
from datetime import timedelta
from typing import Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from dunning_scheduler.domain.models import Channel
from dunning_scheduler.infrastructure.queue.base import CHANNEL_QUEUES, STATUS_CHECK_QUEUE, Task
from dunning_scheduler.infrastructure.queue.worker import QueueWorker
from dunning_scheduler.services.scheduler import EngineDependencies, NotificationScheduler
from dunning_scheduler.utils.date_utils import epoch_millis

logger = logging.getLogger(__name__)


class QueueRuntime:
    """Owns the workers of one process

    start() launches one worker per channel queue plus the status-check
    worker, and an interval job that enqueues a status sweep. stop() halts
    the interval job and drains in-flight tasks.
    """

    def __init__(self, deps: EngineDependencies, scheduler_factory=None):
        self.deps = deps
        self._scheduler_factory = scheduler_factory or NotificationScheduler
        self._workers: List[QueueWorker] = []
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._is_running = False

        settings = deps.settings
        self.concurrency: Dict[str, int] = {
            CHANNEL_QUEUES[Channel.SMS]: settings.sms_concurrency,
            CHANNEL_QUEUES[Channel.EMAIL]: settings.email_concurrency,
            CHANNEL_QUEUES[Channel.PUSH]: settings.push_concurrency,
            CHANNEL_QUEUES[Channel.AI_CALL]: settings.ai_call_concurrency,
            STATUS_CHECK_QUEUE: settings.status_check_concurrency,
        }
        self.sweep_interval_ms = settings.status_check_interval_ms

    @property
    def workers(self) -> List[QueueWorker]:
        return list(self._workers)

    def build_workers(self) -> List[QueueWorker]:
        settings = self.deps.settings
        stall_timeout = timedelta(seconds=settings.stalled_task_timeout_seconds)
        workers = [
            QueueWorker(
                self.deps.backend,
                queue,
                self.handle_notification_task,
                concurrency=self.concurrency[queue],
                poll_interval=settings.worker_poll_interval_seconds,
                clock=self.deps.clock,
                stall_timeout=stall_timeout,
            )
            for queue in CHANNEL_QUEUES.values()
        ]
        workers.append(
            QueueWorker(
                self.deps.backend,
                STATUS_CHECK_QUEUE,
                self.handle_status_check_task,
                concurrency=self.concurrency[STATUS_CHECK_QUEUE],
                poll_interval=settings.worker_poll_interval_seconds,
                clock=self.deps.clock,
                stall_timeout=stall_timeout,
            )
        )
        return workers

    async def start(self) -> None:
        if self._is_running:
            logger.warning("Queue runtime already running")
            return

        self._workers = self.build_workers()
        for worker in self._workers:
            worker.start()

        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            self.enqueue_status_sweep,
            IntervalTrigger(seconds=self.sweep_interval_ms / 1000),
            id="credit_status_sweep",
            replace_existing=True,
            name="Credit status sweep",
        )
        scheduler.start()
        self._scheduler = scheduler
        self._is_running = True
        logger.info("Queue runtime started", extra={"workers": len(self._workers)})

    async def stop(self) -> None:
        if not self._is_running:
            return
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        for worker in self._workers:
            await worker.stop()
        self._workers = []
        self._is_running = False
        logger.info("Queue runtime stopped")

    async def enqueue_status_sweep(self) -> Optional[Task]:
        """
        Queue one sweep per interval tick.

        Processes sharing a backend race for a marker that outlives the
        tick, so a sweep that already ran this tick is not queued again.

        Returns:
            The queued task, or None if this tick already has a sweep
        """
        now = self.deps.clock()
        tick = epoch_millis(now) // self.sweep_interval_ms
        task_id = f"status-sweep-{tick}"
        if not await self.deps.backend.set_marker(task_id, timedelta(milliseconds=2 * self.sweep_interval_ms)):
            logger.debug("Status sweep already queued for tick", extra={"task_id": task_id})
            return None
        task = await self.deps.backend.add(
            Task(
                task_id=task_id,
                queue=STATUS_CHECK_QUEUE,
                payload={"kind": "sweep"},
                run_at=now,
                max_attempts=1,
            )
        )
        logger.debug("Status sweep queued", extra={"task_id": task.task_id})
        return task

    async def handle_notification_task(self, task: Task) -> None:
        with self.deps.session_factory() as db:
            engine = self._scheduler_factory(db, self.deps)
            outcome = await engine.execute_notification(task.payload["record_id"])
        logger.info("Notification task done", extra={"task_id": task.task_id, "outcome": outcome.value})

    async def handle_status_check_task(self, task: Task) -> None:
        with self.deps.session_factory() as db:
            engine = self._scheduler_factory(db, self.deps)
            result = await engine.run_status_sweep()
        logger.info(
            "Status sweep task done",
            extra={"task_id": task.task_id, "checked": result.total_checked, "errors": result.total_errors},
        )
