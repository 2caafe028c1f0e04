"""Idempotent enqueueing of notification records as delayed tasks"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from dunning_scheduler.infrastructure.database.models import NotificationRecordRow
from dunning_scheduler.infrastructure.database.repositories import NotificationRecordRepository
from dunning_scheduler.infrastructure.queue.base import BackoffPolicy, QueueBackend, Task, queue_for_channel
from dunning_scheduler.utils.date_utils import epoch_millis, utc_now

logger = logging.getLogger(__name__)


class TaskDispatcher:
    """Turns notification records into queue tasks

    The task id is derived from the record id and its scheduled time, so
    dispatching the same record twice for the same instant is a no-op.
    """

    def __init__(
        self,
        backend: QueueBackend,
        records: NotificationRecordRepository,
        clock: Callable[[], datetime] = utc_now,
        min_delay_ms: int = 1_000,
        backoff: BackoffPolicy | None = None,
    ):
        self.backend = backend
        self.records = records
        self.clock = clock
        self.min_delay = timedelta(milliseconds=min_delay_ms)
        self.backoff = backoff or BackoffPolicy()

    @staticmethod
    def task_id_for(record: NotificationRecordRow) -> str:
        return f"{record.id}-{epoch_millis(record.scheduled_for)}"

    async def dispatch(self, record: NotificationRecordRow) -> Task:
        """
        Enqueue a record on its channel queue and store the task id on it.

        Raises:
            ConfigurationError: Channel has no queue
            QueueError: Backend unavailable
        """
        queue = queue_for_channel(record.channel)
        task_id = self.task_id_for(record)

        task = await self.backend.get(queue, task_id)
        if task is not None:
            logger.debug("Task already queued", extra={"task_id": task_id, "queue": queue})
        else:
            now = self.clock()
            delay = max(record.scheduled_for - now, self.min_delay)
            task = await self.backend.add(
                Task(
                    task_id=task_id,
                    queue=queue,
                    payload={"record_id": str(record.id)},
                    run_at=now + delay,
                    max_attempts=self.backoff.max_attempts,
                    backoff_base_ms=self.backoff.base_ms,
                )
            )
            logger.info(
                "Notification queued",
                extra={"task_id": task_id, "queue": queue, "run_at": task.run_at.isoformat()},
            )

        if record.task_id != task.task_id:
            self.records.update_record(record, task_id=task.task_id)
        return task

    async def remove(self, record: NotificationRecordRow, task_id: Optional[str] = None) -> bool:
        """
        Remove a record's live task, or an older task of the record by id.

        Raises:
            ConfigurationError: Channel has no queue
            QueueError: Backend unavailable or the task is running
        """
        task_id = task_id or record.task_id
        if not task_id:
            return False
        return await self.backend.remove(queue_for_channel(record.channel), task_id)
