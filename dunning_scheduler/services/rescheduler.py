"""Manual rescheduling of a single notification"""

import logging
from datetime import datetime
from typing import Callable, Union

from dunning_scheduler.domain.exceptions import ConfigurationError, NotFoundError, QueueError, ValidationError
from dunning_scheduler.domain.models import NotificationStatus
from dunning_scheduler.infrastructure.database.repositories import NotificationRecordRepository
from dunning_scheduler.infrastructure.queue.base import Task
from dunning_scheduler.services.dispatcher import TaskDispatcher
from dunning_scheduler.utils.date_utils import utc_now

logger = logging.getLogger(__name__)

_FINAL_STATUSES = {NotificationStatus.SENT.value, NotificationStatus.CANCELLED.value}


def parse_new_time(value: Union[str, datetime]) -> datetime:
    """
    Accept an aware datetime or an ISO-8601 string with an offset.

    Raises:
        ValidationError: Malformed or naive timestamp
    """
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip())
        except ValueError as e:
            raise ValidationError(f"Invalid timestamp: {value!r}") from e
    if not isinstance(value, datetime):
        raise ValidationError(f"Invalid timestamp: {value!r}")
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValidationError("Timestamp must include a timezone offset")
    return value


class Rescheduler:
    def __init__(
        self,
        records: NotificationRecordRepository,
        dispatcher: TaskDispatcher,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.records = records
        self.dispatcher = dispatcher
        self.clock = clock

    async def reschedule(self, record_id: str, new_time: Union[str, datetime]) -> Task:
        """
        Move a notification to a new time and queue it there.

        Failed notifications go back to scheduled. The new task is queued
        before the old one is removed; if it cannot be queued the previous
        time, status and task are kept.

        Raises:
            ValidationError: Bad timestamp, or record already sent or cancelled
            NotFoundError: Unknown record
            QueueError: New task could not be queued
        """
        when = parse_new_time(new_time)
        record = self.records.get_record(record_id)
        if record is None:
            raise NotFoundError(f"Notification {record_id} not found")
        if record.status in _FINAL_STATUSES:
            raise ValidationError(f"Notification {record_id} is {record.status} and cannot be rescheduled")

        previous_time = record.scheduled_for
        previous_status = record.status
        previous_task_id = record.task_id

        self.records.transition(record, NotificationStatus.SCHEDULED.value, scheduled_for=when)
        try:
            task = await self.dispatcher.dispatch(record)
        except (QueueError, ConfigurationError) as e:
            metadata = self.records.append_error(record, f"Reschedule failed: {e}", self.clock())
            self.records.update_record(
                record,
                status=previous_status,
                scheduled_for=previous_time,
                task_id=previous_task_id,
                metadata_=metadata,
            )
            logger.error("Reschedule failed, previous time restored", extra={"record_id": str(record.id)})
            raise

        if previous_task_id and previous_task_id != task.task_id:
            try:
                await self.dispatcher.remove(record, task_id=previous_task_id)
            except QueueError as e:
                logger.warning(
                    "Could not remove previous task",
                    extra={"record_id": str(record.id), "task_id": previous_task_id, "error": str(e)},
                )

        logger.info(
            "Notification rescheduled",
            extra={"record_id": str(record.id), "scheduled_for": when.isoformat(), "task_id": task.task_id},
        )
        return task
