"""Cascading cancellation of a credit's scheduled notifications"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from dunning_scheduler.domain.exceptions import DomainException, QueueError
from dunning_scheduler.domain.models import CancellationDetail, CancellationResult, NotificationStatus
from dunning_scheduler.infrastructure.database.models import NotificationRecordRow
from dunning_scheduler.infrastructure.database.repositories import NotificationRecordRepository
from dunning_scheduler.infrastructure.observability.metrics import notifications_cancelled_counter
from dunning_scheduler.services.dispatcher import TaskDispatcher

logger = logging.getLogger(__name__)


class CancellationService:
    def __init__(self, records: NotificationRecordRepository, dispatcher: TaskDispatcher):
        self.records = records
        self.dispatcher = dispatcher

    async def cancel_scheduled_notifications(self, credit_id: str) -> CancellationResult:
        """
        Cancel every scheduled record of a credit and drop its queued task.

        Task removal is best effort: a task that cannot be removed finds a
        cancelled record when it runs and does nothing. Calling this twice
        cancels nothing the second time.
        """
        result = CancellationResult()
        records = self.records.list_scheduled_for_credit(credit_id)
        logger.info("Cancelling scheduled notifications", extra={"credit_id": credit_id, "count": len(records)})

        for record in records:
            record_id = str(record.id)
            try:
                await self._remove_task(record)
                self.records.transition(record, NotificationStatus.CANCELLED.value)
            except SQLAlchemyError as e:
                self.records.db.rollback()
                self._record_failure(result, record_id, e)
                continue
            except DomainException as e:
                self._record_failure(result, record_id, e)
                continue

            result.total_cancelled += 1
            result.details.append(
                CancellationDetail(record_id=record_id, status=NotificationStatus.CANCELLED.value, success=True)
            )
            notifications_cancelled_counter.inc()

        return result

    async def _remove_task(self, record: NotificationRecordRow) -> None:
        try:
            await self.dispatcher.remove(record)
        except QueueError as e:
            logger.warning(
                "Could not remove queued task",
                extra={"record_id": str(record.id), "task_id": record.task_id, "error": str(e)},
            )

    def _record_failure(self, result: CancellationResult, record_id: str, error: Exception) -> None:
        logger.error("Failed to cancel notification", extra={"record_id": record_id, "error": str(error)})
        result.total_failed += 1
        result.details.append(
            CancellationDetail(
                record_id=record_id,
                status=NotificationStatus.SCHEDULED.value,
                success=False,
                error=str(error),
            )
        )
