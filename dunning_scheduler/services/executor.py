"""Notification executor - runs one due notification through policy and delivery"""

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Dict

from dunning_scheduler.domain.exceptions import (
    ChannelDeliveryError,
    ConfigurationError,
    NotFoundError,
    RetryBudgetExhaustedError,
    UpstreamLookupError,
)
from dunning_scheduler.domain.models import (
    Channel,
    DeliveryReceipt,
    DeliveryRequest,
    ExecutionOutcome,
    NotificationStatus,
)
from dunning_scheduler.domain.time_policy import TimeWindowPolicy
from dunning_scheduler.infrastructure.channels.senders import ChannelSender, recipient_for
from dunning_scheduler.infrastructure.clients.credit import CreditClient
from dunning_scheduler.infrastructure.database.models import NotificationRecordRow
from dunning_scheduler.infrastructure.database.repositories import NotificationRecordRepository
from dunning_scheduler.infrastructure.observability.logging import log_delivery
from dunning_scheduler.infrastructure.observability.metrics import (
    notifications_deferred_counter,
    notifications_sent_counter,
    record_failure,
)
from dunning_scheduler.services.dispatcher import TaskDispatcher
from dunning_scheduler.utils.date_utils import local_day_bounds, utc_now

logger = logging.getLogger(__name__)


class NotificationExecutor:
    """Sends a due notification or pushes it back

    Order of checks: record status, delivery window, borrower daily cap,
    then credit lookup and channel send. A failed send is retried after
    retry_delay until max_attempts attempts have been made.

    The daily cap count is read before the send without a lock. Workers
    sending to the same borrower at the same moment can each pass the
    check and together exceed the cap.
    """

    def __init__(
        self,
        records: NotificationRecordRepository,
        dispatcher: TaskDispatcher,
        senders: Dict[Channel, ChannelSender],
        credit_client: CreditClient,
        time_policy: TimeWindowPolicy,
        clock: Callable[[], datetime] = utc_now,
        max_per_day: int = 3,
        max_attempts: int = 3,
        retry_delay: timedelta = timedelta(hours=1),
    ):
        self.records = records
        self.dispatcher = dispatcher
        self.senders = senders
        self.credit_client = credit_client
        self.time_policy = time_policy
        self.clock = clock
        self.max_per_day = max_per_day
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    async def execute(self, record_id: str) -> ExecutionOutcome:
        """
        Execute the notification a queue task points at.

        Raises:
            NotFoundError: Record does not exist
            ConfigurationError: Record channel has no sender
            RetryBudgetExhaustedError: Delivery failed on the last attempt
        """
        record = self.records.get_record(record_id)
        if record is None:
            raise NotFoundError(f"Notification {record_id} not found")

        if record.status != NotificationStatus.SCHEDULED.value:
            logger.info(
                "Notification not in scheduled state, skipping",
                extra={"record_id": record_id, "status": record.status},
            )
            return ExecutionOutcome.SKIPPED

        now = self.clock()
        if not self.time_policy.is_allowed(now):
            await self._defer(record, self.time_policy.next_allowed(now), "window")
            return ExecutionOutcome.DEFERRED_WINDOW

        day_start, day_end = local_day_bounds(now, self.time_policy.tz)
        sent_today = self.records.count_sent_for_borrower(record.borrower_id, day_start, day_end)
        if sent_today >= self.max_per_day:
            await self._defer(record, self.time_policy.next_day_start(now), "daily_cap")
            return ExecutionOutcome.DEFERRED_DAILY_CAP

        channel, sender = self._sender_for(record)

        started = time.monotonic()
        try:
            credit = await self.credit_client.get_credit(record.credit_id)
            receipt = await sender.send(
                DeliveryRequest(
                    record_id=str(record.id),
                    credit_id=record.credit_id,
                    borrower_id=record.borrower_id,
                    channel=channel,
                    message=record.message_content,
                    recipient=recipient_for(channel, credit),
                    company_name=credit.company_name,
                    borrower_name=credit.borrower_name,
                )
            )
        except (ChannelDeliveryError, UpstreamLookupError) as e:
            return await self._handle_failure(record, channel, e, started)

        self._mark_sent(record, receipt)
        log_delivery(str(record.id), record.credit_id, channel.value, "sent", self._elapsed_ms(started))
        return ExecutionOutcome.SENT

    def _sender_for(self, record: NotificationRecordRow):
        try:
            channel = Channel(record.channel)
            return channel, self.senders[channel]
        except (ValueError, KeyError) as e:
            reason = f"Unknown notification channel: {record.channel}"
            metadata = self.records.append_error(record, reason, self.clock())
            self.records.transition(
                record, NotificationStatus.FAILED.value, fail_reason=reason, metadata_=metadata
            )
            raise ConfigurationError(reason) from e

    def _mark_sent(self, record: NotificationRecordRow, receipt: DeliveryReceipt) -> None:
        metadata = dict(record.metadata_ or {})
        metadata["provider_response"] = {
            "provider_message_id": receipt.provider_message_id,
            "accepted_at": receipt.accepted_at.isoformat(),
            "raw": receipt.raw,
        }
        self.records.transition(
            record,
            NotificationStatus.SENT.value,
            sent_at=self.clock(),
            fail_reason=None,
            metadata_=metadata,
        )
        notifications_sent_counter.labels(channel=record.channel).inc()

    async def _defer(self, record: NotificationRecordRow, when: datetime, reason: str) -> None:
        self.records.update_record(record, scheduled_for=when)
        await self.dispatcher.dispatch(record)
        notifications_deferred_counter.labels(reason=reason).inc()
        logger.info(
            "Notification deferred",
            extra={"record_id": str(record.id), "reason": reason, "scheduled_for": when.isoformat()},
        )

    async def _handle_failure(
        self, record: NotificationRecordRow, channel: Channel, error: Exception, started: float
    ) -> ExecutionOutcome:
        now = self.clock()
        retry_count = (record.retry_count or 0) + 1
        metadata = self.records.append_error(record, str(error), now)
        self.records.transition(
            record,
            NotificationStatus.FAILED.value,
            fail_reason=str(error),
            retry_count=retry_count,
            metadata_=metadata,
        )
        log_delivery(
            str(record.id), record.credit_id, channel.value, "failed", self._elapsed_ms(started), error=str(error)
        )

        if retry_count >= self.max_attempts:
            record_failure(channel.value, terminal=True)
            raise RetryBudgetExhaustedError(
                f"Notification {record.id} failed after {retry_count} attempts: {error}"
            ) from error

        retry_at = now + self.retry_delay
        self.records.transition(record, NotificationStatus.SCHEDULED.value, scheduled_for=retry_at)
        await self.dispatcher.dispatch(record)
        record_failure(channel.value, terminal=False)
        logger.warning(
            "Delivery failed, retry scheduled",
            extra={"record_id": str(record.id), "retry_count": retry_count, "retry_at": retry_at.isoformat()},
        )
        return ExecutionOutcome.RETRY_SCHEDULED

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.monotonic() - started) * 1000, 2)
