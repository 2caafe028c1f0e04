"""Phase planner - expands the timetable into notification records"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError

from dunning_scheduler.domain.exceptions import DomainException
from dunning_scheduler.domain.models import Channel, NotificationStatus, PlanSnapshot, Stage
from dunning_scheduler.domain.templates import build_template_data, render_message
from dunning_scheduler.domain.timetable import Timetable, TimetableEntry
from dunning_scheduler.infrastructure.database.models import NotificationRecordRow
from dunning_scheduler.infrastructure.database.repositories import NotificationRecordRepository
from dunning_scheduler.infrastructure.observability.metrics import notifications_scheduled_counter
from dunning_scheduler.services.dispatcher import TaskDispatcher
from dunning_scheduler.utils.date_utils import add_calendar_days, utc_now

logger = logging.getLogger(__name__)


class PhasePlanner:
    """Creates and dispatches one record per timetable slot"""

    def __init__(
        self,
        records: NotificationRecordRepository,
        dispatcher: TaskDispatcher,
        timetable: Timetable,
        tz: ZoneInfo,
        clock: Callable[[], datetime] = utc_now,
        auction_days: int = 30,
    ):
        self.records = records
        self.dispatcher = dispatcher
        self.timetable = timetable
        self.tz = tz
        self.clock = clock
        self.auction_days = auction_days

    async def schedule_notifications(self, plan: PlanSnapshot) -> List[NotificationRecordRow]:
        """
        Plan every timetable slot of a loan that is still in the future.

        Slots before now and slots without a template are skipped. A slot
        that fails to render, persist or enqueue is logged and skipped.

        Returns:
            Records created and queued
        """
        now = self.clock()
        created = []

        for entry in self.timetable.entries():
            scheduled_for = add_calendar_days(plan.due_date, entry.day, self.tz)
            if scheduled_for < now:
                continue

            template = self._template_for(plan, entry)
            if template is None:
                continue

            record = await self._create_and_dispatch(plan, entry, scheduled_for, template)
            if record is not None:
                created.append(record)

        logger.info(
            "Notifications planned",
            extra={"credit_id": plan.credit_id, "count": len(created)},
        )
        return created

    async def schedule_test_notifications(
        self,
        plan: PlanSnapshot,
        minute_interval: int = 1,
        stage: Optional[Stage] = None,
        channels: Optional[Iterable[Channel]] = None,
    ) -> List[NotificationRecordRow]:
        """
        Plan every slot of the timetable at short intervals from now.

        Slot i goes out at now + (i + 1) * minute_interval minutes, ordered
        by phase then day, optionally restricted to one phase and to some
        channels.
        """
        now = self.clock()
        created = []
        entries = self.timetable.entries(stage=stage, channels=channels)

        for index, entry in enumerate(entries):
            template = self._template_for(plan, entry)
            if template is None:
                continue

            scheduled_for = now + timedelta(minutes=(index + 1) * minute_interval)
            record = await self._create_and_dispatch(
                plan, entry, scheduled_for, template, auction_base=now, metadata={"test": True}
            )
            if record is not None:
                created.append(record)

        logger.info(
            "Test notifications planned",
            extra={"credit_id": plan.credit_id, "count": len(created), "minute_interval": minute_interval},
        )
        return created

    def _template_for(self, plan: PlanSnapshot, entry: TimetableEntry) -> Optional[str]:
        template = self.timetable.template_text(entry.template_key)
        if template is None:
            logger.warning(
                "No template for slot, skipping",
                extra={
                    "credit_id": plan.credit_id,
                    "stage": entry.stage.value,
                    "day": entry.day,
                    "channel": entry.channel.value,
                    "template_key": entry.template_key,
                },
            )
        return template

    async def _create_and_dispatch(
        self,
        plan: PlanSnapshot,
        entry: TimetableEntry,
        scheduled_for: datetime,
        template: str,
        auction_base: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[NotificationRecordRow]:
        slot = {
            "credit_id": plan.credit_id,
            "stage": entry.stage.value,
            "day": entry.day,
            "channel": entry.channel.value,
        }
        record = None
        try:
            data = build_template_data(
                plan, entry.stage, entry.day, auction_days=self.auction_days, auction_base=auction_base
            )
            message = render_message(template, data)
        except (ArithmeticError, TypeError, ValueError) as e:
            logger.error("Failed to render planned notification", extra={**slot, "error": str(e)})
            return None

        try:
            record = self.records.create_record(
                plan_id=plan.id,
                credit_id=plan.credit_id,
                borrower_id=plan.borrower_id,
                stage=entry.stage.value,
                day=entry.day,
                channel=entry.channel.value,
                message_template_key=entry.template_key,
                message_content=message,
                scheduled_for=scheduled_for,
                metadata_=dict(metadata or {}),
            )
            await self.dispatcher.dispatch(record)
        except SQLAlchemyError as e:
            self.records.db.rollback()
            logger.error("Failed to store planned notification", extra={**slot, "error": str(e)})
            return None
        except DomainException as e:
            logger.error("Failed to queue planned notification", extra={**slot, "error": str(e)})
            if record is not None:
                self._mark_undispatched(record, e)
            return None

        notifications_scheduled_counter.labels(stage=entry.stage.value, channel=entry.channel.value).inc()
        return record

    def _mark_undispatched(self, record: NotificationRecordRow, error: Exception) -> None:
        reason = f"Dispatch failed: {error}"
        metadata = self.records.append_error(record, reason, self.clock())
        self.records.transition(record, NotificationStatus.FAILED.value, fail_reason=reason, metadata_=metadata)
