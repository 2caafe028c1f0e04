"""Engine facade: the scheduling operations and the plan lifecycle"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from dunning_scheduler.config import Settings
from dunning_scheduler.domain.exceptions import ConfigurationError, DuplicatePlanError, NotFoundError, ValidationError
from dunning_scheduler.domain.models import (
    CancellationResult,
    Channel,
    ExecutionOutcome,
    PlanStatus,
    Stage,
    StatusCheckResult,
    SweepResult,
)
from dunning_scheduler.domain.time_policy import TimeWindowPolicy
from dunning_scheduler.domain.timetable import Timetable, load_timetable
from dunning_scheduler.infrastructure.channels.senders import ChannelSender, build_channel_senders
from dunning_scheduler.infrastructure.clients.credit import CreditClient
from dunning_scheduler.infrastructure.database.models import NotificationPlanRow, NotificationRecordRow
from dunning_scheduler.infrastructure.database.repositories import (
    NotificationRecordRepository,
    PlanRepository,
    to_snapshot,
)
from dunning_scheduler.infrastructure.queue.base import BackoffPolicy, QueueBackend, Task
from dunning_scheduler.infrastructure.queue.memory import InMemoryQueueBackend
from dunning_scheduler.infrastructure.queue.redis_backend import RedisQueueBackend
from dunning_scheduler.services.cancellation import CancellationService
from dunning_scheduler.services.dispatcher import TaskDispatcher
from dunning_scheduler.services.executor import NotificationExecutor
from dunning_scheduler.services.planner import PhasePlanner
from dunning_scheduler.services.rescheduler import Rescheduler
from dunning_scheduler.services.status_poller import CreditStatusPoller
from dunning_scheduler.utils.date_utils import utc_now

logger = logging.getLogger(__name__)

# Due date of plans created for test scenarios
TEST_PLAN_DUE_IN = timedelta(minutes=5)


@dataclass
class EngineDependencies:
    """Long-lived collaborators shared by every unit of work"""

    settings: Settings
    backend: QueueBackend
    session_factory: sessionmaker
    senders: Dict[Channel, ChannelSender]
    credit_client: CreditClient
    timetable: Timetable
    time_policy: TimeWindowPolicy
    clock: Callable[[], datetime] = field(default=utc_now)


def build_queue_backend(settings: Settings) -> QueueBackend:
    """
    Create the configured queue backend.

    Raises:
        ConfigurationError: Unknown backend name
    """
    if settings.queue_backend == "redis":
        return RedisQueueBackend(settings.redis_url, prefix=settings.queue_key_prefix)
    if settings.queue_backend == "memory":
        return InMemoryQueueBackend()
    raise ConfigurationError(f"Unknown queue backend: {settings.queue_backend}")


def build_engine_dependencies(settings: Settings, session_factory: sessionmaker) -> EngineDependencies:
    return EngineDependencies(
        settings=settings,
        backend=build_queue_backend(settings),
        session_factory=session_factory,
        senders=build_channel_senders(settings),
        credit_client=CreditClient(
            base_url=settings.main_service_url,
            api_key=settings.main_service_api_key,
            timeout=settings.http_timeout_seconds,
        ),
        timetable=load_timetable(settings.timetable_path),
        time_policy=TimeWindowPolicy.from_settings(settings),
    )


class NotificationScheduler:
    """Scheduling engine bound to one database session"""

    def __init__(self, db: Session, deps: EngineDependencies):
        settings = deps.settings
        self.db = db
        self.deps = deps
        self.clock = deps.clock

        self.plans = PlanRepository(db)
        self.records = NotificationRecordRepository(db)
        self.dispatcher = TaskDispatcher(
            deps.backend,
            self.records,
            clock=deps.clock,
            min_delay_ms=settings.min_dispatch_delay_ms,
            backoff=BackoffPolicy(max_attempts=settings.retry_max_attempts, base_ms=settings.retry_backoff_base_ms),
        )
        self.planner = PhasePlanner(
            self.records,
            self.dispatcher,
            deps.timetable,
            deps.time_policy.tz,
            clock=deps.clock,
            auction_days=settings.auction_days,
        )
        self.cancellation = CancellationService(self.records, self.dispatcher)
        self.rescheduler = Rescheduler(self.records, self.dispatcher, clock=deps.clock)
        self.executor = NotificationExecutor(
            self.records,
            self.dispatcher,
            deps.senders,
            deps.credit_client,
            deps.time_policy,
            clock=deps.clock,
            max_per_day=settings.max_notifications_per_day,
            max_attempts=settings.retry_max_attempts,
            retry_delay=timedelta(minutes=settings.retry_delay_minutes),
        )
        self.poller = CreditStatusPoller(
            self.plans,
            self.cancellation,
            deps.credit_client,
            clock=deps.clock,
            batch_size=settings.status_check_batch_size,
            check_interval=timedelta(milliseconds=settings.status_check_interval_ms),
        )

    # Engine operations

    async def schedule_notifications(self, plan: NotificationPlanRow) -> List[NotificationRecordRow]:
        return await self.planner.schedule_notifications(to_snapshot(plan))

    async def cancel_scheduled_notifications(self, credit_id: str) -> CancellationResult:
        return await self.cancellation.cancel_scheduled_notifications(credit_id)

    async def reschedule_notification(self, record_id: str, new_time: Union[str, datetime]) -> Task:
        return await self.rescheduler.reschedule(record_id, new_time)

    async def check_credit_status(self, credit_id: str) -> StatusCheckResult:
        return await self.poller.check_credit_status(credit_id)

    async def run_status_sweep(self) -> SweepResult:
        return await self.poller.run_sweep()

    async def execute_notification(self, record_id: str) -> ExecutionOutcome:
        return await self.executor.execute(record_id)

    # Plan lifecycle

    async def create_plan(
        self,
        credit_id: str,
        borrower_id: str,
        due_date: datetime,
        amount: Decimal,
        currency: str = "EUR",
    ) -> Tuple[NotificationPlanRow, List[NotificationRecordRow]]:
        """
        Register a loan and plan its reminders.

        Raises:
            DuplicatePlanError: A live plan exists for the credit
            ValidationError: Naive due date
        """
        plan = self._insert_plan(credit_id, borrower_id, due_date, amount, currency)
        records = await self.schedule_notifications(plan)
        return plan, records

    async def update_plan(
        self,
        credit_id: str,
        due_date: Optional[datetime] = None,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Tuple[NotificationPlanRow, Optional[CancellationResult], List[NotificationRecordRow]]:
        """
        Update a live plan. A new due date cancels the scheduled reminders
        and plans them again from the new date.

        Raises:
            NotFoundError: No live plan for the credit
            ValidationError: Naive due date or unknown status
        """
        plan = self._require_live_plan(credit_id)
        if status is not None and status not in {s.value for s in PlanStatus}:
            raise ValidationError(f"Unknown plan status: {status}")
        if status == PlanStatus.CANCELLED.value:
            result = await self.cancel_plan(credit_id)
            return plan, result, []

        fields = {}
        if amount is not None:
            fields["amount"] = amount
        if currency is not None:
            fields["currency"] = currency
        if status is not None:
            fields["status"] = status

        due_changed = due_date is not None and self._require_aware(due_date) != plan.due_date
        if not due_changed:
            self.plans.update_plan(plan, **fields)
            return plan, None, []

        cancelled = await self.cancellation.cancel_scheduled_notifications(credit_id)
        self.plans.update_plan(plan, due_date=due_date, **fields)
        records = await self.schedule_notifications(plan)
        logger.info(
            "Plan due date changed, notifications replanned",
            extra={"credit_id": credit_id, "cancelled": cancelled.total_cancelled, "planned": len(records)},
        )
        return plan, cancelled, records

    async def cancel_plan(self, credit_id: str) -> CancellationResult:
        plan = self._require_live_plan(credit_id)
        self.plans.update_plan(plan, status=PlanStatus.CANCELLED.value)
        return await self.cancellation.cancel_scheduled_notifications(credit_id)

    async def schedule_test_scenario(
        self,
        credit_id: str,
        borrower_id: str,
        amount: Decimal,
        currency: str = "EUR",
        minute_interval: int = 1,
        stage: Optional[Stage] = None,
        channels: Optional[Iterable[Channel]] = None,
    ) -> Tuple[NotificationPlanRow, List[NotificationRecordRow]]:
        """Create a plan due shortly and queue every timetable message minutes apart"""
        if minute_interval < 1:
            raise ValidationError("minute_interval must be at least 1")
        plan = self._insert_plan(credit_id, borrower_id, self.clock() + TEST_PLAN_DUE_IN, amount, currency)
        records = await self.planner.schedule_test_notifications(
            to_snapshot(plan), minute_interval=minute_interval, stage=stage, channels=channels
        )
        return plan, records

    def get_plan(self, credit_id: str) -> NotificationPlanRow:
        plan = self.plans.get_plan(credit_id)
        if plan is None:
            raise NotFoundError(f"Plan for credit {credit_id} not found")
        return plan

    def list_plans(self, status: Optional[str] = None, page: int = 1, limit: int = 10):
        return self.plans.list_plans(status=status, page=page, limit=limit)

    def list_notifications(self, credit_id: str, status: Optional[str] = None, page: int = 1, limit: int = 20):
        return self.records.list_for_credit(credit_id, status=status, page=page, limit=limit)

    def _insert_plan(
        self, credit_id: str, borrower_id: str, due_date: datetime, amount: Decimal, currency: str
    ) -> NotificationPlanRow:
        due_date = self._require_aware(due_date)
        if self.plans.get_live_plan(credit_id) is not None:
            raise DuplicatePlanError(f"Plan for credit {credit_id} already exists")
        try:
            return self.plans.create_plan(
                credit_id=credit_id,
                borrower_id=borrower_id,
                due_date=due_date,
                amount=amount,
                currency=currency,
                checked_at=self.clock(),
            )
        except IntegrityError as e:
            self.db.rollback()
            raise DuplicatePlanError(f"Plan for credit {credit_id} already exists") from e

    def _require_live_plan(self, credit_id: str) -> NotificationPlanRow:
        plan = self.plans.get_live_plan(credit_id)
        if plan is None:
            raise NotFoundError(f"Plan for credit {credit_id} not found")
        return plan

    @staticmethod
    def _require_aware(moment: datetime) -> datetime:
        if moment.tzinfo is None or moment.utcoffset() is None:
            raise ValidationError("Due date must include a timezone offset")
        return moment
