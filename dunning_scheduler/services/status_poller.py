"""Credit status poller - cancels reminders when a credit closes"""

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from dunning_scheduler.domain.exceptions import DomainException
from dunning_scheduler.domain.models import StatusCheckResult, SweepItem, SweepResult, TERMINAL_CREDIT_STATUSES
from dunning_scheduler.infrastructure.clients.credit import CreditClient
from dunning_scheduler.infrastructure.database.repositories import PlanRepository
from dunning_scheduler.infrastructure.observability.metrics import status_checks_counter
from dunning_scheduler.services.cancellation import CancellationService
from dunning_scheduler.utils.date_utils import utc_now

logger = logging.getLogger(__name__)


class CreditStatusPoller:
    def __init__(
        self,
        plans: PlanRepository,
        cancellation: CancellationService,
        credit_client: CreditClient,
        clock: Callable[[], datetime] = utc_now,
        batch_size: int = 100,
        check_interval: timedelta = timedelta(hours=1),
    ):
        self.plans = plans
        self.cancellation = cancellation
        self.credit_client = credit_client
        self.clock = clock
        self.batch_size = batch_size
        self.check_interval = check_interval

    async def check_credit_status(self, credit_id: str) -> StatusCheckResult:
        """
        Refresh a plan's credit status and cancel its reminders if the
        credit is closed, cancelled or restructured.

        Raises:
            UpstreamLookupError: Credit service unavailable
        """
        status = await self.credit_client.get_credit_status(credit_id)

        plan = self.plans.get_live_plan(credit_id)
        if plan is None:
            status_checks_counter.labels(outcome="missing_plan").inc()
            logger.warning("No plan for credit", extra={"credit_id": credit_id})
            return StatusCheckResult(credit_id=credit_id, status=status, updated=False)

        self.plans.update_plan(plan, credit_status=status, last_check_date=self.clock())

        if status in TERMINAL_CREDIT_STATUSES:
            cancelled = await self.cancellation.cancel_scheduled_notifications(credit_id)
            status_checks_counter.labels(outcome="cancelled").inc()
            logger.info(
                "Credit no longer collectable, notifications cancelled",
                extra={"credit_id": credit_id, "status": status, "cancelled": cancelled.total_cancelled},
            )
            return StatusCheckResult(
                credit_id=credit_id,
                status=status,
                updated=True,
                notifications_cancelled=cancelled.total_cancelled,
            )

        status_checks_counter.labels(outcome="unchanged").inc()
        return StatusCheckResult(credit_id=credit_id, status=status, updated=True)

    async def run_sweep(self) -> SweepResult:
        """Check the active plans that are most overdue for a status check"""
        cutoff = self.clock() - self.check_interval
        due = self.plans.list_due_for_status_check(cutoff, self.batch_size)
        result = SweepResult()

        for plan in due:
            credit_id = plan.credit_id
            result.total_checked += 1
            try:
                checked = await self.check_credit_status(credit_id)
            except SQLAlchemyError as e:
                self.plans.db.rollback()
                self._record_error(result, credit_id, e)
                continue
            except DomainException as e:
                self._record_error(result, credit_id, e)
                continue

            result.items.append(
                SweepItem(
                    credit_id=credit_id,
                    status=checked.status,
                    notifications_cancelled=checked.notifications_cancelled,
                )
            )

        logger.info(
            "Status sweep finished",
            extra={"checked": result.total_checked, "errors": result.total_errors},
        )
        return result

    def _record_error(self, result: SweepResult, credit_id: str, error: Exception) -> None:
        status_checks_counter.labels(outcome="error").inc()
        logger.error("Status check failed", extra={"credit_id": credit_id, "error": str(error)})
        result.total_errors += 1
        result.items.append(SweepItem(credit_id=credit_id, status="error", error=str(error)))
