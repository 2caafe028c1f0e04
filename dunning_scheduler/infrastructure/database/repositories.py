"""Data access layer for plans and notification records"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional, Tuple, Union
from sqlalchemy.orm import Session
from dunning_scheduler.domain.exceptions import ValidationError
from dunning_scheduler.domain.models import NotificationStatus, PlanSnapshot, PlanStatus, can_transition
from dunning_scheduler.infrastructure.database.models import NotificationPlanRow, NotificationRecordRow


def _as_uuid(value: Union[str, uuid.UUID]) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def to_snapshot(plan: NotificationPlanRow) -> PlanSnapshot:
    return PlanSnapshot(
        id=plan.id,
        credit_id=plan.credit_id,
        borrower_id=plan.borrower_id,
        due_date=plan.due_date,
        amount=Decimal(plan.amount),
        currency=plan.currency,
    )


class PlanRepository:
    """Repository for notification plans"""

    def __init__(self, db: Session):
        self.db = db

    def create_plan(
        self,
        credit_id: str,
        borrower_id: str,
        due_date: datetime,
        amount: Decimal,
        currency: str = "EUR",
        checked_at: Optional[datetime] = None,
    ) -> NotificationPlanRow:
        """Persist a new active plan"""
        plan = NotificationPlanRow(
            credit_id=credit_id,
            borrower_id=borrower_id,
            due_date=due_date,
            amount=amount,
            currency=currency,
            status=PlanStatus.ACTIVE.value,
        )
        if checked_at is not None:
            plan.last_check_date = checked_at
        self.db.add(plan)
        self.db.commit()
        return plan

    def get_live_plan(self, credit_id: str) -> Optional[NotificationPlanRow]:
        """Fetch the non-cancelled plan for a credit"""
        return (
            self.db.query(NotificationPlanRow)
            .filter(
                NotificationPlanRow.credit_id == credit_id,
                NotificationPlanRow.status != PlanStatus.CANCELLED.value,
            )
            .first()
        )

    def get_plan(self, credit_id: str) -> Optional[NotificationPlanRow]:
        """Live plan for a credit, else its most recent cancelled one"""
        live = self.get_live_plan(credit_id)
        if live is not None:
            return live
        return (
            self.db.query(NotificationPlanRow)
            .filter(NotificationPlanRow.credit_id == credit_id)
            .order_by(NotificationPlanRow.created_at.desc())
            .first()
        )

    def list_plans(
        self, status: Optional[str] = None, page: int = 1, limit: int = 10
    ) -> Tuple[List[NotificationPlanRow], int]:
        query = self.db.query(NotificationPlanRow)
        if status:
            query = query.filter(NotificationPlanRow.status == status)
        total = query.count()
        rows = (
            query.order_by(NotificationPlanRow.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return rows, total

    def update_plan(self, plan: NotificationPlanRow, **fields: Any) -> NotificationPlanRow:
        for name, value in fields.items():
            setattr(plan, name, value)
        self.db.commit()
        return plan

    def list_due_for_status_check(self, cutoff: datetime, limit: int) -> List[NotificationPlanRow]:
        """Active plans not checked since cutoff, oldest check first"""
        return (
            self.db.query(NotificationPlanRow)
            .filter(
                NotificationPlanRow.status == PlanStatus.ACTIVE.value,
                NotificationPlanRow.last_check_date < cutoff,
            )
            .order_by(NotificationPlanRow.last_check_date.asc())
            .limit(limit)
            .all()
        )


class NotificationRecordRepository:
    """Repository for notification records

    Every mutation commits on its own so each record update is atomic.
    """

    def __init__(self, db: Session):
        self.db = db

    def create_record(self, **fields: Any) -> NotificationRecordRow:
        fields.setdefault("status", NotificationStatus.SCHEDULED.value)
        fields.setdefault("metadata_", {})
        record = NotificationRecordRow(**fields)
        self.db.add(record)
        self.db.commit()
        return record

    def get_record(self, record_id: Union[str, uuid.UUID]) -> Optional[NotificationRecordRow]:
        key = _as_uuid(record_id)
        if key is None:
            return None
        return self.db.get(NotificationRecordRow, key)

    def list_scheduled_for_credit(self, credit_id: str) -> List[NotificationRecordRow]:
        return (
            self.db.query(NotificationRecordRow)
            .filter(
                NotificationRecordRow.credit_id == credit_id,
                NotificationRecordRow.status == NotificationStatus.SCHEDULED.value,
            )
            .order_by(NotificationRecordRow.scheduled_for.asc())
            .all()
        )

    def list_for_credit(
        self, credit_id: str, status: Optional[str] = None, page: int = 1, limit: int = 20
    ) -> Tuple[List[NotificationRecordRow], int]:
        query = self.db.query(NotificationRecordRow).filter(NotificationRecordRow.credit_id == credit_id)
        if status:
            query = query.filter(NotificationRecordRow.status == status)
        total = query.count()
        rows = (
            query.order_by(NotificationRecordRow.scheduled_for.asc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return rows, total

    def count_sent_for_borrower(self, borrower_id: str, start: datetime, end: datetime) -> int:
        """Messages already delivered to a borrower in [start, end)"""
        return (
            self.db.query(NotificationRecordRow)
            .filter(
                NotificationRecordRow.borrower_id == borrower_id,
                NotificationRecordRow.status == NotificationStatus.SENT.value,
                NotificationRecordRow.sent_at >= start,
                NotificationRecordRow.sent_at < end,
            )
            .count()
        )

    def transition(self, record: NotificationRecordRow, status: str, **fields: Any) -> NotificationRecordRow:
        """
        Change a record's status and persist extra fields in one commit.

        Raises:
            ValidationError: Transition not allowed by the record lifecycle
        """
        if not can_transition(record.status, status):
            raise ValidationError(f"Notification {record.id} cannot move from {record.status} to {status}")
        record.status = status
        return self.update_record(record, **fields)

    def update_record(self, record: NotificationRecordRow, **fields: Any) -> NotificationRecordRow:
        for name, value in fields.items():
            setattr(record, name, value)
        self.db.commit()
        return record

    def append_error(self, record: NotificationRecordRow, error: str, at: datetime) -> dict:
        """New metadata dict with an error entry appended (not yet persisted)"""
        metadata = dict(record.metadata_ or {})
        errors = list(metadata.get("errors", []))
        errors.append({"error": error, "at": at.isoformat()})
        metadata["errors"] = errors
        return metadata
