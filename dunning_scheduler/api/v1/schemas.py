"""Pydantic schemas for API request/response validation"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import AwareDatetime, BaseModel, Field

from dunning_scheduler.domain.models import Channel, PlanStatus, Stage


class PlanCreateRequest(BaseModel):
    """Request body for POST /v1/plans"""

    credit_id: str = Field(..., min_length=1, max_length=64, description="Credit identifier")
    borrower_id: str = Field(..., min_length=1, max_length=64, description="Borrower identifier")
    due_date: AwareDatetime = Field(..., description="Payment due instant with offset")
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)
    currency: str = Field("EUR", min_length=3, max_length=3)


class PlanUpdateRequest(BaseModel):
    """Request body for PUT /v1/plans/{credit_id}"""

    due_date: Optional[AwareDatetime] = None
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=14, decimal_places=2)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    status: Optional[PlanStatus] = None


class PlanResponse(BaseModel):
    plan_id: str
    credit_id: str
    borrower_id: str
    due_date: datetime
    amount: Decimal
    currency: str
    status: str
    credit_status: str
    last_check_date: datetime
    created_at: datetime


class PlanCreateResponse(BaseModel):
    """Response for POST /v1/plans and POST /v1/test/scenario"""

    plan: PlanResponse
    scheduled_notifications: int


class PlanUpdateResponse(BaseModel):
    plan: PlanResponse
    notifications_cancelled: int = 0
    notifications_scheduled: int = 0


class PlanListResponse(BaseModel):
    items: List[PlanResponse]
    total: int
    page: int
    limit: int
    pages: int


class NotificationResponse(BaseModel):
    record_id: str
    credit_id: str
    borrower_id: str
    stage: str
    day: int
    channel: str
    message_template_key: str
    message_content: str
    scheduled_for: datetime
    sent_at: Optional[datetime] = None
    status: str
    fail_reason: Optional[str] = None
    retry_count: int
    task_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class NotificationListResponse(BaseModel):
    items: List[NotificationResponse]
    total: int
    page: int
    limit: int
    pages: int


class CancellationDetailSchema(BaseModel):
    record_id: str
    status: str
    success: bool
    error: Optional[str] = None


class CancellationResponse(BaseModel):
    total_cancelled: int
    total_failed: int
    details: List[CancellationDetailSchema]


class StatusCheckResponse(BaseModel):
    credit_id: str
    status: Optional[str]
    updated: bool
    notifications_cancelled: int = 0


class RescheduleRequest(BaseModel):
    """Request body for POST /v1/notifications/{record_id}/reschedule"""

    scheduled_for: str = Field(..., description="ISO-8601 timestamp with offset")


class RescheduleResponse(BaseModel):
    record_id: str
    task_id: str
    scheduled_for: datetime


class ScenarioTestRequest(BaseModel):
    """Request body for POST /v1/test/scenario"""

    credit_id: str = Field(..., min_length=1, max_length=64)
    borrower_id: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)
    currency: str = Field("EUR", min_length=3, max_length=3)
    minute_interval: int = Field(1, ge=1, le=1440)
    stage: Optional[Stage] = None
    channels: Optional[List[Channel]] = None


def to_plan_response(plan) -> PlanResponse:
    return PlanResponse(
        plan_id=str(plan.id),
        credit_id=plan.credit_id,
        borrower_id=plan.borrower_id,
        due_date=plan.due_date,
        amount=plan.amount,
        currency=plan.currency,
        status=plan.status,
        credit_status=plan.credit_status,
        last_check_date=plan.last_check_date,
        created_at=plan.created_at,
    )


def to_notification_response(record) -> NotificationResponse:
    return NotificationResponse(
        record_id=str(record.id),
        credit_id=record.credit_id,
        borrower_id=record.borrower_id,
        stage=record.stage,
        day=record.day,
        channel=record.channel,
        message_template_key=record.message_template_key,
        message_content=record.message_content,
        scheduled_for=record.scheduled_for,
        sent_at=record.sent_at,
        status=record.status,
        fail_reason=record.fail_reason,
        retry_count=record.retry_count,
        task_id=record.task_id,
        metadata=record.metadata_ or {},
    )


def page_count(total: int, limit: int) -> int:
    return (total + limit - 1) // limit if limit else 0
