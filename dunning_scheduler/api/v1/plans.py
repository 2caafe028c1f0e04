"""/v1/plans - plan lifecycle, notification listing, cancellation and status checks"""

import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from dunning_scheduler.api.dependencies import get_request_id, get_scheduler
from dunning_scheduler.api.v1.schemas import (
    CancellationResponse,
    NotificationListResponse,
    PlanCreateRequest,
    PlanCreateResponse,
    PlanListResponse,
    PlanResponse,
    PlanUpdateRequest,
    PlanUpdateResponse,
    StatusCheckResponse,
    page_count,
    to_notification_response,
    to_plan_response,
)
from dunning_scheduler.domain.models import NotificationStatus, PlanStatus
from dunning_scheduler.services.scheduler import NotificationScheduler

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/plans", response_model=PlanCreateResponse, status_code=201)
async def create_plan(
    request_body: PlanCreateRequest,
    request: Request,
    engine: NotificationScheduler = Depends(get_scheduler),
):
    """
    Register a loan and schedule its reminders.

    Returns:
        The plan and the number of notifications queued
    """
    plan, records = await engine.create_plan(
        credit_id=request_body.credit_id,
        borrower_id=request_body.borrower_id,
        due_date=request_body.due_date,
        amount=request_body.amount,
        currency=request_body.currency.upper(),
    )
    logger.info(
        "Plan created",
        extra={
            "request_id": get_request_id(request),
            "credit_id": plan.credit_id,
            "scheduled": len(records),
        },
    )
    return PlanCreateResponse(plan=to_plan_response(plan), scheduled_notifications=len(records))


@router.get("/plans", response_model=PlanListResponse)
def list_plans(
    status: Optional[PlanStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    engine: NotificationScheduler = Depends(get_scheduler),
):
    rows, total = engine.list_plans(status=status.value if status else None, page=page, limit=limit)
    return PlanListResponse(
        items=[to_plan_response(row) for row in rows],
        total=total,
        page=page,
        limit=limit,
        pages=page_count(total, limit),
    )


@router.get("/plans/{credit_id}", response_model=PlanResponse)
def get_plan(credit_id: str, engine: NotificationScheduler = Depends(get_scheduler)):
    return to_plan_response(engine.get_plan(credit_id))


@router.put("/plans/{credit_id}", response_model=PlanUpdateResponse)
async def update_plan(
    credit_id: str,
    request: PlanUpdateRequest,
    engine: NotificationScheduler = Depends(get_scheduler),
):
    """Update a plan; a changed due date replans every scheduled reminder"""
    plan, cancelled, records = await engine.update_plan(
        credit_id,
        due_date=request.due_date,
        amount=request.amount,
        currency=request.currency.upper() if request.currency else None,
        status=request.status.value if request.status else None,
    )
    return PlanUpdateResponse(
        plan=to_plan_response(plan),
        notifications_cancelled=cancelled.total_cancelled if cancelled else 0,
        notifications_scheduled=len(records),
    )


@router.delete("/plans/{credit_id}", response_model=CancellationResponse)
async def cancel_plan(credit_id: str, engine: NotificationScheduler = Depends(get_scheduler)):
    """Cancel a plan together with its scheduled reminders"""
    result = await engine.cancel_plan(credit_id)
    return CancellationResponse(**asdict(result))


@router.get("/plans/{credit_id}/notifications", response_model=NotificationListResponse)
def list_notifications(
    credit_id: str,
    status: Optional[NotificationStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    engine: NotificationScheduler = Depends(get_scheduler),
):
    rows, total = engine.list_notifications(
        credit_id, status=status.value if status else None, page=page, limit=limit
    )
    return NotificationListResponse(
        items=[to_notification_response(row) for row in rows],
        total=total,
        page=page,
        limit=limit,
        pages=page_count(total, limit),
    )


@router.post("/plans/{credit_id}/notifications/cancel", response_model=CancellationResponse)
async def cancel_notifications(credit_id: str, engine: NotificationScheduler = Depends(get_scheduler)):
    """Cancel scheduled reminders but keep the plan"""
    result = await engine.cancel_scheduled_notifications(credit_id)
    return CancellationResponse(**asdict(result))


@router.post("/plans/{credit_id}/status-check", response_model=StatusCheckResponse)
async def check_status(credit_id: str, engine: NotificationScheduler = Depends(get_scheduler)):
    """Refresh the credit status now instead of waiting for the sweep"""
    result = await engine.check_credit_status(credit_id)
    return StatusCheckResponse(**asdict(result))
