"""POST /v1/test/scenario - Queue every timetable message minutes apart"""

from fastapi import APIRouter, Depends

from dunning_scheduler.api.dependencies import get_scheduler
from dunning_scheduler.api.v1.schemas import PlanCreateResponse, ScenarioTestRequest, to_plan_response
from dunning_scheduler.services.scheduler import NotificationScheduler

router = APIRouter()


@router.post("/test/scenario", response_model=PlanCreateResponse, status_code=201)
async def schedule_test_scenario(
    request: ScenarioTestRequest,
    engine: NotificationScheduler = Depends(get_scheduler),
):
    plan, records = await engine.schedule_test_scenario(
        credit_id=request.credit_id,
        borrower_id=request.borrower_id,
        amount=request.amount,
        currency=request.currency.upper(),
        minute_interval=request.minute_interval,
        stage=request.stage,
        channels=request.channels,
    )
    return PlanCreateResponse(plan=to_plan_response(plan), scheduled_notifications=len(records))
