"""POST /v1/notifications/{record_id}/reschedule - Move a notification in time"""

from fastapi import APIRouter, Depends

from dunning_scheduler.api.dependencies import get_scheduler
from dunning_scheduler.api.v1.schemas import RescheduleRequest, RescheduleResponse
from dunning_scheduler.services.scheduler import NotificationScheduler

router = APIRouter()


@router.post("/notifications/{record_id}/reschedule", response_model=RescheduleResponse)
async def reschedule_notification(
    record_id: str,
    request: RescheduleRequest,
    engine: NotificationScheduler = Depends(get_scheduler),
):
    """
    Reschedule a scheduled or failed notification.

    Returns:
        The new task id and the time it will run
    """
    task = await engine.reschedule_notification(record_id, request.scheduled_for)
    record = engine.records.get_record(record_id)
    return RescheduleResponse(record_id=str(record.id), task_id=task.task_id, scheduled_for=record.scheduled_for)
