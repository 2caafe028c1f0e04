"""Integration tests for the queue runtime"""

from datetime import timedelta
from decimal import Decimal

from dunning_scheduler.domain.models import Channel, NotificationStatus
from dunning_scheduler.infrastructure.queue.base import STATUS_CHECK_QUEUE, TaskState
from dunning_scheduler.services.runtime import QueueRuntime
from dunning_scheduler.services.scheduler import NotificationScheduler
from tests.helpers import NOW


def _worker(runtime: QueueRuntime, queue: str):
    return next(worker for worker in runtime.build_workers() if worker.queue == queue)


def test_build_workers_covers_every_queue(deps):
    runtime = QueueRuntime(deps)

    workers = runtime.build_workers()

    assert {worker.queue for worker in workers} == {
        "notifications:sms",
        "notifications:email",
        "notifications:push",
        "notifications:ai_call",
        STATUS_CHECK_QUEUE,
    }
    concurrency = {worker.queue: worker.concurrency for worker in workers}
    assert concurrency["notifications:ai_call"] == 2
    assert concurrency[STATUS_CHECK_QUEUE] == 1


async def test_channel_worker_sends_due_notification(
    engine: NotificationScheduler, deps, backend, credit_client, senders, clock
):
    credit_client.add("CR-1")
    _, records = await engine.create_plan("CR-1", "B-1", NOW + timedelta(days=2), Decimal("80"))
    first = records[0]
    clock.now = first.scheduled_for

    processed = await _worker(QueueRuntime(deps), "notifications:sms").run_once()

    assert processed == 1
    assert await backend.get("notifications:sms", first.task_id) is None
    assert len(senders[Channel.SMS].sent) == 1
    engine.db.refresh(first)
    assert first.status == NotificationStatus.SENT.value


async def test_exhausted_notification_task_is_filed_as_failed(
    engine: NotificationScheduler, deps, backend, credit_client, senders, clock
):
    credit_client.add("CR-1")
    senders[Channel.SMS].fail()
    _, records = await engine.create_plan("CR-1", "B-1", NOW + timedelta(days=2), Decimal("80"))
    first = records[0]
    engine.records.update_record(first, retry_count=2)
    clock.now = first.scheduled_for

    await _worker(QueueRuntime(deps), "notifications:sms").run_once()

    failed = await backend.list_failed("notifications:sms")
    assert [task.task_id for task in failed] == [first.task_id]
    assert failed[0].state == TaskState.FAILED
    engine.db.refresh(first)
    assert first.status == NotificationStatus.FAILED.value


async def test_status_sweep_is_queued_once_per_tick(deps, backend, clock):
    runtime = QueueRuntime(deps)

    first = await runtime.enqueue_status_sweep()
    clock.advance(minutes=10)
    assert await runtime.enqueue_status_sweep() is None

    # A finished sweep does not let another process queue the same tick again
    claimed = await backend.claim_due(STATUS_CHECK_QUEUE, clock.now, limit=1)
    await backend.complete(claimed[0])
    clock.advance(minutes=10)
    assert await runtime.enqueue_status_sweep() is None

    clock.advance(hours=1)
    later = await runtime.enqueue_status_sweep()

    assert later.task_id != first.task_id
    assert [task.task_id for task in await backend.list_tasks(STATUS_CHECK_QUEUE)] == [later.task_id]


async def test_status_sweep_dedupes_across_processes(deps):
    first = await QueueRuntime(deps).enqueue_status_sweep()
    second = await QueueRuntime(deps).enqueue_status_sweep()

    assert first is not None
    assert second is None


async def test_status_check_worker_cancels_closed_credits(
    engine: NotificationScheduler, deps, credit_client, clock
):
    await engine.create_plan("CR-1", "B-1", NOW + timedelta(days=2), Decimal("80"))
    credit_client.add("CR-1", status="closed")
    clock.advance(hours=2)
    runtime = QueueRuntime(deps)
    await runtime.enqueue_status_sweep()

    assert await _worker(runtime, STATUS_CHECK_QUEUE).run_once() == 1

    engine.db.expire_all()
    _, scheduled = engine.list_notifications("CR-1", status=NotificationStatus.SCHEDULED.value)
    _, cancelled = engine.list_notifications("CR-1", status=NotificationStatus.CANCELLED.value)
    assert scheduled == 0
    assert cancelled == 34


async def test_runtime_start_and_stop(deps):
    runtime = QueueRuntime(deps)

    await runtime.start()
    assert len(runtime.workers) == 5
    assert all(worker.is_running for worker in runtime.workers)

    await runtime.stop()
    assert runtime.workers == []
