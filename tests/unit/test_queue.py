"""Unit tests for the queue backends and worker loop"""

import asyncio
import pytest
from datetime import timedelta
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from dunning_scheduler.domain.exceptions import ConfigurationError, QueueError, RetryBudgetExhaustedError
from dunning_scheduler.domain.models import Channel
from dunning_scheduler.infrastructure.queue.base import BackoffPolicy, Task, TaskState, queue_for_channel
from dunning_scheduler.infrastructure.queue.memory import InMemoryQueueBackend
from dunning_scheduler.infrastructure.queue.redis_backend import RedisQueueBackend
from dunning_scheduler.infrastructure.queue.worker import QueueWorker
from tests.helpers import NOW, FrozenClock

QUEUE = "notifications:sms"


@pytest.fixture(params=["memory", "redis"])
async def queue_backend(request):
    """Each backend test runs against the in-memory queue and a fake Redis"""
    if request.param == "memory":
        backend = InMemoryQueueBackend()
    else:
        client = FakeRedis(server=FakeServer(), decode_responses=True)
        backend = RedisQueueBackend("redis://unused", prefix="test", client=client)
    yield backend
    await backend.close()


def _task(task_id: str = "t-1", run_at=NOW, **kwargs) -> Task:
    return Task(task_id=task_id, queue=QUEUE, payload={"record_id": "r-1"}, run_at=run_at, **kwargs)


def test_backoff_policy_doubles():
    policy = BackoffPolicy(max_attempts=3, base_ms=60_000)
    assert policy.delay_for(1) == timedelta(seconds=60)
    assert policy.delay_for(2) == timedelta(seconds=120)
    assert policy.delay_for(3) == timedelta(seconds=240)


def test_queue_for_channel():
    assert queue_for_channel(Channel.AI_CALL) == "notifications:ai_call"
    assert queue_for_channel("email") == "notifications:email"
    with pytest.raises(ConfigurationError):
        queue_for_channel("fax")


def test_task_dict_round_trip():
    task = _task(attempts_made=2, last_error="boom")
    assert Task.from_dict(task.to_dict()) == task


async def test_add_is_idempotent(queue_backend):
    first = await queue_backend.add(_task("t-1"))
    second = await queue_backend.add(_task("t-1", run_at=NOW + timedelta(hours=1)))

    assert second.task_id == first.task_id
    assert second.run_at == NOW
    assert len(await queue_backend.list_tasks(QUEUE)) == 1


async def test_claim_due_only_returns_due_tasks(queue_backend):
    await queue_backend.add(_task("due", run_at=NOW - timedelta(seconds=1)))
    await queue_backend.add(_task("later", run_at=NOW + timedelta(minutes=5)))

    claimed = await queue_backend.claim_due(QUEUE, NOW, limit=10)

    assert [task.task_id for task in claimed] == ["due"]
    assert claimed[0].state == TaskState.ACTIVE
    assert await queue_backend.claim_due(QUEUE, NOW, limit=10) == []


async def test_claim_due_orders_by_run_at_and_honours_limit(queue_backend):
    await queue_backend.add(_task("c", run_at=NOW - timedelta(minutes=1)))
    await queue_backend.add(_task("a", run_at=NOW - timedelta(minutes=3)))
    await queue_backend.add(_task("b", run_at=NOW - timedelta(minutes=2)))

    claimed = await queue_backend.claim_due(QUEUE, NOW, limit=2)

    assert [task.task_id for task in claimed] == ["a", "b"]
    assert [task.task_id for task in await queue_backend.claim_due(QUEUE, NOW, limit=2)] == ["c"]


async def test_claimed_task_keeps_empty_last_error(queue_backend):
    await queue_backend.add(_task())

    claimed = await queue_backend.claim_due(QUEUE, NOW, limit=1)
    stored = await queue_backend.get(QUEUE, "t-1")

    assert claimed[0].last_error is None
    assert claimed[0].payload == {"record_id": "r-1"}
    assert stored.state == TaskState.ACTIVE
    assert stored.last_error is None
    assert stored.run_at == NOW


async def test_remove_active_task_raises(queue_backend):
    await queue_backend.add(_task())
    await queue_backend.claim_due(QUEUE, NOW, limit=1)

    with pytest.raises(QueueError):
        await queue_backend.remove(QUEUE, "t-1")


async def test_remove_delayed_task(queue_backend):
    await queue_backend.add(_task())

    assert await queue_backend.remove(QUEUE, "t-1") is True
    assert await queue_backend.get(QUEUE, "t-1") is None
    assert await queue_backend.claim_due(QUEUE, NOW, limit=1) == []


async def test_remove_missing_task_returns_false(queue_backend):
    assert await queue_backend.remove(QUEUE, "nope") is False


async def test_failed_tasks_are_kept(queue_backend):
    await queue_backend.add(_task())
    claimed = await queue_backend.claim_due(QUEUE, NOW, limit=1)

    await queue_backend.fail(claimed[0], "RuntimeError: boom")

    failed = await queue_backend.list_failed(QUEUE)
    assert [task.task_id for task in failed] == ["t-1"]
    assert failed[0].state == TaskState.FAILED
    assert failed[0].last_error == "RuntimeError: boom"
    assert failed[0].attempts_made == 1
    assert await queue_backend.claim_due(QUEUE, NOW + timedelta(days=1), limit=1) == []


async def test_requeue_stalled_hands_claim_back(queue_backend):
    await queue_backend.add(_task())
    await queue_backend.claim_due(QUEUE, NOW, limit=1)

    assert await queue_backend.requeue_stalled(QUEUE, NOW - timedelta(seconds=1)) == 0
    assert await queue_backend.requeue_stalled(QUEUE, NOW + timedelta(minutes=5)) == 1

    task = await queue_backend.get(QUEUE, "t-1")
    assert task.state == TaskState.DELAYED
    assert await queue_backend.remove(QUEUE, "t-1") is True


async def test_requeued_task_can_be_claimed_again(queue_backend):
    await queue_backend.add(_task())
    await queue_backend.claim_due(QUEUE, NOW, limit=1)
    later = NOW + timedelta(minutes=5)

    await queue_backend.requeue_stalled(QUEUE, later)

    assert [task.task_id for task in await queue_backend.claim_due(QUEUE, later, limit=1)] == ["t-1"]


async def test_set_marker_only_once(queue_backend):
    assert await queue_backend.set_marker("status-sweep-1", timedelta(hours=1)) is True
    assert await queue_backend.set_marker("status-sweep-1", timedelta(hours=1)) is False
    assert await queue_backend.set_marker("status-sweep-2", timedelta(hours=1)) is True


async def test_worker_completes_successful_task(queue_backend):
    handled = []

    async def handler(task):
        handled.append(task.task_id)

    await queue_backend.add(_task())
    worker = QueueWorker(queue_backend, QUEUE, handler, clock=FrozenClock())

    assert await worker.run_once() == 1
    assert handled == ["t-1"]
    assert await queue_backend.get(QUEUE, "t-1") is None


async def test_worker_retries_with_exponential_backoff(queue_backend):
    clock = FrozenClock()

    async def handler(task):
        raise RuntimeError("database went away")

    await queue_backend.add(_task(max_attempts=3, backoff_base_ms=60_000))
    worker = QueueWorker(queue_backend, QUEUE, handler, clock=clock)

    await worker.run_once()
    task = await queue_backend.get(QUEUE, "t-1")
    assert task.state == TaskState.DELAYED
    assert task.attempts_made == 1
    assert task.run_at == NOW + timedelta(seconds=60)
    assert "database went away" in task.last_error

    clock.advance(seconds=60)
    await worker.run_once()
    task = await queue_backend.get(QUEUE, "t-1")
    assert task.attempts_made == 2
    assert task.run_at == clock.now + timedelta(seconds=120)

    clock.advance(seconds=120)
    await worker.run_once()
    task = await queue_backend.get(QUEUE, "t-1")
    assert task.state == TaskState.FAILED
    assert task.attempts_made == 3
    assert await queue_backend.list_failed(QUEUE) == [task]


async def test_worker_files_non_retryable_failure_immediately(queue_backend):
    async def handler(task):
        raise RetryBudgetExhaustedError("gave up")

    await queue_backend.add(_task(max_attempts=3))
    worker = QueueWorker(queue_backend, QUEUE, handler, clock=FrozenClock())
    await worker.run_once()

    task = await queue_backend.get(QUEUE, "t-1")
    assert task.state == TaskState.FAILED
    assert task.attempts_made == 1


async def test_worker_respects_concurrency_limit(queue_backend):
    for index in range(5):
        await queue_backend.add(_task(f"t-{index}"))

    async def handler(task):
        return None

    worker = QueueWorker(queue_backend, QUEUE, handler, concurrency=2, clock=FrozenClock())
    assert await worker.run_once() == 2
    assert await worker.run_once() == 2
    assert await worker.run_once() == 1


async def test_worker_requeues_stalled_claims(queue_backend):
    """Test a claim left by a crashed worker runs again after the stall timeout"""
    clock = FrozenClock()
    handled = []

    async def handler(task):
        handled.append(task.task_id)

    await queue_backend.add(_task())
    await queue_backend.claim_due(QUEUE, NOW, limit=1)
    worker = QueueWorker(queue_backend, QUEUE, handler, clock=clock, stall_timeout=timedelta(minutes=5))

    assert await worker.run_once() == 0
    clock.advance(minutes=5)
    assert await worker.run_once() == 1

    assert handled == ["t-1"]
    assert await queue_backend.get(QUEUE, "t-1") is None


async def test_worker_survives_settle_failure(queue_backend, monkeypatch):
    """Test a task that cannot be marked complete stays claimed and is retried later"""
    clock = FrozenClock()
    handled = []

    async def handler(task):
        handled.append(task.task_id)

    async def broken_complete(task):
        raise QueueError("connection reset")

    await queue_backend.add(_task())
    worker = QueueWorker(queue_backend, QUEUE, handler, clock=clock, stall_timeout=timedelta(minutes=5))

    with monkeypatch.context() as patch:
        patch.setattr(queue_backend, "complete", broken_complete)
        assert await worker.run_once() == 1
    assert (await queue_backend.get(QUEUE, "t-1")).state == TaskState.ACTIVE

    clock.advance(minutes=5)
    assert await worker.run_once() == 1

    assert handled == ["t-1", "t-1"]
    assert await queue_backend.get(QUEUE, "t-1") is None


async def test_worker_start_and_stop_drains(queue_backend):
    handled = []

    async def handler(task):
        handled.append(task.task_id)

    await queue_backend.add(_task())
    worker = QueueWorker(queue_backend, QUEUE, handler, poll_interval=0.01, clock=FrozenClock())
    worker.start()
    assert worker.is_running
    while not handled:
        await asyncio.sleep(0.01)
    await worker.stop()

    assert not worker.is_running
    assert handled == ["t-1"]
