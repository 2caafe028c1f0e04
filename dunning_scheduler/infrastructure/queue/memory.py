"""In-process queue backend for tests and single-process deployments"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from dunning_scheduler.domain.exceptions import QueueError
from dunning_scheduler.infrastructure.queue.base import Task, TaskState
from dunning_scheduler.utils.date_utils import utc_now

logger = logging.getLogger(__name__)


class InMemoryQueueBackend:
    """Dict-backed delayed queue guarded by an asyncio lock"""

    def __init__(self):
        self._tasks: Dict[str, Dict[str, Task]] = defaultdict(dict)
        self._claimed_at: Dict[str, Dict[str, datetime]] = defaultdict(dict)
        self._markers: Dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def get(self, queue: str, task_id: str) -> Optional[Task]:
        return self._tasks[queue].get(task_id)

    async def add(self, task: Task) -> Task:
        async with self._lock:
            existing = self._tasks[task.queue].get(task.task_id)
            if existing is not None:
                return existing
            self._tasks[task.queue][task.task_id] = task
            return task

    async def remove(self, queue: str, task_id: str) -> bool:
        async with self._lock:
            task = self._tasks[queue].get(task_id)
            if task is None:
                return False
            if task.state == TaskState.ACTIVE:
                raise QueueError(f"Task {task_id} is being processed and cannot be removed")
            del self._tasks[queue][task_id]
            return True

    async def claim_due(self, queue: str, now: datetime, limit: int) -> List[Task]:
        async with self._lock:
            due = sorted(
                (
                    task
                    for task in self._tasks[queue].values()
                    if task.state == TaskState.DELAYED and task.run_at <= now
                ),
                key=lambda task: task.run_at,
            )[:limit]
            for task in due:
                task.state = TaskState.ACTIVE
                self._claimed_at[queue][task.task_id] = now
            return due

    async def requeue_stalled(self, queue: str, older_than: datetime) -> int:
        async with self._lock:
            stalled = [
                task_id for task_id, claimed_at in self._claimed_at[queue].items() if claimed_at <= older_than
            ]
            for task_id in stalled:
                del self._claimed_at[queue][task_id]
                task = self._tasks[queue].get(task_id)
                if task is not None and task.state == TaskState.ACTIVE:
                    task.state = TaskState.DELAYED
            return len(stalled)

    async def complete(self, task: Task) -> None:
        async with self._lock:
            self._tasks[task.queue].pop(task.task_id, None)
            self._claimed_at[task.queue].pop(task.task_id, None)

    async def retry_later(self, task: Task, run_at: datetime, error: str) -> None:
        async with self._lock:
            task.attempts_made += 1
            task.last_error = error
            task.run_at = run_at
            task.state = TaskState.DELAYED
            self._tasks[task.queue][task.task_id] = task
            self._claimed_at[task.queue].pop(task.task_id, None)

    async def fail(self, task: Task, error: str) -> None:
        async with self._lock:
            task.attempts_made += 1
            task.last_error = error
            task.state = TaskState.FAILED
            self._tasks[task.queue][task.task_id] = task
            self._claimed_at[task.queue].pop(task.task_id, None)

    async def list_failed(self, queue: str) -> List[Task]:
        return [task for task in self._tasks[queue].values() if task.state == TaskState.FAILED]

    async def list_tasks(self, queue: str) -> List[Task]:
        return list(self._tasks[queue].values())

    async def set_marker(self, key: str, ttl: timedelta) -> bool:
        async with self._lock:
            now = utc_now()
            self._markers = {name: expires for name, expires in self._markers.items() if expires > now}
            if key in self._markers:
                return False
            self._markers[key] = now + ttl
            return True

    async def close(self) -> None:
        logger.debug("In-memory queue closed with %d queues", len(self._tasks))
