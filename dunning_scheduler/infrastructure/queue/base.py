"""Delayed task model, backoff policy and the queue backend contract"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol

from dunning_scheduler.domain.exceptions import ConfigurationError
from dunning_scheduler.domain.models import Channel
from dunning_scheduler.utils.date_utils import utc_now

STATUS_CHECK_QUEUE = "credit-status-check"

CHANNEL_QUEUES = {
    Channel.SMS: "notifications:sms",
    Channel.EMAIL: "notifications:email",
    Channel.PUSH: "notifications:push",
    Channel.AI_CALL: "notifications:ai_call",
}


def queue_for_channel(channel) -> str:
    """
    Map a channel to its queue name.

    Raises:
        ConfigurationError: Channel has no queue
    """
    try:
        return CHANNEL_QUEUES[Channel(channel)]
    except (KeyError, ValueError) as e:
        raise ConfigurationError(f"Unknown notification channel: {channel}") from e


class TaskState:
    DELAYED = "delayed"
    ACTIVE = "active"
    FAILED = "failed"


@dataclass
class BackoffPolicy:
    """Exponential backoff: base, 2*base, 4*base..."""

    max_attempts: int = 3
    base_ms: int = 60_000

    def delay_for(self, attempt: int) -> timedelta:
        """Delay before the retry that follows failed attempt number `attempt` (1-based)"""
        return timedelta(milliseconds=self.base_ms * (2 ** (attempt - 1)))


@dataclass
class Task:
    """A unit of work that becomes runnable at run_at"""

    task_id: str
    queue: str
    payload: Dict[str, Any]
    run_at: datetime
    max_attempts: int = 3
    backoff_base_ms: int = 60_000
    attempts_made: int = 0
    state: str = TaskState.DELAYED
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def backoff(self) -> BackoffPolicy:
        return BackoffPolicy(max_attempts=self.max_attempts, base_ms=self.backoff_base_ms)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["run_at"] = self.run_at.isoformat()
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        values = dict(data)
        values["run_at"] = datetime.fromisoformat(values["run_at"])
        values["created_at"] = datetime.fromisoformat(values["created_at"])
        return cls(**values)


class QueueBackend(Protocol):
    """Delayed queue storage shared by producers and workers

    A task id is unique per queue: adding an id that already exists
    returns the existing task unchanged. Claiming is atomic, so a task is
    handed to one worker at a time.
    A claim that is never settled (worker crash, lost connection) is handed
    back to the delayed set by requeue_stalled.
    """

    async def get(self, queue: str, task_id: str) -> Optional[Task]: ...

    async def add(self, task: Task) -> Task: ...

    async def remove(self, queue: str, task_id: str) -> bool: ...

    async def claim_due(self, queue: str, now: datetime, limit: int) -> List[Task]: ...

    async def requeue_stalled(self, queue: str, older_than: datetime) -> int: ...

    async def complete(self, task: Task) -> None: ...

    async def retry_later(self, task: Task, run_at: datetime, error: str) -> None: ...

    async def fail(self, task: Task, error: str) -> None: ...

    async def list_failed(self, queue: str) -> List[Task]: ...

    async def list_tasks(self, queue: str) -> List[Task]: ...

    async def set_marker(self, key: str, ttl: timedelta) -> bool:
        """Create a marker that expires after ttl; False if it already exists"""
        ...

    async def close(self) -> None: ...
