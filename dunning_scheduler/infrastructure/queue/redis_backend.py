"""Redis queue backend using redis.asyncio

Per queue the backend keeps:
- ``{prefix}:{queue}:tasks``   hash task_id -> task JSON
- ``{prefix}:{queue}:delayed`` zset task_id scored by run_at (epoch ms)
- ``{prefix}:{queue}:active``  zset of claimed task ids scored by claim time (epoch ms)
- ``{prefix}:{queue}:failed``  zset of failed task ids scored by failure time
"""

import json
import logging
from datetime import datetime, timedelta
from typing import List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from dunning_scheduler.domain.exceptions import QueueError
from dunning_scheduler.infrastructure.queue.base import Task, TaskState
from dunning_scheduler.utils.date_utils import epoch_millis, utc_now

logger = logging.getLogger(__name__)

# KEYS: tasks, delayed  ARGV: task_id, task_json, score
_ADD_SCRIPT = """
local existing = redis.call('HGET', KEYS[1], ARGV[1])
if existing then
  return existing
end
redis.call('HSET', KEYS[1], ARGV[1], ARGV[2])
redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
return ARGV[2]
"""

# KEYS: tasks, delayed, active  ARGV: now_ms, limit
_CLAIM_SCRIPT = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
local claimed = {}
for _, id in ipairs(ids) do
  redis.call('ZREM', KEYS[2], id)
  local raw = redis.call('HGET', KEYS[1], id)
  if raw then
    local task = cjson.decode(raw)
    task['state'] = 'active'
    raw = cjson.encode(task)
    redis.call('HSET', KEYS[1], id, raw)
    redis.call('ZADD', KEYS[3], ARGV[1], id)
    table.insert(claimed, raw)
  end
end
return claimed
"""

# KEYS: tasks, delayed, active, failed  ARGV: task_id
_REMOVE_SCRIPT = """
if redis.call('ZSCORE', KEYS[3], ARGV[1]) then
  return -1
end
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('ZREM', KEYS[4], ARGV[1])
return redis.call('HDEL', KEYS[1], ARGV[1])
"""

# KEYS: tasks, delayed, active  ARGV: cutoff_ms
_REQUEUE_SCRIPT = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[3], '-inf', ARGV[1])
for _, id in ipairs(ids) do
  redis.call('ZREM', KEYS[3], id)
  local raw = redis.call('HGET', KEYS[1], id)
  if raw then
    local task = cjson.decode(raw)
    task['state'] = 'delayed'
    redis.call('HSET', KEYS[1], id, cjson.encode(task))
    redis.call('ZADD', KEYS[2], ARGV[1], id)
  end
end
return #ids
"""


class RedisQueueBackend:
    """Delayed queue stored in Redis; claims are atomic Lua scripts"""

    def __init__(self, redis_url: str, prefix: str = "dunning", client: Optional[aioredis.Redis] = None):
        self.prefix = prefix
        self._redis = client or aioredis.Redis.from_url(redis_url, decode_responses=True)
        self._add = self._redis.register_script(_ADD_SCRIPT)
        self._claim = self._redis.register_script(_CLAIM_SCRIPT)
        self._remove = self._redis.register_script(_REMOVE_SCRIPT)
        self._requeue = self._redis.register_script(_REQUEUE_SCRIPT)

    def _keys(self, queue: str):
        base = f"{self.prefix}:{queue}"
        return f"{base}:tasks", f"{base}:delayed", f"{base}:active", f"{base}:failed"

    async def get(self, queue: str, task_id: str) -> Optional[Task]:
        tasks_key, _, _, _ = self._keys(queue)
        try:
            raw = await self._redis.hget(tasks_key, task_id)
        except RedisError as e:
            raise QueueError(f"Redis lookup failed for task {task_id}: {e}") from e
        return Task.from_dict(json.loads(raw)) if raw else None

    async def add(self, task: Task) -> Task:
        tasks_key, delayed_key, _, _ = self._keys(task.queue)
        try:
            raw = await self._add(
                keys=[tasks_key, delayed_key],
                args=[task.task_id, json.dumps(task.to_dict()), epoch_millis(task.run_at)],
            )
        except RedisError as e:
            raise QueueError(f"Redis enqueue failed for task {task.task_id}: {e}") from e
        return Task.from_dict(json.loads(raw))

    async def remove(self, queue: str, task_id: str) -> bool:
        try:
            removed = await self._remove(keys=list(self._keys(queue)), args=[task_id])
        except RedisError as e:
            raise QueueError(f"Redis remove failed for task {task_id}: {e}") from e
        if removed == -1:
            raise QueueError(f"Task {task_id} is being processed and cannot be removed")
        return bool(removed)

    async def claim_due(self, queue: str, now: datetime, limit: int) -> List[Task]:
        tasks_key, delayed_key, active_key, _ = self._keys(queue)
        try:
            claimed = await self._claim(
                keys=[tasks_key, delayed_key, active_key],
                args=[epoch_millis(now), limit],
            )
        except RedisError as e:
            raise QueueError(f"Redis claim failed on {queue}: {e}") from e
        return [Task.from_dict(json.loads(raw)) for raw in claimed]

    async def requeue_stalled(self, queue: str, older_than: datetime) -> int:
        tasks_key, delayed_key, active_key, _ = self._keys(queue)
        try:
            count = await self._requeue(
                keys=[tasks_key, delayed_key, active_key],
                args=[epoch_millis(older_than)],
            )
        except RedisError as e:
            raise QueueError(f"Redis requeue failed on {queue}: {e}") from e
        return int(count)

    async def complete(self, task: Task) -> None:
        tasks_key, _, active_key, _ = self._keys(task.queue)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hdel(tasks_key, task.task_id)
                pipe.zrem(active_key, task.task_id)
                await pipe.execute()
        except RedisError as e:
            raise QueueError(f"Redis complete failed for task {task.task_id}: {e}") from e

    async def retry_later(self, task: Task, run_at: datetime, error: str) -> None:
        tasks_key, delayed_key, active_key, _ = self._keys(task.queue)
        task.attempts_made += 1
        task.last_error = error
        task.run_at = run_at
        task.state = TaskState.DELAYED
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(tasks_key, task.task_id, json.dumps(task.to_dict()))
                pipe.zrem(active_key, task.task_id)
                pipe.zadd(delayed_key, {task.task_id: epoch_millis(run_at)})
                await pipe.execute()
        except RedisError as e:
            raise QueueError(f"Redis retry failed for task {task.task_id}: {e}") from e

    async def fail(self, task: Task, error: str) -> None:
        tasks_key, _, active_key, failed_key = self._keys(task.queue)
        task.attempts_made += 1
        task.last_error = error
        task.state = TaskState.FAILED
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(tasks_key, task.task_id, json.dumps(task.to_dict()))
                pipe.zrem(active_key, task.task_id)
                pipe.zadd(failed_key, {task.task_id: epoch_millis(utc_now())})
                await pipe.execute()
        except RedisError as e:
            raise QueueError(f"Redis could not file failed task {task.task_id}: {e}") from e

    async def list_failed(self, queue: str) -> List[Task]:
        tasks_key, _, _, failed_key = self._keys(queue)
        try:
            ids = await self._redis.zrange(failed_key, 0, -1)
            raws = await self._redis.hmget(tasks_key, ids) if ids else []
        except RedisError as e:
            raise QueueError(f"Redis lookup failed on {queue}: {e}") from e
        return [Task.from_dict(json.loads(raw)) for raw in raws if raw]

    async def list_tasks(self, queue: str) -> List[Task]:
        tasks_key, _, _, _ = self._keys(queue)
        try:
            raws = await self._redis.hvals(tasks_key)
        except RedisError as e:
            raise QueueError(f"Redis lookup failed on {queue}: {e}") from e
        return [Task.from_dict(json.loads(raw)) for raw in raws]

    async def set_marker(self, key: str, ttl: timedelta) -> bool:
        try:
            created = await self._redis.set(
                f"{self.prefix}:marker:{key}", "1", nx=True, px=max(1, ttl // timedelta(milliseconds=1))
            )
        except RedisError as e:
            raise QueueError(f"Redis marker failed for {key}: {e}") from e
        return bool(created)

    async def close(self) -> None:
        await self._redis.aclose()
        logger.info("Redis queue connection closed")
