"""
Queue Counters

Redis-side counters behind the queue health endpoint. Workers bump them
around each task; the API reads them alongside the broker's queue length.
"""

from typing import Dict

import redis

from photobooth.core.logging import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "photobooth:queue"


class QueueCounters:
    """waiting / active / completed / failed counts for one queue."""

    def __init__(self, redis_client: redis.Redis, queue_name: str):
        self.redis = redis_client
        self.queue_name = queue_name

    def _key(self, name: str) -> str:
        return f"{KEY_PREFIX}:{self.queue_name}:{name}"

    def job_started(self):
        try:
            self.redis.incr(self._key("active"))
        except redis.RedisError as e:
            logger.warning("queue_counter_update_failed", counter="active", error=str(e))

    def job_finished(self, succeeded: bool):
        outcome = "completed" if succeeded else "failed"
        try:
            pipe = self.redis.pipeline()
            pipe.decr(self._key("active"))
            pipe.incr(self._key(outcome))
            pipe.execute()
        except redis.RedisError as e:
            logger.warning("queue_counter_update_failed", counter=outcome, error=str(e))

    def snapshot(self) -> Dict[str, int]:
        """Current counts. Raises redis errors to the caller."""
        pipe = self.redis.pipeline()
        # The Redis transport keeps pending messages in a list named after the queue
        pipe.llen(self.queue_name)
        pipe.get(self._key("active"))
        pipe.get(self._key("completed"))
        pipe.get(self._key("failed"))
        waiting, active, completed, failed = pipe.execute()

        return {
            "waiting": int(waiting or 0),
            "active": max(0, int(active or 0)),
            "completed": int(completed or 0),
            "failed": int(failed or 0),
        }
