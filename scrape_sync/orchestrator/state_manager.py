"""Redis-backed run state snapshots, so a reconnecting client can resume display."""

import json
import os
from datetime import datetime
from typing import Any, Dict, Optional

import redis

from scrape_sync.constants import RUN_STATE_TTL_SECONDS
from scrape_sync.utils import metrics
from scrape_sync.utils.errors import StateManagerError
from scrape_sync.utils.logging import get_logger

logger = get_logger(__name__)


class RunStateStore:
    """
    Last progress snapshot per run.

    backend "redis" stores JSON under run:<run_id>:state with a TTL; "memory"
    keeps a dict in this process. A Redis that cannot be reached at start-up
    degrades to memory with a warning.
    """

    def __init__(self, backend: str = "memory", redis_url: str = "redis://localhost:6379/0",
                 ttl_seconds: int = RUN_STATE_TTL_SECONDS, redis_client=None):
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self._memory: Dict[str, Dict[str, Any]] = {}
        self.redis_client = None

        if backend == "redis":
            try:
                self.redis_client = redis_client or redis.Redis.from_url(
                    redis_url,
                    decode_responses=True,
                    socket_keepalive=True,
                    socket_connect_timeout=5,
                )
                self.redis_client.ping()
                metrics.redis_connection_healthy.set(1)
                logger.info("Connected to Redis", redis_url=redis_url)
            except redis.RedisError as e:
                logger.warning(f"Redis connection failed, falling back to in-memory: {e}")
                metrics.redis_connection_healthy.set(0)
                self.redis_client = None
                self.backend = "memory"
        else:
            logger.info(f"Using in-memory state backend ({backend} mode)")

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RunStateStore":
        """Backend from STATE_BACKEND, else the config's state section"""
        section = config.get("state", {}) or {}
        return cls(
            backend=os.getenv("STATE_BACKEND", section.get("backend", "memory")),
            redis_url=os.getenv("REDIS_URL", section.get("redis_url", "redis://localhost:6379/0")),
            ttl_seconds=int(section.get("ttl_seconds", RUN_STATE_TTL_SECONDS)),
        )

    @staticmethod
    def _key(run_id: str) -> str:
        return f"run:{run_id}:state"

    def save_run_state(self, run_id: str, state: Dict[str, Any]) -> None:
        """
        Save the latest snapshot of a run.

        Raises:
            StateManagerError: If the Redis write fails
        """
        if self.redis_client is None:
            self._memory[run_id] = json.loads(json.dumps(state, default=str))
            metrics.run_state_saves.labels(status="success").inc()
            return

        try:
            self.redis_client.setex(self._key(run_id), self.ttl_seconds, json.dumps(state, default=str))
            metrics.run_state_saves.labels(status="success").inc()
        except redis.RedisError as e:
            metrics.run_state_saves.labels(status="failure").inc()
            raise StateManagerError(f"Failed to save run state: {e}")

    def restore_run_state(self, run_id: str) -> Dict[str, Any]:
        """
        Restore the latest snapshot of a run.

        Returns:
            State dictionary, or empty dict if not found
        """
        if self.redis_client is None:
            return dict(self._memory.get(run_id, {}))

        try:
            value = self.redis_client.get(self._key(run_id))
        except redis.RedisError as e:
            logger.error(f"Failed to restore run state: {e}", run_id=run_id)
            return {}

        if not value:
            logger.warning(f"No saved state found for {run_id}")
            return {}
        return json.loads(value)

    def mark_run_complete(self, run_id: str, status: str, summary: Optional[Dict[str, Any]] = None) -> None:
        state = self.restore_run_state(run_id)
        state.update({
            "status": status,
            "summary": summary or {},
            "completed_at": datetime.now().isoformat(),
        })
        self.save_run_state(run_id, state)

    def check_health(self) -> bool:
        """True when the backend can take writes"""
        if self.redis_client is None:
            return self.backend == "memory"
        try:
            self.redis_client.ping()
            metrics.redis_connection_healthy.set(1)
            return True
        except redis.RedisError:
            metrics.redis_connection_healthy.set(0)
            return False
