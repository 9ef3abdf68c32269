import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis

from radar.config_manager import get_worker_config

logger = logging.getLogger(__name__)


class QueueService:
    """Redis queue for ingestion jobs plus the last-run summary per source type"""

    def __init__(self, redis_client=None):
        self.config = get_worker_config()
        self.redis_client = redis_client
        self.queue_name = self.config.redis_queue_name

    def _get_redis_client(self):
        """Lazy initialization of Redis client"""
        if self.redis_client is None:
            try:
                self.redis_client = redis.from_url(self.config.redis_url)
                self.redis_client.ping()
            except redis.RedisError as e:
                logger.warning(f"Could not connect to Redis: {e}")
                self.redis_client = None
        return self.redis_client

    def enqueue_ingest(self, source_type: str) -> bool:
        """Queue one ingestion pass for a source type"""
        return self._push({"source_type": source_type})

    def enqueue_item(self, item_id: int) -> bool:
        """Queue grouping and fusion for one stored item"""
        return self._push({"item_id": item_id})

    def _push(self, job: Dict[str, Any]) -> bool:
        redis_client = self._get_redis_client()
        if not redis_client:
            logger.warning("Redis not available, skipping queue operation")
            return False

        try:
            redis_client.lpush(self.queue_name, json.dumps(job))
            logger.info(f"Queued job {job}")
            return True
        except redis.RedisError as e:
            logger.warning(f"Failed to queue job {job}: {e}")
            return False

    def set_run_status(self, source_type: str, results: List[Dict[str, Any]], error: Optional[str] = None) -> None:
        """Store the latest pass summary for dashboards (expires after a day)"""
        redis_client = self._get_redis_client()
        if not redis_client:
            return

        status_data = {
            "source_type": source_type,
            "results": results,
            "error": error,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        try:
            redis_client.setex(f"ingest_status:{source_type}", 86400, json.dumps(status_data))
        except redis.RedisError as e:
            logger.warning(f"Failed to set run status for {source_type}: {e}")

    def get_run_status(self, source_type: str) -> Optional[Dict[str, Any]]:
        redis_client = self._get_redis_client()
        if not redis_client:
            return None

        try:
            status_data = redis_client.get(f"ingest_status:{source_type}")
            return json.loads(status_data) if status_data else None
        except redis.RedisError as e:
            logger.warning(f"Failed to get run status for {source_type}: {e}")
            return None
