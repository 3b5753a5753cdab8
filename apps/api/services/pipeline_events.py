"""Optional Redis pub/sub notifications for pipeline progress.

Polling the persisted status stays the contract; these messages only tell a
subscriber that something changed.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict

import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings

logger = logging.getLogger(__name__)


def status_channel(execution_id: str) -> str:
    return f"pipeline:{execution_id}"


async def publish_status(execution_id: str, payload: Dict[str, Any]) -> bool:
    if not settings.PIPELINE_STATUS_PUBSUB_ENABLED:
        return False
    try:
        client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        try:
            await client.publish(status_channel(execution_id), json.dumps(payload, default=str))
        finally:
            await client.aclose()
    except (RedisError, OSError) as exc:
        logger.warning("Status publish for %s failed: %s", execution_id, exc)
        return False
    return True
