"""
Agent notification publishing

Campaign progress and completion events are pushed to a per-agent Redis
pub/sub channel; the websocket layer relays them to connected dashboards.
Publishing is fire-and-forget: a failure is logged and never reaches the
caller.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

BULK_MESSAGE_PROGRESS = "bulk_message_progress"
BULK_MESSAGE_COMPLETED = "bulk_message_completed"
BULK_MESSAGE_FAILED = "bulk_message_failed"


def agent_channel(agent_id: str) -> str:
    return f"agent:{agent_id}:notifications"


class NotificationService:
    """Publishes events keyed by agent id."""

    def __init__(self, redis_client: Optional[redis.Redis] = None, redis_url: Optional[str] = None):
        if redis_client is None and redis_url:
            redis_client = redis.Redis.from_url(redis_url, decode_responses=True)
        self.redis_client = redis_client

    async def publish(self, agent_id: str, event: str, data: Dict[str, Any]) -> bool:
        """
        Publish an event to the agent's channel.

        Returns:
            True if the message was handed to Redis, False otherwise
        """
        if self.redis_client is None:
            logger.debug(f"No notification backend configured, dropping {event}")
            return False

        message = json.dumps({
            "type": event,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }, default=str)

        try:
            await self.redis_client.publish(agent_channel(agent_id), message)
            return True
        except Exception as e:
            logger.warning(f"Failed to publish {event}: {e}", extra={"agent_id": agent_id})
            return False

    async def close(self):
        if self.redis_client is not None:
            await self.redis_client.aclose()
