"""
services/notification/realtime.py
Redis pub/sub fan-out of notification events to per-user channels.

Publishing is fire-and-forget: the notification row is already committed
when an event goes out, so a failed publish is logged and dropped.
Clients resync from GET /notifications on reconnect.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, Optional

import redis.asyncio as aioredis
from redis.asyncio.client import PubSub

logger = logging.getLogger(__name__)

EVENT_SCHEMA_VERSION = 1


def user_channel(user_id: Any) -> str:
    return f"user:{user_id}"


class RealtimePublisher:
    def __init__(self, client: aioredis.Redis):
        self._redis = client

    async def publish_to_user(self, user_id: Any, event_type: str, payload: Dict[str, Any]) -> int:
        """Returns the number of subscribers reached (0 on failure)."""
        channel = user_channel(user_id)
        event = {
            "type": event_type,
            "schema_version": EVENT_SCHEMA_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "payload": payload,
        }
        try:
            receivers = await self._redis.publish(channel, json.dumps(event, default=str))
            logger.debug(f"Published {event_type} to {channel} (subscribers: {receivers})")
            return receivers
        except Exception as e:
            logger.error(f"Failed to publish {event_type} to {channel}: {e}")
            return 0

    @asynccontextmanager
    async def subscribe(self, user_id: Any) -> AsyncGenerator[PubSub, None]:
        channel = user_channel(user_id)
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(channel)
            logger.info(f"Subscribed to channel: {channel}")
            yield pubsub
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
            logger.info(f"Unsubscribed from channel: {channel}")


# ── Global publisher (initialized on startup) ────────────────
realtime_publisher: Optional[RealtimePublisher] = None


def init_realtime_publisher(client: aioredis.Redis) -> RealtimePublisher:
    global realtime_publisher
    realtime_publisher = RealtimePublisher(client)
    return realtime_publisher


def get_realtime_publisher() -> RealtimePublisher:
    """FastAPI dependency to get the real-time publisher."""
    if not realtime_publisher:
        raise RuntimeError("Realtime publisher not initialized. Call init_realtime_publisher() first.")
    return realtime_publisher
