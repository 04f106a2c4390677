from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Optional

import redis

logger = logging.getLogger("discovery.events")

CHANNEL_PREFIX = "discovery.events."


class EventPublisher:
    """Fire-and-forget Redis pub/sub sink.

    A lost connection is dropped and re-established on the next publish;
    nothing here ever raises into the caller.
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self._conn: Optional[redis.Redis] = None

    def _connection(self) -> Optional[redis.Redis]:
        if self._conn is None:
            try:
                conn = redis.Redis.from_url(self.url, socket_timeout=0.5)
                conn.ping()
            except (redis.RedisError, ValueError) as exc:
                # ValueError: malformed REDIS_URL
                logger.warning("event_publisher_unavailable url=%s err=%s", self.url, exc)
                return None
            self._conn = conn
        return self._conn

    def publish(self, event_type: str, payload: Dict[str, Any]) -> bool:
        conn = self._connection()
        if conn is None:
            return False
        channel = CHANNEL_PREFIX + event_type
        try:
            conn.publish(channel, json.dumps(payload, default=str))
        except redis.RedisError as exc:
            logger.warning("event_publish_failed channel=%s err=%s", channel, exc)
            self._conn = None
            return False
        return True


_publisher: Optional[EventPublisher] = None


def _get_publisher() -> Optional[EventPublisher]:
    global _publisher
    if _publisher is None and os.getenv("REDIS_URL"):
        _publisher = EventPublisher(os.environ["REDIS_URL"])
    return _publisher


def publish_event(event_type: str, payload: Dict[str, Any]) -> bool:
    """Best-effort fan-out of a discovery event; False when nothing was sent."""
    publisher = _get_publisher()
    return publisher.publish(event_type, payload) if publisher else False
