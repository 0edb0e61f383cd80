"""
Optional Redis Streams publisher for per-cluster reconcile events.

Redis is strictly best-effort: if REDIS_URL is unset or Redis is down, every
call here is a no-op and reconciliation carries on.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional

import redis

from pgcluster_operator.config import settings

logger = logging.getLogger("pgcluster.events")

GLOBAL_CHANNEL = "cluster:events"
STREAM_MAXLEN = 100

_redis_client: Optional[redis.Redis] = None


def get_redis() -> Optional[redis.Redis]:
    """Lazy-init Redis client. Returns None if unavailable."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    if not settings.REDIS_URL:
        return None
    try:
        client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
        client.ping()
        logger.info(f"Redis connected: {settings.REDIS_URL}")
        _redis_client = client
        return _redis_client
    except redis.RedisError as e:
        logger.warning(f"Redis unavailable (non-fatal): {e}")
        return None


def stream_key(namespace: str, name: str) -> str:
    return f"cluster:events:{namespace}/{name}"


def publish_event(namespace: str, name: str, event_type: str, message: str, phase: str = ""):
    """Publish event to the cluster's stream and the global channel."""
    r = get_redis()
    if not r:
        return
    event = {
        "cluster": f"{namespace}/{name}",
        "type": event_type,
        "message": message,
        "phase": phase,
        "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    }
    try:
        r.xadd(stream_key(namespace, name), event, maxlen=STREAM_MAXLEN)
        r.publish(GLOBAL_CHANNEL, json.dumps(event))
    except redis.RedisError as e:
        logger.debug(f"Redis publish failed (non-fatal): {e}")


def read_events(namespace: str, name: str, count: int = 50) -> list[dict]:
    r = get_redis()
    if not r:
        return []
    try:
        entries = r.xrange(stream_key(namespace, name), count=count)
    except redis.RedisError as e:
        logger.debug(f"Redis stream read failed: {e}")
        return []
    return [
        {
            "timestamp": data.get("timestamp", ""),
            "event": data.get("type", ""),
            "message": data.get("message", ""),
            "source": "redis",
        }
        for _, data in entries
    ]


def clear_stream(namespace: str, name: str):
    r = get_redis()
    if not r:
        return
    try:
        r.delete(stream_key(namespace, name))
    except redis.RedisError as e:
        logger.debug(f"Redis stream cleanup failed (non-fatal): {e}")
