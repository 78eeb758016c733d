"""Change notification and Redis helpers.

A change feed tells listeners that something in the ledger changed.  It
carries no authoritative data: listeners re-read the ledger.  Delivery
is at-least-once and unordered with respect to writes.

Redis is optional.  With ``REDIS_URL`` set, changes travel over the
``clinic:updates`` pub/sub channel so every app instance sees them and
booking attempts are rate limited per mobile number.  Without it the
feed stays in-process and rate limiting is disabled.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional

import redis

from config import REDIS_URL

logger = logging.getLogger(__name__)

UPDATES_CHANNEL = "clinic:updates"

Callback = Callable[[str], None]
Unsubscribe = Callable[[], None]

_redis_client: Optional[redis.Redis] = None


def get_redis() -> Optional[redis.Redis]:
    """Get the shared Redis client if configured and reachable."""
    global _redis_client
    if not REDIS_URL:
        return None

    if _redis_client is None:
        try:
            client = redis.from_url(REDIS_URL, decode_responses=True)
            client.ping()
            _redis_client = client
        except redis.RedisError as exc:
            logger.error("Redis connection failed: %s", exc)
            return None

    return _redis_client


class ChangeFeed:
    def publish(self, kind: str) -> None:
        raise NotImplementedError

    def subscribe(self, callback: Callback) -> Unsubscribe:
        raise NotImplementedError

    def close(self) -> None:
        pass


class LocalChangeFeed(ChangeFeed):
    """Fan-out to callbacks registered in this process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._callbacks: List[Callback] = []

    def publish(self, kind: str) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback(kind)
            except Exception:
                logger.exception("Change feed subscriber failed on %s", kind)

    def subscribe(self, callback: Callback) -> Unsubscribe:
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._callbacks)


class RedisChangeFeed(ChangeFeed):
    """Change feed shared between processes through Redis pub/sub."""

    def __init__(self, client: redis.Redis, channel: str = UPDATES_CHANNEL) -> None:
        self.client = client
        self.channel = channel
        self._local = LocalChangeFeed()
        self._lock = threading.Lock()
        self._pubsub = None
        self._thread = None

    def publish(self, kind: str) -> None:
        payload = json.dumps({"type": kind, "timestamp": datetime.utcnow().isoformat()})
        try:
            self.client.publish(self.channel, payload)
        except redis.RedisError as exc:
            # The write is already committed; listeners catch up on their next read.
            logger.error("Redis publish of %s failed: %s", kind, exc)

    def _on_message(self, message: dict) -> None:
        try:
            kind = json.loads(message["data"]).get("type", "change")
        except (TypeError, ValueError):
            kind = "change"
        self._local.publish(kind)

    def _ensure_listener(self) -> None:
        with self._lock:
            if self._thread is not None:
                return
            self._pubsub = self.client.pubsub(ignore_subscribe_messages=True)
            self._pubsub.subscribe(**{self.channel: self._on_message})
            self._thread = self._pubsub.run_in_thread(sleep_time=0.5, daemon=True)
            logger.info("Listening for changes on %s", self.channel)

    def subscribe(self, callback: Callback) -> Unsubscribe:
        self._ensure_listener()
        return self._local.subscribe(callback)

    def close(self) -> None:
        with self._lock:
            if self._thread is not None:
                self._thread.stop()
                self._thread = None
            if self._pubsub is not None:
                self._pubsub.close()
                self._pubsub = None


def build_change_feed() -> ChangeFeed:
    client = get_redis()
    if client is None:
        return LocalChangeFeed()
    return RedisChangeFeed(client)


def check_rate_limit(key: str, action: str = "booking", limit: int = 10, window: int = 300) -> bool:
    """Return True if ``key`` may perform ``action`` again, False if rate limited."""
    redis_client = get_redis()
    if not redis_client:
        return True

    try:
        name = f"rate_limit:{action}:{key}"
        # INCR is atomic, so concurrent attempts each see their own count.
        count = redis_client.incr(name)
        if count == 1:
            redis_client.expire(name, window)
        return count <= limit
    except redis.RedisError as exc:
        logger.error("Redis rate limit error: %s", exc)
        return True
