"""Pre-payment dedupe for checkout session creation.

A retried checkout with an unchanged cart gets the session that was already
created for it. This is an optimisation only: when the store is down the
guard fails open, and the unique payment_session_id on orders remains the
guarantee against double fulfilment.
"""
import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from typing import Protocol

import redis

from stockkeeper.config import settings

logger = logging.getLogger(__name__)


def checkout_fingerprint(user_id: str, cart_id: str, address_id: str, items: Iterable) -> str:
    """sha256 over the ids and the cart contents sorted by product."""
    contents = sorted(
        (item if isinstance(item, tuple) else (item.product_id, item.quantity))
        for item in items
    )
    canonical = json.dumps(
        {
            "user_id": str(user_id),
            "cart_id": str(cart_id),
            "address_id": str(address_id),
            "items": [[str(pid), int(qty)] for pid, qty in contents],
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


class IdempotencyStore(Protocol):
    def get(self, key: str) -> dict | None:
        ...

    def set(self, key: str, value: dict) -> None:
        ...


class InMemoryIdempotencyStore:
    """Process-local TTL cache. Only correct for a single instance."""

    def __init__(
        self,
        ttl_seconds: int = settings.IDEMPOTENCY_TTL_SECONDS,
        max_entries: int = settings.IDEMPOTENCY_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, dict]] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> dict | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: dict) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, value)
            self._entries.move_to_end(key)
            if len(self._entries) > self.max_entries:
                self._prune()

    def _prune(self) -> None:
        now = self._clock()
        for key in [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]:
            del self._entries[key]
        # Still over the bound: drop oldest first
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)


class RedisIdempotencyStore:
    """Shared store for multiple instances; entries expire via SET EX."""

    def __init__(self, client: "redis.Redis", ttl_seconds: int = settings.IDEMPOTENCY_TTL_SECONDS, prefix: str = "checkout:"):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisIdempotencyStore":
        return cls(redis.Redis.from_url(url, socket_timeout=2, socket_connect_timeout=2), **kwargs)

    def get(self, key: str) -> dict | None:
        raw = self.client.get(self.prefix + key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: dict) -> None:
        self.client.set(self.prefix + key, json.dumps(value, default=str), ex=self.ttl_seconds)


class IdempotencyGuard:
    def __init__(self, store: IdempotencyStore):
        self.store = store

    def _lookup(self, key: str) -> dict | None:
        try:
            return self.store.get(key)
        except (redis.RedisError, OSError) as e:
            logger.warning("Idempotency store unavailable on read, proceeding without it: %s", e)
            return None

    def _remember(self, key: str, value: dict) -> None:
        try:
            self.store.set(key, value)
        except (redis.RedisError, OSError) as e:
            logger.warning("Idempotency store unavailable on write, result not cached: %s", e)

    def run(self, key: str, factory: Callable[[], dict]) -> tuple[dict, bool]:
        """Return ``(result, replayed)``; ``factory`` runs only on a miss."""
        cached = self._lookup(key)
        if cached is not None:
            logger.info("Returning cached checkout result for key %s", key[:12])
            return cached, True
        result = factory()
        self._remember(key, result)
        return result, False


def build_store() -> IdempotencyStore:
    if settings.REDIS_URL:
        return RedisIdempotencyStore.from_url(settings.REDIS_URL)
    return InMemoryIdempotencyStore()


_guard: IdempotencyGuard | None = None


def get_guard() -> IdempotencyGuard:
    global _guard
    if _guard is None:
        _guard = IdempotencyGuard(build_store())
    return _guard
