"""Redis helpers and the dispatch ledger used for dedup, leases and retention."""

from __future__ import annotations

import json
import threading
import time
from typing import Any, Protocol

import structlog
from redis import Redis
from redis.exceptions import RedisError

from .config import Settings
from .errors import DispatchError

LOGGER = structlog.get_logger(__name__)

DISPATCH_KEY_PREFIX = "docflow:dispatch"
LEASE_KEY_PREFIX = "docflow:lease"


def get_redis(settings: Settings) -> Redis:
    """Return a Redis client if Redis is enabled."""

    if settings.redis_enabled:
        return Redis.from_url(settings.redis_url)
    LOGGER.warning("redis_disabled", detail="running without Redis-backed dispatch ledger")
    raise RuntimeError("Redis support is disabled for this environment")


class Lease(Protocol):
    def release(self) -> None:
        """Give the job back so another slot may claim it."""


class DispatchLedger(Protocol):
    def reserve(self, job_id: str, record: dict[str, Any], ttl: int) -> bool:
        """Store ``record`` unless a record already exists; return whether it was stored."""

    def read(self, job_id: str) -> dict[str, Any] | None:
        ...

    def write(self, job_id: str, record: dict[str, Any], ttl: int) -> None:
        ...

    def discard(self, job_id: str) -> None:
        ...

    def acquire_lease(self, job_id: str, ttl: int) -> Lease | None:
        ...

    def ping(self) -> bool:
        ...


class RedisDispatchLedger:
    """Dispatch records as JSON strings with TTLs; leases are redis-py locks."""

    def __init__(self, client: Redis) -> None:
        self.client = client

    @staticmethod
    def _key(job_id: str) -> str:
        return f"{DISPATCH_KEY_PREFIX}:{job_id}"

    def reserve(self, job_id: str, record: dict[str, Any], ttl: int) -> bool:
        try:
            return bool(self.client.set(self._key(job_id), json.dumps(record), nx=True, ex=ttl))
        except RedisError as exc:
            raise DispatchError(f"Dispatch ledger unavailable: {exc}") from exc

    def read(self, job_id: str) -> dict[str, Any] | None:
        try:
            raw = self.client.get(self._key(job_id))
        except RedisError as exc:
            raise DispatchError(f"Dispatch ledger unavailable: {exc}") from exc
        if not raw:
            return None
        return json.loads(raw)

    def write(self, job_id: str, record: dict[str, Any], ttl: int) -> None:
        try:
            self.client.set(self._key(job_id), json.dumps(record), ex=ttl)
        except RedisError as exc:
            raise DispatchError(f"Dispatch ledger unavailable: {exc}") from exc

    def discard(self, job_id: str) -> None:
        try:
            self.client.delete(self._key(job_id))
        except RedisError as exc:
            LOGGER.warning("dispatch_record_discard_failed", job_id=job_id, error=str(exc))

    def acquire_lease(self, job_id: str, ttl: int) -> Lease | None:
        lock = self.client.lock(f"{LEASE_KEY_PREFIX}:{job_id}", timeout=ttl, blocking=False)
        try:
            acquired = lock.acquire()
        except RedisError as exc:
            raise DispatchError(f"Lease store unavailable: {exc}") from exc
        return lock if acquired else None

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except RedisError as exc:
            LOGGER.warning("redis_ping_failed", error=str(exc))
            return False


class _MemoryLease:
    def __init__(self, ledger: "InMemoryDispatchLedger", job_id: str) -> None:
        self._ledger = ledger
        self._job_id = job_id

    def release(self) -> None:
        with self._ledger._lock:
            self._ledger._leases.pop(self._job_id, None)


class InMemoryDispatchLedger:
    """Process-local ledger for single-process runs and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, tuple[dict[str, Any], float]] = {}
        self._leases: dict[str, float] = {}

    def _live(self, job_id: str) -> dict[str, Any] | None:
        entry = self._records.get(job_id)
        if entry is None:
            return None
        record, expires_at = entry
        if expires_at <= time.monotonic():
            del self._records[job_id]
            return None
        return record

    def reserve(self, job_id: str, record: dict[str, Any], ttl: int) -> bool:
        with self._lock:
            if self._live(job_id) is not None:
                return False
            self._records[job_id] = (dict(record), time.monotonic() + ttl)
            return True

    def read(self, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._live(job_id)
            return dict(record) if record is not None else None

    def write(self, job_id: str, record: dict[str, Any], ttl: int) -> None:
        with self._lock:
            self._records[job_id] = (dict(record), time.monotonic() + ttl)

    def discard(self, job_id: str) -> None:
        with self._lock:
            self._records.pop(job_id, None)

    def acquire_lease(self, job_id: str, ttl: int) -> Lease | None:
        now = time.monotonic()
        with self._lock:
            expires_at = self._leases.get(job_id)
            if expires_at is not None and expires_at > now:
                return None
            self._leases[job_id] = now + ttl
        return _MemoryLease(self, job_id)

    def ping(self) -> bool:
        return True


__all__ = [
    "DispatchLedger",
    "InMemoryDispatchLedger",
    "Lease",
    "RedisDispatchLedger",
    "get_redis",
]
