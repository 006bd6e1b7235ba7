"""
Subscription registry — durable mapping of push endpoint → key material.

Three interchangeable backings share one contract:

  upsert(subscription)   insert, or replace both keys of an existing endpoint
  remove(endpoint)       idempotent delete
  list()                 snapshot of every subscription
  get(endpoint)          single lookup
  count()                number of subscriptions

Writes for the same endpoint are serialised through a per-endpoint lock and
each write is applied in one step (one SQL transaction, one HSET, one dict
assignment of an immutable record), so readers never see a record with only
one of its two keys updated. Writes for different endpoints never wait on
each other and reads take no lock at all.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pushline.config import settings
from pushline.database import SessionLocal
from pushline.models.push_subscription import PushSubscription
from pushline.redis.keys import subscriptions_key
from pushline.schemas.push import PushSubscriptionData, SubscriptionKeys

logger = logging.getLogger(__name__)

BACKENDS = ("sql", "redis", "memory")


class EndpointLocks:
    """Lazily created asyncio locks, one per endpoint, dropped when idle."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, endpoint: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(endpoint, asyncio.Lock())
        self._holders[endpoint] = self._holders.get(endpoint, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[endpoint] -= 1
            if not self._holders[endpoint]:
                del self._holders[endpoint]
                self._locks.pop(endpoint, None)

    def __len__(self) -> int:
        return len(self._locks)


class SubscriptionRegistry(ABC):
    def __init__(self) -> None:
        self._locks = EndpointLocks()

    async def connect(self) -> bool:
        """Prepare the backing store at startup; False when running degraded."""
        return True

    async def close(self) -> None:
        pass

    async def upsert(self, subscription: PushSubscriptionData) -> None:
        if not isinstance(subscription, PushSubscriptionData):
            raise TypeError("upsert() expects a validated PushSubscriptionData")
        async with self._locks.hold(subscription.endpoint):
            await self._write(subscription)

    async def remove(self, endpoint: str) -> None:
        async with self._locks.hold(endpoint):
            removed = await self._delete(endpoint)
        if removed:
            logger.info("Removed push subscription %s", _short(endpoint))

    async def count(self) -> int:
        return len(await self.list())

    @abstractmethod
    async def list(self) -> List[PushSubscriptionData]: ...

    @abstractmethod
    async def get(self, endpoint: str) -> Optional[PushSubscriptionData]: ...

    @abstractmethod
    async def _write(self, subscription: PushSubscriptionData) -> None: ...

    @abstractmethod
    async def _delete(self, endpoint: str) -> bool: ...


def _short(endpoint: str) -> str:
    return endpoint[:60] + ("…" if len(endpoint) > 60 else "")


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemorySubscriptionRegistry(SubscriptionRegistry):
    def __init__(self) -> None:
        super().__init__()
        self._records: Dict[str, PushSubscriptionData] = {}

    async def _write(self, subscription: PushSubscriptionData) -> None:
        self._records[subscription.endpoint] = subscription

    async def _delete(self, endpoint: str) -> bool:
        return self._records.pop(endpoint, None) is not None

    async def list(self) -> List[PushSubscriptionData]:
        return list(self._records.values())

    async def get(self, endpoint: str) -> Optional[PushSubscriptionData]:
        return self._records.get(endpoint)

    async def count(self) -> int:
        return len(self._records)


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------


def _to_data(row: PushSubscription) -> PushSubscriptionData:
    return PushSubscriptionData(endpoint=row.endpoint, keys=SubscriptionKeys(p256dh=row.p256dh, auth=row.auth))


class SqlSubscriptionRegistry(SubscriptionRegistry):
    """Registry stored in the ``push_subscriptions`` table."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        super().__init__()
        self._session_factory = session_factory

    async def _write(self, subscription: PushSubscriptionData) -> None:
        with self._session_factory() as db:
            try:
                self._apply(db, subscription)
                db.commit()
            except IntegrityError:
                # Another process inserted the same endpoint first; update instead
                db.rollback()
                self._apply(db, subscription)
                db.commit()

    @staticmethod
    def _apply(db: Session, subscription: PushSubscriptionData) -> None:
        existing = db.query(PushSubscription).filter_by(endpoint=subscription.endpoint).first()
        if existing:
            existing.p256dh = subscription.keys.p256dh
            existing.auth = subscription.keys.auth
        else:
            db.add(
                PushSubscription(
                    endpoint=subscription.endpoint,
                    p256dh=subscription.keys.p256dh,
                    auth=subscription.keys.auth,
                )
            )

    async def _delete(self, endpoint: str) -> bool:
        with self._session_factory() as db:
            deleted = db.query(PushSubscription).filter_by(endpoint=endpoint).delete()
            db.commit()
        return bool(deleted)

    async def list(self) -> List[PushSubscriptionData]:
        with self._session_factory() as db:
            rows = db.query(PushSubscription).order_by(PushSubscription.endpoint).all()
            return [_to_data(row) for row in rows]

    async def get(self, endpoint: str) -> Optional[PushSubscriptionData]:
        with self._session_factory() as db:
            row = db.query(PushSubscription).filter_by(endpoint=endpoint).first()
            return _to_data(row) if row else None

    async def count(self) -> int:
        with self._session_factory() as db:
            return db.query(PushSubscription).count()


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


class RedisSubscriptionRegistry(SubscriptionRegistry):
    """Registry stored in one Redis hash (endpoint → JSON keys).

    Owns its client. ``connect()`` pings it once at startup; when Redis is
    unconfigured or unreachable the client is dropped and subscriptions are
    kept in process memory instead.
    """

    def __init__(self, client: Optional[aioredis.Redis] = None) -> None:
        super().__init__()
        self._client = client
        self._fallback = InMemorySubscriptionRegistry()

    @classmethod
    def from_url(cls, url: str) -> "RedisSubscriptionRegistry":
        if not url:
            return cls(None)
        return cls(aioredis.Redis.from_url(url, decode_responses=True, max_connections=20))

    async def connect(self) -> bool:
        if self._client is None:
            logger.info("REDIS_URL is empty; subscriptions kept in memory")
            return False
        try:
            await self._client.ping()
        except (RedisError, OSError) as exc:
            logger.warning("Redis unavailable (%s); subscriptions kept in memory", exc)
            await self._client.aclose()
            self._client = None
            return False
        logger.info("Redis connected")
        return True

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _write(self, subscription: PushSubscriptionData) -> None:
        if self._client is None:
            logger.warning("Redis unavailable, keeping subscription in memory")
            await self._fallback._write(subscription)
            return
        await self._client.hset(subscriptions_key(), subscription.endpoint, subscription.keys.model_dump_json())

    async def _delete(self, endpoint: str) -> bool:
        if self._client is None:
            return await self._fallback._delete(endpoint)
        return bool(await self._client.hdel(subscriptions_key(), endpoint))

    async def list(self) -> List[PushSubscriptionData]:
        if self._client is None:
            return await self._fallback.list()
        raw = await self._client.hgetall(subscriptions_key())
        records = []
        for endpoint, keys in sorted(raw.items()):
            try:
                records.append(PushSubscriptionData(endpoint=endpoint, keys=json.loads(keys)))
            except ValueError as exc:
                logger.warning("Skipping unreadable subscription %s: %s", _short(endpoint), exc)
        return records

    async def get(self, endpoint: str) -> Optional[PushSubscriptionData]:
        if self._client is None:
            return await self._fallback.get(endpoint)
        keys = await self._client.hget(subscriptions_key(), endpoint)
        return PushSubscriptionData(endpoint=endpoint, keys=json.loads(keys)) if keys else None

    async def count(self) -> int:
        if self._client is None:
            return await self._fallback.count()
        return await self._client.hlen(subscriptions_key())


def build_registry(backend: str) -> SubscriptionRegistry:
    if backend == "sql":
        return SqlSubscriptionRegistry()
    if backend == "redis":
        return RedisSubscriptionRegistry.from_url(settings.REDIS_URL)
    if backend == "memory":
        return InMemorySubscriptionRegistry()
    raise ValueError(f"REGISTRY_BACKEND must be one of {BACKENDS}, got {backend!r}")
