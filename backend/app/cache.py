from __future__ import annotations

import datetime
import logging
import math
from threading import Lock
from typing import Callable, Protocol

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import delete
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config.settings import settings
from app.db.models import PriceCacheEntry
from app.errors import PriceCacheUnavailableError
from app.pricing.classifier import normalize_symbol
from app.schemas.price import PriceRecord, utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime.datetime]


class PriceCache(Protocol):
    """Symbol-keyed store of the last known price, bounded by a TTL.

    ``get`` treats records older than the TTL exactly like missing ones.
    ``put`` replaces the whole record for its symbol. ``sweep`` physically
    removes expired records and returns how many were deleted.
    Backend failures are raised as ``PriceCacheUnavailableError``.
    """

    ttl_seconds: int

    async def get(self, symbol: str) -> PriceRecord | None: ...

    async def put(self, record: PriceRecord) -> None: ...

    async def sweep(self) -> int: ...


def _resolve_ttl(ttl_seconds: int | None) -> int:
    return settings.price_cache_ttl_seconds if ttl_seconds is None else ttl_seconds


class InMemoryPriceCache:
    """Process-local cache guarded by a lock."""

    def __init__(self, ttl_seconds: int | None = None, clock: Clock = utcnow) -> None:
        self.ttl_seconds = _resolve_ttl(ttl_seconds)
        self._clock = clock
        self._records: dict[str, PriceRecord] = {}
        self._lock = Lock()

    async def get(self, symbol: str) -> PriceRecord | None:
        with self._lock:
            record = self._records.get(normalize_symbol(symbol))
        if record is None or not record.is_fresh(self.ttl_seconds, self._clock()):
            return None
        return record

    async def put(self, record: PriceRecord) -> None:
        with self._lock:
            self._records[record.symbol] = record

    async def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [
                symbol
                for symbol, record in self._records.items()
                if not record.is_fresh(self.ttl_seconds, now)
            ]
            for symbol in expired:
                del self._records[symbol]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


def _record_from_row(row: PriceCacheEntry) -> PriceRecord:
    return PriceRecord(
        symbol=row.symbol,
        price=row.current_price,
        change_24h=row.change_24h,
        change_percent_24h=row.change_percent_24h,
        observed_at=row.updated_at,
        source=row.source,
    )


class SqlPriceCache:
    """Durable cache backed by the ``price_cache`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_seconds: int | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.ttl_seconds = _resolve_ttl(ttl_seconds)
        self._session_factory = session_factory
        self._clock = clock

    async def get(self, symbol: str) -> PriceRecord | None:
        key = normalize_symbol(symbol)
        try:
            async with self._session_factory() as session:
                row = await session.get(PriceCacheEntry, key)
        except (SQLAlchemyError, OSError) as exc:
            raise PriceCacheUnavailableError(f"price cache read failed for {key}") from exc

        if row is None:
            return None
        try:
            record = _record_from_row(row)
        except ValidationError:
            logger.warning("Ignoring malformed price_cache row for %s", key)
            return None
        if not record.is_fresh(self.ttl_seconds, self._clock()):
            logger.debug("Cached price for %s is expired", key)
            return None
        return record

    async def put(self, record: PriceRecord) -> None:
        values = {
            "current_price": record.price,
            "change_24h": record.change_24h,
            "change_percent_24h": record.change_percent_24h,
            "source": record.source,
            "updated_at": record.observed_at,
        }
        stmt = insert(PriceCacheEntry).values(symbol=record.symbol, **values)
        # Single-row upsert: the full record replaces whatever was there.
        stmt = stmt.on_conflict_do_update(index_elements=["symbol"], set_=values)
        try:
            async with self._session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise PriceCacheUnavailableError(
                f"price cache write failed for {record.symbol}"
            ) from exc

    async def sweep(self) -> int:
        cutoff = self._clock() - datetime.timedelta(seconds=self.ttl_seconds)
        stmt = delete(PriceCacheEntry).where(PriceCacheEntry.updated_at < cutoff)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise PriceCacheUnavailableError("price cache sweep failed") from exc
        return int(result.rowcount or 0)


class RedisPriceCache:
    """Cache storing each record as JSON under ``<prefix><SYMBOL>``."""

    def __init__(
        self,
        client: Redis,
        ttl_seconds: int | None = None,
        clock: Clock = utcnow,
        prefix: str = "price:",
    ) -> None:
        self.ttl_seconds = _resolve_ttl(ttl_seconds)
        self._client = client
        self._clock = clock
        self._prefix = prefix

    def _key(self, symbol: str) -> str:
        return f"{self._prefix}{normalize_symbol(symbol)}"

    @staticmethod
    def _decode(raw) -> PriceRecord | None:
        if not raw:
            return None
        try:
            return PriceRecord.model_validate_json(raw)
        except ValidationError:
            return None

    async def get(self, symbol: str) -> PriceRecord | None:
        key = self._key(symbol)
        try:
            raw = await self._client.get(key)
        except (RedisError, OSError) as exc:
            raise PriceCacheUnavailableError(f"price cache read failed for {key}") from exc

        record = self._decode(raw)
        if record is None or not record.is_fresh(self.ttl_seconds, self._clock()):
            return None
        return record

    async def put(self, record: PriceRecord) -> None:
        remaining = self.ttl_seconds - record.age_seconds(self._clock())
        if remaining <= 0:
            logger.debug("Not caching %s: observed beyond the TTL window", record.symbol)
            return
        key = self._key(record.symbol)
        try:
            await self._client.setex(key, math.ceil(remaining), record.model_dump_json())
        except (RedisError, OSError) as exc:
            raise PriceCacheUnavailableError(f"price cache write failed for {key}") from exc

    async def sweep(self) -> int:
        # Redis expires keys on its own; this only catches stale or unreadable payloads.
        now = self._clock()
        removed = 0
        try:
            async for key in self._client.scan_iter(match=f"{self._prefix}*"):
                record = self._decode(await self._client.get(key))
                if record is None or not record.is_fresh(self.ttl_seconds, now):
                    removed += int(await self._client.delete(key))
        except (RedisError, OSError) as exc:
            raise PriceCacheUnavailableError("price cache sweep failed") from exc
        return removed


def create_price_cache(backend: str | None = None) -> PriceCache:
    selected = backend or settings.price_cache_backend
    if selected == "sql":
        from app.db.session import AsyncSessionLocal

        logger.info("Price cache backend: SQL (price_cache table)")
        return SqlPriceCache(AsyncSessionLocal)
    if selected == "redis":
        logger.info("Price cache backend: Redis")
        return RedisPriceCache(Redis.from_url(settings.redis_url))
    if selected == "memory":
        logger.info("Price cache backend: in-memory")
        return InMemoryPriceCache()
    raise ValueError(f"Unknown price cache backend: {selected}")
