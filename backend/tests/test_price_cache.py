import asyncio
import datetime
import operator
from decimal import Decimal

import pytest
from fakes import START, FakeClock
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from app.cache import (
    InMemoryPriceCache,
    RedisPriceCache,
    SqlPriceCache,
    create_price_cache,
)
from app.db.models import PriceCacheEntry
from app.errors import PriceCacheUnavailableError
from app.schemas.price import PriceRecord


def make_record(symbol: str = "AAPL", price: str = "182.50", age: float = 0, **extra) -> PriceRecord:
    return PriceRecord(
        symbol=symbol,
        price=Decimal(price),
        observed_at=START - datetime.timedelta(seconds=age),
        source=extra.pop("source", "finnhub"),
        **extra,
    )


class FakeRedis:
    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.expirations: dict[str, int] = {}

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self.store[key] = value
        self.expirations[key] = ttl

    async def delete(self, key: str) -> int:
        return 1 if self.store.pop(key, None) is not None else 0

    async def scan_iter(self, match: str | None = None):
        prefix = (match or "").rstrip("*")
        for key in list(self.store):
            if key.startswith(prefix):
                yield key


class FakeResult:
    def __init__(self, rowcount: int = 0) -> None:
        self.rowcount = rowcount


class FakeSession:
    def __init__(self, rows: dict[str, PriceCacheEntry], fail: bool = False) -> None:
        self.rows = rows
        self.fail = fail
        self.statements = []
        self.commits = 0

    async def __aenter__(self) -> "FakeSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    async def get(self, model, key):
        if self.fail:
            raise OperationalError("select", None, Exception("connection refused"))
        return self.rows.get(key)

    async def execute(self, stmt) -> FakeResult:
        if self.fail:
            raise OperationalError("execute", None, Exception("connection refused"))
        self.statements.append(stmt)
        return FakeResult(rowcount=2)

    async def commit(self) -> None:
        self.commits += 1


def test_memory_cache_returns_fresh_record() -> None:
    clock = FakeClock()
    cache = InMemoryPriceCache(ttl_seconds=300, clock=clock)
    record = make_record(age=10)

    asyncio.run(cache.put(record))

    assert asyncio.run(cache.get("aapl")) == record


def test_memory_cache_treats_expired_as_missing() -> None:
    clock = FakeClock()
    cache = InMemoryPriceCache(ttl_seconds=300, clock=clock)
    asyncio.run(cache.put(make_record(age=0)))

    clock.advance(301)

    assert asyncio.run(cache.get("AAPL")) is None
    # Not deleted until a sweep runs.
    assert len(cache) == 1


def test_memory_cache_put_replaces_whole_record() -> None:
    cache = InMemoryPriceCache(ttl_seconds=300, clock=FakeClock())
    asyncio.run(cache.put(make_record(change_24h=Decimal("1.5"))))
    asyncio.run(cache.put(make_record(price="190.00", source="fallback")))

    cached = asyncio.run(cache.get("AAPL"))

    assert cached.price == Decimal("190.00")
    assert cached.source == "fallback"
    assert cached.change_24h is None


def test_memory_cache_sweep_removes_only_expired() -> None:
    cache = InMemoryPriceCache(ttl_seconds=300, clock=FakeClock())
    asyncio.run(cache.put(make_record("AAPL", age=400)))
    asyncio.run(cache.put(make_record("MSFT", age=20)))

    removed = asyncio.run(cache.sweep())

    assert removed == 1
    assert len(cache) == 1
    assert asyncio.run(cache.get("MSFT")) is not None


def test_redis_cache_roundtrip_uses_remaining_ttl() -> None:
    fake = FakeRedis()
    cache = RedisPriceCache(fake, ttl_seconds=300, clock=FakeClock())
    record = make_record(age=100, change_percent_24h=Decimal("0.66"))

    asyncio.run(cache.put(record))
    cached = asyncio.run(cache.get("AAPL"))

    assert cached == record
    assert fake.expirations["price:AAPL"] == 200


def test_redis_cache_rejects_stale_and_malformed_payloads() -> None:
    fake = FakeRedis()
    clock = FakeClock()
    cache = RedisPriceCache(fake, ttl_seconds=300, clock=clock)
    asyncio.run(cache.put(make_record("AAPL")))
    fake.store["price:MSFT"] = "not json"

    clock.advance(301)

    assert asyncio.run(cache.get("AAPL")) is None
    assert asyncio.run(cache.get("MSFT")) is None
    assert asyncio.run(cache.sweep()) == 2
    assert fake.store == {}


def test_redis_cache_skips_records_already_past_ttl() -> None:
    fake = FakeRedis()
    cache = RedisPriceCache(fake, ttl_seconds=300, clock=FakeClock())

    asyncio.run(cache.put(make_record(age=500)))

    assert fake.store == {}


def test_redis_errors_surface_as_cache_unavailable() -> None:
    class BrokenRedis(FakeRedis):
        async def get(self, key: str):
            raise ConnectionRefusedError("redis down")

    cache = RedisPriceCache(BrokenRedis(), ttl_seconds=300, clock=FakeClock())

    with pytest.raises(PriceCacheUnavailableError):
        asyncio.run(cache.get("AAPL"))


def test_sql_cache_reads_row_with_stored_source() -> None:
    row = PriceCacheEntry(
        symbol="BTC",
        current_price=Decimal("65000.00000000"),
        change_24h=None,
        change_percent_24h=Decimal("2.1"),
        source="fallback",
        updated_at=START - datetime.timedelta(seconds=60),
    )
    session = FakeSession({"BTC": row})
    cache = SqlPriceCache(lambda: session, ttl_seconds=300, clock=FakeClock())

    cached = asyncio.run(cache.get("btc"))

    assert cached is not None
    assert cached.source == "fallback"
    assert cached.price == Decimal("65000")
    assert cached.observed_at == row.updated_at


def test_sql_cache_expired_row_is_missing() -> None:
    row = PriceCacheEntry(
        symbol="BTC",
        current_price=Decimal("65000"),
        source="coingecko",
        updated_at=START - datetime.timedelta(seconds=301),
    )
    cache = SqlPriceCache(lambda: FakeSession({"BTC": row}), ttl_seconds=300, clock=FakeClock())

    assert asyncio.run(cache.get("BTC")) is None


def test_sql_cache_put_is_single_upsert() -> None:
    session = FakeSession({})
    cache = SqlPriceCache(lambda: session, ttl_seconds=300, clock=FakeClock())

    asyncio.run(cache.put(make_record("AAPL", source="finnhub")))

    assert session.commits == 1
    assert len(session.statements) == 1
    sql = str(session.statements[0].compile(dialect=postgresql.dialect()))
    assert "INSERT INTO price_cache" in sql
    assert "ON CONFLICT (symbol) DO UPDATE" in sql
    assert "source" in sql


def test_sql_cache_sweep_deletes_older_than_ttl() -> None:
    session = FakeSession({})
    cache = SqlPriceCache(lambda: session, ttl_seconds=300, clock=FakeClock())

    removed = asyncio.run(cache.sweep())

    assert removed == 2
    stmt = session.statements[0]
    sql = str(stmt.compile(dialect=postgresql.dialect()))
    assert sql.startswith("DELETE FROM price_cache")
    cutoff = stmt.whereclause.right.value
    assert cutoff == START - datetime.timedelta(seconds=300)


def test_sql_errors_surface_as_cache_unavailable() -> None:
    cache = SqlPriceCache(lambda: FakeSession({}, fail=True), ttl_seconds=300, clock=FakeClock())

    with pytest.raises(PriceCacheUnavailableError):
        asyncio.run(cache.get("AAPL"))
    with pytest.raises(PriceCacheUnavailableError):
        asyncio.run(cache.put(make_record()))


def test_create_price_cache_selects_backend() -> None:
    assert isinstance(create_price_cache("memory"), InMemoryPriceCache)
    assert isinstance(create_price_cache("redis"), RedisPriceCache)
    with pytest.raises(ValueError):
        create_price_cache("nope")


def test_memory_cache_ttl_boundary() -> None:
    clock = FakeClock()
    cache = InMemoryPriceCache(ttl_seconds=300, clock=clock)
    asyncio.run(cache.put(make_record(age=0)))

    clock.advance(300)
    assert asyncio.run(cache.get("AAPL")) is not None
    assert asyncio.run(cache.sweep()) == 0

    clock.advance(0.001)
    assert asyncio.run(cache.get("AAPL")) is None
    assert asyncio.run(cache.sweep()) == 1


def test_redis_cache_ttl_boundary() -> None:
    fake = FakeRedis()
    clock = FakeClock()
    cache = RedisPriceCache(fake, ttl_seconds=300, clock=clock)
    asyncio.run(cache.put(make_record(age=0)))

    clock.advance(300)
    assert asyncio.run(cache.get("AAPL")) is not None
    assert asyncio.run(cache.sweep()) == 0

    clock.advance(0.001)
    assert asyncio.run(cache.get("AAPL")) is None
    assert asyncio.run(cache.sweep()) == 1


def test_sql_cache_ttl_boundary_matches_sweep_cutoff() -> None:
    at_ttl = PriceCacheEntry(
        symbol="AAPL",
        current_price=Decimal("182.50"),
        source="finnhub",
        updated_at=START - datetime.timedelta(seconds=300),
    )
    past_ttl = PriceCacheEntry(
        symbol="MSFT",
        current_price=Decimal("380.00"),
        source="finnhub",
        updated_at=START - datetime.timedelta(seconds=300, milliseconds=1),
    )
    session = FakeSession({"AAPL": at_ttl, "MSFT": past_ttl})
    cache = SqlPriceCache(lambda: session, ttl_seconds=300, clock=FakeClock())

    assert asyncio.run(cache.get("AAPL")) is not None
    assert asyncio.run(cache.get("MSFT")) is None

    asyncio.run(cache.sweep())
    where = session.statements[0].whereclause
    cutoff = where.right.value
    # Strict "<": the row read as fresh above is kept, the expired one is deleted.
    assert where.operator is operator.lt
    assert not at_ttl.updated_at < cutoff
    assert past_ttl.updated_at < cutoff
