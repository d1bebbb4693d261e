from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Iterable

from app.cache import PriceCache
from app.config.settings import settings
from app.errors import PriceCacheUnavailableError
from app.pricing.classifier import classify, normalize_symbol
from app.pricing.fallback import FallbackPolicy
from app.providers.base import BatchPriceProvider, SinglePriceProvider
from app.schemas.price import AssetClass, PriceRecord, PriceResolution

logger = logging.getLogger(__name__)


@dataclass
class ResolveStats:
    requested: int = 0
    unsupported: int = 0
    cache_hits: int = 0
    provider_hits: int = 0
    fallbacks: int = 0
    provider_calls: int = 0
    shared_fetches: int = 0


def normalize_symbols(symbols: Iterable[str]) -> list[str]:
    """Upper-case, strip and de-duplicate, keeping first-seen order.

    Blank input stays as a single "" entry so it still gets a result key.
    """
    unique: list[str] = []
    seen: set[str] = set()
    for symbol in symbols:
        value = normalize_symbol(symbol)
        if value in seen:
            continue
        seen.add(value)
        unique.append(value)
    return unique


class PriceAggregator:
    """Resolve current prices for a mixed set of crypto and equity symbols.

    Flow per call:
        normalize -> classify -> cache -> one crypto batch call + one equity
        call per symbol (concurrent) -> fallback for misses -> cache write.

    Unsupported symbols resolve to ``None``; every crypto or equity symbol
    ends with a record, from a provider, the cache, or the fallback policy.
    Provider and cache failures are logged and absorbed, never raised.

    A symbol already being fetched by another in-flight call is awaited
    rather than fetched again. ``last_stats`` holds the counters of the most
    recently finished call only; use ``resolve_with_stats`` to get the
    counters of a specific call.
    """

    def __init__(
        self,
        *,
        cache: PriceCache,
        crypto_provider: BatchPriceProvider,
        equity_provider: SinglePriceProvider,
        fallback: FallbackPolicy,
        classifier: Callable[[str], AssetClass] = classify,
        max_concurrency: int | None = None,
    ) -> None:
        self.cache = cache
        self.crypto_provider = crypto_provider
        self.equity_provider = equity_provider
        self.fallback = fallback
        self.classifier = classifier
        self.max_concurrency = max_concurrency or settings.equity_max_concurrency
        self.last_stats = ResolveStats()
        self._inflight: set[asyncio.Task] = set()
        self._pending: dict[str, asyncio.Future] = {}

    async def resolve_one(self, symbol: str) -> PriceRecord | None:
        normalized = normalize_symbol(symbol)
        results = await self.resolve([normalized])
        return results.get(normalized)

    async def resolve(self, symbols: Iterable[str]) -> PriceResolution:
        results, _ = await self.resolve_with_stats(symbols)
        return results

    async def resolve_with_stats(
        self, symbols: Iterable[str]
    ) -> tuple[PriceResolution, ResolveStats]:
        requested = normalize_symbols(symbols)
        stats = ResolveStats(requested=len(requested))
        results: PriceResolution = {symbol: None for symbol in requested}

        classified: dict[str, AssetClass] = {}
        for symbol in requested:
            asset_class = self.classifier(symbol)
            if asset_class == "unsupported":
                logger.info("Symbol %s not supported", symbol)
                stats.unsupported += 1
                continue
            classified[symbol] = asset_class

        cached = await asyncio.gather(*(self._read_cache(symbol) for symbol in classified))
        crypto_pending: list[str] = []
        equity_pending: list[str] = []
        shared: dict[str, asyncio.Future] = {}
        loop = asyncio.get_running_loop()
        # No await between the pending lookup and registration below.
        for symbol, record in zip(classified, cached):
            if record is not None:
                results[symbol] = record
                stats.cache_hits += 1
            elif self._is_pending(symbol, loop):
                shared[symbol] = self._pending[symbol]
            else:
                self._pending[symbol] = loop.create_future()
                if classified[symbol] == "crypto":
                    crypto_pending.append(symbol)
                else:
                    equity_pending.append(symbol)

        if crypto_pending or equity_pending:
            # Shielded so an abandoned request still finishes and warms the cache.
            task = asyncio.create_task(
                self._fetch_and_store(crypto_pending, equity_pending, stats),
                name="price-fetch",
            )
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            results.update(await asyncio.shield(task))

        if shared:
            records = await asyncio.gather(*(asyncio.shield(f) for f in shared.values()))
            results.update(zip(shared, records))
            stats.shared_fetches += len(shared)

        self.last_stats = stats
        logger.info(
            "Resolved %d symbols: cache_hits=%d provider_hits=%d fallbacks=%d "
            "shared=%d unsupported=%d provider_calls=%d",
            stats.requested,
            stats.cache_hits,
            stats.provider_hits,
            stats.fallbacks,
            stats.shared_fetches,
            stats.unsupported,
            stats.provider_calls,
        )
        return results, stats

    # --- Internal ---

    def _is_pending(self, symbol: str, loop: asyncio.AbstractEventLoop) -> bool:
        waiter = self._pending.get(symbol)
        if waiter is None:
            return False
        # A fetch task cancelled before it started (loop shutdown) never clears its entry.
        if waiter.done() or waiter.get_loop() is not loop:
            del self._pending[symbol]
            return False
        return True

    async def _read_cache(self, symbol: str) -> PriceRecord | None:
        try:
            record = await self.cache.get(symbol)
        except PriceCacheUnavailableError as exc:
            logger.warning("Price cache unavailable on read for %s: %s", symbol, exc)
            return None
        if record is not None:
            logger.debug("Price for %s found in cache", symbol)
        return record

    async def _write_cache(self, record: PriceRecord) -> None:
        try:
            await self.cache.put(record)
        except PriceCacheUnavailableError as exc:
            logger.warning("Price cache unavailable on write for %s: %s", record.symbol, exc)

    async def _fetch_crypto(
        self, symbols: list[str], stats: ResolveStats
    ) -> dict[str, PriceRecord | None]:
        stats.provider_calls += 1
        try:
            batch = await asyncio.to_thread(self.crypto_provider.fetch_batch, symbols)
        except Exception:
            logger.exception("Crypto provider %s failed", self.crypto_provider.source)
            return {}
        wanted = set(symbols)
        return {
            normalize_symbol(symbol): record
            for symbol, record in batch.items()
            if normalize_symbol(symbol) in wanted
        }

    async def _fetch_equity(
        self, symbol: str, semaphore: asyncio.Semaphore, stats: ResolveStats
    ) -> dict[str, PriceRecord | None]:
        async with semaphore:
            stats.provider_calls += 1
            try:
                record = await asyncio.to_thread(self.equity_provider.fetch, symbol)
            except Exception:
                logger.exception(
                    "Equity provider %s failed for %s", self.equity_provider.source, symbol
                )
                record = None
        return {symbol: record}

    async def _fetch_and_store(
        self, crypto: list[str], equity: list[str], stats: ResolveStats
    ) -> dict[str, PriceRecord]:
        resolved: dict[str, PriceRecord] = {}
        try:
            semaphore = asyncio.Semaphore(self.max_concurrency)
            calls = []
            if crypto:
                calls.append(self._fetch_crypto(crypto, stats))
            calls.extend(self._fetch_equity(symbol, semaphore, stats) for symbol in equity)

            fetched: dict[str, PriceRecord | None] = {}
            for partial in await asyncio.gather(*calls):
                fetched.update(partial)

            for symbol in [*crypto, *equity]:
                record = fetched.get(symbol)
                if record is None:
                    record = self.fallback.fallback(symbol)
                    stats.fallbacks += 1
                    logger.info("Using fallback price %s for %s", record.price, symbol)
                else:
                    stats.provider_hits += 1
                resolved[symbol] = record

            await asyncio.gather(*(self._write_cache(record) for record in resolved.values()))
            return resolved
        finally:
            # Release callers waiting on these symbols, even if the fetch was interrupted.
            for symbol in [*crypto, *equity]:
                waiter = self._pending.pop(symbol, None)
                if waiter is None or waiter.done():
                    continue
                record = resolved.get(symbol)
                waiter.set_result(record if record is not None else self.fallback.fallback(symbol))
