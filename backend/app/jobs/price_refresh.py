from __future__ import annotations

import asyncio
import logging
from collections import Counter

from app.assets import list_distinct_symbols
from app.cache import PriceCache, create_price_cache
from app.db.session import AsyncSessionLocal
from app.logging_config import setup_logging
from app.pricing.aggregator import PriceAggregator
from app.pricing.service import build_price_aggregator

logger = logging.getLogger(__name__)


async def refresh_all_prices(
    user_id: str | None = None, aggregator: PriceAggregator | None = None
) -> dict:
    async with AsyncSessionLocal() as session:
        symbols = await list_distinct_symbols(session, user_id)

    logger.info("Updating prices for %d unique symbols", len(symbols))
    aggregator = aggregator or build_price_aggregator()
    resolved = await aggregator.resolve(symbols)

    by_source = Counter(record.source for record in resolved.values() if record is not None)
    unsupported = sorted(symbol for symbol, record in resolved.items() if record is None)
    summary = {
        "symbols": len(resolved),
        "by_source": dict(by_source),
        "unsupported": unsupported,
    }
    logger.info("Price update complete: %s", summary)
    return summary


async def sweep_price_cache(cache: PriceCache | None = None) -> int:
    cache = cache or create_price_cache()
    removed = await cache.sweep()
    logger.info("Removed %d expired price cache entries", removed)
    return removed


def run_price_refresh(user_id: str | None = None) -> dict:
    setup_logging()
    return asyncio.run(refresh_all_prices(user_id=user_id))


def run_cache_sweep() -> int:
    setup_logging()
    return asyncio.run(sweep_price_cache())
