from __future__ import annotations

from app.cache import PriceCache, create_price_cache
from app.pricing.aggregator import PriceAggregator
from app.pricing.fallback import FallbackPolicy
from app.providers.coingecko import CoinGeckoProvider
from app.providers.finnhub import FinnhubProvider


def build_price_aggregator(cache: PriceCache | None = None) -> PriceAggregator:
    """Wire providers, fallback and the configured cache from settings."""
    return PriceAggregator(
        cache=cache if cache is not None else create_price_cache(),
        crypto_provider=CoinGeckoProvider(),
        equity_provider=FinnhubProvider(),
        fallback=FallbackPolicy(),
    )
