from __future__ import annotations

import datetime
from decimal import Decimal
from typing import Callable, Mapping

from app.config.settings import settings
from app.pricing.classifier import normalize_symbol
from app.schemas.price import PriceRecord, utcnow

# Last reviewed reference prices in USD. Used only when no live quote is available.
REFERENCE_PRICES: dict[str, Decimal] = {
    "AAPL": Decimal("182.50"),
    "GOOGL": Decimal("142.30"),
    "MSFT": Decimal("378.90"),
    "TSLA": Decimal("245.60"),
    "AMZN": Decimal("155.20"),
    "META": Decimal("362.40"),
    "NVDA": Decimal("487.30"),
    "AMD": Decimal("167.80"),
    "NFLX": Decimal("445.60"),
    "DIS": Decimal("92.30"),
    "SPY": Decimal("475.00"),
    "QQQ": Decimal("405.00"),
    "BTC": Decimal("65000.00"),
    "ETH": Decimal("3200.00"),
    "SOL": Decimal("140.00"),
    "USDT": Decimal("1.00"),
    "USDC": Decimal("1.00"),
}


class FallbackPolicy:
    """Deterministic substitute prices for symbols no provider could quote."""

    def __init__(
        self,
        reference_prices: Mapping[str, Decimal] | None = None,
        default_price: Decimal | None = None,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self.reference_prices = dict(
            REFERENCE_PRICES if reference_prices is None else reference_prices
        )
        self.default_price = (
            settings.fallback_default_price if default_price is None else default_price
        )
        self._clock = clock

    def reference_price(self, symbol: str) -> Decimal:
        return self.reference_prices.get(normalize_symbol(symbol), self.default_price)

    def fallback(self, symbol: str) -> PriceRecord:
        return PriceRecord(
            symbol=normalize_symbol(symbol),
            price=self.reference_price(symbol),
            observed_at=self._clock(),
            source="fallback",
        )
