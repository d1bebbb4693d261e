import datetime
import threading
from decimal import Decimal

from app.errors import PriceCacheUnavailableError
from app.schemas.price import PriceRecord

START = datetime.datetime(2026, 1, 5, 15, 0, tzinfo=datetime.UTC)


class FakeClock:
    def __init__(self, start: datetime.datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + datetime.timedelta(seconds=seconds)


class FakeCryptoProvider:
    source = "coingecko"

    def __init__(self, prices: dict[str, str], clock: FakeClock, fail: bool = False) -> None:
        self.prices = prices
        self.clock = clock
        self.fail = fail
        self.calls: list[list[str]] = []

    def fetch_batch(self, symbols):
        symbols = sorted(symbols)
        self.calls.append(symbols)
        if self.fail:
            return {symbol: None for symbol in symbols}
        return {
            symbol: PriceRecord(
                symbol=symbol,
                price=Decimal(self.prices[symbol]),
                observed_at=self.clock(),
                source=self.source,
            )
            if symbol in self.prices
            else None
            for symbol in symbols
        }


class FakeEquityProvider:
    source = "finnhub"

    def __init__(
        self,
        prices: dict[str, str],
        clock: FakeClock,
        errors: dict[str, Exception] | None = None,
    ) -> None:
        self.prices = prices
        self.clock = clock
        self.errors = errors or {}
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def fetch(self, symbol: str):
        with self._lock:
            self.calls.append(symbol)
        if symbol in self.errors:
            raise self.errors[symbol]
        if symbol not in self.prices:
            return None
        return PriceRecord(
            symbol=symbol,
            price=Decimal(self.prices[symbol]),
            observed_at=self.clock(),
            source=self.source,
        )


class UnavailableCache:
    ttl_seconds = 300

    def __init__(self) -> None:
        self.put_attempts = 0

    async def get(self, symbol: str):
        raise PriceCacheUnavailableError("down")

    async def put(self, record: PriceRecord) -> None:
        self.put_attempts += 1
        raise PriceCacheUnavailableError("down")

    async def sweep(self) -> int:
        raise PriceCacheUnavailableError("down")
