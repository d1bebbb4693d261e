from __future__ import annotations

import json
import math
from decimal import Decimal
from typing import Iterable, Protocol
from urllib.request import Request, urlopen

from app.schemas.price import PriceRecord, PriceSource


class BatchPriceProvider(Protocol):
    """Upstream that can quote many symbols with a single request."""

    source: PriceSource

    def fetch_batch(self, symbols: Iterable[str]) -> dict[str, PriceRecord | None]: ...


class SinglePriceProvider(Protocol):
    """Upstream that quotes one symbol per request."""

    source: PriceSource

    def fetch(self, symbol: str) -> PriceRecord | None: ...


def get_json(url: str, headers: dict[str, str] | None = None, timeout: float = 10.0):
    request = Request(url, headers=headers or {})
    with urlopen(request, timeout=timeout) as response:
        body = response.read().decode("utf-8")
    return json.loads(body)


def to_decimal(value) -> Decimal | None:
    """Convert a JSON number to Decimal; anything else (bool, NaN, strings) is None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return Decimal(str(value))
