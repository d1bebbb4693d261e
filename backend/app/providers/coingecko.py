from __future__ import annotations

import datetime
import json
import logging
import socket
from decimal import Decimal
from typing import Callable, Iterable
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode

from app.config.settings import settings
from app.pricing.classifier import coingecko_id, normalize_symbol
from app.providers.base import get_json, to_decimal
from app.schemas.price import PriceRecord, utcnow

logger = logging.getLogger(__name__)

_SIMPLE_PRICE_PATH = "/simple/price"
_CHANGE_QUANTUM = Decimal("0.00000001")


class CoinGeckoProvider:
    """Batch crypto quotes from CoinGecko's ``/simple/price`` endpoint."""

    source = "coingecko"

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        currency: str | None = None,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        provider_settings = settings.providers
        self.base_url = (base_url or provider_settings.coingecko_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else provider_settings.coingecko_api_key
        self.timeout = timeout or provider_settings.request_timeout_seconds
        self.currency = (currency or settings.quote_currency).lower()
        self._clock = clock

    def _build_url(self, coin_ids: Iterable[str]) -> str:
        params = {
            "ids": ",".join(sorted(set(coin_ids))),
            "vs_currencies": self.currency,
            "include_24hr_change": "true",
        }
        return f"{self.base_url}{_SIMPLE_PRICE_PATH}?{urlencode(params)}"

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key
        return headers

    def _parse_entry(
        self, symbol: str, entry, observed_at: datetime.datetime
    ) -> PriceRecord | None:
        if not isinstance(entry, dict):
            return None
        price = to_decimal(entry.get(self.currency))
        if price is None or price < 0:
            logger.warning("CoinGecko returned no usable %s price for %s", self.currency, symbol)
            return None

        # CoinGecko reports the 24h change as a percentage only.
        percent = to_decimal(entry.get(f"{self.currency}_24h_change"))
        change = None
        if percent is not None and percent != -100:
            change = (price * percent / (100 + percent)).quantize(_CHANGE_QUANTUM)
        return PriceRecord(
            symbol=symbol,
            price=price,
            change_24h=change,
            change_percent_24h=percent,
            observed_at=observed_at,
            source=self.source,
        )

    def fetch_batch(self, symbols: Iterable[str]) -> dict[str, PriceRecord | None]:
        results: dict[str, PriceRecord | None] = {}
        coin_ids: dict[str, str] = {}
        for symbol in symbols:
            normalized = normalize_symbol(symbol)
            results[normalized] = None
            coin_id = coingecko_id(normalized)
            if coin_id:
                coin_ids[normalized] = coin_id
        if not coin_ids:
            return results

        url = self._build_url(coin_ids.values())
        logger.info("Fetching CoinGecko batch for %s", ", ".join(sorted(coin_ids)))
        try:
            payload = get_json(url, headers=self._headers(), timeout=self.timeout)
        except HTTPError as exc:
            status = "rate_limited" if exc.code == 429 else "error"
            logger.warning("CoinGecko batch failed (%s, HTTP %s)", status, exc.code)
            return results
        except (
            URLError,
            ConnectionError,
            TimeoutError,
            socket.timeout,
            json.JSONDecodeError,
            UnicodeDecodeError,
        ) as exc:
            logger.warning("CoinGecko batch failed: %s", exc)
            return results

        if not isinstance(payload, dict):
            logger.warning("CoinGecko batch returned a malformed payload")
            return results

        observed_at = self._clock()
        for symbol, coin_id in coin_ids.items():
            results[symbol] = self._parse_entry(symbol, payload.get(coin_id), observed_at)

        missing = sorted(symbol for symbol, record in results.items() if record is None)
        if missing:
            logger.info("CoinGecko batch had no quote for %s", ", ".join(missing))
        return results
