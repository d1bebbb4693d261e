from __future__ import annotations

import datetime
import json
import logging
import socket
from typing import Callable
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode

from app.config.settings import settings
from app.pricing.classifier import normalize_symbol
from app.providers.base import get_json, to_decimal
from app.schemas.price import PriceRecord, utcnow

logger = logging.getLogger(__name__)

_QUOTE_PATH = "/api/v1/quote"


class FinnhubProvider:
    """Per-symbol equity/ETF quotes from Finnhub's ``/quote`` endpoint."""

    source = "finnhub"

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        provider_settings = settings.providers
        self.base_url = (base_url or provider_settings.finnhub_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else provider_settings.finnhub_api_key
        self.timeout = timeout or provider_settings.request_timeout_seconds
        self._clock = clock

    def _build_url(self, symbol: str) -> str:
        return f"{self.base_url}{_QUOTE_PATH}?{urlencode({'symbol': symbol})}"

    def fetch(self, symbol: str) -> PriceRecord | None:
        normalized = normalize_symbol(symbol)
        if not self.api_key:
            logger.warning("Finnhub API key missing; cannot quote %s", normalized)
            return None

        headers = {"Accept": "application/json", "X-Finnhub-Token": self.api_key}
        try:
            payload = get_json(self._build_url(normalized), headers=headers, timeout=self.timeout)
        except HTTPError as exc:
            status = "rate_limited" if exc.code == 429 else "error"
            logger.warning("Finnhub quote for %s failed (%s, HTTP %s)", normalized, status, exc.code)
            return None
        except (
            URLError,
            ConnectionError,
            TimeoutError,
            socket.timeout,
            json.JSONDecodeError,
            UnicodeDecodeError,
        ) as exc:
            logger.warning("Finnhub quote for %s failed: %s", normalized, exc)
            return None

        if not isinstance(payload, dict):
            logger.warning("Finnhub quote for %s returned a malformed payload", normalized)
            return None

        # Finnhub answers unknown symbols with zeros instead of an error.
        price = to_decimal(payload.get("c"))
        if price is None or price <= 0:
            logger.warning("Finnhub returned no usable price for %s", normalized)
            return None

        return PriceRecord(
            symbol=normalized,
            price=price,
            change_24h=to_decimal(payload.get("d")),
            change_percent_24h=to_decimal(payload.get("dp")),
            observed_at=self._clock(),
            source=self.source,
        )
