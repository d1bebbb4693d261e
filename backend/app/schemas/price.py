from __future__ import annotations

import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

PriceSource = Literal["coingecko", "finnhub", "fallback"]
AssetClass = Literal["crypto", "equity", "unsupported"]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class PriceRecord(BaseModel):
    symbol: str
    price: Decimal = Field(ge=0)
    change_24h: Optional[Decimal] = None
    change_percent_24h: Optional[Decimal] = None
    observed_at: datetime.datetime = Field(default_factory=utcnow)
    source: PriceSource

    @field_validator("symbol")
    @classmethod
    def _normalize_symbol(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("observed_at")
    @classmethod
    def _ensure_aware(cls, value: datetime.datetime) -> datetime.datetime:
        # Naive timestamps come back from some drivers; they are stored as UTC.
        if value.tzinfo is None:
            return value.replace(tzinfo=datetime.UTC)
        return value

    def age_seconds(self, now: datetime.datetime) -> float:
        return (now - self.observed_at).total_seconds()

    def is_fresh(self, ttl_seconds: int, now: datetime.datetime) -> bool:
        return self.age_seconds(now) <= ttl_seconds


PriceResolution = dict[str, Optional[PriceRecord]]
