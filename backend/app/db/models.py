# backend/app/db/models.py

import datetime
import uuid

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    Numeric,
    String,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class Asset(Base):
    __tablename__ = "assets"

    # Owned by the accounts service; only read here.
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False, index=True)
    type = Column(
        Enum("STOCK", "CRYPTO", "ETF", "BOND", "OTHER", name="AssetType"),
        nullable=False,
    )
    symbol = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    quantity = Column(Numeric(18, 8), nullable=False)
    purchase_price = Column(Numeric(18, 2), nullable=False)
    purchase_date = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __repr__(self):
        return f"<Asset(symbol='{self.symbol}', user_id='{self.user_id}')>"


class PriceCacheEntry(Base):
    __tablename__ = "price_cache"

    symbol = Column(String, primary_key=True)
    current_price = Column(Numeric(18, 8), nullable=False)
    change_24h = Column(Numeric(18, 8))
    change_percent_24h = Column(Numeric(12, 6))
    source = Column(String, nullable=False)
    # Time the quote was observed upstream, not the time of the write.
    updated_at = Column(DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self):
        return f"<PriceCacheEntry(symbol='{self.symbol}', source='{self.source}')>"
