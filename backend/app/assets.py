from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Asset
from app.pricing.classifier import normalize_symbol


async def list_distinct_symbols(session: AsyncSession, user_id: str | None = None) -> set[str]:
    """Distinct held symbols, for one user or across every portfolio."""
    stmt = select(Asset.symbol).distinct()
    if user_id is not None:
        stmt = stmt.where(Asset.user_id == user_id)
    result = await session.execute(stmt)
    symbols = {normalize_symbol(symbol) for symbol in result.scalars().all()}
    symbols.discard("")
    return symbols
