from __future__ import annotations

import re

from app.schemas.price import AssetClass

# Native ticker -> CoinGecko asset id.
CRYPTO_IDS: dict[str, str] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "BNB": "binancecoin",
    "SOL": "solana",
    "ADA": "cardano",
    "XRP": "ripple",
    "DOGE": "dogecoin",
    "DOT": "polkadot",
    "MATIC": "matic-network",
    "SHIB": "shiba-inu",
    "LTC": "litecoin",
    "AVAX": "avalanche-2",
    "LINK": "chainlink",
    "USDT": "tether",
    "USDC": "usd-coin",
}

# 1-5 letters, optional share class suffix such as BRK.B.
_EQUITY_SHAPE_RE = re.compile(r"^[A-Z]{1,5}(?:\.[A-Z]{1,2})?$")


def normalize_symbol(symbol: str) -> str:
    return str(symbol).strip().upper()


def coingecko_id(symbol: str) -> str | None:
    return CRYPTO_IDS.get(normalize_symbol(symbol))


def classify(symbol: str) -> AssetClass:
    normalized = normalize_symbol(symbol)
    if normalized in CRYPTO_IDS:
        return "crypto"
    if _EQUITY_SHAPE_RE.match(normalized):
        return "equity"
    return "unsupported"
