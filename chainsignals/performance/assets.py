from __future__ import annotations

USD = "USD"

# Symbol -> CoinGecko coin id used for price backfill.
SUPPORTED_ASSETS: dict[str, str] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "SOL": "solana",
    "XRP": "ripple",
    "KAS": "kaspa",
    "GOLD": "pax-gold",
    "SILVER": "kinesis-silver",
    "SPX": "backed-cspx-core-s-p-500",
}


def normalize_symbol(symbol: str | None) -> str:
    return (symbol or "").strip().upper()


def is_usd_asset(symbol: str | None) -> bool:
    return normalize_symbol(symbol) == USD


def is_supported_asset(symbol: str | None) -> bool:
    """True for USD cash and every asset with a price feed."""
    sym = normalize_symbol(symbol)
    return sym == USD or sym in SUPPORTED_ASSETS
