"""Parsers that normalize provider JSON payloads.

Every parser raises ValueError when a required field is missing, malformed
or non-positive, so adapters can turn any bad payload into a ProviderFailure.
"""
from decimal import Decimal, InvalidOperation
from typing import Any

from coinagent.models import MarketStats


def to_positive_decimal(value: Any, field: str) -> Decimal:
    """Convert a JSON number or numeric string to a Decimal > 0.

    Raises:
        ValueError: If the value is missing, not numeric, or not positive
    """
    if value is None or isinstance(value, bool):
        raise ValueError(f"Missing field: {field}")
    try:
        price = Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Invalid number in {field}: {value!r}") from e
    if not price.is_finite() or price <= 0:
        raise ValueError(f"Non-positive value in {field}: {value!r}")
    return price


def parse_binance_price(data: Any) -> Decimal:
    """Parse /api/v3/ticker/price: {"symbol": "BTCUSDT", "price": "64000.12"}."""
    if not isinstance(data, dict):
        raise ValueError("Invalid Binance payload: expected object")
    return to_positive_decimal(data.get("price"), "price")


def parse_kraken_price(data: Any) -> Decimal:
    """Parse /0/public/Ticker: last trade price is result[<pair>]["c"][0]."""
    if not isinstance(data, dict):
        raise ValueError("Invalid Kraken payload: expected object")

    errors = data.get("error") or []
    if errors:
        raise ValueError(f"Kraken error: {', '.join(str(e) for e in errors)}")

    result = data.get("result") or {}
    if not isinstance(result, dict):
        raise ValueError("Invalid Kraken payload: result is not an object")
    if not result:
        raise ValueError("Kraken payload has no result pairs")

    first_pair = result[next(iter(result))]
    if not isinstance(first_pair, dict):
        raise ValueError("Invalid Kraken payload: pair entry is not an object")
    try:
        last_trade = first_pair["c"][0]
    except (KeyError, IndexError, TypeError) as e:
        raise ValueError("Missing field: c[0]") from e
    return to_positive_decimal(last_trade, "c[0]")


def parse_coingecko_price(data: Any) -> Decimal:
    """Parse /coins/{id}: market_data.current_price.usd."""
    try:
        usd = data["market_data"]["current_price"]["usd"]
    except (KeyError, TypeError) as e:
        raise ValueError("Missing field: market_data.current_price.usd") from e
    return to_positive_decimal(usd, "market_data.current_price.usd")


def parse_coingecko_search(data: Any, ticker: str) -> str | None:
    """Return the coin id whose symbol exactly matches the ticker, if any."""
    if not isinstance(data, dict):
        return None
    wanted = ticker.upper()
    coins = data.get("coins") or []
    if not isinstance(coins, list):
        return None
    for coin in coins:
        if not isinstance(coin, dict):
            continue
        if str(coin.get("symbol", "")).upper() == wanted and coin.get("id"):
            return coin["id"]
    return None


def _usd_field(market_data: dict, key: str) -> Any:
    entry = market_data.get(key)
    return entry.get("usd") if isinstance(entry, dict) else None


def _usd(market_data: dict, key: str) -> float:
    value = _usd_field(market_data, key)
    return float(value) if isinstance(value, (int, float)) else 0.0


def _usd_date(market_data: dict, key: str) -> str:
    value = _usd_field(market_data, key)
    return str(value) if value else "N/A"


def parse_coingecko_stats(data: Any, fallback_name: str) -> MarketStats:
    """Extract 24h, market cap and all-time figures. Absent values become 0/'N/A'."""
    if not isinstance(data, dict):
        return MarketStats(name=fallback_name)

    market_data = data.get("market_data")
    if not isinstance(market_data, dict):
        market_data = {}
    change = market_data.get("price_change_percentage_24h")

    return MarketStats(
        name=data.get("name") or fallback_name,
        change_24h=float(change) if isinstance(change, (int, float)) else 0.0,
        high_24h=_usd(market_data, "high_24h"),
        low_24h=_usd(market_data, "low_24h"),
        market_cap=_usd(market_data, "market_cap"),
        ath=_usd(market_data, "ath"),
        ath_date=_usd_date(market_data, "ath_date"),
        atl=_usd(market_data, "atl"),
        atl_date=_usd_date(market_data, "atl_date"),
    )


def average_chart_price(data: Any) -> float:
    """Mean of /coins/{id}/market_chart "prices" [[ts, price], ...]; 0.0 when empty."""
    if not isinstance(data, dict):
        return 0.0
    points = [
        p[1] for p in data.get("prices") or []
        if isinstance(p, (list, tuple)) and len(p) >= 2 and isinstance(p[1], (int, float))
    ]
    if not points:
        return 0.0
    return float(sum(points) / len(points))
