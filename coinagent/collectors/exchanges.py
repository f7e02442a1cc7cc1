"""Exchange spot price adapters (Binance, Kraken)."""
import logging
from decimal import Decimal

from coinagent.collectors.base import HTTPPriceProvider
from coinagent.collectors.parsers import parse_binance_price, parse_kraken_price

logger = logging.getLogger(__name__)


class BinanceProvider(HTTPPriceProvider):
    """Binance spot ticker, quoted against USDT."""

    provider_id = "binance"

    def __init__(self, base_url: str = "https://api.binance.com/api/v3", **kwargs):
        super().__init__(base_url, **kwargs)

    async def _fetch_price(self, ticker: str) -> Decimal:
        data = await self._get_json("ticker/price", {"symbol": f"{ticker}USDT"})
        return parse_binance_price(data)


class KrakenProvider(HTTPPriceProvider):
    """Kraken public ticker, last trade price against USD."""

    provider_id = "kraken"

    def __init__(self, base_url: str = "https://api.kraken.com/0/public", **kwargs):
        super().__init__(base_url, **kwargs)

    async def _fetch_price(self, ticker: str) -> Decimal:
        data = await self._get_json("Ticker", {"pair": f"{ticker}USD"})
        return parse_kraken_price(data)
