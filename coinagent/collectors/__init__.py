"""Market data provider adapters."""

from coinagent.collectors.base import PriceProvider, HTTPPriceProvider
from coinagent.collectors.coingecko import CoinGeckoProvider
from coinagent.collectors.exchanges import BinanceProvider, KrakenProvider

__all__ = [
    "PriceProvider",
    "HTTPPriceProvider",
    "CoinGeckoProvider",
    "BinanceProvider",
    "KrakenProvider",
]
