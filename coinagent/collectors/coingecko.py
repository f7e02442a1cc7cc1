"""CoinGecko adapter: primary spot price plus market context."""
import logging
from decimal import Decimal

from coinagent.collectors.base import HTTPPriceProvider
from coinagent.collectors.parsers import (
    average_chart_price,
    parse_coingecko_price,
    parse_coingecko_search,
    parse_coingecko_stats,
)
from coinagent.core.errors import ProviderUnavailable
from coinagent.models import MarketStats

logger = logging.getLogger(__name__)


# Tickers whose CoinGecko id is not discoverable by exact symbol search,
# or where search returns an impostor token first.
COIN_IDS = {
    "BTC": "bitcoin", "ETH": "ethereum", "SOL": "solana", "ADA": "cardano",
    "XRP": "ripple", "DOT": "polkadot", "AVAX": "avalanche-2", "LINK": "chainlink",
    "GODS": "gods-unchained", "DOGE": "dogecoin", "MATIC": "polygon", "OP": "optimism",
    "ARB": "arbitrum", "TIA": "celestia", "SUI": "sui", "SEI": "sei-network",
    "PEPE": "pepe", "SHIB": "shiba-inu", "LTC": "litecoin", "NEAR": "near",
    "ICP": "internet-computer", "STX": "stack", "INJ": "injective-protocol",
    "RENDER": "render-token", "KAS": "kaspa", "FET": "fetch-ai", "HBAR": "hedera-hashgraph",
    "DASH": "dash", "MNT": "mantle", "LEO": "unus-sed-leo", "HYPE": "hyperliquid",
}

COIN_DETAIL_PARAMS = {
    "localization": "false",
    "tickers": "false",
    "market_data": "true",
    "community_data": "false",
    "developer_data": "false",
    "sparkline": "false",
}


class CoinGeckoProvider(HTTPPriceProvider):
    """CoinGecko coin details endpoint.

    Also serves the best-effort enrichment (24h range, market cap, all-time
    figures and trailing 7/30-day averages) used to give the score provider
    context.
    """

    provider_id = "coingecko"

    def __init__(self, base_url: str = "https://api.coingecko.com/api/v3", **kwargs):
        super().__init__(base_url, **kwargs)

    async def resolve_id(self, ticker: str) -> str:
        """Map a ticker to a CoinGecko coin id.

        Uses the static map, then an exact-symbol search, then the lowercase ticker.
        """
        ticker = ticker.upper()
        if ticker in COIN_IDS:
            return COIN_IDS[ticker]

        try:
            data = await self._get_json("search", {"query": ticker})
            coin_id = parse_coingecko_search(data, ticker)
            if coin_id:
                return coin_id
        except ProviderUnavailable as e:
            logger.warning(f"CoinGecko id search failed for {ticker}: {e.reason}")

        return ticker.lower()

    async def _fetch_price(self, ticker: str) -> Decimal:
        coin_id = await self.resolve_id(ticker)
        data = await self._get_json(f"coins/{coin_id}", COIN_DETAIL_PARAMS)
        return parse_coingecko_price(data)

    async def fetch_average_price(self, coin_id: str, days: int) -> float:
        """Average daily price over the last ``days`` days, 0.0 if unavailable."""
        try:
            data = await self._get_json(
                f"coins/{coin_id}/market_chart",
                {"vs_currency": "usd", "days": str(days), "interval": "daily"},
            )
        except ProviderUnavailable as e:
            logger.debug(f"No {days}d average for {coin_id}: {e.reason}")
            return 0.0
        return average_chart_price(data)

    async def fetch_market_stats(self, ticker: str) -> MarketStats:
        """Best-effort market context. Never raises."""
        ticker = ticker.upper()
        coin_id = await self.resolve_id(ticker)

        try:
            details = await self._get_json(f"coins/{coin_id}", COIN_DETAIL_PARAMS)
            stats = parse_coingecko_stats(details, fallback_name=ticker)
        except ProviderUnavailable as e:
            logger.debug(f"No market details for {ticker}: {e.reason}")
            stats = MarketStats(name=ticker)

        stats.avg_7d = await self.fetch_average_price(coin_id, 7)
        stats.avg_30d = await self.fetch_average_price(coin_id, 30)
        return stats
