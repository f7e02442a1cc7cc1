"""Multi-provider price consensus.

Primary and Secondary are fetched concurrently. Primary is mandatory; every
other failure only lowers the confidence of the result:

    Secondary down                 -> SINGLE_SOURCE at the Primary price
    |P - S| / P <= tolerance       -> TWO_SOURCE_AVERAGE of P and S
    disagreement, Tertiary down    -> TWO_SOURCE_AVERAGE of P and S
    disagreement, Tertiary agrees  -> THREE_SOURCE_RECONCILED, closest pair averaged
    nobody agrees                  -> THREE_SOURCE_RECONCILED of all three, high divergence
"""
import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from coinagent.collectors.base import PriceProvider
from coinagent.core.errors import ConsensusFailure
from coinagent.models import MarketStats, Provenance, ProviderFailure, Quote, VerifiedPrice

logger = logging.getLogger(__name__)

HUNDRED = Decimal(100)


class MarketStatsProvider(Protocol):
    """Source of best-effort market context."""

    async def fetch_market_stats(self, ticker: str) -> MarketStats:
        ...


def disagreement_pct(reference: Decimal, other: Decimal) -> float:
    """Percentage difference of ``other`` relative to ``reference``."""
    return float(abs(reference - other) / reference * HUNDRED)


def _average(*prices: Decimal) -> Decimal:
    return sum(prices, Decimal(0)) / len(prices)


class PriceConsensusEngine:
    """Reconciles spot quotes from up to three providers into one VerifiedPrice."""

    def __init__(
        self,
        primary: PriceProvider,
        secondary: PriceProvider,
        tertiary: PriceProvider,
        tolerance_pct: float = 1.0,
        stats_provider: MarketStatsProvider | None = None,
    ):
        self.primary = primary
        self.secondary = secondary
        self.tertiary = tertiary
        self.tolerance_pct = tolerance_pct
        self.stats_provider = stats_provider

    @staticmethod
    async def _fetch(provider: PriceProvider, asset: str) -> Quote | ProviderFailure:
        """Fetch one quote; an adapter that raises counts as a failed source."""
        try:
            return await provider.fetch_spot_price(asset)
        except Exception as e:
            provider_id = getattr(provider, "provider_id", type(provider).__name__)
            logger.warning(f"Provider {provider_id} raised for {asset}: {type(e).__name__}: {e}")
            return ProviderFailure(provider_id, f"{type(e).__name__}: {e}", datetime.now())

    async def verify(self, ticker: str) -> VerifiedPrice:
        """Produce a verified price for a ticker.

        Raises:
            ConsensusFailure: If the primary provider fails
        """
        asset = ticker.upper()

        primary_result, secondary_result = await asyncio.gather(
            self._fetch(self.primary, asset),
            self._fetch(self.secondary, asset),
        )

        if isinstance(primary_result, ProviderFailure):
            logger.warning(f"Primary provider {primary_result.provider_id} failed for {asset}: {primary_result.reason}")
            raise ConsensusFailure(asset, primary_result.reason)
        primary: Quote = primary_result

        if isinstance(secondary_result, ProviderFailure):
            logger.debug(f"Secondary provider failed for {asset}, using primary only: {secondary_result.reason}")
            return self._result(asset, primary.price, Provenance.SINGLE_SOURCE, 0.0, (primary.provider_id,))
        secondary: Quote = secondary_result

        disagreement = disagreement_pct(primary.price, secondary.price)
        two_source = self._result(
            asset,
            _average(primary.price, secondary.price),
            Provenance.TWO_SOURCE_AVERAGE,
            disagreement,
            (primary.provider_id, secondary.provider_id),
        )

        if disagreement <= self.tolerance_pct:
            return two_source

        logger.info(
            f"{asset}: {primary.provider_id}={primary.price} vs {secondary.provider_id}={secondary.price} "
            f"disagree by {disagreement:.2f}%, consulting {self.tertiary.provider_id}"
        )

        tertiary_result = await self._fetch(self.tertiary, asset)
        if isinstance(tertiary_result, ProviderFailure):
            logger.warning(
                f"Tertiary provider failed for {asset} ({tertiary_result.reason}); "
                f"keeping two-source average with {disagreement:.2f}% disagreement"
            )
            return two_source

        return self._reconcile(asset, primary, secondary, tertiary_result, disagreement)

    def _reconcile(
        self,
        asset: str,
        primary: Quote,
        secondary: Quote,
        tertiary: Quote,
        disagreement: float,
    ) -> VerifiedPrice:
        """Pick the tightest agreeing pair, or average all three."""
        d_primary = disagreement_pct(primary.price, tertiary.price)
        d_secondary = disagreement_pct(secondary.price, tertiary.price)

        logger.debug(
            "STEP: Tertiary reconciliation",
            extra={
                "extra_data": {
                    "action": "reconcile",
                    "asset": asset,
                    "primary": str(primary.price),
                    "secondary": str(secondary.price),
                    "tertiary": str(tertiary.price),
                    "d_primary_tertiary": d_primary,
                    "d_secondary_tertiary": d_secondary,
                }
            },
        )

        # Ties go to the primary pair
        if d_primary <= d_secondary and d_primary <= self.tolerance_pct:
            logger.info(f"{asset}: {secondary.provider_id} flagged as outlier")
            return self._result(
                asset,
                _average(primary.price, tertiary.price),
                Provenance.THREE_SOURCE_RECONCILED,
                disagreement,
                (primary.provider_id, tertiary.provider_id),
                outlier=secondary.provider_id,
            )

        if d_secondary <= self.tolerance_pct:
            logger.info(f"{asset}: {primary.provider_id} flagged as outlier")
            return self._result(
                asset,
                _average(secondary.price, tertiary.price),
                Provenance.THREE_SOURCE_RECONCILED,
                disagreement,
                (secondary.provider_id, tertiary.provider_id),
                outlier=primary.provider_id,
            )

        logger.warning(f"{asset}: no provider pair within {self.tolerance_pct}%, averaging all three")
        return self._result(
            asset,
            _average(primary.price, secondary.price, tertiary.price),
            Provenance.THREE_SOURCE_RECONCILED,
            disagreement,
            (primary.provider_id, secondary.provider_id, tertiary.provider_id),
            high_divergence=True,
        )

    @staticmethod
    def _result(
        asset: str,
        price: Decimal,
        provenance: Provenance,
        disagreement: float,
        sources: tuple[str, ...],
        outlier: str | None = None,
        high_divergence: bool = False,
    ) -> VerifiedPrice:
        return VerifiedPrice(
            asset=asset,
            price=price,
            provenance=provenance,
            disagreement_pct=disagreement,
            computed_at=datetime.now(),
            sources=sources,
            outlier=outlier,
            high_divergence=high_divergence,
        )

    async def enrich(self, ticker: str) -> MarketStats:
        """Best-effort market context; never raises and never blocks pricing."""
        asset = ticker.upper()
        if self.stats_provider is None:
            return MarketStats(name=asset)
        try:
            return await self.stats_provider.fetch_market_stats(asset)
        except Exception as e:
            logger.warning(f"Market stats unavailable for {asset}: {e}")
            return MarketStats(name=asset)

    async def snapshot(self, ticker: str) -> tuple[VerifiedPrice, MarketStats]:
        """Verified price followed by market context.

        Raises:
            ConsensusFailure: If the primary provider fails
        """
        verified = await self.verify(ticker)
        stats = await self.enrich(ticker)
        return verified, stats
