"""Tests for PriceConsensusEngine."""
from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock
import pytest


class FakeProvider:
    """Price provider returning a fixed price, or a failure when price is None."""

    def __init__(self, provider_id: str, price: str | None):
        self.provider_id = provider_id
        self.price = Decimal(price) if price is not None else None
        self.calls = 0

    async def fetch_spot_price(self, ticker: str):
        from coinagent.models import ProviderFailure, Quote

        self.calls += 1
        if self.price is None:
            return ProviderFailure(self.provider_id, "HTTP 503", datetime.now())
        return Quote(self.provider_id, self.price, datetime.now())


def make_engine(primary: str | None, secondary: str | None, tertiary: str | None, **kwargs):
    from coinagent.core.consensus import PriceConsensusEngine

    providers = (
        FakeProvider("coingecko", primary),
        FakeProvider("binance", secondary),
        FakeProvider("kraken", tertiary),
    )
    return PriceConsensusEngine(*providers, **kwargs), providers


def test_disagreement_pct():
    from coinagent.core.consensus import disagreement_pct

    assert disagreement_pct(Decimal("100"), Decimal("103")) == pytest.approx(3.0)
    assert disagreement_pct(Decimal("200"), Decimal("199")) == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_two_sources_agree_are_averaged():
    from coinagent.models import Provenance

    engine, (_, _, tertiary) = make_engine("100", "100.5", "999")

    result = await engine.verify("btc")

    assert result.asset == "BTC"
    assert result.price == Decimal("100.25")
    assert result.provenance == Provenance.TWO_SOURCE_AVERAGE
    assert result.disagreement_pct == pytest.approx(0.5)
    assert result.sources == ("coingecko", "binance")
    assert tertiary.calls == 0


@pytest.mark.asyncio
async def test_disagreement_at_tolerance_counts_as_agreement():
    from coinagent.models import Provenance

    engine, (_, _, tertiary) = make_engine("100", "101", "999")

    result = await engine.verify("BTC")

    assert result.provenance == Provenance.TWO_SOURCE_AVERAGE
    assert result.price == Decimal("100.5")
    assert tertiary.calls == 0


@pytest.mark.asyncio
async def test_tertiary_resolves_secondary_outlier():
    from coinagent.models import Provenance

    engine, (_, _, tertiary) = make_engine("100", "103", "100.2")

    result = await engine.verify("BTC")

    assert tertiary.calls == 1
    assert result.price == Decimal("100.1")
    assert result.provenance == Provenance.THREE_SOURCE_RECONCILED
    assert result.outlier == "binance"
    assert result.sources == ("coingecko", "kraken")
    assert result.disagreement_pct == pytest.approx(3.0)
    assert result.high_divergence is False


@pytest.mark.asyncio
async def test_tertiary_resolves_primary_outlier():
    from coinagent.models import Provenance

    engine, _ = make_engine("103", "100", "100.2")

    result = await engine.verify("BTC")

    assert result.price == Decimal("100.1")
    assert result.provenance == Provenance.THREE_SOURCE_RECONCILED
    assert result.outlier == "coingecko"
    assert result.sources == ("binance", "kraken")


@pytest.mark.asyncio
async def test_tertiary_picks_closest_agreeing_pair():
    engine, _ = make_engine("100", "102", "101")

    # |100-101|/100 = 1.0% vs |102-101|/102 = 0.98%
    result = await engine.verify("BTC")
    assert result.outlier == "coingecko"

    engine, _ = make_engine("100", "102", "100")
    result = await engine.verify("BTC")
    assert result.outlier == "binance"
    assert result.price == Decimal("100")


@pytest.mark.asyncio
async def test_no_agreeing_pair_averages_all_three():
    from coinagent.models import Provenance

    engine, _ = make_engine("100", "110", "120")

    result = await engine.verify("BTC")

    assert result.price == Decimal("110")
    assert result.provenance == Provenance.THREE_SOURCE_RECONCILED
    assert result.high_divergence is True
    assert result.outlier is None
    assert result.sources == ("coingecko", "binance", "kraken")


@pytest.mark.asyncio
async def test_tertiary_failure_keeps_two_source_average():
    from coinagent.models import Provenance

    engine, (_, _, tertiary) = make_engine("100", "103", None)

    result = await engine.verify("BTC")

    assert tertiary.calls == 1
    assert result.price == Decimal("101.5")
    assert result.provenance == Provenance.TWO_SOURCE_AVERAGE
    assert result.disagreement_pct == pytest.approx(3.0)


@pytest.mark.asyncio
async def test_secondary_failure_is_single_source():
    from coinagent.models import Provenance

    engine, (_, _, tertiary) = make_engine("100", None, "100")

    result = await engine.verify("BTC")

    assert result.price == Decimal("100")
    assert result.provenance == Provenance.SINGLE_SOURCE
    assert result.disagreement_pct == 0.0
    assert result.sources == ("coingecko",)
    assert tertiary.calls == 0


@pytest.mark.asyncio
async def test_primary_failure_is_fatal():
    from coinagent.core.errors import ConsensusFailure

    engine, _ = make_engine(None, "100", "100")

    with pytest.raises(ConsensusFailure) as exc_info:
        await engine.verify("btc")

    assert exc_info.value.asset == "BTC"
    assert "503" in exc_info.value.reason


@pytest.mark.asyncio
async def test_custom_tolerance():
    from coinagent.models import Provenance

    engine, _ = make_engine("100", "100.5", "100", tolerance_pct=0.25)

    result = await engine.verify("BTC")

    assert result.provenance == Provenance.THREE_SOURCE_RECONCILED
    assert result.outlier == "binance"


@pytest.mark.asyncio
async def test_enrich_without_stats_provider():
    engine, _ = make_engine("100", "100", "100")

    stats = await engine.enrich("eth")

    assert stats.name == "ETH"
    assert stats.ath_date == "N/A"


@pytest.mark.asyncio
async def test_enrich_swallows_stats_errors():
    from unittest.mock import Mock

    stats_provider = Mock()
    stats_provider.fetch_market_stats = AsyncMock(side_effect=RuntimeError("boom"))
    engine, _ = make_engine("100", "100", "100", stats_provider=stats_provider)

    stats = await engine.enrich("ETH")

    assert stats.name == "ETH"
    assert stats.market_cap == 0.0


@pytest.mark.asyncio
async def test_snapshot_returns_price_and_stats():
    from unittest.mock import Mock
    from coinagent.models import MarketStats

    stats_provider = Mock()
    stats_provider.fetch_market_stats = AsyncMock(return_value=MarketStats(name="Bitcoin", ath=73000.0))
    engine, _ = make_engine("100", "100", "100", stats_provider=stats_provider)

    price, stats = await engine.snapshot("BTC")

    assert price.price == Decimal("100")
    assert stats.name == "Bitcoin"
    stats_provider.fetch_market_stats.assert_awaited_once_with("BTC")


@pytest.mark.asyncio
async def test_snapshot_skips_enrichment_when_primary_fails():
    from unittest.mock import Mock
    from coinagent.core.errors import ConsensusFailure

    stats_provider = Mock()
    stats_provider.fetch_market_stats = AsyncMock()
    engine, _ = make_engine(None, "100", "100", stats_provider=stats_provider)

    with pytest.raises(ConsensusFailure):
        await engine.snapshot("BTC")

    stats_provider.fetch_market_stats.assert_not_awaited()


@pytest.mark.asyncio
async def test_malformed_tertiary_payload_keeps_two_source_average():
    from unittest.mock import patch
    from coinagent.collectors import KrakenProvider
    from coinagent.core.consensus import PriceConsensusEngine
    from coinagent.models import Provenance

    kraken = KrakenProvider()
    engine = PriceConsensusEngine(FakeProvider("coingecko", "100"), FakeProvider("binance", "103"), kraken)

    with patch.object(kraken, "_get_json", AsyncMock(return_value={"error": [], "result": ["XBTUSD"]})):
        result = await engine.verify("BTC")

    assert result.provenance == Provenance.TWO_SOURCE_AVERAGE
    assert result.price == Decimal("101.5")


@pytest.mark.asyncio
async def test_raising_providers_count_as_failed_sources():
    from unittest.mock import Mock
    from coinagent.core.consensus import PriceConsensusEngine
    from coinagent.core.errors import ConsensusFailure
    from coinagent.models import Provenance

    raising = Mock(provider_id="kraken")
    raising.fetch_spot_price = AsyncMock(side_effect=TypeError("list indices must be integers"))

    engine = PriceConsensusEngine(FakeProvider("coingecko", "100"), FakeProvider("binance", "103"), raising)
    result = await engine.verify("BTC")
    assert result.provenance == Provenance.TWO_SOURCE_AVERAGE

    engine = PriceConsensusEngine(FakeProvider("coingecko", "100"), raising, FakeProvider("binance", "100"))
    result = await engine.verify("BTC")
    assert result.provenance == Provenance.SINGLE_SOURCE
    assert result.price == Decimal("100")

    engine = PriceConsensusEngine(raising, FakeProvider("binance", "100"), FakeProvider("coingecko", "100"))
    with pytest.raises(ConsensusFailure) as exc_info:
        await engine.verify("BTC")
    assert "TypeError" in exc_info.value.reason
