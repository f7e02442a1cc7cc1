"""Orchestrator for wiring and running the trading agent."""
import importlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from coinagent.collectors import BinanceProvider, CoinGeckoProvider, KrakenProvider, PriceProvider
from coinagent.core.config import Config, ScoringConfig
from coinagent.core.consensus import PriceConsensusEngine
from coinagent.core.data_store import DocumentStore, create_store
from coinagent.core.errors import PortfolioNotFound
from coinagent.core.event_bus import EventBus
from coinagent.core.ledger import LedgerResult, LedgerTransactor
from coinagent.core.library import ReportLibrary
from coinagent.core.scheduler import RetryScheduler, build_queue
from coinagent.core.valuation import summarize
from coinagent.models import (
    AnalysisReport,
    Decision,
    Event,
    Portfolio,
    PortfolioSummary,
    ScheduleReport,
)
from coinagent.scoring import ScoreProvider, validate_score
from coinagent.strategies import RuleInput, TradingRuleEngine

logger = logging.getLogger(__name__)

SOURCE = "agent"


@dataclass
class CycleResult:
    """Everything one analysis + trading cycle produced."""

    schedule: ScheduleReport | None = None
    reports: list[AnalysisReport] = field(default_factory=list)
    decisions: list[Decision] = field(default_factory=list)
    ledger: LedgerResult | None = None
    summary: PortfolioSummary | None = None


def summary_payload(summary: PortfolioSummary) -> dict[str, Any]:
    """Event payload for alerting consumers."""
    return {
        "user_id": summary.user_id,
        "total_value": str(summary.total_value),
        "cash_balance": str(summary.cash_balance),
        "holdings_value": str(summary.holdings_value),
        "initial_balance": str(summary.initial_balance),
        "roi_pct": summary.roi_pct,
        "positions": [
            {
                "asset": p.asset,
                "amount": str(p.amount),
                "price": str(p.price),
                "value": str(p.value),
                "pnl": str(p.pnl),
                "pnl_pct": p.pnl_pct,
            }
            for p in summary.positions
        ],
    }


class AgentOrchestrator:
    """Wires all components together and runs trading cycles.

    Responsibilities:
    1. Build the store, providers, consensus engine, scheduler, rules and ledger
    2. Load the score provider from its class path
    3. Analyze the watchlist one asset at a time and trade on the results
    4. Publish progress and portfolio summaries on the event bus
    """

    def __init__(
        self,
        config: Config,
        store: DocumentStore | None = None,
        score_provider: ScoreProvider | None = None,
        providers: tuple[PriceProvider, PriceProvider, PriceProvider] | None = None,
        event_bus: EventBus | None = None,
        scheduler: RetryScheduler | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            config: System configuration
            store: Document store (built from config if omitted)
            score_provider: Score provider (loaded from config if omitted)
            providers: Primary, secondary and tertiary price providers
                (CoinGecko, Binance, Kraken if omitted)
            event_bus: Event bus (a new one if omitted)
            scheduler: Retry scheduler (built from config if omitted)
        """
        self.config = config
        self.user_id = config.portfolio.user_id

        self.event_bus = event_bus or EventBus()
        self.store = store or create_store(config.data_store.backend, config.data_store.path)

        if providers is None:
            timeout = config.providers.timeout_seconds
            providers = (
                CoinGeckoProvider(config.providers.coingecko_url, timeout=timeout),
                BinanceProvider(config.providers.binance_url, timeout=timeout),
                KrakenProvider(config.providers.kraken_url, timeout=timeout),
            )
        primary, secondary, tertiary = providers
        self.consensus = PriceConsensusEngine(
            primary,
            secondary,
            tertiary,
            tolerance_pct=config.consensus.tolerance_pct,
            stats_provider=primary if hasattr(primary, "fetch_market_stats") else None,
        )

        self.scheduler = scheduler or RetryScheduler(
            burst_size=config.scheduler.burst_size,
            max_attempts=config.scheduler.max_attempts,
            cooldown_seconds=config.scheduler.cooldown_seconds,
        )

        trading = config.trading
        self.rules = TradingRuleEngine(
            sell_threshold=trading.sell_threshold,
            buy_threshold=trading.buy_threshold,
            buy_notional=Decimal(str(trading.buy_notional)),
            min_cash=Decimal(str(trading.min_cash)),
            trade_on_high_divergence=trading.trade_on_high_divergence,
        )
        self.ledger = LedgerTransactor(
            self.store,
            min_trade=Decimal(str(trading.min_cash)),
            max_retries=trading.ledger_max_retries,
            max_targets=config.portfolio.max_targets,
        )
        self.library = ReportLibrary(
            self.store,
            max_reports=config.library.max_reports,
            history_depth=config.library.history_depth,
        )

        self.score_provider = score_provider or self._instantiate_score_provider(config.scoring)

        logger.info("Orchestrator initialized")

    def _instantiate_score_provider(self, config: ScoringConfig) -> ScoreProvider:
        """Instantiate a score provider from its class path."""
        module_path, class_name = config.class_path.rsplit(".", 1)
        module = importlib.import_module(module_path)
        provider_class = getattr(module, class_name)
        provider = provider_class(**config.params)
        logger.info(f"Loaded score provider: {config.class_path}")
        return provider

    def _publish(self, event_type: str, symbol: str | None, payload: dict[str, Any]) -> None:
        self.event_bus.publish(
            Event(
                type=event_type,
                symbol=symbol,
                timestamp=datetime.now(),
                source=SOURCE,
                payload=payload,
            )
        )

    def initialize_portfolio(self) -> Portfolio:
        """Create the configured portfolio if it does not exist yet."""
        return self.ledger.initialize(
            self.user_id,
            Decimal(str(self.config.portfolio.initial_balance)),
            self.config.portfolio.watchlist,
        )

    async def analyze_asset(self, ticker: str) -> AnalysisReport:
        """Verify the price, enrich, score and file a report for one asset.

        Raises:
            ConsensusFailure: If the primary provider fails
            ScoreError: If the score provider returns an invalid score
        """
        asset = ticker.upper()
        verified, stats = await self.consensus.snapshot(asset)

        context = self.library.history_context(self.user_id, asset)
        score = validate_score(await self.score_provider.score(asset, context))

        report = AnalysisReport(
            user_id=self.user_id,
            asset=asset,
            price=verified,
            stats=stats,
            score=score,
            created_at=datetime.now(),
        )
        self.library.save_report(report)

        logger.info(
            f"{asset}: ${verified.price} ({verified.label}), score {score.score}"
        )
        self._publish(
            "asset_analyzed",
            asset,
            {
                "price": str(verified.price),
                "provenance": verified.provenance.value,
                "disagreement_pct": verified.disagreement_pct,
                "high_divergence": verified.high_divergence,
                "score": score.score,
                "rationale": score.rationale,
            },
        )
        return report

    async def run_cycle(self) -> CycleResult:
        """Analyze every target, then trade on the completed analyses."""
        portfolio = self.initialize_portfolio()
        targets = portfolio.targets or self.config.portfolio.watchlist
        logger.info(f"Starting cycle for {self.user_id} over {len(targets)} targets: {targets}")

        schedule = await self.scheduler.run(build_queue(targets), self.analyze_asset)
        reports = [schedule.results[a] for a in targets if a in schedule.results]

        result = self._trade(reports)
        result.schedule = schedule
        return result

    def execute_recent(self) -> CycleResult:
        """Trade on fresh library reports without re-analyzing.

        No ledger call is made when no target has a fresh report.
        """
        portfolio = self.ledger.get_portfolio(self.user_id)
        if portfolio is None:
            raise PortfolioNotFound(f"No portfolio for user {self.user_id}")

        reports = self.library.fresh_reports(
            self.user_id,
            portfolio.targets,
            self.config.library.fresh_report_minutes,
        )
        if not reports:
            logger.info("No fresh reports to trade on")
            return CycleResult()

        logger.info(f"Trading on {len(reports)} fresh reports")
        return self._trade(reports)

    def _trade(self, reports: list[AnalysisReport]) -> CycleResult:
        if not reports:
            logger.warning("No assets analyzed this cycle, skipping trading")
            return CycleResult()

        portfolio = self.ledger.get_portfolio(self.user_id)
        if portfolio is None:
            raise PortfolioNotFound(f"No portfolio for user {self.user_id}")

        inputs = [RuleInput(asset=r.asset, price=r.price, score=r.score) for r in reports]
        decisions = self.rules.decide_batch(inputs, portfolio.holdings, portfolio.cash_balance)

        ledger_result = self.ledger.apply(self.user_id, decisions)
        for trade in ledger_result.trades:
            self._publish(
                "trade_executed",
                trade.asset,
                {
                    "side": trade.side.value,
                    "amount": str(trade.amount),
                    "price": str(trade.price),
                    "total": str(trade.total),
                    "reason": trade.reason,
                },
            )

        prices = {r.asset: r.price.price for r in reports}
        summary = summarize(ledger_result.portfolio, prices)
        self._publish("cycle_complete", None, summary_payload(summary))

        logger.info(
            f"Cycle complete: total ${summary.total_value:.2f}, cash ${summary.cash_balance:.2f}, "
            f"ROI {summary.roi_pct:+.2f}%"
        )
        return CycleResult(
            reports=reports,
            decisions=decisions,
            ledger=ledger_result,
            summary=summary,
        )

    def reset(self, initial_balance: Decimal | float | None = None) -> Portfolio:
        """Reset the portfolio to a fresh cash balance."""
        balance = initial_balance if initial_balance is not None else self.config.portfolio.initial_balance
        return self.ledger.reset(self.user_id, Decimal(str(balance)))

    def summary(self, prices: dict[str, Decimal] | None = None) -> PortfolioSummary:
        """Portfolio summary, valued at the given prices or average cost.

        Raises:
            PortfolioNotFound: If the portfolio has not been created
        """
        portfolio = self.ledger.get_portfolio(self.user_id)
        if portfolio is None:
            raise PortfolioNotFound(f"No portfolio for user {self.user_id}")
        return summarize(portfolio, prices)

    def cancel(self) -> None:
        """Stop the running cycle after the current asset.

        A request made before the analysis loop starts still applies, and it
        stays in effect for later cycles until the scheduler is reset.
        """
        logger.info("Cancelling agent cycle...")
        self.scheduler.cancel()
