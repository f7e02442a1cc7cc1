"""Configuration loading and validation."""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


DEFAULT_WATCHLIST = ["BTC", "ETH", "XRP", "DOGE", "SOL", "GODS"]


class ConfigError(Exception):
    """Raised when configuration is invalid."""

    pass


@dataclass
class PortfolioConfig:
    """Virtual portfolio configuration."""

    user_id: str
    initial_balance: float = 600.0
    watchlist: list[str] = field(default_factory=lambda: list(DEFAULT_WATCHLIST))
    max_targets: int = 15


@dataclass
class DataStoreConfig:
    """Data store configuration."""

    backend: str
    path: str


@dataclass
class ProvidersConfig:
    """Market data provider configuration."""

    timeout_seconds: float = 5.0
    coingecko_url: str = "https://api.coingecko.com/api/v3"
    binance_url: str = "https://api.binance.com/api/v3"
    kraken_url: str = "https://api.kraken.com/0/public"


@dataclass
class ConsensusConfig:
    """Price consensus configuration."""

    tolerance_pct: float = 1.0


@dataclass
class SchedulerConfig:
    """Retry scheduler configuration."""

    burst_size: int = 5
    max_attempts: int = 15
    cooldown_seconds: float = 2.0


@dataclass
class TradingConfig:
    """Trading rule and ledger configuration."""

    sell_threshold: int = 45
    buy_threshold: int = 75
    buy_notional: float = 50.0
    min_cash: float = 10.0
    trade_on_high_divergence: bool = True
    ledger_max_retries: int = 5


@dataclass
class ScoringConfig:
    """Score provider configuration."""

    class_path: str = "coinagent.scoring.StaticScoreProvider"
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class LibraryConfig:
    """Analysis report library configuration."""

    max_reports: int = 500
    history_depth: int = 3
    fresh_report_minutes: int = 20


@dataclass
class Config:
    """Main configuration container."""

    portfolio: PortfolioConfig
    data_store: DataStoreConfig
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    trading: TradingConfig = field(default_factory=TradingConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    library: LibraryConfig = field(default_factory=LibraryConfig)


def _validate(config: Config) -> None:
    """Check cross-field constraints."""
    if config.portfolio.initial_balance <= 0:
        raise ConfigError("portfolio.initial_balance must be > 0")
    if config.data_store.backend not in ("memory", "file"):
        raise ConfigError(f"Unknown data_store backend: {config.data_store.backend}")
    if config.scheduler.burst_size < 1:
        raise ConfigError("scheduler.burst_size must be >= 1")
    if config.scheduler.max_attempts < config.scheduler.burst_size:
        raise ConfigError("scheduler.max_attempts must be >= scheduler.burst_size")
    if config.consensus.tolerance_pct <= 0:
        raise ConfigError("consensus.tolerance_pct must be > 0")
    if not 0 <= config.trading.sell_threshold < config.trading.buy_threshold <= 100:
        raise ConfigError("trading thresholds must satisfy 0 <= sell_threshold < buy_threshold <= 100")
    if config.trading.buy_notional <= 0 or config.trading.min_cash < 0:
        raise ConfigError("trading.buy_notional must be > 0 and trading.min_cash >= 0")
    if config.trading.ledger_max_retries < 1:
        raise ConfigError("trading.ledger_max_retries must be >= 1")


def load_config(path: str) -> Config:
    """Load configuration from YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Config object with validated configuration

    Raises:
        ConfigError: If file not found, invalid YAML, or missing required fields
    """
    config_path = Path(path)

    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML: {e}") from e

    if raw is None:
        raise ConfigError("Configuration file is empty")

    # Validate required sections
    required_sections = ["portfolio", "data_store"]
    for section in required_sections:
        if section not in raw:
            raise ConfigError(f"Missing required configuration section: {section}")

    # Parse portfolio config
    pf_raw = raw["portfolio"] or {}
    if "user_id" not in pf_raw:
        raise ConfigError("Missing required field: portfolio.user_id")
    portfolio = PortfolioConfig(
        user_id=str(pf_raw["user_id"]),
        initial_balance=float(pf_raw.get("initial_balance", 600.0)),
        watchlist=[str(t).upper() for t in pf_raw.get("watchlist", DEFAULT_WATCHLIST)],
        max_targets=int(pf_raw.get("max_targets", 15)),
    )

    # Parse data store config
    ds_raw = raw["data_store"] or {}
    data_store = DataStoreConfig(
        backend=ds_raw.get("backend", "file"),
        path=ds_raw.get("path", "./data"),
    )

    # Parse optional sections
    prov_raw = raw.get("providers") or {}
    providers = ProvidersConfig(
        timeout_seconds=float(prov_raw.get("timeout_seconds", 5.0)),
        coingecko_url=prov_raw.get("coingecko_url", ProvidersConfig.coingecko_url),
        binance_url=prov_raw.get("binance_url", ProvidersConfig.binance_url),
        kraken_url=prov_raw.get("kraken_url", ProvidersConfig.kraken_url),
    )

    cons_raw = raw.get("consensus") or {}
    consensus = ConsensusConfig(
        tolerance_pct=float(cons_raw.get("tolerance_pct", 1.0)),
    )

    sched_raw = raw.get("scheduler") or {}
    scheduler = SchedulerConfig(
        burst_size=int(sched_raw.get("burst_size", 5)),
        max_attempts=int(sched_raw.get("max_attempts", 15)),
        cooldown_seconds=float(sched_raw.get("cooldown_seconds", 2.0)),
    )

    trade_raw = raw.get("trading") or {}
    trade_on_high_divergence = trade_raw.get("trade_on_high_divergence", True)
    if not isinstance(trade_on_high_divergence, bool):
        raise ConfigError(
            f"trading.trade_on_high_divergence must be true or false, got {trade_on_high_divergence!r}"
        )
    trading = TradingConfig(
        sell_threshold=int(trade_raw.get("sell_threshold", 45)),
        buy_threshold=int(trade_raw.get("buy_threshold", 75)),
        buy_notional=float(trade_raw.get("buy_notional", 50.0)),
        min_cash=float(trade_raw.get("min_cash", 10.0)),
        trade_on_high_divergence=trade_on_high_divergence,
        ledger_max_retries=int(trade_raw.get("ledger_max_retries", 5)),
    )

    score_raw = raw.get("scoring") or {}
    scoring = ScoringConfig(
        class_path=score_raw.get("class_path", ScoringConfig.class_path),
        params=score_raw.get("params", {}) or {},
    )

    lib_raw = raw.get("library") or {}
    library = LibraryConfig(
        max_reports=int(lib_raw.get("max_reports", 500)),
        history_depth=int(lib_raw.get("history_depth", 3)),
        fresh_report_minutes=int(lib_raw.get("fresh_report_minutes", 20)),
    )

    config = Config(
        portfolio=portfolio,
        data_store=data_store,
        providers=providers,
        consensus=consensus,
        scheduler=scheduler,
        trading=trading,
        scoring=scoring,
        library=library,
    )
    _validate(config)

    logger.info(f"Loaded configuration from {path}")
    logger.debug(f"Portfolio: user={portfolio.user_id}, watchlist={portfolio.watchlist}")
    logger.debug(
        f"Scheduler: burst={scheduler.burst_size}, max_attempts={scheduler.max_attempts}, "
        f"cooldown={scheduler.cooldown_seconds}s"
    )
    logger.debug(f"Scoring: {scoring.class_path}")

    return config
