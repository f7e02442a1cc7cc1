"""Main entry point for the coinagent trading agent."""
import argparse
import asyncio
import logging
import signal
import sys

from coinagent.core.config import load_config, ConfigError
from coinagent.core.errors import CoinAgentError
from coinagent.core.orchestrator import AgentOrchestrator

logger = logging.getLogger(__name__)


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Args:
        args: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="python -m coinagent",
        description="coinagent - Score-driven crypto trading on a virtual portfolio",
    )

    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        choices=["run", "reset", "summary"],
        help="run one cycle, reset the portfolio, or print its summary (default: run)",
    )

    parser.add_argument(
        "-c", "--config",
        default="config/default.yaml",
        help="Path to configuration file (default: config/default.yaml)",
    )

    parser.add_argument(
        "-l", "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )

    parser.add_argument(
        "--balance",
        type=float,
        default=None,
        help="Cash balance for reset (default: portfolio.initial_balance)",
    )

    return parser.parse_args(args)


def setup_logging(level: str) -> None:
    """Configure logging for the application.

    Args:
        level: Logging level string (DEBUG, INFO, etc.)
    """
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=getattr(logging, level),
        format=log_format,
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    # Reduce noise from external libraries
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def print_summary(orchestrator: AgentOrchestrator) -> None:
    """Print the portfolio summary to stdout."""
    summary = orchestrator.summary()
    print(f"Portfolio {summary.user_id}")
    print(f"  Cash:     ${summary.cash_balance:,.2f}")
    print(f"  Holdings: ${summary.holdings_value:,.2f}")
    print(f"  Total:    ${summary.total_value:,.2f} (ROI {summary.roi_pct:+.2f}%)")
    for p in summary.positions:
        print(f"  {p.asset:<8} {p.amount:.8f} @ ${p.price:,.4f}  P&L ${p.pnl:,.2f} ({p.pnl_pct:+.2f}%)")


def main(args: list[str] | None = None) -> int:
    """Main entry point.

    Args:
        args: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 for success, 1 for error)
    """
    parsed_args = parse_args(args)

    setup_logging(parsed_args.log_level)

    logger.info(f"coinagent {parsed_args.command} starting...")
    logger.info(f"Config: {parsed_args.config}")

    try:
        # Load configuration
        config = load_config(parsed_args.config)

        orchestrator = AgentOrchestrator(config)

        if parsed_args.command == "reset":
            portfolio = orchestrator.reset(parsed_args.balance)
            logger.info(f"Portfolio reset to ${portfolio.cash_balance}")
            return 0

        if parsed_args.command == "summary":
            print_summary(orchestrator)
            return 0

        # Cancel between assets on SIGINT/SIGTERM
        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, finishing current asset...")
            orchestrator.cancel()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        result = asyncio.run(orchestrator.run_cycle())
        if result.schedule is not None and result.schedule.failed:
            logger.warning(f"Assets failed this cycle: {result.schedule.failed}")

        return 0

    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    except CoinAgentError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1

    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
