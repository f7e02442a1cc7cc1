"""Atomic virtual ledger.

All decisions of one trading cycle are applied to the portfolio as a single
optimistic transaction: sells first, then buys in caller order, then the
valuation. The portfolio update, trade records, decision audit trail and
valuation snapshot are committed together or not at all.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, TypeVar

from coinagent.core.data_store import DocumentStore, Transaction, query_ordered
from coinagent.core.errors import (
    InvalidDecisionInput,
    LedgerConflict,
    LedgerError,
    PortfolioNotFound,
)
from coinagent.core.valuation import holdings_value, recompute_valuation
from coinagent.models import (
    Action,
    Decision,
    Holding,
    Portfolio,
    Side,
    Trade,
    ValuationSnapshot,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

PORTFOLIOS = "virtual_portfolio"
TRADES = "virtual_trades"
HISTORY = "virtual_portfolio_history"
DECISIONS = "virtual_decisions"

TICKER_PATTERN = re.compile(r"^[A-Z0-9]{1,15}$")


@dataclass
class Rejection:
    """A decision the ledger refused, with the reason."""

    decision: Decision
    reason: str


@dataclass
class LedgerResult:
    """Outcome of one committed apply."""

    portfolio: Portfolio
    trades: list[Trade] = field(default_factory=list)
    rejected: list[Rejection] = field(default_factory=list)
    snapshot: ValuationSnapshot | None = None


def normalize_targets(targets: list[str], limit: int = 15) -> list[str]:
    """Trim, uppercase, drop empties and duplicates, keep at most ``limit``."""
    result: list[str] = []
    for target in targets:
        ticker = str(target).strip().upper()
        if ticker and ticker not in result:
            result.append(ticker)
    return result[:limit]


def validate_decision(decision: Decision) -> None:
    """Check a decision is well formed.

    Raises:
        InvalidDecisionInput: On an unknown asset, non-positive price, or a
            negative or missing notional/amount
    """
    if not decision.asset or not TICKER_PATTERN.match(decision.asset):
        raise InvalidDecisionInput(f"Unknown asset {decision.asset!r}")
    if decision.price is None or decision.price <= 0:
        raise InvalidDecisionInput(f"{decision.asset}: price must be > 0, got {decision.price}")
    if decision.notional is not None and decision.notional < 0:
        raise InvalidDecisionInput(f"{decision.asset}: negative notional {decision.notional}")
    if decision.amount is not None and decision.amount < 0:
        raise InvalidDecisionInput(f"{decision.asset}: negative amount {decision.amount}")
    if decision.action == Action.BUY and decision.notional is None:
        raise InvalidDecisionInput(f"{decision.asset}: BUY without notional")


class LedgerTransactor:
    """Applies trading decisions to the virtual portfolio."""

    def __init__(
        self,
        store: DocumentStore,
        min_trade: Decimal | float = Decimal("10"),
        max_retries: int = 5,
        max_targets: int = 15,
    ):
        """Initialize the transactor.

        Args:
            store: Document store holding portfolios and their history
            min_trade: Smallest BUY notional accepted, in USD
            max_retries: Attempts per operation before LedgerConflict propagates
            max_targets: Cap on the portfolio watchlist
        """
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.store = store
        self.min_trade = Decimal(str(min_trade))
        self.max_retries = max_retries
        self.max_targets = max_targets

    def _with_retries(self, operation: Callable[[], T], description: str) -> T:
        """Run a transactional operation, restarting it on stale reads."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return operation()
            except LedgerConflict as e:
                if attempt >= self.max_retries:
                    logger.error(f"{description} failed after {attempt} attempts: {e}")
                    raise
                logger.warning(f"{description} conflicted (attempt {attempt}/{self.max_retries}), retrying: {e}")

    @staticmethod
    def _load(txn: Transaction, user_id: str) -> Portfolio:
        doc = txn.get(PORTFOLIOS, user_id)
        if doc is None:
            raise PortfolioNotFound(f"No portfolio for user {user_id}")
        return Portfolio.from_dict(doc)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def initialize(
        self,
        user_id: str,
        initial_balance: Decimal | float,
        targets: list[str] | None = None,
    ) -> Portfolio:
        """Create the portfolio if it does not exist; otherwise return it unchanged."""
        balance = Decimal(str(initial_balance))
        if balance <= 0:
            raise LedgerError(f"Initial balance must be > 0, got {balance}")

        def operation() -> Portfolio:
            txn = self.store.begin_transaction()
            existing = txn.get(PORTFOLIOS, user_id)
            if existing is not None:
                return Portfolio.from_dict(existing)

            portfolio = Portfolio(
                user_id=user_id,
                cash_balance=balance,
                initial_balance=balance,
                total_value=balance,
                last_updated=datetime.now(),
                targets=normalize_targets(targets or [], self.max_targets),
            )
            txn.update(PORTFOLIOS, user_id, portfolio.to_dict())
            txn.commit()
            logger.info(f"Initialized portfolio for {user_id} with ${balance}")
            return portfolio

        return self._with_retries(operation, f"Initialize portfolio {user_id}")

    def reset(self, user_id: str, initial_balance: Decimal | float) -> Portfolio:
        """Wipe holdings, trades and valuation history, then re-seed cash.

        The watchlist survives the reset. The decision audit trail is kept.
        """
        balance = Decimal(str(initial_balance))
        if balance <= 0:
            raise LedgerError(f"Reset balance must be > 0, got {balance}")

        def operation() -> Portfolio:
            txn = self.store.begin_transaction()
            existing = txn.get(PORTFOLIOS, user_id)
            targets = list(existing.get("targets") or []) if existing else []

            portfolio = Portfolio(
                user_id=user_id,
                cash_balance=balance,
                initial_balance=balance,
                total_value=balance,
                last_updated=datetime.now(),
                targets=normalize_targets(targets, self.max_targets),
            )
            txn.delete_where(TRADES, user_id)
            txn.delete_where(HISTORY, user_id)
            txn.update(PORTFOLIOS, user_id, portfolio.to_dict())
            txn.commit()
            logger.info(f"Reset portfolio for {user_id} to ${balance}, trades and history cleared")
            return portfolio

        return self._with_retries(operation, f"Reset portfolio {user_id}")

    def update_targets(self, user_id: str, targets: list[str]) -> list[str]:
        """Replace the portfolio watchlist.

        Returns:
            The normalized watchlist that was stored
        """
        normalized = normalize_targets(targets, self.max_targets)

        def operation() -> list[str]:
            txn = self.store.begin_transaction()
            portfolio = self._load(txn, user_id)
            portfolio.targets = normalized
            portfolio.last_updated = datetime.now()
            txn.update(PORTFOLIOS, user_id, portfolio.to_dict())
            txn.commit()
            return normalized

        result = self._with_retries(operation, f"Update targets for {user_id}")
        logger.info(f"Targets for {user_id}: {result}")
        return result

    # =========================================================================
    # Trading
    # =========================================================================

    def apply(self, user_id: str, decisions: list[Decision]) -> LedgerResult:
        """Apply a batch of decisions atomically.

        Args:
            user_id: Portfolio owner
            decisions: Decisions of one cycle, in caller order

        Returns:
            LedgerResult with the committed portfolio, executed trades,
            rejected decisions and the valuation snapshot

        Raises:
            PortfolioNotFound: If the user has no portfolio
            LedgerConflict: If every retry hit a stale read
        """
        return self._with_retries(
            lambda: self._apply_once(user_id, decisions),
            f"Ledger apply for {user_id}",
        )

    def _apply_once(self, user_id: str, decisions: list[Decision]) -> LedgerResult:
        txn = self.store.begin_transaction()
        portfolio = self._load(txn, user_id)
        now = datetime.now()

        valid: list[Decision] = []
        rejected: list[Rejection] = []
        for decision in decisions:
            try:
                validate_decision(decision)
            except InvalidDecisionInput as e:
                logger.warning(f"Dropping invalid decision: {e}")
                rejected.append(Rejection(decision, str(e)))
                continue
            valid.append(decision)

        trades: list[Trade] = []

        for decision in valid:
            if decision.action != Action.SELL:
                continue
            holding = portfolio.holdings.get(decision.asset)
            if holding is None or holding.amount <= 0:
                rejected.append(Rejection(decision, "No position to sell"))
                continue

            total = holding.amount * decision.price
            portfolio.cash_balance += total
            del portfolio.holdings[decision.asset]
            trades.append(
                Trade(
                    user_id=user_id,
                    asset=decision.asset,
                    side=Side.SELL,
                    amount=holding.amount,
                    price=decision.price,
                    total=total,
                    reason=decision.reason,
                    at=now,
                )
            )

        for decision in valid:
            if decision.action != Action.BUY:
                continue
            notional = decision.notional
            if decision.asset in portfolio.holdings:
                rejected.append(Rejection(decision, f"Already holding {decision.asset}"))
                continue
            if notional < self.min_trade:
                rejected.append(Rejection(decision, f"Notional ${notional} below minimum ${self.min_trade}"))
                continue
            if notional > portfolio.cash_balance:
                rejected.append(
                    Rejection(decision, f"Notional ${notional} exceeds cash ${portfolio.cash_balance}")
                )
                continue

            amount = notional / decision.price
            portfolio.cash_balance -= notional
            portfolio.holdings[decision.asset] = Holding(
                asset=decision.asset,
                amount=amount,
                average_cost=decision.price,
            )
            trades.append(
                Trade(
                    user_id=user_id,
                    asset=decision.asset,
                    side=Side.BUY,
                    amount=amount,
                    price=decision.price,
                    total=notional,
                    reason=decision.reason,
                    at=now,
                )
            )

        prices = {d.asset: d.price for d in valid}
        portfolio = recompute_valuation(portfolio, prices)
        portfolio.last_updated = now
        snapshot = ValuationSnapshot(
            user_id=user_id,
            total_value=portfolio.total_value,
            cash_balance=portfolio.cash_balance,
            holdings_value=holdings_value(portfolio, prices),
            at=now,
        )

        rejection_reasons = {id(r.decision): r.reason for r in rejected}
        txn.update(PORTFOLIOS, user_id, portfolio.to_dict())
        for trade in trades:
            txn.append(TRADES, trade.to_dict())
        for decision in decisions:
            entry = decision.to_dict(user_id, now)
            if id(decision) in rejection_reasons:
                entry["status"] = "rejected"
                entry["rejection"] = rejection_reasons[id(decision)]
            elif decision.action in (Action.BUY, Action.SELL):
                entry["status"] = "executed"
            else:
                entry["status"] = "no_action"
            txn.append(DECISIONS, entry)
        txn.append(HISTORY, snapshot.to_dict())
        txn.commit()

        logger.info(
            f"Ledger applied for {user_id}: {len(trades)} trades, {len(rejected)} rejected, "
            f"cash ${portfolio.cash_balance:.2f}, total ${portfolio.total_value:.2f}"
        )
        logger.debug(
            "STEP: Ledger committed",
            extra={
                "extra_data": {
                    "action": "ledger_apply",
                    "user_id": user_id,
                    "trades": [f"{t.side.value} {t.asset}" for t in trades],
                    "rejected": [f"{r.decision.asset}: {r.reason}" for r in rejected],
                    "cash_balance": str(portfolio.cash_balance),
                    "total_value": str(portfolio.total_value),
                }
            },
        )

        return LedgerResult(portfolio=portfolio, trades=trades, rejected=rejected, snapshot=snapshot)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_portfolio(self, user_id: str) -> Portfolio | None:
        doc = self.store.get(PORTFOLIOS, user_id)
        return Portfolio.from_dict(doc) if doc is not None else None

    def list_trades(self, user_id: str, limit: int | None = None) -> list[Trade]:
        """Trades, newest first."""
        docs = query_ordered(self.store, TRADES, user_id, descending=True)
        if limit is not None:
            docs = docs[:limit]
        return [Trade.from_dict(d) for d in docs]

    def list_history(self, user_id: str) -> list[ValuationSnapshot]:
        """Valuation snapshots, oldest first."""
        docs = query_ordered(self.store, HISTORY, user_id)
        return [ValuationSnapshot.from_dict(d) for d in docs]

    def list_decisions(self, user_id: str, limit: int | None = None) -> list[dict]:
        """Decision audit entries, newest first."""
        docs = query_ordered(self.store, DECISIONS, user_id, descending=True)
        return docs[:limit] if limit is not None else docs
