"""Score-threshold trading rules.

Maps a 0-100 score to an action for one asset:

    holding present, score <= sell_threshold  -> SELL the whole position
    no holding, score >= buy_threshold         -> BUY min(buy_notional, cash)
    holding present otherwise                  -> HOLD
    no holding otherwise                       -> SKIP

At most one position per asset is opened; a held asset is never bought again.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal

from coinagent.models import Action, Decision, Holding, Score, VerifiedPrice

logger = logging.getLogger(__name__)


@dataclass
class RuleInput:
    """Everything the rule engine needs about one analyzed asset."""

    asset: str
    price: VerifiedPrice
    score: Score


class TradingRuleEngine:
    """Pure decision rules, no I/O."""

    name = "score_rules"

    def __init__(
        self,
        sell_threshold: int = 45,
        buy_threshold: int = 75,
        buy_notional: Decimal | float = Decimal("50"),
        min_cash: Decimal | float = Decimal("10"),
        trade_on_high_divergence: bool = True,
    ):
        if not 0 <= sell_threshold < buy_threshold <= 100:
            raise ValueError("thresholds must satisfy 0 <= sell_threshold < buy_threshold <= 100")

        self.sell_threshold = sell_threshold
        self.buy_threshold = buy_threshold
        self.buy_notional = Decimal(str(buy_notional))
        self.min_cash = Decimal(str(min_cash))
        self.trade_on_high_divergence = trade_on_high_divergence

    def decide(
        self,
        asset: str,
        holding: Holding | None,
        verified_price: VerifiedPrice,
        score: Score,
        available_cash: Decimal,
    ) -> Decision:
        """Decide what to do with one asset.

        Args:
            asset: Ticker
            holding: Current position, or None if not held
            verified_price: Consensus price for this cycle
            score: Score from the score provider
            available_cash: Cash this decision may spend

        Returns:
            Decision; BUY carries ``notional``, SELL carries ``amount``
        """
        held = holding is not None and holding.amount > 0
        value = score.score
        price = verified_price.price

        if verified_price.high_divergence and not self.trade_on_high_divergence:
            logger.info(f"{asset}: providers disagree ({verified_price.disagreement_pct:.2f}%), not trading")
            return Decision(
                asset=asset,
                action=Action.HOLD if held else Action.SKIP,
                score=value,
                price=price,
                reason="Price sources diverge",
            )

        if held and value <= self.sell_threshold:
            logger.debug(f"{asset} decision: SELL (score {value} <= {self.sell_threshold})")
            return Decision(
                asset=asset,
                action=Action.SELL,
                score=value,
                price=price,
                reason=f"Bearish signal (score {value})",
                amount=holding.amount,
            )

        if not held and value >= self.buy_threshold:
            if available_cash < self.min_cash:
                logger.info(f"{asset}: bullish (score {value}) but only ${available_cash:.2f} cash available")
                return Decision(
                    asset=asset,
                    action=Action.SKIP,
                    score=value,
                    price=price,
                    reason="Insufficient cash",
                )

            notional = min(self.buy_notional, available_cash)
            logger.debug(f"{asset} decision: BUY ${notional} (score {value} >= {self.buy_threshold})")
            return Decision(
                asset=asset,
                action=Action.BUY,
                score=value,
                price=price,
                reason=f"Bullish signal (score {value})",
                notional=notional,
            )

        return Decision(
            asset=asset,
            action=Action.HOLD if held else Action.SKIP,
            score=value,
            price=price,
            reason=f"Neutral signal (score {value})" if held else f"No entry signal (score {value})",
        )

    def decide_batch(
        self,
        inputs: list[RuleInput],
        holdings: dict[str, Holding],
        cash: Decimal,
    ) -> list[Decision]:
        """Decide a whole cycle.

        Sell proceeds are projected into the cash available to buys, and
        each buy reduces it, in input order. This mirrors how the ledger
        applies the batch (sells first, then buys in order), so the
        decisions it receives are fundable.
        """
        held = {a: h for a, h in holdings.items() if h.amount > 0}
        projected = cash
        for item in inputs:
            holding = held.get(item.asset)
            if (
                holding is not None
                and item.score.score <= self.sell_threshold
                and (self.trade_on_high_divergence or not item.price.high_divergence)
            ):
                projected += holding.amount * item.price.price

        decisions = []
        for item in inputs:
            decision = self.decide(item.asset, held.get(item.asset), item.price, item.score, projected)
            if decision.action == Action.BUY:
                projected -= decision.notional
            decisions.append(decision)

        logger.debug(
            "STEP: Batch decided",
            extra={
                "extra_data": {
                    "action": "decide_batch",
                    "assets": [d.asset for d in decisions],
                    "actions": [d.action.value for d in decisions],
                    "starting_cash": str(cash),
                    "remaining_cash": str(projected),
                }
            },
        )
        return decisions
