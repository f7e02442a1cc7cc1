"""Portfolio valuation helpers."""
import dataclasses
from decimal import Decimal

from coinagent.models import Portfolio, PortfolioSummary, PositionSummary

HUNDRED = Decimal(100)


def mark_price(portfolio: Portfolio, asset: str, prices: dict[str, Decimal]) -> Decimal:
    """Price used to value a holding: the given price, else its average cost."""
    price = prices.get(asset)
    if price is None or price <= 0:
        return portfolio.holdings[asset].average_cost
    return price


def holdings_value(portfolio: Portfolio, prices: dict[str, Decimal]) -> Decimal:
    """Market value of all holdings."""
    return sum(
        (h.amount * mark_price(portfolio, asset, prices) for asset, h in portfolio.holdings.items()),
        Decimal(0),
    )


def recompute_valuation(portfolio: Portfolio, prices: dict[str, Decimal]) -> Portfolio:
    """Return a copy of the portfolio with ``total_value`` recomputed.

    The input is not modified, and applying this twice with the same prices
    yields the same total.
    """
    total = portfolio.cash_balance + holdings_value(portfolio, prices)
    return dataclasses.replace(portfolio, total_value=total)


def summarize(portfolio: Portfolio, prices: dict[str, Decimal] | None = None) -> PortfolioSummary:
    """Build the alerting summary: totals, ROI and per-position P&L."""
    prices = prices or {}
    positions = []
    for asset, holding in sorted(portfolio.holdings.items()):
        price = mark_price(portfolio, asset, prices)
        value = holding.amount * price
        cost = holding.amount * holding.average_cost
        pnl = value - cost
        positions.append(
            PositionSummary(
                asset=asset,
                amount=holding.amount,
                average_cost=holding.average_cost,
                price=price,
                value=value,
                pnl=pnl,
                pnl_pct=float(pnl / cost * HUNDRED) if cost > 0 else 0.0,
            )
        )

    invested = sum((p.value for p in positions), Decimal(0))
    total = portfolio.cash_balance + invested
    initial = portfolio.initial_balance
    return PortfolioSummary(
        user_id=portfolio.user_id,
        cash_balance=portfolio.cash_balance,
        holdings_value=invested,
        total_value=total,
        initial_balance=initial,
        roi_pct=float((total - initial) / initial * HUNDRED) if initial > 0 else 0.0,
        positions=positions,
    )
