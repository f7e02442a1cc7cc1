"""Virtual portfolio models for the coinagent trading engine."""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class Side(Enum):
    """Trade direction."""
    BUY = "BUY"
    SELL = "SELL"


@dataclass
class Holding:
    """Position in a single asset."""
    asset: str
    amount: Decimal
    average_cost: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset": self.asset,
            "amount": str(self.amount),
            "average_cost": str(self.average_cost),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Holding":
        return cls(
            asset=data["asset"],
            amount=Decimal(data["amount"]),
            average_cost=Decimal(data["average_cost"]),
        )


@dataclass
class Portfolio:
    """Virtual ledger of cash and holdings for one user."""
    user_id: str
    cash_balance: Decimal
    initial_balance: Decimal
    total_value: Decimal
    last_updated: datetime
    holdings: dict[str, Holding] = field(default_factory=dict)
    targets: list[str] = field(default_factory=list)  # watchlist analyzed by the agent

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "user_id": self.user_id,
            "cash_balance": str(self.cash_balance),
            "initial_balance": str(self.initial_balance),
            "total_value": str(self.total_value),
            "last_updated": self.last_updated.isoformat(),
            "holdings": {asset: h.to_dict() for asset, h in self.holdings.items()},
            "targets": list(self.targets),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Portfolio":
        """Rebuild from a stored document."""
        return cls(
            user_id=data["user_id"],
            cash_balance=Decimal(data["cash_balance"]),
            initial_balance=Decimal(data["initial_balance"]),
            total_value=Decimal(data["total_value"]),
            last_updated=datetime.fromisoformat(data["last_updated"]),
            holdings={
                asset: Holding.from_dict(h)
                for asset, h in (data.get("holdings") or {}).items()
            },
            targets=list(data.get("targets") or []),
        )


@dataclass(frozen=True)
class Trade:
    """Immutable record of an executed virtual trade."""
    user_id: str
    asset: str
    side: Side
    amount: Decimal   # units of the asset
    price: Decimal    # per unit
    total: Decimal    # amount * price in USD
    reason: str
    at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "asset": self.asset,
            "side": self.side.value,
            "amount": str(self.amount),
            "price": str(self.price),
            "total": str(self.total),
            "reason": self.reason,
            "created_at": self.at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Trade":
        return cls(
            user_id=data["user_id"],
            asset=data["asset"],
            side=Side(data["side"]),
            amount=Decimal(data["amount"]),
            price=Decimal(data["price"]),
            total=Decimal(data["total"]),
            reason=data["reason"],
            at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass(frozen=True)
class ValuationSnapshot:
    """Point-in-time portfolio valuation, appended once per ledger apply."""
    user_id: str
    total_value: Decimal
    cash_balance: Decimal
    holdings_value: Decimal
    at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "total_value": str(self.total_value),
            "cash_balance": str(self.cash_balance),
            "holdings_value": str(self.holdings_value),
            "created_at": self.at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ValuationSnapshot":
        return cls(
            user_id=data["user_id"],
            total_value=Decimal(data["total_value"]),
            cash_balance=Decimal(data["cash_balance"]),
            holdings_value=Decimal(data["holdings_value"]),
            at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass
class PositionSummary:
    """Per-asset valuation and P&L."""
    asset: str
    amount: Decimal
    average_cost: Decimal
    price: Decimal
    value: Decimal
    pnl: Decimal
    pnl_pct: float


@dataclass
class PortfolioSummary:
    """Figures exposed to alerting consumers."""
    user_id: str
    cash_balance: Decimal
    holdings_value: Decimal
    total_value: Decimal
    initial_balance: Decimal
    roi_pct: float
    positions: list[PositionSummary] = field(default_factory=list)
