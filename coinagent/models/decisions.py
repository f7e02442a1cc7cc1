"""Decision and analysis models for the coinagent trading engine."""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from coinagent.models.quotes import MarketStats, VerifiedPrice


class Action(Enum):
    """Trading rule outcomes."""
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"
    SKIP = "SKIP"


@dataclass(frozen=True)
class Score:
    """Opaque 0-100 signal produced by the external score provider."""
    score: int
    rationale: str = ""


@dataclass
class Decision:
    """Per-asset trading decision handed to the ledger."""
    asset: str
    action: Action
    score: int
    price: Decimal
    reason: str
    notional: Decimal | None = None  # USD to spend, BUY only
    amount: Decimal | None = None    # units to sell, SELL only

    def to_dict(self, user_id: str, at: datetime) -> dict[str, Any]:
        """Audit trail entry."""
        return {
            "user_id": user_id,
            "asset": self.asset,
            "action": self.action.value,
            "score": self.score,
            "price": str(self.price),
            "reason": self.reason,
            "notional": str(self.notional) if self.notional is not None else None,
            "amount": str(self.amount) if self.amount is not None else None,
            "created_at": at.isoformat(),
        }


@dataclass
class AnalysisReport:
    """Result of analyzing one asset: verified price, market context and score."""
    user_id: str
    asset: str
    price: VerifiedPrice
    stats: MarketStats
    score: Score
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """Convert to a library document."""
        return {
            "user_id": self.user_id,
            "asset": self.asset,
            "price": self.price.to_dict(),
            "stats": self.stats.to_dict(),
            "score": self.score.score,
            "rationale": self.score.rationale,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnalysisReport":
        """Rebuild from a library document."""
        return cls(
            user_id=data["user_id"],
            asset=data["asset"],
            price=VerifiedPrice.from_dict(data["price"]),
            stats=MarketStats.from_dict(data.get("stats") or {}),
            score=Score(score=int(data["score"]), rationale=data.get("rationale", "")),
            created_at=datetime.fromisoformat(data["created_at"]),
        )
