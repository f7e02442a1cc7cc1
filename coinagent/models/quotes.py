"""Price quote models for the coinagent trading engine."""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class Provenance(Enum):
    """How a verified price was derived."""
    SINGLE_SOURCE = "single_source"
    TWO_SOURCE_AVERAGE = "two_source_average"
    THREE_SOURCE_RECONCILED = "three_source_reconciled"
    DEGRADED = "degraded"

    @classmethod
    def parse(cls, value: str | None) -> "Provenance":
        """Parse a stored provenance label, falling back to DEGRADED."""
        try:
            return cls(value)
        except ValueError:
            return cls.DEGRADED


@dataclass(frozen=True)
class Quote:
    """Spot price returned by one provider."""
    provider_id: str
    price: Decimal        # always > 0
    fetched_at: datetime


@dataclass(frozen=True)
class ProviderFailure:
    """Typed failure returned by a provider instead of raising."""
    provider_id: str
    reason: str
    fetched_at: datetime


@dataclass(frozen=True)
class VerifiedPrice:
    """Price reconciled across providers."""
    asset: str
    price: Decimal
    provenance: Provenance
    disagreement_pct: float    # 0.0 when only one quote was obtained
    computed_at: datetime
    sources: tuple[str, ...] = ()
    outlier: str | None = None
    high_divergence: bool = False

    @property
    def label(self) -> str:
        """Human readable verification label, e.g. 'coingecko & binance'."""
        label = " & ".join(self.sources)
        if self.high_divergence:
            label += " (high divergence)"
        return label

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "asset": self.asset,
            "price": str(self.price),
            "provenance": self.provenance.value,
            "disagreement_pct": self.disagreement_pct,
            "computed_at": self.computed_at.isoformat(),
            "sources": list(self.sources),
            "outlier": self.outlier,
            "high_divergence": self.high_divergence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VerifiedPrice":
        """Rebuild from a stored dictionary."""
        return cls(
            asset=data["asset"],
            price=Decimal(data["price"]),
            provenance=Provenance.parse(data.get("provenance")),
            disagreement_pct=float(data.get("disagreement_pct", 0.0)),
            computed_at=datetime.fromisoformat(data["computed_at"]),
            sources=tuple(data.get("sources", ())),
            outlier=data.get("outlier"),
            high_divergence=bool(data.get("high_divergence", False)),
        )


@dataclass
class MarketStats:
    """Best-effort market context. Missing numbers are 0, missing dates 'N/A'."""
    name: str
    change_24h: float = 0.0
    high_24h: float = 0.0
    low_24h: float = 0.0
    market_cap: float = 0.0
    ath: float = 0.0
    ath_date: str = "N/A"
    atl: float = 0.0
    atl_date: str = "N/A"
    avg_7d: float = 0.0
    avg_30d: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "change_24h": self.change_24h,
            "high_24h": self.high_24h,
            "low_24h": self.low_24h,
            "market_cap": self.market_cap,
            "ath": self.ath,
            "ath_date": self.ath_date,
            "atl": self.atl,
            "atl_date": self.atl_date,
            "avg_7d": self.avg_7d,
            "avg_30d": self.avg_30d,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MarketStats":
        """Rebuild from a stored dictionary."""
        fields = (
            "name", "change_24h", "high_24h", "low_24h", "market_cap",
            "ath", "ath_date", "atl", "atl_date", "avg_7d", "avg_30d",
        )
        known = {k: data[k] for k in fields if k in data}
        known.setdefault("name", "")
        return cls(**known)
