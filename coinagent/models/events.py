"""Event model for the coinagent trading engine."""
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any


@dataclass
class Event:
    """Base event type for all system events."""
    type: str              # "asset_analyzed", "trade_executed", "cycle_complete", etc.
    symbol: str | None     # Ticker (None for cycle-level events)
    timestamp: datetime    # When event occurred
    source: str            # "agent", "ledger", etc.
    payload: dict[str, Any]  # Actual data

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        return d
