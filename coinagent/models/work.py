"""Work queue models for the retry scheduler."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class WorkState(Enum):
    """Lifecycle of a scheduled work item."""
    PENDING = "pending"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class WorkItem:
    """One unit of per-asset analysis work.

    ``attempts`` counts every call made for the asset, failed or successful.
    While the item is pending every attempt so far has failed.
    """
    asset: str
    attempts: int = 0
    state: WorkState = WorkState.PENDING


@dataclass
class ScheduleReport:
    """Outcome of a scheduler run, keyed by asset.

    ``attempts`` mirrors ``WorkItem.attempts``: a completed asset includes its
    successful attempt, a failed asset has failed every one.
    """
    states: dict[str, WorkState] = field(default_factory=dict)
    attempts: dict[str, int] = field(default_factory=dict)
    results: dict[str, Any] = field(default_factory=dict)
    errors: dict[str, Exception] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def completed(self) -> list[str]:
        return [a for a, s in self.states.items() if s == WorkState.COMPLETED]

    @property
    def failed(self) -> list[str]:
        return [a for a, s in self.states.items() if s == WorkState.FAILED]
