"""Score provider interface and the built-in static provider.

The score is an opaque 0-100 signal. The cut points are shared with the
trading rules: [0, 45] bearish, (45, 75) neutral, [75, 100] bullish.
"""
import logging
from typing import Protocol, runtime_checkable

from coinagent.core.errors import ScoreError
from coinagent.models import Score

logger = logging.getLogger(__name__)

BEARISH_MAX = 45
BULLISH_MIN = 75


@runtime_checkable
class ScoreProvider(Protocol):
    """Produces a score for an asset, optionally given past reports."""

    async def score(self, asset: str, history_context: str | None = None) -> Score:
        """Score an asset.

        Args:
            asset: Ticker
            history_context: Formatted lines describing recent reports, or None

        Returns:
            Score with a value in [0, 100]
        """
        ...


def validate_score(score: Score) -> Score:
    """Reject scores that are not integers in [0, 100].

    Raises:
        ScoreError: If the score is out of range or not an integer
    """
    value = score.score
    if isinstance(value, bool) or not isinstance(value, int):
        raise ScoreError(f"Score must be an integer, got {value!r}")
    if not 0 <= value <= 100:
        raise ScoreError(f"Score must be within [0, 100], got {value}")
    return score


def signal_for(value: int) -> str:
    """Traffic-light label for a score."""
    if value >= BULLISH_MIN:
        return "GREEN"
    if value <= BEARISH_MAX:
        return "RED"
    return "AMBER"


class StaticScoreProvider:
    """Fixed per-ticker scores, for dry runs and tests."""

    def __init__(self, scores: dict[str, int] | None = None, default: int = 50):
        self.scores = {k.upper(): int(v) for k, v in (scores or {}).items()}
        self.default = int(default)
        self.calls: list[tuple[str, str | None]] = []

    async def score(self, asset: str, history_context: str | None = None) -> Score:
        asset = asset.upper()
        self.calls.append((asset, history_context))
        value = self.scores.get(asset, self.default)
        logger.debug(f"Static score for {asset}: {value}")
        return Score(score=value, rationale=f"Static score for {asset}")
