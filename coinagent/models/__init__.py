"""Data models for the coinagent trading engine."""

from coinagent.models.events import Event
from coinagent.models.quotes import Provenance, Quote, ProviderFailure, VerifiedPrice, MarketStats
from coinagent.models.portfolio import (
    Side,
    Holding,
    Portfolio,
    Trade,
    ValuationSnapshot,
    PositionSummary,
    PortfolioSummary,
)
from coinagent.models.decisions import Action, Score, Decision, AnalysisReport
from coinagent.models.work import WorkState, WorkItem, ScheduleReport

__all__ = [
    "Event",
    "Provenance",
    "Quote",
    "ProviderFailure",
    "VerifiedPrice",
    "MarketStats",
    "Side",
    "Holding",
    "Portfolio",
    "Trade",
    "ValuationSnapshot",
    "PositionSummary",
    "PortfolioSummary",
    "Action",
    "Score",
    "Decision",
    "AnalysisReport",
    "WorkState",
    "WorkItem",
    "ScheduleReport",
]
