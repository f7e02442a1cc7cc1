"""Exception hierarchy for the coinagent trading engine."""


class CoinAgentError(Exception):
    """Base class for all engine errors."""

    pass


class ProviderUnavailable(CoinAgentError):
    """A single price provider could not produce a quote."""

    def __init__(self, provider_id: str, reason: str):
        super().__init__(f"{provider_id}: {reason}")
        self.provider_id = provider_id
        self.reason = reason


class ConsensusFailure(CoinAgentError):
    """The primary provider failed, so no verified price exists this cycle."""

    def __init__(self, asset: str, reason: str):
        super().__init__(f"Price verification failed for {asset}: {reason}")
        self.asset = asset
        self.reason = reason


class SchedulerExhausted(CoinAgentError):
    """A work item reached the attempt cap."""

    def __init__(self, asset: str, attempts: int):
        super().__init__(f"{asset} failed after {attempts} attempts")
        self.asset = asset
        self.attempts = attempts


class ScoreError(CoinAgentError):
    """The score provider returned an unusable score."""

    pass


class LedgerError(CoinAgentError):
    """Base class for ledger failures."""

    pass


class LedgerConflict(LedgerError):
    """A transaction read was stale at commit time."""

    pass


class PortfolioNotFound(LedgerError):
    """No portfolio exists for the requested user."""

    pass


class InvalidDecisionInput(LedgerError):
    """A decision failed validation before touching the ledger."""

    pass
