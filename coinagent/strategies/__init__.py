"""Trading strategies."""

from coinagent.strategies.score_rules import RuleInput, TradingRuleEngine

__all__ = ["RuleInput", "TradingRuleEngine"]
