"""coinagent: price consensus and score-driven trading on a virtual portfolio."""

__version__ = "0.1.0"
