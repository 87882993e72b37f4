"""Portfolio research tooling: backtesting simulation engine."""

__version__ = "0.1.0"
