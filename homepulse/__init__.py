"""HomePulse - predictive usage-pattern engine for smart homes."""

__version__ = "0.1.0"
