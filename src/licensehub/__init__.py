"""License scheduler and instance lifecycle orchestrator."""

__version__ = "0.1.0"
