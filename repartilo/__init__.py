"""Usage-gated route optimization workflow with subscription reconciliation."""

__version__ = "0.4.0"
