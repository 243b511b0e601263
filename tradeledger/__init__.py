"""Execution-ledger reconciliation for venue-traded portfolios."""

__version__ = "0.3.0"
