"""Subscription & ledger engine for the gym operations tool."""

__version__ = "0.2.0"
