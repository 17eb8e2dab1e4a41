"""Double-entry ledger consistency engine for a bookkeeping application."""

__version__ = "0.1.0"
