"""BetLedger: virtual bet tracking, settlement reconciliation and P&L."""

__version__ = "0.1.0"
