"""Service layer for BetLedger."""
