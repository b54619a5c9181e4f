"""HTTP API for BetLedger."""
