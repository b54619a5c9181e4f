"""Configuration for BetLedger."""

from betledger.config.reconciliation import ReconciliationConfig, get_reconciliation_config
from betledger.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
    "ReconciliationConfig",
    "get_reconciliation_config",
]
