"""Settlement oracle client module."""

from betledger.services.oracle.client import (
    HttpSettlementOracle,
    OracleAPIError,
    OracleErrorType,
    SettlementOracle,
)

__all__ = ["SettlementOracle", "HttpSettlementOracle", "OracleAPIError", "OracleErrorType"]
