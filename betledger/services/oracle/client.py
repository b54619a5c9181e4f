"""Settlement oracle client.

The oracle is the external source of truth for match outcomes. Given a batch
of tracked items it replies, per item, with a final score / outcome or omits
the item. Replies are semi-structured text and are returned raw; callers run
them through the response normalizer.

Provides:
- An abstract ``SettlementOracle`` interface (tests plug in fakes)
- ``HttpSettlementOracle``: httpx transport with retry, exponential backoff
  and error classification
"""

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

import httpx
import structlog

from betledger.config import get_settings

logger = structlog.get_logger(__name__)


class OracleErrorType(Enum):
    """Classification of oracle errors."""

    UNAUTHORIZED = "UNAUTHORIZED"
    TIMEOUT = "TIMEOUT"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_INPUT = "INVALID_INPUT"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    NOT_CONFIGURED = "NOT_CONFIGURED"
    UNKNOWN = "UNKNOWN"


class OracleAPIError(Exception):
    """Oracle error with classification."""

    def __init__(self, message: str, error_type: OracleErrorType, retryable: bool = False):
        super().__init__(message)
        self.error_type = error_type
        self.retryable = retryable


class SettlementOracle(ABC):
    """Interface to the external settlement source."""

    @abstractmethod
    async def settle_predictions(self, queries: list[dict[str, Any]]) -> Any:
        """
        Look up outcomes for single predictions.

        Each query is ``{id, teamA, teamB, matchDate, recommendedBet}``.
        The reply should describe ``[{id, finalScore, betOutcome}]``.
        """

    @abstractmethod
    async def settle_accumulators(self, queries: list[dict[str, Any]]) -> Any:
        """
        Look up outcomes for accumulators.

        Each query is ``{id, games: [{teamA, teamB, prediction, matchDate}]}``.
        The reply should describe ``[{id, finalOutcome, legResults}]``.
        """


class HttpSettlementOracle(SettlementOracle):
    """
    Settlement oracle reached over HTTP.

    Supports:
    - API key authentication
    - Automatic retry with exponential backoff (timeouts, 429, 5xx)
    - Error classification
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float = 120.0,
        max_retries: int = 2,
        http_client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the oracle client.

        Args:
            base_url: Oracle base URL (defaults to settings.oracle_url)
            api_key: Oracle API key (defaults to settings.oracle_api_key)
            timeout: HTTP timeout per request in seconds
            max_retries: Retries for retryable failures
            http_client: Optional pre-built client (used in tests)
        """
        settings = get_settings()
        self.base_url = (base_url if base_url is not None else settings.oracle_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.oracle_api_key
        self.timeout = timeout
        self.max_retries = max_retries
        self._http_client = http_client

    async def __aenter__(self) -> "HttpSettlementOracle":
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def _request(self, endpoint: str, payload: dict[str, Any]) -> str:
        """
        POST to the oracle with retry.

        Returns:
            Raw response text

        Raises:
            OracleAPIError: If the request fails after retries
        """
        if not self.base_url:
            raise OracleAPIError(
                "Settlement oracle URL is not configured",
                OracleErrorType.NOT_CONFIGURED,
            )

        url = f"{self.base_url}/{endpoint}"
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        for attempt in range(self.max_retries + 1):
            try:
                client = await self._get_client()
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                return response.text

            except httpx.TimeoutException:
                if attempt < self.max_retries:
                    wait_time = 2**attempt
                    logger.warning(
                        "oracle_timeout_retrying",
                        endpoint=endpoint,
                        attempt=attempt,
                        wait_time=wait_time,
                    )
                    await asyncio.sleep(wait_time)
                    continue
                raise OracleAPIError(
                    "Request timeout",
                    OracleErrorType.TIMEOUT,
                    retryable=True,
                )

            except httpx.HTTPStatusError as e:
                error_type, retryable = self._classify_status(e.response.status_code)
                if retryable and attempt < self.max_retries:
                    wait_time = 2**attempt
                    logger.warning(
                        "oracle_error_retrying",
                        endpoint=endpoint,
                        status_code=e.response.status_code,
                        attempt=attempt,
                        wait_time=wait_time,
                    )
                    await asyncio.sleep(wait_time)
                    continue
                raise OracleAPIError(
                    f"Oracle returned {e.response.status_code}: {e.response.text[:200]}",
                    error_type,
                    retryable=retryable,
                )

            except httpx.TransportError as e:
                if attempt < self.max_retries:
                    await asyncio.sleep(2**attempt)
                    continue
                raise OracleAPIError(
                    f"Transport error: {e}",
                    OracleErrorType.SERVICE_UNAVAILABLE,
                    retryable=True,
                )

        raise OracleAPIError("Retries exhausted", OracleErrorType.UNKNOWN)

    def _classify_status(self, status_code: int) -> tuple[OracleErrorType, bool]:
        """Classify an HTTP status and determine if retryable."""
        if status_code in (401, 403):
            return OracleErrorType.UNAUTHORIZED, False
        if status_code == 429:
            return OracleErrorType.RATE_LIMITED, True
        if status_code in (400, 422):
            return OracleErrorType.INVALID_INPUT, False
        if status_code >= 500:
            return OracleErrorType.SERVICE_UNAVAILABLE, True
        return OracleErrorType.UNKNOWN, False

    async def settle_predictions(self, queries: list[dict[str, Any]]) -> str:
        return await self._request("settle/predictions", {"matches": queries})

    async def settle_accumulators(self, queries: list[dict[str, Any]]) -> str:
        return await self._request("settle/accumulators", {"accumulators": queries})
