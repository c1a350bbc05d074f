"""
Upbit Rate Client

Fetches BTC/KRW rates from the public Upbit REST API (no authentication):
- Daily candle:  GET /candles/days?market=KRW-BTC&to=<day>T23:59:59&count=1
- Ticker:        GET /ticker?markets=KRW-BTC

Both endpoints return a JSON array; the rate is the ``trade_price`` field
of the first element.

Transient failures (timeouts, connection errors, 5xx, 429) are retried with
exponential backoff. Anything else fails immediately. Every failure leaves
this module as RateUnavailableError.
"""

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from satledger.config import get_settings
from satledger.services.rates.interface import HistoricalRateProvider, RateUnavailableError


logger = structlog.get_logger(__name__)


class _TransientFeedError(Exception):
    """Internal: a failure worth retrying."""
    pass


class UpbitRateClient(HistoricalRateProvider):
    """
    Upbit implementation of the rate provider.

    Usage:
        client = UpbitRateClient()
        rate = await client.fetch(date(2024, 3, 1))
        await client.close()
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        market: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_multiplier: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings().rates
        self.base_url = (base_url or settings.base_url).rstrip("/")
        self.market = market or settings.market
        self.timeout = timeout or settings.timeout_seconds
        self.max_attempts = max_attempts or settings.max_attempts
        self._backoff_multiplier = backoff_multiplier
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Return the HTTP client (lazy init)."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "UpbitRateClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _get_once(self, endpoint: str, params: dict[str, Any]) -> Any:
        client = await self._ensure_client()
        try:
            response = await client.get(f"{self.base_url}{endpoint}", params=params)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            raise _TransientFeedError(f"Rate feed timeout after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise _TransientFeedError(f"Rate feed unreachable: {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status >= 500 or status == 429:
                raise _TransientFeedError(f"Rate feed error: {status}") from e
            raise RateUnavailableError(f"Rate feed error: {status}") from e
        except ValueError as e:
            raise RateUnavailableError(f"Rate feed returned invalid JSON: {e}") from e

    async def _get(self, endpoint: str, params: dict[str, Any]) -> Any:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self._backoff_multiplier, max=5),
            retry=retry_if_exception_type(_TransientFeedError),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._get_once(endpoint, params)
        except _TransientFeedError as e:
            logger.warning(
                "rate_feed_unavailable",
                endpoint=endpoint,
                attempts=self.max_attempts,
                error=str(e),
            )
            raise RateUnavailableError(str(e)) from e

    @staticmethod
    def _trade_price(payload: Any) -> Decimal:
        try:
            price = Decimal(str(payload[0]["trade_price"]))
        except (IndexError, KeyError, TypeError, InvalidOperation) as e:
            raise RateUnavailableError(f"Unexpected rate payload: {e!r}") from e
        if not price.is_finite() or price <= 0:
            raise RateUnavailableError(f"Invalid rate from feed: {price}")
        return price

    async def fetch(self, day: date) -> Decimal:
        """Closing rate of the daily candle ending on ``day``."""
        payload = await self._get(
            "/candles/days",
            {"market": self.market, "to": f"{day.isoformat()}T23:59:59", "count": 1},
        )
        rate = self._trade_price(payload)
        logger.debug("historical_rate_fetched", day=day.isoformat(), rate=str(rate))
        return rate

    async def fetch_current(self) -> Decimal:
        """Latest traded price."""
        payload = await self._get("/ticker", {"markets": self.market})
        return self._trade_price(payload)
