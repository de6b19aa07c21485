"""
Async HTTP client for the POS mobile backend.

Every backend call is ``GET {base}?action=...`` with a bearer token. Dated
actions add ``period=custom&start_date=..&end_date=..``.

``fetch()`` never raises for transport problems: non-2xx responses,
timeouts, connection errors, invalid JSON, an expired rate-limit wait and an
open circuit all come back as ``{"success": False, "data": None, "error":
"<reason>"}`` so the sync loop can treat them as an unsuccessful unit.
"""
from typing import Any, Dict, Optional

import httpx

from possync.config import config
from possync.exceptions import PosAPIError, PosConnectionError, PosDataError
from possync.models import Envelope
from possync.observability import Timer, get_correlation_id, get_logger
from possync.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    RateLimiter,
)

logger = get_logger(__name__)

STOCK_HISTORY_ACTION = "stock-history"


class PosApiClient:
    """
    Async client for the POS backend.

    Usage:
        async with PosApiClient() as client:
            envelope = await client.fetch("sales-summary", "2024-03-01", "2024-03-31")
    """

    def __init__(
        self,
        token: str = None,
        base_url: str = None,
        timeout: float = None,
        transport: httpx.AsyncBaseTransport = None,
        circuit_breaker: CircuitBreaker = None,
        rate_limiter: RateLimiter = None,
    ):
        """
        Args:
            token: Bearer token (defaults to POS_API_TOKEN)
            base_url: Backend URL (defaults to POS_API_BASE_URL)
            timeout: Connect/read timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.token = token if token is not None else config.api.token
        self.base_url = base_url or config.api.base_url
        self.timeout = timeout or config.api.request_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            config=CircuitBreakerConfig(
                failure_threshold=config.api.circuit_failure_threshold,
                recovery_timeout=config.api.circuit_recovery_seconds,
            )
        )
        self.rate_limiter = rate_limiter or RateLimiter(rate=config.api.requests_per_second, burst=1)

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
        }

    async def connect(self) -> None:
        """Create HTTP client with connection pooling."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self.headers,
                timeout=self.timeout,
                transport=self._transport,
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "PosApiClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ═══════════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ═══════════════════════════════════════════════════════════════════════

    async def fetch(self, action: str, start_date: str = None, end_date: str = None) -> Dict[str, Any]:
        """
        Fetch one action and return its response envelope.

        Undated actions (stock, lists) omit the date parameters.
        """
        params = {"action": action}
        if start_date and end_date:
            params.update({"period": "custom", "start_date": start_date, "end_date": end_date})

        if not await self.rate_limiter.acquire(timeout=self.timeout):
            logger.warning(f"Skipping {action}: rate limit wait timed out", extra={"action": action})
            return Envelope.failure(f"Rate limit wait exceeded {self.timeout}s")

        try:
            payload = await self.circuit_breaker.call(
                self._request,
                params,
                failure_exceptions=(PosConnectionError, PosAPIError),
            )
        except CircuitOpenError as e:
            logger.warning(
                f"Skipping {action}: circuit open",
                extra={"action": action, "retry_after": round(e.retry_after, 1)},
            )
            return Envelope.failure(f"Circuit breaker open, retry in {e.retry_after:.0f}s")
        except (PosConnectionError, PosAPIError, PosDataError) as e:
            return Envelope.failure(str(e))

        if not isinstance(payload, dict) or "success" not in payload:
            return Envelope.failure("Response is not a valid envelope")
        return payload

    async def fetch_stock_history(self) -> Dict[str, Any]:
        return await self.fetch(STOCK_HISTORY_ACTION)

    async def fetch_list(self, topic: str) -> Dict[str, Any]:
        """Generic undated list (invoices, expenses, purchases)."""
        return await self.fetch(topic)

    # ═══════════════════════════════════════════════════════════════════════
    # TRANSPORT
    # ═══════════════════════════════════════════════════════════════════════

    async def _request(self, params: Dict[str, Any]) -> Any:
        """
        Execute a single GET against the backend.

        Raises:
            PosConnectionError: Network/timeout errors
            PosAPIError: Backend returned a non-2xx response
            PosDataError: Body is not valid JSON
        """
        if not self._client:
            await self.connect()

        action = params.get("action", "")
        request_headers = {}
        correlation_id = get_correlation_id()
        if correlation_id:
            request_headers["X-Request-ID"] = correlation_id

        try:
            with Timer(f"pos_{action}", logger):
                response = await self._client.get(
                    self.base_url,
                    params=params,
                    headers=request_headers or None,
                )
        except httpx.TimeoutException as e:
            logger.error(
                f"Request timeout: {action}",
                extra={"action": action, "timeout": self.timeout},
            )
            raise PosConnectionError(f"Request timeout after {self.timeout}s", retry_after=5) from e
        except httpx.RequestError as e:
            logger.error(
                f"Request failed: {action} - {e}",
                extra={"action": action, "error": str(e)},
            )
            raise PosConnectionError("Connection failed", details=str(e)) from e

        if response.status_code >= 400:
            error_text = response.text[:500]
            logger.error(
                f"API error {response.status_code}: {error_text}",
                extra={"action": action, "status_code": response.status_code},
            )
            raise PosAPIError(
                f"API returned {response.status_code}",
                details=error_text,
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise PosDataError(
                "Invalid JSON response", details=str(e), expected="JSON object", got=response.text[:100]
            ) from e
