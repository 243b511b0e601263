"""
Read-only REST client for the trading venue.

Handles:
- API-key authentication header
- `{success, data, timestamp}` envelope unwrapping
- Per-call timeouts (a timeout fails only that call)
- Decoding into domain records at the boundary

No retries happen here; the scheduler re-runs the whole cycle.
"""
import asyncio
import ssl
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import aiohttp
import certifi

from tradeledger.data.decoders import (
    decode_balance,
    decode_fill,
    decode_order_event,
    decode_position,
    decode_resting_order,
    unwrap_list,
    unwrap_object,
)
from tradeledger.domain.models import (
    Credentials,
    Fill,
    LivePosition,
    OrderEvent,
    Portfolio,
    RestingOrder,
    VenueBalance,
)
from tradeledger.exceptions import MalformedVenueResponse, MissingCredentials, VenueUnavailable
from tradeledger.monitoring.logger import get_logger

if TYPE_CHECKING:
    from tradeledger.config.config import VenueConfig

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://api.asterdex.com"


class VenueClient:
    """
    Venue REST API client bound to one portfolio's credentials.
    """

    def __init__(
        self,
        credentials: Credentials,
        *,
        base_url: Optional[str] = None,
        request_timeout: float = 30.0,
        history_timeout: float = 60.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize venue client.

        Args:
            credentials: Portfolio credentials (api_key required)
            base_url: Fallback base URL when credentials carry none
            request_timeout: Timeout in seconds for account/position calls
            history_timeout: Timeout in seconds for fill/order history pages
            session: Optional shared aiohttp session (caller owns it)
        """
        if credentials is None or not credentials.is_usable():
            raise MissingCredentials("Venue credentials not configured")

        self.credentials = credentials
        self.base_url = (credentials.base_url or base_url or DEFAULT_BASE_URL).rstrip("/")
        self.request_timeout = request_timeout
        self.history_timeout = history_timeout
        self._session = session
        self._owns_session = session is None
        self._ssl_context: Optional[ssl.SSLContext] = None

    async def __aenter__(self) -> "VenueClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def get_fills(self, symbol: str, from_id: Optional[int] = None, limit: int = 500) -> List[Fill]:
        """Fills for a symbol in ascending venue id order, starting at from_id (inclusive)."""
        payload = await self._request(
            "/aster/history/trades",
            params={"symbol": symbol, "fromId": from_id, "limit": limit},
            timeout=self.history_timeout,
        )
        fills = [decode_fill(raw) for raw in unwrap_list(payload)]
        return [f for f in fills if f is not None]

    async def get_order_events(self, symbol: str, from_id: Optional[int] = None, limit: int = 500) -> List[OrderEvent]:
        """Order history for a symbol in ascending order id order."""
        payload = await self._request(
            "/aster/history/orders",
            params={"symbol": symbol, "fromId": from_id, "limit": limit},
            timeout=self.history_timeout,
        )
        events = [decode_order_event(raw) for raw in unwrap_list(payload)]
        return [e for e in events if e is not None]

    # ------------------------------------------------------------------
    # Live state
    # ------------------------------------------------------------------

    async def get_positions(self, symbol: Optional[str] = None) -> List[LivePosition]:
        payload = await self._request("/aster/positions", params={"symbol": symbol})
        return [decode_position(raw) for raw in unwrap_list(payload)]

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[RestingOrder]:
        payload = await self._request("/aster/orders/open", params={"symbol": symbol})
        return [decode_resting_order(raw) for raw in unwrap_list(payload)]

    async def get_balance(self) -> VenueBalance:
        payload = await self._request("/aster/portfolio/value")
        return decode_balance(unwrap_object(payload))

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        GET `path` and return the decoded JSON body.

        Raises:
            VenueUnavailable: connection failure, timeout or non-2xx status
            MalformedVenueResponse: body is not JSON
        """
        url = f"{self.base_url}{path}"
        query = {k: str(v) for k, v in (params or {}).items() if v is not None}
        headers = {
            "X-API-Key": self.credentials.api_key,
            "Content-Type": "application/json",
            "accept": "application/json",
        }
        call_timeout = timeout or self.request_timeout

        logger.debug("Venue API request", path=path, params=query)

        async def _fetch() -> Any:
            session = self._get_session()
            async with session.get(url, params=query, headers=headers) as response:
                if response.status >= 400:
                    body = await response.text()
                    logger.error("Venue API error response", path=path, status=response.status, body=body[:500])
                    raise VenueUnavailable(f"Venue API error: {response.status} - {body[:200]}", status=response.status)
                return await response.json(content_type=None)

        try:
            return await asyncio.wait_for(_fetch(), timeout=call_timeout)
        except asyncio.TimeoutError as e:
            logger.error("Venue API request timed out", path=path, timeout=call_timeout)
            raise VenueUnavailable(f"Venue API timeout after {call_timeout}s: {path}") from e
        except aiohttp.ClientError as e:
            logger.error("Venue API request failed", path=path, error=str(e))
            raise VenueUnavailable(f"Venue API request failed: {e}") from e
        except ValueError as e:
            # JSON decode failure
            logger.error("Venue API returned non-JSON body", path=path, error=str(e))
            raise MalformedVenueResponse(f"Venue API returned invalid JSON: {path}") from e

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=self._get_ssl_context())
            self._session = aiohttp.ClientSession(connector=connector)
            self._owns_session = True
        return self._session

    def _get_ssl_context(self) -> ssl.SSLContext:
        """Reusable SSL context backed by certifi certificates."""
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context(cafile=certifi.where())
        return self._ssl_context

    async def close(self) -> None:
        """Close the owned HTTP session."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


def client_for_portfolio(portfolio: Portfolio, venue_config: Optional["VenueConfig"] = None) -> VenueClient:
    """
    Build a client from a portfolio's stored credentials.

    Raises:
        MissingCredentials: portfolio has no usable credentials
    """
    if portfolio.credentials is None or not portfolio.credentials.is_usable():
        raise MissingCredentials(f"Portfolio {portfolio.id} has no venue credentials")
    if venue_config is None:
        return VenueClient(portfolio.credentials)
    return VenueClient(
        portfolio.credentials,
        base_url=venue_config.base_url,
        request_timeout=venue_config.request_timeout_seconds,
        history_timeout=venue_config.history_timeout_seconds,
    )
