"""
Deribit HTTP client: all REST API communication lives here.

Provides DeribitClient (async context manager). Every call goes through
one pipeline: categorize the path, wait on the rate limiter, attach the
bearer token for private endpoints, send with aiohttp, renew the token on
401/403, and unwrap the JSON-RPC envelope into a typed record.
"""

import asyncio
import logging
from enum import Enum

import aiohttp

from auth import AuthManager
from config import HttpConfig
from errors import (
    ApiError, AuthenticationFailed, InvalidResponse, NetworkError,
    RateLimitExceeded, RequestFailed,
)
from models import (
    AccountSummary, ApiResponse, Currency, Deposit, EditOrderRequest,
    IndexPrice, Instrument, Order, OrderBook, OrderRequest, OrderResponse,
    Page, Position, ServerStatus, Subaccount, Ticker, Trade,
    TradingViewChart, Withdrawal,
)
from rate_limiter import RateLimiter, categorize_endpoint
from session import AuthToken, HttpSession

logger = logging.getLogger(__name__)

AUTH_REJECTED_STATUSES = (401, 403)
# JSON-RPC error codes meaning the bearer token is no longer accepted
AUTH_REJECTED_CODES = (13009, 13010)


def _encode_params(params: dict | None) -> dict[str, str]:
    """Render query parameters the way Deribit expects them."""
    encoded = {}
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, Enum):
            value = value.value
        if isinstance(value, bool):
            encoded[key] = 'true' if value else 'false'
        else:
            encoded[key] = str(value)
    return encoded


class DeribitClient:
    """Handles all HTTP communication with the Deribit API.

    Use as an async context manager to ensure the HTTP session is closed::

        async with DeribitClient(load_from_env()) as client:
            ticker = await client.get_ticker("BTC-PERPETUAL")

    Session state, rate limiter and HTTP connection pool are shared with
    every handle made by clone(), so authenticating once is visible to all
    of them. Pass `session`/`rate_limiter` explicitly to share them between
    independently created clients.
    """

    def __init__(
        self,
        config: HttpConfig | None = None,
        session: HttpSession | None = None,
        rate_limiter: RateLimiter | None = None,
        auth: AuthManager | None = None,
    ):
        self._config = config or HttpConfig()
        self._session = session or (auth.session if auth else HttpSession())
        self._rate_limiter = rate_limiter or RateLimiter(self._config.rate_limits.as_limits())
        self._auth = auth or AuthManager(self._config, self._session, self._rate_limiter)
        self._max_retries = self._config.max_retries
        self._retry_delay = self._config.retry_delay
        self._retry_backoff = self._config.retry_backoff_factor
        self._http: aiohttp.ClientSession | None = None
        self._owns_http = False

    async def __aenter__(self) -> 'DeribitClient':
        if self._http is None:
            self._bind(aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._config.timeout),
                headers={'User-Agent': self._config.user_agent},
            ))
            self._owns_http = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._http and self._owns_http:
            await self._http.close()
            # Another handle may have bound its own pool to the shared manager
            if self._auth.http is self._http:
                self._auth.http = None
            self._http = None
            self._owns_http = False

    def _bind(self, http: aiohttp.ClientSession) -> None:
        self._http = http
        if self._auth.http is None:
            self._auth.http = http

    def clone(self) -> 'DeribitClient':
        """New handle sharing session state, rate limiter and HTTP pool.

        The clone never closes a pool it did not open. A clone made before
        the original is opened gets its own pool when entered.
        """
        other = DeribitClient(
            self._config,
            session=self._session,
            rate_limiter=self._rate_limiter,
            auth=self._auth,
        )
        other._http = self._http
        return other

    @property
    def config(self) -> HttpConfig:
        return self._config

    @property
    def session(self) -> HttpSession:
        return self._session

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def auth(self) -> AuthManager:
        return self._auth

    async def is_authenticated(self) -> bool:
        return await self._session.is_authenticated()

    async def authenticate(self) -> AuthToken:
        return await self._auth.authenticate(self._http)

    # -----------------------------------------------
    # Request pipeline
    # -----------------------------------------------

    async def request(self, path: str, params: dict | None = None, private: bool = False):
        """Send one API call and return the `result` of its JSON-RPC envelope.

        Args:
            path: Endpoint path, e.g. "/public/ticker"
            params: Query parameters; None values are dropped
            private: Attach the bearer token and renew it on 401/403

        Raises:
            AuthenticationFailed: no credentials, or the renewed token was also rejected
            ApiError: the envelope carried a JSON-RPC error
            RateLimitExceeded: 429 persisted after all retries
            NetworkError: connection failure or timeout after all retries
            InvalidResponse: body was not a JSON-RPC envelope with a result
        """
        if self._http is None:
            raise RuntimeError("DeribitClient is not open; use it as an async context manager")

        category = categorize_endpoint(path)
        url = f"{self._config.base_url}{path}"
        query = _encode_params(params)
        retries = 0
        auth_retried = False

        while True:
            await self._rate_limiter.wait_for_permission(category)

            headers = {}
            token = None
            if private:
                token = await self._auth.ensure_token(self._http)
                headers['Authorization'] = token.header_value()

            try:
                async with self._http.get(url, params=query, headers=headers) as response:
                    status = response.status
                    try:
                        body = await response.json(content_type=None)
                    except ValueError:
                        body = None
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if retries < self._max_retries:
                    delay = self._retry_delay * (self._retry_backoff ** retries)
                    retries += 1
                    logger.warning(f"{path}: {e!r}. Retry {retries}/{self._max_retries} in {delay:.2f}s")
                    await asyncio.sleep(delay)
                    continue
                logger.error(f"{path}: giving up after {self._max_retries} retries: {e!r}")
                raise NetworkError(f"{path}: {e!r}") from e

            try:
                envelope = ApiResponse.from_dict(body) if isinstance(body, dict) else None
            except (TypeError, ValueError) as e:
                raise InvalidResponse(f"{path}: malformed response envelope: {e}") from e
            error = envelope.error if envelope else None
            logger.debug(f"{path} -> HTTP {status}")

            rejected = status in AUTH_REJECTED_STATUSES or (error is not None and error.code in AUTH_REJECTED_CODES)
            if private and rejected:
                if not auth_retried:
                    auth_retried = True
                    await self._auth.reauthenticate(token, self._http)
                    continue
                reason = error.message if error else f"HTTP {status}"
                logger.error(f"{path}: token rejected after re-authentication: {reason}")
                raise AuthenticationFailed(f"{path}: {reason}")

            if status == 429 or status >= 500:
                if retries < self._max_retries:
                    delay = self._retry_delay * (self._retry_backoff ** retries)
                    retries += 1
                    logger.warning(f"{path}: HTTP {status}. Retry {retries}/{self._max_retries} in {delay:.2f}s")
                    await asyncio.sleep(delay)
                    continue
                logger.error(f"{path}: HTTP {status} after {self._max_retries} retries")
                if status == 429:
                    raise RateLimitExceeded(f"{path}: rate limited by server")
                raise RequestFailed(f"{path}: HTTP {status}", status=status)

            if error is not None:
                logger.error(f"{path}: API error {error.code}: {error.message}")
                raise ApiError(error.code, error.message, error.data, status=status)

            if status >= 400:
                logger.error(f"{path}: HTTP {status}")
                raise RequestFailed(f"{path}: HTTP {status}", status=status)

            if envelope is None or 'result' not in body:
                raise InvalidResponse(f"{path}: no result in response")
            return envelope.result

    async def _public(self, path: str, params: dict | None = None):
        return await self.request(path, params)

    async def _private(self, path: str, params: dict | None = None):
        return await self.request(path, params, private=True)

    # -----------------------------------------------
    # Public endpoints
    # -----------------------------------------------

    async def get_server_time(self) -> int:
        """Server time in milliseconds since the epoch."""
        return int(await self._public('/public/get_time'))

    async def test_connection(self) -> str:
        """API version string reported by /public/test."""
        result = await self._public('/public/test')
        return result.get('version', '') if isinstance(result, dict) else str(result)

    async def get_status(self) -> ServerStatus:
        return ServerStatus.from_dict(await self._public('/public/status'))

    async def get_currencies(self) -> list[Currency]:
        return [Currency.from_dict(c) for c in await self._public('/public/get_currencies')]

    async def get_index_price(self, index_name: str) -> IndexPrice:
        """Current value of a price index, e.g. "btc_usd"."""
        result = await self._public('/public/get_index_price', {'index_name': index_name})
        return IndexPrice.from_dict(result)

    async def get_index_price_names(self) -> list[str]:
        return list(await self._public('/public/get_index_price_names'))

    async def get_ticker(self, instrument_name: str) -> Ticker:
        result = await self._public('/public/ticker', {'instrument_name': instrument_name})
        return Ticker.from_dict(result)

    async def get_instrument(self, instrument_name: str) -> Instrument:
        result = await self._public('/public/get_instrument', {'instrument_name': instrument_name})
        return Instrument.from_dict(result)

    async def get_instruments(
        self,
        currency: str,
        kind: str | None = None,
        expired: bool | None = None,
    ) -> list[Instrument]:
        """Instruments for a currency, optionally filtered by kind (future, option, spot, ...)."""
        result = await self._public('/public/get_instruments', {
            'currency': currency,
            'kind': kind,
            'expired': expired,
        })
        return [Instrument.from_dict(i) for i in result]

    async def get_order_book(self, instrument_name: str, depth: int | None = None) -> OrderBook:
        result = await self._public('/public/get_order_book', {
            'instrument_name': instrument_name,
            'depth': depth,
        })
        return OrderBook.from_dict(result)

    async def get_last_trades_by_instrument(
        self,
        instrument_name: str,
        count: int | None = None,
        include_old: bool | None = None,
        sorting: str | None = None,
    ) -> list[Trade]:
        result = await self._public('/public/get_last_trades_by_instrument', {
            'instrument_name': instrument_name,
            'count': count,
            'include_old': include_old,
            'sorting': sorting,
        })
        return [Trade.from_dict(t) for t in result.get('trades', [])]

    async def get_contract_size(self, instrument_name: str) -> float:
        result = await self._public('/public/get_contract_size', {'instrument_name': instrument_name})
        return float(result['contract_size'])

    async def get_tradingview_chart_data(
        self,
        instrument_name: str,
        start_timestamp: int,
        end_timestamp: int,
        resolution: str = '60',
    ) -> TradingViewChart:
        """OHLCV candles. `resolution` is minutes ("1", "60", ...) or "1D"."""
        result = await self._public('/public/get_tradingview_chart_data', {
            'instrument_name': instrument_name,
            'start_timestamp': start_timestamp,
            'end_timestamp': end_timestamp,
            'resolution': resolution,
        })
        return TradingViewChart.from_dict(result)

    async def get_funding_rate_value(self, instrument_name: str, start_timestamp: int, end_timestamp: int) -> float:
        result = await self._public('/public/get_funding_rate_value', {
            'instrument_name': instrument_name,
            'start_timestamp': start_timestamp,
            'end_timestamp': end_timestamp,
        })
        return float(result)

    # -----------------------------------------------
    # Private endpoints: trading
    # -----------------------------------------------

    async def buy(self, request: OrderRequest) -> OrderResponse:
        return OrderResponse.from_dict(await self._private('/private/buy', request.to_params()))

    async def sell(self, request: OrderRequest) -> OrderResponse:
        return OrderResponse.from_dict(await self._private('/private/sell', request.to_params()))

    async def edit(self, request: EditOrderRequest) -> OrderResponse:
        return OrderResponse.from_dict(await self._private('/private/edit', request.to_params()))

    async def cancel(self, order_id: str) -> Order:
        return Order.from_dict(await self._private('/private/cancel', {'order_id': order_id}))

    async def cancel_all(self) -> int:
        """Cancel every open order. Returns the number cancelled."""
        return int(await self._private('/private/cancel_all'))

    async def get_open_orders(self, kind: str | None = None, type: str | None = None) -> list[Order]:
        result = await self._private('/private/get_open_orders', {'kind': kind, 'type': type})
        return [Order.from_dict(o) for o in result]

    async def get_order_state(self, order_id: str) -> Order:
        return Order.from_dict(await self._private('/private/get_order_state', {'order_id': order_id}))

    # -----------------------------------------------
    # Private endpoints: account and wallet
    # -----------------------------------------------

    async def get_account_summary(self, currency: str, extended: bool | None = None) -> AccountSummary:
        result = await self._private('/private/get_account_summary', {
            'currency': currency,
            'extended': extended,
        })
        return AccountSummary.from_dict(result)

    async def get_positions(self, currency: str | None = None, kind: str | None = None) -> list[Position]:
        result = await self._private('/private/get_positions', {'currency': currency, 'kind': kind})
        return [Position.from_dict(p) for p in result]

    async def get_subaccounts(self, with_portfolio: bool | None = None) -> list[Subaccount]:
        result = await self._private('/private/get_subaccounts', {'with_portfolio': with_portfolio})
        return [Subaccount.from_dict(s) for s in result]

    async def get_deposits(self, currency: str, count: int | None = None, offset: int | None = None) -> Page:
        result = await self._private('/private/get_deposits', {
            'currency': currency,
            'count': count,
            'offset': offset,
        })
        return Page(count=result.get('count', 0), data=[Deposit.from_dict(d) for d in result.get('data', [])])

    async def get_withdrawals(self, currency: str, count: int | None = None, offset: int | None = None) -> Page:
        result = await self._private('/private/get_withdrawals', {
            'currency': currency,
            'count': count,
            'offset': offset,
        })
        return Page(count=result.get('count', 0), data=[Withdrawal.from_dict(w) for w in result.get('data', [])])

    async def logout(self) -> None:
        """Invalidate the token server-side and drop it locally."""
        try:
            await self._private('/private/logout', {'invalidate_token': True})
        finally:
            await self._auth.invalidate()
