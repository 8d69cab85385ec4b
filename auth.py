"""
OAuth2 token acquisition and renewal for the Deribit API.

Deribit issues tokens from GET /public/auth with the grant in the query
string and the token wrapped in a JSON-RPC envelope. Request bodies are
prepared and token responses validated with oauthlib; the HTTP call itself
goes through the client's aiohttp session and rate limiter.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import secrets
import string
import time

import aiohttp
from oauthlib.oauth2 import BackendApplicationClient, OAuth2Error
from oauthlib.oauth2.rfc6749.parameters import prepare_token_request

from config import HttpConfig
from errors import AuthenticationFailed
from rate_limiter import RateLimiter, categorize_endpoint
from session import AuthToken, HttpSession

logger = logging.getLogger(__name__)

AUTH_PATH = '/public/auth'
NONCE_ALPHABET = string.ascii_letters + string.digits


def generate_nonce(length: int = 16) -> str:
    """Random alphanumeric nonce for client_signature auth."""
    return ''.join(secrets.choice(NONCE_ALPHABET) for _ in range(length))


def get_timestamp() -> int:
    """Current time in milliseconds."""
    return int(time.time() * 1000)


def generate_signature(client_secret: str, timestamp: int, nonce: str, data: str = '') -> str:
    """HMAC-SHA256 hex signature of "{timestamp}\\n{nonce}\\n{data}"."""
    payload = f"{timestamp}\n{nonce}\n{data}"
    return hmac.new(client_secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


class AuthManager:
    """Obtains, renews and invalidates the token held in an HttpSession.

    Renewal is single-flight: concurrent callers that find the token missing
    or about to expire wait on one lock, and only the first performs the
    exchange. The rest pick up the token it stored.

    `http` is the default aiohttp session for the token exchange. Each call
    can pass its own, which is how DeribitClient handles with separate
    pools share one manager.
    """

    def __init__(
        self,
        config: HttpConfig,
        session: HttpSession,
        rate_limiter: RateLimiter,
        http: aiohttp.ClientSession | None = None,
    ):
        self._config = config
        self._session = session
        self._rate_limiter = rate_limiter
        self._margin = config.token_refresh_margin
        self._lock = asyncio.Lock()
        self.http = http

    @property
    def session(self) -> HttpSession:
        return self._session

    async def ensure_token(self, http: aiohttp.ClientSession | None = None) -> AuthToken:
        """Return a usable token, authenticating or refreshing if needed."""
        token = await self._session.auth_token()
        if token is not None and not token.is_expired(self._margin):
            return token

        async with self._lock:
            token = await self._session.auth_token()
            if token is not None and not token.is_expired(self._margin):
                return token
            if token is not None:
                logger.info("Token expired or about to expire, renewing...")
            return await self._renew(token, http)

    async def reauthenticate(
        self,
        stale: AuthToken | None,
        http: aiohttp.ClientSession | None = None,
    ) -> AuthToken:
        """Replace a token the server rejected with 401/403.

        If another task already replaced `stale`, its token is returned
        instead of authenticating again.
        """
        async with self._lock:
            current = await self._session.auth_token()
            if current is not None and current != stale and not current.is_expired(self._margin):
                return current
            logger.warning("Token rejected by server, re-authenticating")
            await self._session.clear_auth_token()
            return await self._authenticate(http)

    async def authenticate(self, http: aiohttp.ClientSession | None = None) -> AuthToken:
        """Run a fresh credentials grant and store the resulting token."""
        async with self._lock:
            return await self._authenticate(http)

    async def refresh(self, http: aiohttp.ClientSession | None = None) -> AuthToken:
        """Renew using the held refresh token, falling back to a fresh grant."""
        async with self._lock:
            return await self._renew(await self._session.auth_token(), http)

    async def invalidate(self) -> None:
        await self._session.clear_auth_token()

    async def _renew(self, token: AuthToken | None, http) -> AuthToken:
        if token is not None and token.refresh_token:
            try:
                return await self._refresh(token.refresh_token, http)
            except AuthenticationFailed as e:
                logger.warning(f"Refresh failed, falling back to credentials grant: {e}")
        return await self._authenticate(http)

    async def _authenticate(self, http) -> AuthToken:
        creds = self._config.credentials
        if creds is None:
            raise AuthenticationFailed("No credentials configured")
        if not creds.is_valid():
            raise AuthenticationFailed("Invalid credentials for OAuth2")

        if creds.grant_type == 'client_signature':
            logger.info("Authenticating with client signature...")
            timestamp = get_timestamp()
            nonce = generate_nonce()
            query = prepare_token_request(
                'client_signature',
                client_id=creds.client_id,
                timestamp=str(timestamp),
                nonce=nonce,
                signature=generate_signature(creds.client_secret, timestamp, nonce),
            )
        else:
            logger.info("Authenticating with client credentials...")
            query = BackendApplicationClient(client_id=creds.client_id).prepare_request_body(
                include_client_id=True,
                client_secret=creds.client_secret,
            )
        return await self._exchange(query, http)

    async def _refresh(self, refresh_token: str, http) -> AuthToken:
        logger.info("Refreshing access token...")
        client_id = self._config.credentials.client_id if self._config.credentials else None
        query = BackendApplicationClient(client_id=client_id).prepare_refresh_body(
            refresh_token=refresh_token,
        )
        return await self._exchange(query, http)

    async def _exchange(self, query: str, http=None) -> AuthToken:
        """Send a grant to /public/auth, validate and store the token."""
        if http is None:
            http = self.http
        if http is None:
            raise RuntimeError("AuthManager has no HTTP session; use DeribitClient as a context manager")

        await self._rate_limiter.wait_for_permission(categorize_endpoint(AUTH_PATH))
        url = f"{self._config.base_url}{AUTH_PATH}?{query}"
        requested_at = time.time()

        try:
            async with http.get(url, headers={'Content-Type': 'application/json'}) as response:
                status = response.status
                text = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Token request failed: {e!r}")
            raise AuthenticationFailed(f"Token request failed: {e!r}") from e

        try:
            body = json.loads(text) if text else {}
        except ValueError:
            body = {}

        error = body.get('error') if isinstance(body, dict) else None
        if status >= 400 or error:
            reason = error.get('message') if isinstance(error, dict) else (text or f'HTTP {status}')
            logger.error(f"OAuth2 authentication failed (HTTP {status}): {reason}")
            raise AuthenticationFailed(f"OAuth2 authentication failed: {reason}")

        result = body.get('result') if isinstance(body, dict) else None
        if not isinstance(result, dict):
            raise AuthenticationFailed("No token in authentication response")

        try:
            parsed = BackendApplicationClient(client_id=None).parse_request_body_response(json.dumps(result))
        except OAuth2Error as e:
            raise AuthenticationFailed(f"Malformed token response: {e.description or e.error}") from e

        scope = parsed.get('scope', '')
        token = AuthToken.from_dict(
            {**parsed, 'scope': ' '.join(scope) if isinstance(scope, list) else scope},
            issued_at=requested_at,
        )
        await self._session.set_auth_token(token)
        logger.info(f"Authenticated, token expires in {token.expires_in}s (scope: {token.scope})")
        return token
