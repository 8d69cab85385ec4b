"""Tests for AuthManager token acquisition, renewal and signatures."""

import asyncio
import hashlib
import hmac
import time
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlsplit

import aiohttp
import pytest

from auth import AuthManager, generate_nonce, generate_signature, get_timestamp
from config import ApiCredentials, HttpConfig
from errors import AuthenticationFailed
from rate_limiter import RateLimitCategory, RateLimiter
from session import AuthToken, HttpSession
from helpers import envelope, make_mock_response


def _query(call) -> dict:
    """Query parameters of the URL passed to a mocked http.get call."""
    url = call.args[0]
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


@pytest.fixture
def session():
    return HttpSession()


@pytest.fixture
def limiter():
    return RateLimiter()


@pytest.fixture
def http():
    return MagicMock()


@pytest.fixture
def manager(config, session, limiter, http):
    return AuthManager(config, session, limiter, http=http)


class TestHelpers:

    def test_nonce_is_alphanumeric(self):
        nonce = generate_nonce()
        assert len(nonce) == 16
        assert nonce.isalnum()
        assert len(generate_nonce(32)) == 32

    def test_timestamp_is_milliseconds(self):
        ts = get_timestamp()
        assert abs(ts - time.time() * 1000) < 5000

    def test_signature_matches_hmac_sha256(self):
        expected = hmac.new(b"secret", b"1700000000000\nabc123\n", hashlib.sha256).hexdigest()
        assert generate_signature("secret", 1700000000000, "abc123") == expected

    def test_signature_includes_data(self):
        assert generate_signature("secret", 1, "n", "x") != generate_signature("secret", 1, "n")


class TestAuthenticate:

    @pytest.mark.asyncio
    async def test_client_credentials_query(self, manager, http, auth_result):
        http.get = MagicMock(return_value=make_mock_response(200, envelope(auth_result)))

        await manager.authenticate()

        call = http.get.call_args
        assert call.args[0].startswith("https://test.deribit.com/api/v2/public/auth?")
        assert _query(call) == {
            "grant_type": "client_credentials",
            "client_id": "test_client",
            "client_secret": "test_secret",
        }

    @pytest.mark.asyncio
    async def test_token_is_stored_in_session(self, manager, session, http, auth_result):
        http.get = MagicMock(return_value=make_mock_response(200, envelope(auth_result)))

        token = await manager.authenticate()

        assert token.access_token == "access_123"
        assert token.refresh_token == "refresh_456"
        assert token.expires_in == 900
        assert token.scope == "connection mainaccount"
        assert await session.auth_token() == token
        assert await session.authorization_header() == "bearer access_123"

    @pytest.mark.asyncio
    async def test_uses_auth_rate_limit_category(self, manager, limiter, http, auth_result):
        http.get = MagicMock(return_value=make_mock_response(200, envelope(auth_result)))
        await manager.authenticate()
        assert await limiter.get_tokens(RateLimitCategory.AUTH) == 49

    @pytest.mark.asyncio
    async def test_json_rpc_error_raises(self, manager, session, http):
        error = {"code": 13004, "message": "invalid_credentials"}
        http.get = MagicMock(return_value=make_mock_response(400, envelope(error=error)))

        with pytest.raises(AuthenticationFailed, match="invalid_credentials"):
            await manager.authenticate()
        assert not await session.is_authenticated()

    @pytest.mark.asyncio
    async def test_http_error_without_body_raises(self, manager, http):
        http.get = MagicMock(return_value=make_mock_response(502, text="Bad Gateway"))
        with pytest.raises(AuthenticationFailed, match="Bad Gateway"):
            await manager.authenticate()

    @pytest.mark.asyncio
    async def test_missing_result_raises(self, manager, http):
        http.get = MagicMock(return_value=make_mock_response(200, {"jsonrpc": "2.0", "id": 1}))
        with pytest.raises(AuthenticationFailed, match="No token"):
            await manager.authenticate()

    @pytest.mark.asyncio
    async def test_result_without_access_token_raises(self, manager, http):
        http.get = MagicMock(return_value=make_mock_response(200, envelope({"expires_in": 900})))
        with pytest.raises(AuthenticationFailed, match="Malformed"):
            await manager.authenticate()

    @pytest.mark.asyncio
    async def test_network_error_raises(self, manager, http):
        http.get = MagicMock(side_effect=aiohttp.ClientConnectionError("refused"))
        with pytest.raises(AuthenticationFailed, match="Token request failed"):
            await manager.authenticate()

    @pytest.mark.asyncio
    async def test_no_credentials(self, session, limiter, http):
        manager = AuthManager(HttpConfig(), session, limiter, http=http)
        with pytest.raises(AuthenticationFailed, match="No credentials"):
            await manager.authenticate()
        http.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_secret_rejected(self, session, limiter, http):
        config = HttpConfig(credentials=ApiCredentials(client_id="id", client_secret=""))
        manager = AuthManager(config, session, limiter, http=http)
        with pytest.raises(AuthenticationFailed, match="Invalid credentials"):
            await manager.authenticate()
        http.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_without_http_session(self, config, session, limiter):
        manager = AuthManager(config, session, limiter)
        with pytest.raises(RuntimeError):
            await manager.authenticate()

    @pytest.mark.asyncio
    async def test_client_signature_query(self, session, limiter, http, auth_result):
        creds = ApiCredentials(client_id="test_client", client_secret="test_secret", grant_type="client_signature")
        manager = AuthManager(HttpConfig(credentials=creds), session, limiter, http=http)
        http.get = MagicMock(return_value=make_mock_response(200, envelope(auth_result)))

        await manager.authenticate()

        query = _query(http.get.call_args)
        assert query["grant_type"] == "client_signature"
        assert query["client_id"] == "test_client"
        assert "client_secret" not in query
        expected = generate_signature("test_secret", int(query["timestamp"]), query["nonce"])
        assert query["signature"] == expected


class TestEnsureToken:

    @pytest.mark.asyncio
    async def test_valid_token_is_reused(self, manager, session, http, sample_token):
        await session.set_auth_token(sample_token)
        http.get = MagicMock()

        assert await manager.ensure_token() is sample_token
        http.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_token_without_expiry_is_reused(self, session, limiter, http):
        manager = AuthManager(HttpConfig(), session, limiter, http=http)
        token = AuthToken(access_token="manual")
        await session.set_auth_token(token)

        assert await manager.ensure_token() is token
        http.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_authenticates_when_missing(self, manager, http, auth_result):
        http.get = MagicMock(return_value=make_mock_response(200, envelope(auth_result)))
        token = await manager.ensure_token()
        assert token.access_token == "access_123"

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_exchange(self, manager, http, auth_result):
        http.get = MagicMock(return_value=make_mock_response(200, envelope(auth_result)))

        tokens = await asyncio.gather(*(manager.ensure_token() for _ in range(10)))

        assert http.get.call_count == 1
        assert len({t.access_token for t in tokens}) == 1

    @pytest.mark.asyncio
    async def test_expiring_token_is_refreshed(self, manager, session, http, auth_result):
        expiring = AuthToken(
            access_token="old", expires_in=900, refresh_token="refresh_old",
            issued_at=time.time() - 870,
        )
        await session.set_auth_token(expiring)
        http.get = MagicMock(return_value=make_mock_response(200, envelope(auth_result)))

        token = await manager.ensure_token()

        query = _query(http.get.call_args)
        assert query["grant_type"] == "refresh_token"
        assert query["refresh_token"] == "refresh_old"
        assert token.access_token == "access_123"

    @pytest.mark.asyncio
    async def test_failed_refresh_falls_back_to_credentials(self, manager, session, http, auth_result):
        expired = AuthToken(
            access_token="old", expires_in=10, refresh_token="refresh_old",
            issued_at=time.time() - 100,
        )
        await session.set_auth_token(expired)
        error = {"code": 13004, "message": "invalid_token"}
        http.get = MagicMock(side_effect=[
            make_mock_response(400, envelope(error=error)),
            make_mock_response(200, envelope(auth_result)),
        ])

        token = await manager.ensure_token()

        assert http.get.call_count == 2
        assert _query(http.get.call_args_list[0])["grant_type"] == "refresh_token"
        assert _query(http.get.call_args_list[1])["grant_type"] == "client_credentials"
        assert token.access_token == "access_123"

    @pytest.mark.asyncio
    async def test_expired_token_without_refresh_reauthenticates(self, manager, session, http, auth_result):
        expired = AuthToken(access_token="old", expires_in=10, issued_at=time.time() - 100)
        await session.set_auth_token(expired)
        http.get = MagicMock(return_value=make_mock_response(200, envelope(auth_result)))

        await manager.ensure_token()

        assert _query(http.get.call_args)["grant_type"] == "client_credentials"


class TestReauthenticate:

    @pytest.mark.asyncio
    async def test_replaces_rejected_token(self, manager, session, http, sample_token, auth_result):
        await session.set_auth_token(sample_token)
        http.get = MagicMock(return_value=make_mock_response(200, envelope(auth_result)))

        token = await manager.reauthenticate(sample_token)

        assert token.access_token == "access_123"
        assert _query(http.get.call_args)["grant_type"] == "client_credentials"

    @pytest.mark.asyncio
    async def test_skips_when_already_replaced(self, manager, session, http, sample_token):
        newer = AuthToken(access_token="newer", expires_in=3600)
        await session.set_auth_token(newer)
        http.get = MagicMock()

        assert await manager.reauthenticate(sample_token) is newer
        http.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_leaves_session_unauthenticated(self, manager, session, http, sample_token):
        await session.set_auth_token(sample_token)
        http.get = MagicMock(return_value=make_mock_response(401, envelope(error={"code": 13004, "message": "no"})))

        with pytest.raises(AuthenticationFailed):
            await manager.reauthenticate(sample_token)
        assert not await session.is_authenticated()


class TestRefreshAndInvalidate:

    @pytest.mark.asyncio
    async def test_clears_session(self, manager, session, sample_token):
        await session.set_auth_token(sample_token)
        await manager.invalidate()
        assert not await session.is_authenticated()

    @pytest.mark.asyncio
    async def test_refresh_without_token_authenticates(self, manager, http, auth_result):
        http.get = MagicMock(return_value=make_mock_response(200, envelope(auth_result)))
        token = await manager.refresh()
        assert token.access_token == "access_123"
        assert _query(http.get.call_args)["grant_type"] == "client_credentials"
