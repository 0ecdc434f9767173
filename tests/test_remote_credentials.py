"""
Unit tests for tavern.register.remote.credentials

Tests cover session cookie extraction from Set-Cookie headers and the
administrator handshake against a fake remote account service.
"""

import asyncio
from unittest.mock import AsyncMock, Mock, patch

from aiohttp import ClientSession
import pytest

from tavern.register.errors import (
    AdminLoginFailed,
    AdminSessionInvalid,
    MissingSessionCredential,
    NotAnAdministrator,
    RemoteServiceUnreachable,
)
from tavern.register.remote.credentials import (
    ANTI_FORGERY_DISABLED,
    CredentialExchange,
    extract_session_credential,
    is_session_token,
)
from tests.test_helpers import SESSION_COOKIE


def make_exchange(account_service, http_session, metrics_client, **kwargs):
    return CredentialExchange(
        http_session,
        metrics_client,
        base_url=kwargs.pop("base_url", account_service.base_url),
        admin_handle=kwargs.pop("admin_handle", account_service.admin_handle),
        admin_password=kwargs.pop("admin_password", account_service.admin_password),
        timeout=kwargs.pop("timeout", 5.0),
    )


class TestExtractSessionCredential:
    def test_keeps_session_cookies_in_order(self):
        headers = [
            "session-abc=one; Path=/; HttpOnly",
            "theme=dark; Path=/",
            "session-abc.sig=two; Path=/",
        ]
        assert extract_session_credential(headers) == "session-abc=one; session-abc.sig=two"

    def test_drops_duplicates(self):
        headers = ["session-abc=one; Path=/", "session-abc=one; HttpOnly"]
        assert extract_session_credential(headers) == "session-abc=one"

    def test_no_session_cookie(self):
        assert extract_session_credential(["theme=dark", "lang=en; Path=/"]) is None

    def test_empty_input(self):
        assert extract_session_credential([]) is None
        assert extract_session_credential(["", "  ;Path=/"]) is None

    def test_ignores_non_string_values(self):
        assert extract_session_credential([None, 42, "session-x=1"]) == "session-x=1"  # type: ignore

    @pytest.mark.parametrize(
        "token,expected",
        [
            ("session-abc=1", True),
            ("Session-ABC=1", True),
            ("cookie.sig=1", True),
            ("sessionid=1", False),
            ("theme=session-dark", False),
        ],
    )
    def test_is_session_token(self, token, expected):
        assert is_session_token(token) is expected


class TestFetchAntiForgeryToken:
    async def test_fresh_token_and_session(self, account_service, http_session, metrics_client):
        exchange = make_exchange(account_service, http_session, metrics_client)

        session = await exchange.fetch_anti_forgery_token()

        assert session.anti_forgery_token
        assert session.credential is not None
        assert session.credential.startswith(f"{SESSION_COOKIE}=")
        assert "theme=" not in session.credential

    async def test_existing_session_is_forwarded(self, account_service, http_session, metrics_client):
        exchange = make_exchange(account_service, http_session, metrics_client)
        first = await exchange.fetch_anti_forgery_token()

        second = await exchange.fetch_anti_forgery_token(first.credential)

        # No new cookie is set for a known session, so the caller's is kept.
        assert second.credential == first.credential
        assert second.anti_forgery_token != first.anti_forgery_token

    async def test_disabled_token_without_session(self, account_service, http_session, metrics_client):
        account_service.anti_forgery_disabled = True
        exchange = make_exchange(account_service, http_session, metrics_client)

        session = await exchange.fetch_anti_forgery_token()

        assert session.credential is None
        assert session.anti_forgery_token == ANTI_FORGERY_DISABLED

    async def test_token_without_session_fails(self, http_session, metrics_client):
        exchange = CredentialExchange(
            http_session, metrics_client, "http://remote.invalid", "admin", "pw"
        )
        response = Mock()
        response.ok = True
        response.body_get = lambda key, default=None: "abc123"
        response.set_cookie_headers = lambda: []

        with patch.object(exchange, "send", AsyncMock(return_value=response)):
            with pytest.raises(MissingSessionCredential):
                await exchange.fetch_anti_forgery_token()


class TestAuthenticateAsAdmin:
    async def test_success(self, account_service, http_session, metrics_client):
        exchange = make_exchange(account_service, http_session, metrics_client)

        session = await exchange.authenticate_as_admin()

        assert session.credential is not None
        session_id = session.credential.split(";")[0].split("=", 1)[1]
        assert account_service.sessions[session_id]["handle"] == "admin"
        assert account_service.login_count == 1

    async def test_wrong_password(self, account_service, http_session, metrics_client):
        exchange = make_exchange(
            account_service, http_session, metrics_client, admin_password="wrong"
        )

        with pytest.raises(AdminLoginFailed) as exc_info:
            await exchange.authenticate_as_admin()

        assert exc_info.value.status == 401
        assert "Invalid credentials" in exc_info.value.body
        assert "wrong" not in str(exc_info.value)

    async def test_login_without_new_session(self, account_service, http_session, metrics_client):
        account_service.login_sets_cookie = False
        exchange = make_exchange(account_service, http_session, metrics_client)

        with pytest.raises(MissingSessionCredential):
            await exchange.authenticate_as_admin()

    async def test_not_an_administrator(self, account_service, http_session, metrics_client):
        account_service.is_admin = False
        exchange = make_exchange(account_service, http_session, metrics_client)

        with pytest.raises(NotAnAdministrator):
            await exchange.authenticate_as_admin()

    async def test_session_rejected(self, account_service, http_session, metrics_client):
        exchange = make_exchange(account_service, http_session, metrics_client)

        with pytest.raises(AdminSessionInvalid) as exc_info:
            await exchange.assert_admin(f"{SESSION_COOKIE}=unknown")

        assert exc_info.value.status == 401

    async def test_unreachable(self, http_session, metrics_client):
        exchange = CredentialExchange(
            http_session, metrics_client, "http://127.0.0.1:9", "admin", "pw", timeout=2.0
        )

        with pytest.raises(RemoteServiceUnreachable):
            await exchange.authenticate_as_admin()

    async def test_timeout(self, metrics_client):
        mock_session = Mock(spec=ClientSession)
        mock_session.request = AsyncMock(side_effect=asyncio.TimeoutError())
        exchange = CredentialExchange(
            mock_session, metrics_client, "http://remote.invalid", "admin", "pw"
        )

        with pytest.raises(RemoteServiceUnreachable):
            await exchange.fetch_anti_forgery_token()

        exception_names = [
            name
            for name, _, _ in metrics_client.increments
            if name == "register.client.remote.exception"
        ]
        assert exception_names == ["register.client.remote.exception"]

    async def test_records_client_metrics(self, account_service, http_session, metrics_client):
        exchange = make_exchange(account_service, http_session, metrics_client)

        await exchange.authenticate_as_admin()

        counts = [
            tags
            for name, _, tags in metrics_client.increments
            if name == "register.client.remote.count"
        ]
        assert [tags["path"] for tags in counts] == [
            "/csrf-token",
            "/api/users/login",
            "/api/users/me",
        ]
        assert all(tags["status"] == 200 for tags in counts)
