"""Tests for the OAuth refresh-token provider."""

import asyncio
import io
import json
import time
import urllib.error
import urllib.parse
from unittest import mock

import pytest

from mailwire.auth import AccessToken
from mailwire.errors import TokenRefreshError
from mailwire.oauth import MemoryTokenStore, RefreshTokenProvider

TOKEN_URL = "https://oauth2.example.com/token"


def token_response(payload):
    response = mock.MagicMock()
    response.read.return_value = json.dumps(payload).encode()
    response.__enter__.return_value = response
    response.__exit__.return_value = False
    return response


@pytest.fixture
def urlopen():
    with mock.patch("mailwire.oauth.urllib.request.urlopen") as patched:
        patched.return_value = token_response(
            {"access_token": "new-access", "token_type": "Bearer", "expires_in": 3599}
        )
        yield patched


def sent_form(urlopen_mock, call=0):
    request = urlopen_mock.call_args_list[call].args[0]
    return dict(urllib.parse.parse_qsl(request.data.decode()))


class TestTokenUrl:
    def test_https_required(self):
        with pytest.raises(ValueError, match="HTTPS"):
            RefreshTokenProvider("http://localhost/token", "client")

    def test_http_allowed_in_development(self, monkeypatch):
        monkeypatch.setenv("MAILWIRE_OAUTH_ALLOW_HTTP", "true")
        provider = RefreshTokenProvider("http://localhost:8080/token", "client")
        assert provider.token_url == "http://localhost:8080/token"

    def test_not_a_url(self):
        with pytest.raises(ValueError, match="valid HTTP"):
            RefreshTokenProvider("oauth2.example.com/token", "client")


class TestRefreshTokenProvider:
    @pytest.mark.asyncio
    async def test_refresh_posts_form(self, urlopen):
        """Test the refresh-token grant request and parsed reply."""
        store = MemoryTokenStore(refresh_token="refresh-1")
        provider = RefreshTokenProvider(
            TOKEN_URL, "client-id", client_secret="s3cret", scope="https://mail.example.com/", store=store
        )

        before = time.time()
        token = await provider.refresh_access_token()

        assert token.token == "new-access"
        assert before + 3500 < token.expires_at < time.time() + 3600
        assert sent_form(urlopen) == {
            "grant_type": "refresh_token",
            "refresh_token": "refresh-1",
            "client_id": "client-id",
            "client_secret": "s3cret",
            "scope": "https://mail.example.com/",
        }
        request = urlopen.call_args.args[0]
        assert request.get_method() == "POST"
        assert request.full_url == TOKEN_URL
        assert store.load() is token

    @pytest.mark.asyncio
    async def test_get_returns_stored_token(self, urlopen):
        current = AccessToken("cached", time.time() + 600)
        provider = RefreshTokenProvider(
            TOKEN_URL, "client-id", store=MemoryTokenStore("refresh-1", current)
        )
        assert await provider.get_access_token() is current
        urlopen.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_without_token_refreshes(self, urlopen):
        provider = RefreshTokenProvider(TOKEN_URL, "client-id", store=MemoryTokenStore("refresh-1"))
        assert (await provider.get_access_token()).token == "new-access"
        assert urlopen.call_count == 1

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_is_kept(self, urlopen):
        urlopen.return_value = token_response(
            {"access_token": "a2", "token_type": "bearer", "refresh_token": "refresh-2"}
        )
        store = MemoryTokenStore("refresh-1")
        provider = RefreshTokenProvider(TOKEN_URL, "client-id", store=store)

        await provider.refresh_access_token()
        await provider.refresh_access_token()

        assert store.refresh_token == "refresh-2"
        assert sent_form(urlopen, 1)["refresh_token"] == "refresh-2"

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_collapse(self, urlopen):
        """Test that callers racing to refresh share one token request."""
        provider = RefreshTokenProvider(TOKEN_URL, "client-id", store=MemoryTokenStore("refresh-1"))

        tokens = await asyncio.gather(*(provider.refresh_access_token() for _ in range(3)))

        assert urlopen.call_count == 1
        assert {t.token for t in tokens} == {"new-access"}

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, urlopen):
        provider = RefreshTokenProvider(TOKEN_URL, "client-id")
        with pytest.raises(TokenRefreshError, match="No refresh token"):
            await provider.refresh_access_token()
        urlopen.assert_not_called()

    @pytest.mark.asyncio
    async def test_http_error(self, urlopen):
        urlopen.side_effect = urllib.error.HTTPError(
            TOKEN_URL, 400, "Bad Request", {}, io.BytesIO(b'{"error": "invalid_grant"}')
        )
        provider = RefreshTokenProvider(TOKEN_URL, "client-id", store=MemoryTokenStore("r"))
        with pytest.raises(TokenRefreshError, match="HTTP 400"):
            await provider.refresh_access_token()

    @pytest.mark.asyncio
    async def test_network_error(self, urlopen):
        urlopen.side_effect = urllib.error.URLError("connection refused")
        provider = RefreshTokenProvider(TOKEN_URL, "client-id", store=MemoryTokenStore("r"))
        with pytest.raises(TokenRefreshError):
            await provider.refresh_access_token()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload, message",
        [
            ({"token_type": "Bearer"}, "no access_token"),
            ({"access_token": "a", "token_type": "mac"}, "Unsupported token type"),
        ],
    )
    async def test_bad_reply(self, urlopen, payload, message):
        urlopen.return_value = token_response(payload)
        provider = RefreshTokenProvider(TOKEN_URL, "client-id", store=MemoryTokenStore("r"))
        with pytest.raises(TokenRefreshError, match=message):
            await provider.refresh_access_token()

    def test_repr_hides_secret(self):
        provider = RefreshTokenProvider(TOKEN_URL, "client-id", client_secret="s3cret")
        assert "s3cret" not in repr(provider)
