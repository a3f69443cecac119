"""OAuth 2.0 refresh-token grant as a token provider for XOAUTH2.

Only the refresh half of OAuth is implemented here: the interactive
authorization step that yields the first refresh token happens elsewhere.
"""

import asyncio
import json
import logging
import os
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, Optional

from mailwire.auth import AccessToken, token_expiry
from mailwire.errors import TokenRefreshError

logger = logging.getLogger("mailwire.oauth")


def _validate_token_url(token_url: str) -> None:
    """Validate that the token endpoint uses HTTPS.

    Rejects plain HTTP unless MAILWIRE_OAUTH_ALLOW_HTTP=true is set (for
    local development). Also rejects non-URL strings.

    Args:
        token_url: The OAuth token endpoint URL to validate.

    Raises:
        ValueError: If the URL is not HTTPS (and HTTP is not explicitly
            allowed) or if the string is not a valid HTTP(S) URL.
    """
    if token_url.startswith("https://"):
        return

    if token_url.startswith("http://"):
        allow_http = os.environ.get("MAILWIRE_OAUTH_ALLOW_HTTP", "").lower() == "true"
        if allow_http:
            logger.warning(
                "OAuth token URL uses HTTP (not HTTPS): %s, "
                "allowed by MAILWIRE_OAUTH_ALLOW_HTTP=true (development only)",
                token_url,
            )
            return
        raise ValueError(
            f"OAuth token URL must use HTTPS: {token_url}. "
            "Set MAILWIRE_OAUTH_ALLOW_HTTP=true for local development."
        )

    raise ValueError(f"OAuth token URL must be a valid HTTP(S) URL: {token_url}")


class MemoryTokenStore:
    """Keeps the current access token and refresh token in memory."""

    def __init__(
        self, refresh_token: Optional[str] = None, access_token: Optional[AccessToken] = None
    ) -> None:
        self.refresh_token = refresh_token
        self.access_token = access_token

    def load(self) -> Optional[AccessToken]:
        return self.access_token

    def save(self, token: AccessToken) -> None:
        self.access_token = token
        if token.refresh_token:
            self.refresh_token = token.refresh_token


class RefreshTokenProvider:
    """Token provider backed by an OAuth 2.0 token endpoint.

    ``get_access_token`` returns the stored token, fetching one first if
    none is stored. ``refresh_access_token`` always performs the
    refresh-token grant. Concurrent refreshes are collapsed into one
    request.

    Attributes:
        token_url: The provider's token endpoint.
        client_id: OAuth client identifier.
    """

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: Optional[str] = None,
        scope: Optional[str] = None,
        store: Optional[MemoryTokenStore] = None,
        timeout: float = 10.0,
    ) -> None:
        _validate_token_url(token_url)
        self.token_url = token_url
        self.client_id = client_id
        self._client_secret = client_secret
        self._scope = scope
        self._store = store or MemoryTokenStore()
        self._timeout = timeout
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"RefreshTokenProvider(token_url={self.token_url!r}, client_id={self.client_id!r})"

    async def get_access_token(self) -> AccessToken:
        current = self._store.load()
        if current is not None:
            return current
        return await self.refresh_access_token()

    async def refresh_access_token(self) -> AccessToken:
        """Run the refresh-token grant and store the result.

        Raises:
            TokenRefreshError: If no refresh token is available, the
                endpoint fails, or the reply is not a Bearer token.
        """
        before = self._store.load()
        async with self._lock:
            after = self._store.load()
            if after is not None and after is not before:
                # another caller refreshed while we waited
                return after
            refresh_token = self._store.refresh_token
            if not refresh_token:
                raise TokenRefreshError("No refresh token available")
            payload = await asyncio.to_thread(self._request, refresh_token)
            token = self._parse(payload, refresh_token)
            self._store.save(token)
            logger.info("Obtained new access token from %s", self.token_url)
            return token

    def _request(self, refresh_token: str) -> Dict[str, Any]:
        form: Dict[str, str] = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
        }
        if self._client_secret:
            form["client_secret"] = self._client_secret
        if self._scope:
            form["scope"] = self._scope

        request = urllib.request.Request(
            self.token_url,
            data=urllib.parse.urlencode(form).encode("ascii"),
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                return json.loads(response.read().decode())
        except urllib.error.HTTPError as e:
            logger.error("Token refresh rejected by %s: HTTP %s", self.token_url, e.code)
            raise TokenRefreshError(f"Token endpoint returned HTTP {e.code}") from e
        except (urllib.error.URLError, OSError, ValueError) as e:
            logger.error("Token refresh failed for %s: %s", self.token_url, e)
            raise TokenRefreshError(f"Token refresh failed: {e}") from e

    def _parse(self, payload: Dict[str, Any], refresh_token: str) -> AccessToken:
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise TokenRefreshError("Token endpoint reply has no access_token")
        token_type = str(payload.get("token_type", "Bearer"))
        if token_type.lower() != "bearer":
            raise TokenRefreshError(f"Unsupported token type: {token_type}")

        expires_in = payload.get("expires_in")
        if isinstance(expires_in, (int, float)) or (
            isinstance(expires_in, str) and expires_in.isdigit()
        ):
            expires_at: Optional[float] = time.time() + float(expires_in)
        else:
            expires_at = token_expiry(access_token)

        return AccessToken(
            token=access_token,
            expires_at=expires_at,
            refresh_token=payload.get("refresh_token") or refresh_token,
        )
