"""Authentication methods and bearer-token handling for XOAUTH2.

Three SASL mechanisms are supported by both clients: PLAIN, LOGIN and
XOAUTH2. XOAUTH2 takes its bearer token either from a static string or
from a :class:`TokenProvider`; with a provider, tokens close to expiry are
refreshed before use, and a command rejected for authentication reasons
is retried exactly once after a forced refresh.
"""

import base64
import logging
import time
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Optional,
    Protocol,
    TypeVar,
    Union,
    runtime_checkable,
)

import jwt

from mailwire.errors import is_auth_failure

logger = logging.getLogger("mailwire.auth")

DEFAULT_REFRESH_SKEW = 60.0

T = TypeVar("T")


@dataclass(frozen=True)
class AccessToken:
    """A bearer token as handed out by a token provider.

    Attributes:
        token: The access token string.
        expires_at: Expiry as a Unix timestamp, if known.
        refresh_token: Refresh token, if the provider exposes it.
    """

    token: str
    expires_at: Optional[float] = None
    refresh_token: Optional[str] = None

    def expires_within(self, seconds: float, now: Optional[float] = None) -> bool:
        """Return True if the token expires in *seconds* or less."""
        if self.expires_at is None:
            return False
        current = time.time() if now is None else now
        return self.expires_at - current <= seconds


@runtime_checkable
class TokenProvider(Protocol):
    """Source of OAuth bearer tokens.

    ``get_access_token`` returns the current token (possibly cached);
    ``refresh_access_token`` forces a new one to be obtained.
    """

    async def get_access_token(self) -> AccessToken: ...

    async def refresh_access_token(self) -> AccessToken: ...


@dataclass(frozen=True)
class PlainAuth:
    """SASL PLAIN with a username and password."""

    username: str
    password: str

    def __repr__(self) -> str:
        return f"PlainAuth(username={self.username!r})"


@dataclass(frozen=True)
class LoginAuth:
    """Username/password login (IMAP LOGIN, SMTP AUTH LOGIN)."""

    username: str
    password: str

    def __repr__(self) -> str:
        return f"LoginAuth(username={self.username!r})"


@dataclass(frozen=True)
class XOAuth2Auth:
    """SASL XOAUTH2 with either a static access token or a token provider."""

    username: str
    access_token: Optional[str] = None
    provider: Optional[TokenProvider] = None

    def __post_init__(self) -> None:
        if (self.access_token is None) == (self.provider is None):
            raise ValueError(
                "XOAUTH2 needs exactly one bearer source: access_token or provider"
            )

    @property
    def refreshable(self) -> bool:
        return self.provider is not None

    def __repr__(self) -> str:
        source = "provider" if self.provider is not None else "static token"
        return f"XOAuth2Auth(username={self.username!r}, source={source})"


AuthMethod = Union[PlainAuth, LoginAuth, XOAuth2Auth]


def mechanism_name(method: AuthMethod) -> str:
    """Return the SASL mechanism name for *method*."""
    if isinstance(method, PlainAuth):
        return "PLAIN"
    if isinstance(method, LoginAuth):
        return "LOGIN"
    if isinstance(method, XOAuth2Auth):
        return "XOAUTH2"
    raise TypeError(f"Unsupported auth method: {type(method).__name__}")


def b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def plain_payload(username: str, password: str) -> str:
    """Base64 SASL PLAIN initial response: ``\\0user\\0pass``."""
    return b64(f"\0{username}\0{password}")


def xoauth2_payload(username: str, token: str) -> str:
    """Base64 XOAUTH2 initial response."""
    return b64(f"user={username}\x01auth=Bearer {token}\x01\x01")


def token_expiry(token: str) -> Optional[float]:
    """Read the ``exp`` claim of a JWT-shaped access token.

    The signature is not verified: the token is only inspected to learn
    when to refresh it, never trusted. Opaque tokens yield None.
    """
    try:
        claims: Dict[str, Any] = jwt.decode(
            token, options={"verify_signature": False, "verify_exp": False}
        )
    except jwt.InvalidTokenError:
        return None
    exp = claims.get("exp")
    if isinstance(exp, (int, float)):
        return float(exp)
    return None


class BearerTokenSource:
    """Resolves XOAUTH2 tokens and applies the refresh-and-retry policy.

    Args:
        method: The configured auth method. Only XOAUTH2 methods yield
            tokens; for other methods :meth:`run_with_refresh` simply runs
            the operation.
        refresh_skew: Seconds before expiry at which a provider token is
            proactively refreshed.
        auto_refresh: Whether proactive refresh is enabled. Defaults to
            True when a provider is configured.
        retry_on_auth_failure: Whether an auth-classified failure triggers
            one forced refresh and one retry.
    """

    def __init__(
        self,
        method: Optional[AuthMethod],
        refresh_skew: float = DEFAULT_REFRESH_SKEW,
        auto_refresh: Optional[bool] = None,
        retry_on_auth_failure: bool = True,
    ) -> None:
        self._method = method
        self._refresh_skew = refresh_skew
        self._retry = retry_on_auth_failure
        provider = self.provider
        self._auto_refresh = (provider is not None) if auto_refresh is None else auto_refresh

    @property
    def provider(self) -> Optional[TokenProvider]:
        if isinstance(self._method, XOAuth2Auth):
            return self._method.provider
        return None

    @property
    def can_refresh(self) -> bool:
        return self.provider is not None

    async def token(self) -> str:
        """Return a bearer token, refreshing it first if it is about to expire."""
        method = self._method
        if not isinstance(method, XOAuth2Auth):
            raise TypeError("Bearer tokens are only available for XOAUTH2")

        if method.provider is None:
            if not method.access_token:
                raise ValueError("XOAUTH2: missing access token")
            return method.access_token

        current = await method.provider.get_access_token()
        if current.expires_at is None:
            current = AccessToken(
                current.token, token_expiry(current.token), current.refresh_token
            )
        if self._auto_refresh and current.expires_within(self._refresh_skew):
            logger.info("Access token expires within %ss, refreshing", self._refresh_skew)
            current = await method.provider.refresh_access_token()
        return current.token

    async def run_with_refresh(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run *operation*; on an auth failure refresh once and retry once.

        Only applies when the method is XOAUTH2 with a provider and retries
        are enabled. A failure of the retry propagates unchanged.
        """
        try:
            return await operation()
        except Exception as e:
            provider = self.provider
            if not (self._retry and provider is not None and is_auth_failure(e)):
                raise
            logger.warning("Authentication failure (%s), refreshing token and retrying once", e)
            await provider.refresh_access_token()
        return await operation()
