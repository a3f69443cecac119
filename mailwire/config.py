"""Configuration handling for the IMAP and SMTP clients."""

import logging
import os
import ssl
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

import yaml

from mailwire.auth import (
    DEFAULT_REFRESH_SKEW,
    AccessToken,
    AuthMethod,
    LoginAuth,
    PlainAuth,
    XOAuth2Auth,
    token_expiry,
)
from mailwire.oauth import MemoryTokenStore, RefreshTokenProvider

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 30.0


def _maybe_load_dotenv() -> None:
    """Load .env file only when explicitly opted in via MAILWIRE_LOAD_DOTENV=true.

    Unconditional .env loading is a security risk: an attacker with write
    access to the working directory can plant a malicious .env file to
    override credentials or redirect connections.
    """
    if os.environ.get("MAILWIRE_LOAD_DOTENV", "").lower() == "true":
        from dotenv import load_dotenv

        load_dotenv()
        logger.warning(
            ".env file loaded (MAILWIRE_LOAD_DOTENV=true) — "
            "disable in production for security"
        )


def create_ssl_context(ca_bundle: Optional[str] = None) -> ssl.SSLContext:
    """Create an SSL context with certificate verification and optional custom CA bundle.

    Always creates a context with certificate verification enabled.
    Never silently disables verification.

    Args:
        ca_bundle: Path to a custom CA bundle file (PEM format).
            If None, uses the system default certificate store.

    Returns:
        Configured SSL context with verification enabled.

    Raises:
        FileNotFoundError: If the specified CA bundle file does not exist.
        ssl.SSLError: If the CA bundle file cannot be loaded.
    """
    context = ssl.create_default_context()
    if ca_bundle:
        bundle_path = Path(ca_bundle)
        if not bundle_path.exists():
            raise FileNotFoundError(
                f"TLS CA bundle file not found: {ca_bundle}"
            )
        context.load_verify_locations(ca_bundle)
        logger.info("Loaded custom CA bundle: %s", ca_bundle)
    return context


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def auth_from_dict(
    data: Mapping[str, Any], password_env: str, token_env: str, fallback_env: str = ""
) -> AuthMethod:
    """Build an auth method from a config mapping.

    Secrets never come from the mapping itself: passwords are read from
    *password_env* and static XOAUTH2 tokens from *token_env* (each falling
    back to the ``fallback_env`` prefix variant when given).

    Raises:
        ValueError: If the method is unknown or its secret is missing.
    """
    if data.get("password"):
        logger.warning(
            "Ignoring 'password' in config — use %s environment variable instead",
            password_env,
        )

    mechanism = str(data.get("method", "plain")).lower()
    username = data.get("username")
    if not username:
        raise ValueError("Missing required configuration: 'username'")

    def _secret(primary: str) -> Optional[str]:
        value = os.environ.get(primary)
        if not value and fallback_env:
            value = os.environ.get(fallback_env + primary.split("_", 1)[1])
        return value or None

    if mechanism in ("plain", "login"):
        password = _secret(password_env)
        if not password:
            raise ValueError(
                f"Password must be specified via {password_env} environment variable"
            )
        if mechanism == "plain":
            return PlainAuth(username=username, password=password)
        return LoginAuth(username=username, password=password)

    if mechanism == "xoauth2":
        token = _secret(token_env)
        oauth = data.get("oauth")
        if oauth:
            return XOAuth2Auth(
                username=username,
                provider=_refresh_provider(oauth, token_env, token, _secret),
            )
        if not token:
            raise ValueError(
                f"XOAUTH2 access token must be specified via {token_env} environment variable"
            )
        return XOAuth2Auth(username=username, access_token=token)

    raise ValueError(f"Unsupported auth method: {mechanism}")


def _refresh_provider(
    oauth: Mapping[str, Any],
    token_env: str,
    access_token: Optional[str],
    secret: Callable[[str], Optional[str]],
) -> RefreshTokenProvider:
    refresh_env = token_env.replace("ACCESS_TOKEN", "REFRESH_TOKEN")
    refresh_token = secret(refresh_env)
    if not refresh_token:
        raise ValueError(
            f"OAuth refresh token must be specified via {refresh_env} environment variable"
        )
    if oauth.get("client_secret"):
        logger.warning(
            "Ignoring 'client_secret' in config; use MAILWIRE_OAUTH_CLIENT_SECRET instead"
        )
    initial = AccessToken(access_token, token_expiry(access_token)) if access_token else None
    return RefreshTokenProvider(
        token_url=oauth["token_url"],
        client_id=oauth["client_id"],
        client_secret=os.environ.get("MAILWIRE_OAUTH_CLIENT_SECRET"),
        scope=oauth.get("scope"),
        store=MemoryTokenStore(refresh_token=refresh_token, access_token=initial),
    )


@dataclass(frozen=True)
class ImapConfig:
    """IMAP connection configuration. Immutable for the life of a client."""

    host: str
    port: int
    auth: AuthMethod
    secure: bool = True
    starttls: bool = False
    command_timeout: Optional[float] = DEFAULT_COMMAND_TIMEOUT
    client_id: Optional[Dict[str, str]] = None
    refresh_skew: float = DEFAULT_REFRESH_SKEW
    retry_on_auth_failure: bool = True
    auto_refresh_token: Optional[bool] = None
    tls_ca_bundle: Optional[str] = None
    max_line_length: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImapConfig":
        """Create configuration from dictionary.

        Secrets are resolved exclusively from IMAP_PASSWORD or
        IMAP_ACCESS_TOKEN. A 'password' key in the dict is ignored.
        """
        secure = data.get("secure", True)
        tls_ca_bundle = (
            os.environ.get("IMAP_TLS_CA_BUNDLE") or data.get("tls_ca_bundle") or None
        )
        client_id = data.get("client_id")

        return cls(
            host=data["host"],
            port=int(data.get("port", 993 if secure else 143)),
            auth=auth_from_dict(data, "IMAP_PASSWORD", "IMAP_ACCESS_TOKEN"),
            secure=secure,
            starttls=data.get("starttls", False),
            command_timeout=float(data.get("command_timeout", DEFAULT_COMMAND_TIMEOUT)),
            client_id={str(k): str(v) for k, v in client_id.items()} if client_id else None,
            refresh_skew=float(data.get("refresh_skew", DEFAULT_REFRESH_SKEW)),
            retry_on_auth_failure=data.get("retry_on_auth_failure", True),
            auto_refresh_token=data.get("auto_refresh_token"),
            tls_ca_bundle=tls_ca_bundle,
            max_line_length=data.get("max_line_length"),
        )


@dataclass(frozen=True)
class SmtpConfig:
    """SMTP connection configuration. Immutable for the life of a client."""

    host: str
    port: int
    auth: Optional[AuthMethod] = None
    secure: bool = True
    starttls: bool = False
    command_timeout: Optional[float] = DEFAULT_COMMAND_TIMEOUT
    ehlo_name: str = "localhost"
    refresh_skew: float = DEFAULT_REFRESH_SKEW
    retry_on_auth_failure: bool = True
    auto_refresh_token: Optional[bool] = None
    tls_ca_bundle: Optional[str] = None
    max_line_length: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SmtpConfig":
        """Create configuration from dictionary.

        Secrets are resolved from SMTP_PASSWORD / SMTP_ACCESS_TOKEN, falling
        back to the IMAP_ variables. ``method: none`` disables authentication.
        """
        starttls = data.get("starttls", False)
        secure = data.get("secure", not starttls)
        tls_ca_bundle = (
            os.environ.get("SMTP_TLS_CA_BUNDLE")
            or os.environ.get("IMAP_TLS_CA_BUNDLE")
            or data.get("tls_ca_bundle")
            or None
        )

        auth: Optional[AuthMethod] = None
        if str(data.get("method", "plain")).lower() != "none":
            auth = auth_from_dict(data, "SMTP_PASSWORD", "SMTP_ACCESS_TOKEN", "IMAP_")

        return cls(
            host=data["host"],
            port=int(data.get("port", 465 if secure and not starttls else 587)),
            auth=auth,
            secure=secure,
            starttls=starttls,
            command_timeout=float(data.get("command_timeout", DEFAULT_COMMAND_TIMEOUT)),
            ehlo_name=data.get("ehlo_name", "localhost"),
            refresh_skew=float(data.get("refresh_skew", DEFAULT_REFRESH_SKEW)),
            retry_on_auth_failure=data.get("retry_on_auth_failure", True),
            auto_refresh_token=data.get("auto_refresh_token"),
            tls_ca_bundle=tls_ca_bundle,
            max_line_length=data.get("max_line_length"),
        )


@dataclass(frozen=True)
class MailConfig:
    """Top-level configuration: one IMAP account and an optional SMTP relay."""

    imap: ImapConfig
    smtp: Optional[SmtpConfig] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MailConfig":
        smtp_config = None
        if data.get("smtp"):
            smtp_config = SmtpConfig.from_dict(data["smtp"])
        return cls(imap=ImapConfig.from_dict(data.get("imap", {})), smtp=smtp_config)


def load_config(config_path: Optional[str] = None) -> MailConfig:
    """Load configuration from file or environment variables.

    Args:
        config_path: Path to configuration file

    Returns:
        Mail configuration

    Raises:
        ValueError: If configuration is invalid
    """
    _maybe_load_dotenv()

    # Default locations to check for config file
    default_locations = [
        Path("config.yaml"),
        Path("config.yml"),
        Path("~/.config/mailwire/config.yaml"),
        Path("/etc/mailwire/config.yaml"),
    ]

    # Load from specified path or try default locations
    config_data: Dict[str, Any] = {}
    if config_path:
        try:
            with open(config_path, "r") as f:
                config_data = yaml.safe_load(f) or {}
            logger.info("Loaded configuration from %s", config_path)
        except FileNotFoundError:
            logger.warning("Configuration file not found: %s", config_path)
    else:
        for path in default_locations:
            expanded_path = path.expanduser()
            if expanded_path.exists():
                with open(expanded_path, "r") as f:
                    config_data = yaml.safe_load(f) or {}
                logger.info("Loaded configuration from %s", expanded_path)
                break

    # If environment variables are set, they take precedence
    if not config_data:
        logger.info("No configuration file found, using environment variables")
        if not os.environ.get("IMAP_HOST"):
            raise ValueError(
                "No configuration file found and IMAP_HOST environment variable not set"
            )

        secure = _env_bool("IMAP_SECURE", True)
        config_data = {
            "imap": {
                "host": os.environ.get("IMAP_HOST"),
                "port": int(os.environ.get("IMAP_PORT", "993" if secure else "143")),
                "username": os.environ.get("IMAP_USERNAME"),
                "method": os.environ.get("IMAP_AUTH_METHOD", "plain"),
                "secure": secure,
                "starttls": _env_bool("IMAP_STARTTLS", False),
            }
        }

        # Build SMTP config from env vars, falling back to IMAP values
        smtp_host = os.environ.get("SMTP_HOST")
        if smtp_host:
            smtp_starttls = _env_bool("SMTP_STARTTLS", True)
            config_data["smtp"] = {
                "host": smtp_host,
                "port": int(os.environ.get("SMTP_PORT", "587" if smtp_starttls else "465")),
                "username": os.environ.get("SMTP_USERNAME") or os.environ.get("IMAP_USERNAME"),
                "method": os.environ.get("SMTP_AUTH_METHOD")
                or os.environ.get("IMAP_AUTH_METHOD", "plain"),
                "starttls": smtp_starttls,
                "secure": not smtp_starttls,
            }

    # Create config object
    try:
        return MailConfig.from_dict(config_data)
    except KeyError as e:
        raise ValueError(f"Missing required configuration: {e}")
