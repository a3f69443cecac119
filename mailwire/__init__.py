"""asyncio IMAP and SMTP clients over a pluggable byte transport."""

__version__ = "0.1.0"

from mailwire.auth import AccessToken, LoginAuth, PlainAuth, TokenProvider, XOAuth2Auth
from mailwire.config import ImapConfig, MailConfig, SmtpConfig, load_config
from mailwire.errors import (
    AuthenticationError,
    CommandError,
    CommandTimeoutError,
    MailConnectionError,
    MailError,
    NegotiationError,
    NoMailboxSelectedError,
    TokenRefreshError,
)
from mailwire.imap_client import ImapClient
from mailwire.smtp_client import SmtpClient, build_message, dot_stuff
from mailwire.transport import ConnectParams, StreamTransport, Transport

__all__ = [
    "AccessToken",
    "AuthenticationError",
    "CommandError",
    "CommandTimeoutError",
    "ConnectParams",
    "ImapClient",
    "ImapConfig",
    "LoginAuth",
    "MailConfig",
    "MailConnectionError",
    "MailError",
    "NegotiationError",
    "NoMailboxSelectedError",
    "PlainAuth",
    "SmtpClient",
    "SmtpConfig",
    "StreamTransport",
    "TokenProvider",
    "TokenRefreshError",
    "Transport",
    "XOAuth2Auth",
    "build_message",
    "dot_stuff",
    "load_config",
]
