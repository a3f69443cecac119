"""Exception hierarchy for the IMAP and SMTP clients."""

import re
from typing import Optional


class MailError(Exception):
    """Base class for every error raised by mailwire."""


class MailConnectionError(MailError):
    """The connection could not be established or was lost mid-exchange."""


class NegotiationError(MailError):
    """Capability, EHLO or STARTTLS negotiation did not succeed."""


class CommandError(MailError):
    """The server answered a command negatively.

    Attributes:
        command: Short label of the command that failed.
        response: The server's verbatim reply line(s).
    """

    def __init__(self, command: str, response: str) -> None:
        super().__init__(f"{command} failed: {response}")
        self.command = command
        self.response = response


class AuthenticationError(CommandError):
    """The server rejected the supplied credentials."""


class CommandTimeoutError(MailError):
    """The server did not answer within the configured window."""

    def __init__(self, label: str, timeout: Optional[float]) -> None:
        super().__init__(f"{label}: no response within {timeout}s")
        self.label = label
        self.timeout = timeout


class NoMailboxSelectedError(MailError):
    """An operation that needs a selected mailbox was called without one."""


class TokenRefreshError(MailError):
    """The OAuth token endpoint did not hand out a usable access token."""


_IMAP_AUTH_FAILURE = re.compile(
    r"AUTHENTICATIONFAILED|INVALIDCREDENTIALS|NO \[AUTH|AUTHENTICATE|LOGIN|XOAUTH2",
    re.IGNORECASE,
)
_SMTP_AUTH_FAILURE = re.compile(r"AUTH|XOAUTH2|\b530\b|\b535\b", re.IGNORECASE)
_SMTP_REPLY = re.compile(r"^\d{3}[ -]")
_SMTP_PERMANENT = re.compile(r"^5\d\d[ -]")


def is_auth_failure(error: BaseException) -> bool:
    """Return True when *error* looks like rejected credentials.

    Timeouts and precondition failures never count. Command errors are
    classified by the vocabulary servers use in their failure text: IMAP
    response codes such as ``[AUTHENTICATIONFAILED]``, or SMTP 5xx replies
    mentioning authentication. An SMTP reply decides on its own, so a
    transient 4xx answer to AUTH is not a credential failure.
    """
    if not isinstance(error, CommandError):
        return False
    text = error.response
    if _SMTP_REPLY.match(text):
        return bool(_SMTP_PERMANENT.match(text) and _SMTP_AUTH_FAILURE.search(text))
    if isinstance(error, AuthenticationError):
        return True
    return bool(_IMAP_AUTH_FAILURE.search(text))
