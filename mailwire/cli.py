"""Command-line entry point: connect to the configured IMAP account and report."""

import argparse
import asyncio
import logging
import os
from typing import Optional, Sequence

from mailwire import __version__
from mailwire.config import ImapConfig, create_ssl_context, load_config
from mailwire.errors import MailError
from mailwire.imap_client import ImapClient
from mailwire.models import IdleEvent
from mailwire.transport import StreamTransport

logger = logging.getLogger("mailwire")


async def run(args: argparse.Namespace, config: ImapConfig) -> None:
    """Connect, select a mailbox and perform the requested action."""
    transport = StreamTransport(create_ssl_context(config.tls_ca_bundle))
    client = ImapClient(transport, config)
    try:
        logger.info("Connecting to IMAP server...")
        await client.connect()
        caps = client.capabilities
        if caps is not None:
            print("capabilities: " + " ".join(sorted(caps.raw)))

        if args.list:
            for box in await client.list_mailboxes():
                attrs = " ".join(box.attributes)
                print(f"{box.path}\t{attrs}" if attrs else box.path)

        selection = await client.select_mailbox(args.mailbox)
        unseen = selection.unseen if selection.unseen is not None else "-"
        print(f"{selection.name}: exists={selection.exists} unseen={unseen}")

        if args.search:
            uids = await client.search(args.search)
            print(f"search {args.search!r}: {len(uids)} message(s)")
            for envelope in await client.fetch_envelopes_by_uid(uids[-args.limit:]):
                sender = envelope.from_[0] if envelope.from_ else "?"
                print(f"{envelope.uid}\t{sender}\t{envelope.subject or ''}")

        if args.idle:

            def on_event(event: IdleEvent) -> None:
                print(f"{event.kind} {event.number}")

            await client.idle(on_event, args.idle)
    finally:
        logger.info("Disconnecting from IMAP server...")
        await client.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the mailwire command-line client."""
    parser = argparse.ArgumentParser(description="IMAP/SMTP protocol client")
    parser.add_argument(
        "--config",
        help="Path to configuration file",
        default=os.environ.get("MAILWIRE_CONFIG"),
    )
    parser.add_argument(
        "--mailbox",
        default="INBOX",
        help="Mailbox to select (default: INBOX)",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="List all mailboxes",
    )
    parser.add_argument(
        "--search",
        metavar="CRITERIA",
        help="Run UID SEARCH with the given criteria, e.g. UNSEEN",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Number of search results to summarize (default: 20)",
    )
    parser.add_argument(
        "--idle",
        type=float,
        metavar="SECONDS",
        help="Wait for new-mail notifications for this many seconds",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Show version information and exit",
    )
    args = parser.parse_args(argv)

    if args.version:
        print(f"mailwire version {__version__}")
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        config = load_config(args.config)
    except ValueError as e:
        logger.error("Invalid configuration: %s", e)
        return 2

    try:
        asyncio.run(run(args, config.imap))
    except MailError as e:
        logger.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
