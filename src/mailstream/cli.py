"""Command line entry point: ``mailstream watch``."""

import argparse
import asyncio
import os
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.markup import escape

from mailstream.client import Client
from mailstream.core.events import ERROR_EVENT, MAIL_EVENT
from mailstream.core.models import MailRecord
from mailstream.imap.engine import ProtocolEngine
from mailstream.monitor import MailMonitor
from mailstream.utils.config import DEFAULT_MAILBOX, load_config
from mailstream.utils.errors import (
    ErrorHandler,
    MailstreamError,
    MissingConfigError,
    format_error_message,
)
from mailstream.utils.logging import async_log_call, get_logger, init_logging

DEFAULT_PASSWORD_ENV = "MAILSTREAM_PASSWORD"
PREVIEW_LENGTH = 100

logger = get_logger(__name__)


## Argument Parsing


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mailstream",
        description="Stream new mail from an IMAP mailbox",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    watch_parser = subparsers.add_parser(
        "watch",
        help="Print unseen mail and keep polling for more",
        description="Connect to an IMAP server and print new mail as it arrives",
    )
    watch_parser.add_argument("--host", required=True, help="IMAP server host name")
    watch_parser.add_argument(
        "--port", type=int, default=993, help="IMAP server port (default: 993)"
    )
    watch_parser.add_argument("--email", required=True, help="Login address")
    watch_parser.add_argument(
        "--password",
        help=f"Login password (default: read from ${DEFAULT_PASSWORD_ENV})",
    )
    watch_parser.add_argument(
        "--password-env",
        default=DEFAULT_PASSWORD_ENV,
        help="Environment variable holding the password",
    )
    watch_parser.add_argument(
        "--mailbox",
        default=DEFAULT_MAILBOX,
        help=f"Mailbox to watch (default: {DEFAULT_MAILBOX})",
    )
    watch_parser.add_argument(
        "--interval",
        type=float,
        default=60,
        help="Seconds between unseen-mail polls (default: 60)",
    )
    watch_parser.add_argument(
        "--debug", action="store_true", help="Log protocol activity"
    )
    return parser


def config_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    """Build a config mapping from ``watch`` arguments.

    Raises:
        MissingConfigError: If no password was given or found in the environment
    """
    password = args.password or os.environ.get(args.password_env)
    if not password:
        raise MissingConfigError(
            f"No password given; pass --password or set ${args.password_env}",
            details={"password_env": args.password_env},
        )

    return {
        "host": args.host,
        "port": args.port,
        "email": args.email,
        "password": password,
        "mailbox": args.mailbox,
        "debug": {"enabled": args.debug, "connection_debug": args.debug},
    }


## Output


def render_mail(console: Console, mail: MailRecord) -> None:
    senders = ", ".join(address.address for address in mail.sender) or "(unknown sender)"
    console.print("\n[bold cyan]=== New Email ===[/bold cyan]")
    console.print(f"[bold]From:[/bold] {escape(senders)}", highlight=False)
    subject = escape(mail.subject or "(no subject)")
    console.print(f"[bold]Subject:[/bold] {subject}", highlight=False)
    console.print(f"[bold]Date:[/bold] {mail.date.isoformat()}")
    if mail.plain:
        console.print(f"[dim]{escape(mail.text[:PREVIEW_LENGTH])}[/dim]", highlight=False)


def render_error(console: Console, error: MailstreamError) -> None:
    console.print(f"[yellow]Warning: {format_error_message(error)}[/yellow]")


## Commands


@async_log_call
async def watch(
    args: argparse.Namespace,
    console: Console,
    engine: Optional[ProtocolEngine] = None,
    stop: Optional[asyncio.Event] = None,
) -> int:
    """Print unseen mail, then keep polling until ``stop`` is set or the task is cancelled."""
    config = load_config(config_from_args(args))
    stop = stop or asyncio.Event()

    client = await Client.create(config, engine)
    client.on(MAIL_EVENT, lambda mail: render_mail(console, mail))
    client.on(ERROR_EVENT, lambda error: render_error(console, error))

    monitor = MailMonitor(client, interval_seconds=args.interval)
    try:
        console.print(
            f"[green]Watching {config.mailbox} on {config.host}[/green] (Ctrl-C to stop)"
        )
        await monitor.start()
        await stop.wait()
    finally:
        await monitor.stop()

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code
    """
    console = Console()
    parser = build_parser()
    args = parser.parse_args(argv)

    init_logging("WARNING")

    try:
        return asyncio.run(watch(args, console))

    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        return 130

    except MailstreamError as e:
        ErrorHandler.handle(e, "mailstream watch", log_traceback=args.debug)
        console.print(f"[red]Error: {format_error_message(e)}[/red]")
        return 1

    except Exception as e:
        logger.error(f"Fatal error: {e}")
        console.print(f"[red]Fatal error: {e}[/red]")
        return 1


if __name__ == "__main__":
    exit(main())
