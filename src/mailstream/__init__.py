"""Streaming IMAP client.

Keeps one authenticated session open against a mail server, watches for
new-mail notifications, fetches and decodes new messages, and publishes each
one to subscribers exactly once.

Usage Examples
----------------

Print unseen mail:
    >>> import mailstream
    >>>
    >>> client = await mailstream.create({
    ...     "host": "imap.example.com",
    ...     "email": "me@example.com",
    ...     "password": "app-password",
    ... })
    >>> client.on("mail", lambda mail: print(mail.subject))
    >>> await client.get_unseen_mails()
    >>> await client.close()

Poll periodically:
    >>> from mailstream.monitor import MailMonitor
    >>>
    >>> monitor = MailMonitor(client, interval_seconds=30)
    >>> await monitor.start()

Notes
-----
- All network operations are asynchronous and require 'await'
- Messages are fetched with BODY.PEEK, so fetching does not mark them seen
- Messages that fail to decode are logged and skipped
- No state is persisted between runs
"""

from .client import Client, create
from .context import from_context, with_context
from .core.mailbox import MailboxSnapshot
from .core.models import FlagUpdate, MailAddress, MailRecord
from .core.session import SessionStatus
from .utils.config import DebugOptions, MailstreamConfig, load_config
from .utils.errors import (
    ConnectionError,
    DecodeError,
    FetchError,
    MailboxError,
    MailstreamError,
    MissingIdentifierError,
    NoMailboxError,
    NotConnectedError,
)

__version__ = "0.1.0"

__all__ = [
    # Client
    "Client",
    "create",
    "with_context",
    "from_context",
    # Models
    "MailRecord",
    "MailAddress",
    "FlagUpdate",
    "MailboxSnapshot",
    "SessionStatus",
    # Configuration
    "MailstreamConfig",
    "DebugOptions",
    "load_config",
    # Errors
    "MailstreamError",
    "ConnectionError",
    "MailboxError",
    "NotConnectedError",
    "NoMailboxError",
    "FetchError",
    "DecodeError",
    "MissingIdentifierError",
]
