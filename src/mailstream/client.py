"""Public client: connects a session and streams mail to subscribers."""

import asyncio
from typing import Any, Dict, List, Optional, Set

from mailstream.core.assembler import MessageAssembler
from mailstream.core.events import ERROR_EVENT, FLAGS_EVENT, EventBus, Subscriber
from mailstream.core.mailbox import MailboxSnapshot
from mailstream.core.models import FlagUpdate, MailRecord
from mailstream.core.notifications import NotificationHandler
from mailstream.core.session import Session, SessionStatus
from mailstream.imap.engine import ProtocolEngine
from mailstream.imap.events import (
    ConnectionLost,
    FlagsChanged,
    MessageExpunged,
    NewMail,
    PushEvent,
)
from mailstream.utils.config import ConfigSource
from mailstream.utils.errors import ConnectionError
from mailstream.utils.logging import DebugLogging, get_logger

logger = get_logger(__name__)


class Client:
    """Streaming mail client for one mailbox on one IMAP server.

    Use :meth:`create` to obtain a connected client::

        async with await Client.create(config) as client:
            client.on("mail", print)
            await client.get_unseen_mails()

    Events published to subscribers:

    * ``"mail"`` - a :class:`MailRecord`, once per UID
    * ``"flags"`` - a :class:`FlagUpdate` when the server reports flag changes
    * ``"error"`` - a :class:`MailstreamError` from a push-triggered fetch or a
      message delivered without a UID
    """

    def __init__(self, config: ConfigSource, engine: Optional[ProtocolEngine] = None):
        self.session = Session(config, engine)
        self.config = self.session.config
        self.bus = EventBus()
        self.assembler = MessageAssembler(
            self.session.engine, decode_workers=self.config.decode_workers
        )
        self.notifications = NotificationHandler(
            self.session, self.assembler, self.bus, self.config.processed_limit
        )
        self._debug = DebugLogging(
            enabled=self.config.debug.enabled,
            sink=self.config.debug.logger,
            connection_debug=self.config.debug.connection_debug,
        )
        self._push_tasks: Set[asyncio.Task] = set()
        self.session.set_push_listener(self._on_push)

        self._debug.install()
        logger.debug(
            "Client initialized",
            extra={"host": self.config.host, "email": self.config.email, "mailbox": self.config.mailbox},
        )

    @classmethod
    async def create(cls, config: ConfigSource, engine: Optional[ProtocolEngine] = None) -> "Client":
        """Build a client and connect it.

        Resolves only once the connection is authenticated and the mailbox
        is selected.

        Raises:
            ConnectionError: If the connection or login fails
            MailboxError: If the mailbox cannot be selected
            ConfigurationError: If ``config`` is invalid
        """
        client = cls(config, engine)
        try:
            await client.session.connect()
        except Exception:
            await client.close()
            raise
        return client

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    ## Subscriptions

    def on(self, event: str, handler: Subscriber) -> None:
        self.bus.subscribe(event, handler)

    def off(self, handler: Subscriber, event: Optional[str] = None) -> bool:
        return self.bus.unsubscribe(handler, event)

    ## Operations

    async def get_unseen_mails(self) -> List[MailRecord]:
        """Publish every unseen message that has not been published yet."""
        return await self.notifications.get_unseen_mails()

    async def switch_mailbox(self, name: str) -> MailboxSnapshot:
        return await self.notifications.switch_mailbox(name)

    def get_current_mailbox(self) -> Optional[MailboxSnapshot]:
        """Copy of the selected mailbox's snapshot, or None."""
        if self.session.mailbox is None:
            return None
        return self.session.mailbox.copy()

    def get_mailbox_status(self) -> Optional[Dict[str, int]]:
        """``{"total", "new", "unseen"}`` for the selected mailbox, or None."""
        if self.session.mailbox is None:
            logger.debug("Mailbox status requested with no mailbox selected")
            return None
        status = self.session.mailbox.status()
        logger.debug("Mailbox status", extra=status)
        return status

    async def close(self) -> None:
        """Disconnect. Safe to call more than once."""
        tasks = list(self._push_tasks)
        await self.session.close()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.assembler.shutdown()
        self._debug.uninstall()

    async def __aenter__(self) -> "Client":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    ## Server pushes

    def _on_push(self, event: PushEvent) -> None:
        mailbox = self.session.mailbox.name if self.session.mailbox else None

        if isinstance(event, NewMail):
            self._spawn(self.notifications.handle_new_mail(event.count, mailbox))
        elif isinstance(event, MessageExpunged):
            self._spawn(self.notifications.handle_expunge(event.seqno))
        elif isinstance(event, FlagsChanged):
            self.bus.publish(
                FLAGS_EVENT,
                FlagUpdate(seqno=event.seqno, flags=tuple(event.flags), mailbox=mailbox or ""),
            )
        elif isinstance(event, ConnectionLost):
            self.bus.publish(
                ERROR_EVENT,
                ConnectionError(f"Connection lost: {event.error}", details={"mailbox": mailbox}),
            )

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._push_tasks.add(task)
        task.add_done_callback(self._push_tasks.discard)


async def create(config: ConfigSource, engine: Optional[ProtocolEngine] = None) -> Client:
    """Shortcut for :meth:`Client.create`."""
    return await Client.create(config, engine)
