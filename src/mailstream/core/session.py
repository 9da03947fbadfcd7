"""Session lifecycle: connection, authentication and mailbox selection."""

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from mailstream.core.mailbox import MailboxSnapshot
from mailstream.imap.engine import ProtocolEngine
from mailstream.imap.events import ConnectionLost, PushEvent
from mailstream.utils.config import ConfigSource, MailstreamConfig, load_config
from mailstream.utils.errors import (
    ConnectionError,
    MailboxError,
    MailstreamError,
    NoMailboxError,
    NotConnectedError,
)
from mailstream.utils.logging import async_log_call, get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class SessionStatus(Enum):
    """Connection status of a session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    FAILED = "failed"


class Session:
    """Owns one protocol connection and one selected mailbox at a time."""

    def __init__(self, config: ConfigSource, engine: Optional[ProtocolEngine] = None):
        """Initialise a session.

        Args:
            config: Connection settings, see :func:`load_config`
            engine: Protocol engine to use; defaults to :class:`AioImapEngine`
        """
        self.config: MailstreamConfig = load_config(config)
        if engine is None:
            from mailstream.imap.aioimap import AioImapEngine

            engine = AioImapEngine(self.config)
        self.engine = engine
        self.status = SessionStatus.DISCONNECTED
        self.mailbox: Optional[MailboxSnapshot] = None
        self._closed = asyncio.Event()
        self._connected = False
        self._push_listener: Optional[Callable[[PushEvent], None]] = None

    @property
    def is_ready(self) -> bool:
        return self.status is SessionStatus.READY

    def set_push_listener(self, listener: Optional[Callable[[PushEvent], None]]) -> None:
        """Register the owner's callback for unsolicited server events."""
        self._push_listener = listener

    @async_log_call
    async def connect(self) -> MailboxSnapshot:
        """Connect, authenticate and select the configured mailbox.

        Returns:
            Snapshot of the selected mailbox

        Raises:
            ConnectionError: If the transport or authentication fails
            MailboxError: If selecting the mailbox fails after login
        """
        if self.status is SessionStatus.CONNECTING:
            raise ConnectionError("A connection attempt is already in progress")
        if self.status is SessionStatus.READY:
            return self.require_mailbox().copy()

        self.status = SessionStatus.CONNECTING
        self._closed.clear()
        details = {"host": self.config.host, "mailbox": self.config.mailbox}

        try:
            await self.engine.connect()
        except ConnectionError:
            self.status = SessionStatus.FAILED
            logger.error("IMAP connection failed", extra=details)
            raise
        except Exception as e:
            self.status = SessionStatus.FAILED
            raise ConnectionError(f"IMAP connection failed: {e}", details=details) from e

        self._connected = True

        try:
            status = await self.engine.select(self.config.mailbox)
        except Exception as e:
            self.status = SessionStatus.FAILED
            await self._disconnect()
            if isinstance(e, MailboxError):
                logger.error("Error opening mailbox", extra=details)
                raise
            raise MailboxError(f"Error opening mailbox: {e}", details=details) from e

        self.mailbox = MailboxSnapshot.from_status(status)
        self.engine.set_push_handler(self._on_push)
        self.status = SessionStatus.READY

        logger.info(
            "Session ready",
            extra={**details, "total": self.mailbox.total, "unseen": self.mailbox.unseen},
        )
        return self.mailbox.copy()

    def ensure_connected(self) -> None:
        if self.status is not SessionStatus.READY:
            raise NotConnectedError(details={"status": self.status.value})

    def require_mailbox(self) -> MailboxSnapshot:
        """Return the live snapshot, raising if the session cannot serve requests."""
        self.ensure_connected()
        if self.mailbox is None:
            raise NoMailboxError()
        return self.mailbox

    async def switch_mailbox(self, name: str) -> MailboxSnapshot:
        """Select ``name`` in place of the current mailbox.

        Raises:
            NotConnectedError: If the session is not ready
            MailboxError: If the server rejects the mailbox. No mailbox is
                selected afterwards; a later switch may succeed.
        """
        self.ensure_connected()
        logger.debug("Switching mailbox", extra={"mailbox": name})

        self.mailbox = None
        try:
            status = await self.engine.select(name)
        except MailboxError:
            logger.warning("Error switching mailbox", extra={"mailbox": name})
            raise
        except MailstreamError:
            raise
        except Exception as e:
            raise MailboxError(f"Error switching to mailbox {name}: {e}", details={"mailbox": name}) from e

        self.mailbox = MailboxSnapshot.from_status(status)
        logger.info("Mailbox switched", extra={"mailbox": name, "total": self.mailbox.total})
        return self.mailbox.copy()

    async def guard(self, operation: Awaitable[T], name: str) -> T:
        """Await ``operation`` unless the session closes first.

        Raises:
            ConnectionError: If the session closes or drops while waiting
        """
        task = asyncio.ensure_future(operation)
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait({task, closed}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            closed.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise ConnectionError(
            f"Session closed during {name}", details={"operation": name}
        )

    async def close(self) -> None:
        """End the session. Safe to call repeatedly; errors are only logged."""
        self._closed.set()
        self.status = SessionStatus.DISCONNECTED
        self.mailbox = None
        await self._disconnect()

    async def _disconnect(self) -> None:
        self.engine.set_push_handler(None)
        if not self._connected:
            return
        self._connected = False

        try:
            await self.engine.logout()
            logger.debug("IMAP session closed")
        except Exception as e:
            logger.warning("Error closing IMAP connection", extra={"error": str(e)})

    def _on_push(self, event: PushEvent) -> None:
        if isinstance(event, ConnectionLost):
            logger.error("IMAP connection lost", extra={"error": str(event.error)})
            self.status = SessionStatus.FAILED
            self._closed.set()

        if self._push_listener is not None:
            self._push_listener(event)
