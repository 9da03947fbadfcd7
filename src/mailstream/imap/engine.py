"""Protocol engine interface consumed by the session layer."""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, List, Optional, Sequence

from .events import FetchEvent, MailboxStatus, PushEvent

PushHandler = Callable[[PushEvent], None]


class ProtocolEngine(ABC):
    """One connection to one server.

    Implementations handle wire format, TLS and authentication. They must not
    run two commands concurrently on the same connection.
    """

    def __init__(self):
        self._push_handler: Optional[PushHandler] = None

    def set_push_handler(self, handler: Optional[PushHandler]) -> None:
        """Register the single listener for unsolicited server events."""
        self._push_handler = handler

    def _emit_push(self, event: PushEvent) -> None:
        if self._push_handler is not None:
            self._push_handler(event)

    @abstractmethod
    async def connect(self) -> None:
        """Open the transport and authenticate.

        Raises:
            ConnectionError: If the transport or login fails
        """

    @abstractmethod
    async def select(self, mailbox: str) -> MailboxStatus:
        """Select ``mailbox`` read-write.

        Raises:
            MailboxError: If the server rejects the selection
        """

    @abstractmethod
    async def search(self, criteria: str) -> List[int]:
        """Return the UIDs matching ``criteria`` in the selected mailbox.

        Raises:
            FetchError: If the search fails
        """

    @abstractmethod
    def fetch(
        self, message_set: str, parts: Sequence[str], by_uid: bool = True
    ) -> AsyncIterator[FetchEvent]:
        """Fetch ``parts`` for every message in ``message_set``.

        Yields tagged events ending with a single ``FetchEnded``.

        Raises:
            FetchError: If the fetch fails at the transport or protocol level
        """

    @abstractmethod
    async def logout(self) -> None:
        """End the session. Errors are the caller's to log."""
