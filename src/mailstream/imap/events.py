"""Tagged protocol events produced by a protocol engine.

Fetch responses are delivered as a stream of :data:`FetchEvent` values and
unsolicited server data as :data:`PushEvent` values. Consumers dispatch on
the concrete type.
"""

from dataclasses import dataclass
from typing import Optional, Tuple, Union


@dataclass(frozen=True)
class MailboxStatus:
    """Counters reported by the server when a mailbox is selected."""

    name: str
    exists: int = 0
    recent: int = 0
    unseen: int = 0
    uidvalidity: int = 0
    uidnext: int = 0
    read_only: bool = False


## Fetch events


@dataclass(frozen=True)
class MessageStarted:
    seqno: int


@dataclass(frozen=True)
class BodyChunk:
    seqno: int
    section: str
    data: bytes


@dataclass(frozen=True)
class AttributesReceived:
    seqno: int
    uid: Optional[int] = None
    flags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MessageEnded:
    seqno: int


@dataclass(frozen=True)
class FetchEnded:
    pass


FetchEvent = Union[MessageStarted, BodyChunk, AttributesReceived, MessageEnded, FetchEnded]


## Push events


@dataclass(frozen=True)
class NewMail:
    count: int


@dataclass(frozen=True)
class FlagsChanged:
    seqno: int
    flags: Tuple[str, ...]


@dataclass(frozen=True)
class MessageExpunged:
    seqno: int


@dataclass(frozen=True)
class ConnectionLost:
    error: Exception


PushEvent = Union[NewMail, FlagsChanged, MessageExpunged, ConnectionLost]
