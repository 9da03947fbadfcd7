"""Session, mailbox state, message assembly and event delivery."""

from .assembler import FetchRequest, MessageAssembler
from .events import EventBus
from .mailbox import MailboxSnapshot, ProcessedIdentifierSet
from .models import FlagUpdate, MailAddress, MailRecord
from .notifications import NotificationHandler
from .parser import DecodedMail, MimeDecoder
from .session import Session, SessionStatus

__all__ = [
    "EventBus",
    "FetchRequest",
    "MessageAssembler",
    "MailboxSnapshot",
    "ProcessedIdentifierSet",
    "MailAddress",
    "MailRecord",
    "FlagUpdate",
    "NotificationHandler",
    "DecodedMail",
    "MimeDecoder",
    "Session",
    "SessionStatus",
]
