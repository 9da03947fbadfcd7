"""Mail domain models"""

from dataclasses import dataclass, field
from datetime import datetime
from email.utils import getaddresses
from typing import Optional, Tuple


@dataclass(frozen=True)
class MailAddress:
    """Value object for a single address with optional display name."""

    mailbox: str
    host: str
    name: Optional[str] = None

    @property
    def address(self) -> str:
        return f"{self.mailbox}@{self.host}" if self.host else self.mailbox

    @classmethod
    def parse_list(cls, value: Optional[str]) -> Tuple["MailAddress", ...]:
        """Parse a header value such as ``"A <a@x.org>, b@y.org"``."""
        if not value:
            return ()

        addresses = []
        for name, addr in getaddresses([value]):
            if not addr:
                continue
            mailbox, _, host = addr.rpartition("@")
            if not mailbox:
                mailbox, host = host, ""
            addresses.append(cls(mailbox=mailbox, host=host, name=name or None))
        return tuple(addresses)

    def __str__(self) -> str:
        if self.name:
            return f"{self.name} <{self.address}>"
        return self.address


@dataclass(frozen=True)
class MailRecord:
    """A fully assembled message, published once per UID.

    ``uid`` is 0 only when the server omitted the UID attribute.
    """

    uid: int
    sender: Tuple[MailAddress, ...]
    recipients: Tuple[MailAddress, ...]
    subject: str
    date: datetime
    plain: Optional[bytes] = None
    html: Optional[bytes] = None
    seqno: int = field(default=0, compare=False)

    @property
    def has_identifier(self) -> bool:
        return self.uid > 0

    @property
    def text(self) -> str:
        """Plain body decoded as UTF-8, empty when absent."""
        return self.plain.decode("utf-8", errors="replace") if self.plain else ""


@dataclass(frozen=True)
class FlagUpdate:
    """Informational flag change pushed by the server."""

    seqno: int
    flags: Tuple[str, ...]
    mailbox: str
