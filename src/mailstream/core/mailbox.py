"""Selected-mailbox state: count snapshot and processed-UID tracking."""

from dataclasses import dataclass, replace
from typing import Dict, Iterable, List

from mailstream.imap.events import MailboxStatus
from mailstream.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class MailboxSnapshot:
    """Counters for the selected mailbox.

    ``baseline`` is the number of messages already accounted for; newly
    arrived messages occupy sequence numbers ``baseline + 1`` onwards.
    """

    name: str
    total: int = 0
    new: int = 0
    unseen: int = 0
    baseline: int = 0
    uidvalidity: int = 0
    uidnext: int = 0
    read_only: bool = False

    @classmethod
    def from_status(cls, status: MailboxStatus) -> "MailboxSnapshot":
        return cls(
            name=status.name,
            total=status.exists,
            new=status.recent,
            unseen=status.unseen,
            baseline=status.exists,
            uidvalidity=status.uidvalidity,
            uidnext=status.uidnext,
            read_only=status.read_only,
        )

    def record_arrival(self, count: int) -> None:
        """Account for a server push announcing ``count`` new messages."""
        self.total += count
        self.new += count

    def advance(self, count: int) -> None:
        """Move the baseline past ``count`` consumed messages."""
        self.baseline += count

    def record_expunge(self, seqno: int) -> None:
        """Shift counters after the server removed message ``seqno``."""
        self.total = max(self.total - 1, 0)
        if seqno <= self.baseline:
            self.baseline -= 1

    def copy(self) -> "MailboxSnapshot":
        return replace(self)

    def status(self) -> Dict[str, int]:
        return {"total": self.total, "new": self.new, "unseen": self.unseen}


class ProcessedIdentifierSet:
    """UIDs that have already been published as mail events.

    Growth is bounded two ways: inserting past ``max_size`` evicts the lowest
    UIDs, and :meth:`prune_below` drops UIDs under a floor reported by the
    server.
    """

    def __init__(self, max_size: int = 10_000):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._uids: set[int] = set()

    def __contains__(self, uid: object) -> bool:
        return uid in self._uids

    def __len__(self) -> int:
        return len(self._uids)

    def __iter__(self):
        return iter(sorted(self._uids))

    def add(self, uid: int) -> None:
        if uid <= 0:
            return
        self._uids.add(uid)
        if len(self._uids) > self.max_size:
            self._evict(len(self._uids) - self.max_size)

    def unprocessed(self, uids: Iterable[int]) -> List[int]:
        """Return ``uids`` not yet processed, preserving order and dropping repeats."""
        seen: set[int] = set()
        result = []
        for uid in uids:
            if uid in self._uids or uid in seen:
                continue
            seen.add(uid)
            result.append(uid)
        return result

    def prune_below(self, floor: int) -> int:
        """Forget UIDs lower than ``floor``. Returns how many were removed."""
        stale = {uid for uid in self._uids if uid < floor}
        self._uids -= stale
        if stale:
            logger.debug("Pruned processed UIDs", extra={"removed": len(stale), "floor": floor})
        return len(stale)

    def _evict(self, count: int) -> None:
        for uid in sorted(self._uids)[:count]:
            self._uids.discard(uid)
        logger.debug("Evicted processed UIDs", extra={"removed": count})
