"""Turns server pushes and unseen scans into published mail events."""

import asyncio
from typing import Dict, List, Optional, Sequence

from mailstream.core.assembler import FetchRequest, MessageAssembler
from mailstream.core.events import ERROR_EVENT, MAIL_EVENT, EventBus
from mailstream.core.mailbox import MailboxSnapshot, ProcessedIdentifierSet
from mailstream.core.models import MailRecord
from mailstream.core.session import Session
from mailstream.imap.constants import SearchCriteria
from mailstream.utils.errors import (
    FetchError,
    MailstreamError,
    MissingIdentifierError,
)
from mailstream.utils.logging import async_log_call, get_logger

logger = get_logger(__name__)


class NotificationHandler:
    """Runs assembly cycles one at a time.

    A cycle is "compute the fetch request, assemble, publish, update mailbox
    state". Cycles started by server pushes, unseen scans, mailbox switches
    and expunges all take the same lock, so the baseline and the processed
    UIDs are never mutated by two cycles at once.
    """

    def __init__(
        self,
        session: Session,
        assembler: MessageAssembler,
        bus: EventBus,
        processed_limit: int = 10_000,
    ):
        self.session = session
        self.assembler = assembler
        self.bus = bus
        self.processed_limit = processed_limit
        self._lock = asyncio.Lock()
        # mailbox name -> UIDs already published from it
        self._processed: Dict[str, ProcessedIdentifierSet] = {}

    def processed_for(self, mailbox: str) -> ProcessedIdentifierSet:
        if mailbox not in self._processed:
            self._processed[mailbox] = ProcessedIdentifierSet(self.processed_limit)
        return self._processed[mailbox]

    @async_log_call
    async def get_unseen_mails(self) -> List[MailRecord]:
        """Search for unseen messages and publish those not delivered before.

        Returns:
            The records published by this scan, in fetch order

        Raises:
            NotConnectedError: If the session is not ready
            NoMailboxError: If no mailbox is selected
            FetchError: If the search or fetch fails; nothing is published
            ConnectionError: If the session closes during the scan
        """
        self.session.require_mailbox()
        async with self._lock:
            mailbox = self.session.require_mailbox()
            return await self.session.guard(self._scan_unseen(mailbox), "unseen scan")

    async def _scan_unseen(self, mailbox: MailboxSnapshot) -> List[MailRecord]:
        try:
            uids = await self.session.engine.search(SearchCriteria.UNSEEN)
        except MailstreamError:
            raise
        except Exception as e:
            raise FetchError(f"Search failed: {e}", details={"mailbox": mailbox.name}) from e

        processed = self.processed_for(mailbox.name)
        if uids:
            processed.prune_below(min(uids))

        pending = processed.unprocessed(uids)
        logger.debug(
            "Unseen scan",
            extra={"mailbox": mailbox.name, "unseen": len(uids), "pending": len(pending)},
        )
        if not pending:
            return []

        records = await self.assembler.assemble(FetchRequest.for_uids(pending))
        return self._publish(records, processed, mailbox.name)

    async def handle_new_mail(self, count: int, mailbox: Optional[str] = None) -> List[MailRecord]:
        """Fetch and publish ``count`` messages announced by the server.

        The fetched range starts right after the baseline, which only moves
        once the cycle succeeds. Failures are published as ``"error"`` events
        because no caller is waiting on a push.

        Args:
            count: Number of new messages announced
            mailbox: Mailbox the push was received for; the push is dropped
                if a different mailbox is selected by the time it runs
        """
        if count <= 0:
            return []

        async with self._lock:
            snapshot = self.session.mailbox
            if not self.session.is_ready or snapshot is None:
                logger.debug("Ignoring new mail push without a selected mailbox")
                return []
            if mailbox is not None and snapshot.name != mailbox:
                logger.debug(
                    "Ignoring new mail push for a previous mailbox",
                    extra={"mailbox": mailbox, "selected": snapshot.name},
                )
                return []

            snapshot.record_arrival(count)
            request = FetchRequest.for_range(snapshot.baseline + 1, count)
            logger.info(
                "New mail announced",
                extra={"mailbox": snapshot.name, "count": count, "start": snapshot.baseline + 1},
            )

            try:
                records = await self.session.guard(
                    self.assembler.assemble(request), "new mail fetch"
                )
            except MailstreamError as e:
                logger.error("New mail fetch failed", extra={"mailbox": snapshot.name, "error": e.message})
                self.bus.publish(ERROR_EVENT, e)
                return []

            published = self._publish(records, self.processed_for(snapshot.name), snapshot.name)
            snapshot.advance(count)
            return published

    async def handle_expunge(self, seqno: int) -> None:
        """Shift the baseline after the server removed message ``seqno``."""
        async with self._lock:
            if self.session.mailbox is not None:
                self.session.mailbox.record_expunge(seqno)

    async def switch_mailbox(self, name: str) -> MailboxSnapshot:
        """Select ``name`` once any running cycle has finished."""
        self.session.ensure_connected()
        async with self._lock:
            return await self.session.guard(
                self.session.switch_mailbox(name), "mailbox switch"
            )

    def _publish(
        self,
        records: Sequence[MailRecord],
        processed: ProcessedIdentifierSet,
        mailbox: str,
    ) -> List[MailRecord]:
        published = []
        for record in records:
            if record.has_identifier and record.uid in processed:
                logger.debug("Skipping delivered message", extra={"uid": record.uid})
                continue

            self.bus.publish(MAIL_EVENT, record)
            published.append(record)

            if record.has_identifier:
                processed.add(record.uid)
            else:
                self.bus.publish(
                    ERROR_EVENT,
                    MissingIdentifierError(
                        details={"mailbox": mailbox, "seqno": record.seqno}
                    ),
                )
        return published
