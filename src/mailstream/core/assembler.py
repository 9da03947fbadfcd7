"""Fetches messages and assembles them into mail records."""

import asyncio
import itertools
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from mailstream.core.models import MailRecord
from mailstream.core.parser import DecodedMail, MimeDecoder
from mailstream.imap.constants import FetchParts
from mailstream.imap.engine import ProtocolEngine
from mailstream.imap.events import (
    AttributesReceived,
    BodyChunk,
    FetchEnded,
    MessageEnded,
    MessageStarted,
)
from mailstream.utils.errors import DecodeError, FetchError, MailstreamError
from mailstream.utils.logging import async_log_call, get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class FetchRequest:
    """Messages to fetch in one assembly cycle, by UID or by sequence number."""

    ids: Tuple[int, ...]
    by_uid: bool = True

    @classmethod
    def for_uids(cls, uids: Iterable[int]) -> "FetchRequest":
        return cls(tuple(uids), by_uid=True)

    @classmethod
    def for_range(cls, start: int, count: int) -> "FetchRequest":
        """Sequence numbers ``start`` to ``start + count - 1``."""
        return cls(tuple(range(start, start + count)), by_uid=False)

    def __len__(self) -> int:
        return len(self.ids)

    def message_set(self) -> str:
        """Compact IMAP message set, e.g. ``1:3,7``."""
        ranges = []
        for _, group in itertools.groupby(
            enumerate(sorted(set(self.ids))), key=lambda pair: pair[1] - pair[0]
        ):
            members = [value for _, value in group]
            if len(members) == 1:
                ranges.append(str(members[0]))
            else:
                ranges.append(f"{members[0]}:{members[-1]}")
        return ",".join(ranges)


@dataclass
class _MessageBuffer:
    seqno: int
    position: int
    uid: Optional[int] = None
    header: List[bytes] = field(default_factory=list)
    body: List[bytes] = field(default_factory=list)

    def add(self, section: str, data: bytes) -> None:
        if section.strip().upper() == FetchParts.TEXT:
            self.body.append(data)
        else:
            self.header.append(data)


class MessageAssembler:
    """Turns a fetch event stream into ordered :class:`MailRecord` values.

    Each message is decoded in a worker thread as soon as its fragments are
    complete. Results are returned in the order the messages first appeared
    in the fetch, whatever order decoding finishes in. A message that fails
    to decode is logged and left out; a failed fetch fails the whole batch.
    """

    def __init__(
        self,
        engine: ProtocolEngine,
        decoder: Optional[MimeDecoder] = None,
        parts: Sequence[str] = FetchParts.DEFAULT,
        decode_workers: int = 4,
    ):
        self._engine = engine
        self._decoder = decoder or MimeDecoder()
        self._parts = tuple(parts)
        self._decode_workers = decode_workers
        self._executor: Optional[ThreadPoolExecutor] = None

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._decode_workers, thread_name_prefix="mailstream-decode"
            )
        return self._executor

    def shutdown(self) -> None:
        """Release decode threads. Pending decodes are discarded."""
        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)

    @async_log_call
    async def assemble(self, request: FetchRequest) -> List[MailRecord]:
        """Fetch and decode every message in ``request``.

        Raises:
            FetchError: If the engine reports a fetch failure
        """
        if not request:
            return []

        loop = asyncio.get_running_loop()
        positions = itertools.count()
        buffers: Dict[int, _MessageBuffer] = {}
        decodes: List[Tuple[int, asyncio.Future]] = []

        def buffer_for(seqno: int) -> _MessageBuffer:
            if seqno not in buffers:
                buffers[seqno] = _MessageBuffer(seqno=seqno, position=next(positions))
            return buffers[seqno]

        def dispatch(buffer: _MessageBuffer) -> None:
            future = loop.run_in_executor(self._get_executor(), self._build_record, buffer)
            decodes.append((buffer.position, future))

        logger.debug(
            "Fetching messages",
            extra={"message_set": request.message_set(), "by_uid": request.by_uid},
        )

        try:
            async for event in self._engine.fetch(
                request.message_set(), self._parts, by_uid=request.by_uid
            ):
                if isinstance(event, MessageStarted):
                    buffer_for(event.seqno)
                elif isinstance(event, BodyChunk):
                    buffer_for(event.seqno).add(event.section, event.data)
                elif isinstance(event, AttributesReceived):
                    buffer_for(event.seqno).uid = event.uid
                elif isinstance(event, MessageEnded):
                    dispatch(buffer_for(event.seqno))
                    del buffers[event.seqno]
                elif isinstance(event, FetchEnded):
                    break

        except MailstreamError:
            self._cancel(decodes)
            raise

        except Exception as e:
            self._cancel(decodes)
            raise FetchError(
                f"Fetch failed: {e}", details={"message_set": request.message_set()}
            ) from e

        for buffer in sorted(buffers.values(), key=lambda b: b.position):
            logger.debug("Message ended without end marker", extra={"seqno": buffer.seqno})
            dispatch(buffer)

        results = await asyncio.gather(*(future for _, future in decodes), return_exceptions=True)

        records = []
        for (position, _), result in sorted(zip(decodes, results), key=lambda item: item[0][0]):
            if isinstance(result, BaseException):
                logger.warning(
                    "Skipping message that failed to decode",
                    extra={"position": position, "error": str(result)},
                )
                continue
            records.append(result)

        logger.info(
            "Assembled messages",
            extra={"requested": len(request), "assembled": len(records)},
        )
        return records

    @staticmethod
    def _cancel(decodes: List[Tuple[int, asyncio.Future]]) -> None:
        for _, future in decodes:
            future.cancel()

    def _build_record(self, buffer: _MessageBuffer) -> MailRecord:
        """Decode one message. Runs in a worker thread."""
        header = b"".join(buffer.header)
        body = b"".join(buffer.body)

        try:
            headers = self._decoder.decode(header)
            content = self._decoder.decode_body(header, body) if body else DecodedMail()
        except DecodeError as e:
            e.details.setdefault("seqno", buffer.seqno)
            raise
        except Exception as e:
            raise DecodeError(
                f"Failed to decode message: {e}", details={"seqno": buffer.seqno}
            ) from e

        if buffer.uid is None:
            logger.warning("Message has no UID attribute", extra={"seqno": buffer.seqno})

        return MailRecord(
            uid=buffer.uid or 0,
            sender=headers.from_,
            recipients=headers.to,
            subject=headers.subject,
            date=headers.date or datetime.now(timezone.utc),
            plain=content.text.encode("utf-8") if content.text else None,
            html=content.html.encode("utf-8") if content.html else None,
            seqno=buffer.seqno,
        )
