"""Protocol engine backed by aioimaplib."""

import asyncio
import re
import ssl
from dataclasses import replace
from typing import AsyncIterator, Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple, Union

import aioimaplib

from mailstream.utils.config import MailstreamConfig
from mailstream.utils.errors import (
    ConnectionError,
    FetchError,
    MailboxError,
    MailstreamError,
)
from mailstream.utils.logging import async_log_call, get_logger

from .constants import IMAPResponse, Timeouts
from .engine import ProtocolEngine
from .events import (
    AttributesReceived,
    BodyChunk,
    ConnectionLost,
    FetchEnded,
    FetchEvent,
    FlagsChanged,
    MailboxStatus,
    MessageEnded,
    MessageExpunged,
    MessageStarted,
    NewMail,
)

logger = get_logger(__name__)

_FETCH_START = re.compile(rb"^(\d+) FETCH \(")
_LITERAL_SECTION = re.compile(rb"BODY\[([^\]]*)\](?:<\d+>)? \{(\d+)\}\s*$")
_QUOTED_SECTION = re.compile(rb'BODY\[([^\]]*)\](?:<\d+>)? "((?:[^"\\]|\\.)*)"')
_UID = re.compile(rb"\bUID (\d+)")
_FLAGS = re.compile(rb"\bFLAGS \(([^)]*)\)")
_EXISTS = re.compile(rb"^(\d+) EXISTS")
_RECENT = re.compile(rb"^(\d+) RECENT")
_EXPUNGE = re.compile(rb"^(\d+) EXPUNGE")
_UIDVALIDITY = re.compile(rb"\[UIDVALIDITY (\d+)\]")
_UIDNEXT = re.compile(rb"\[UIDNEXT (\d+)\]")
_STATUS_UNSEEN = re.compile(rb"UNSEEN (\d+)")

Line = Union[bytes, bytearray, str]


## Response parsing


def _as_bytes(line: Line) -> bytes:
    return line.encode() if isinstance(line, str) else bytes(line)


def _first_line(lines: Sequence[Line]) -> str:
    if not lines:
        return "No response"
    return _as_bytes(lines[0]).decode("utf-8", errors="replace")


def quote_mailbox(name: str) -> str:
    """Quote a mailbox name for SELECT/STATUS when it needs it."""
    if name.startswith('"') and name.endswith('"'):
        return name
    if re.search(r'[\s"\\(){}%*]', name):
        escaped = name.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return name


def build_fetch_items(parts: Sequence[str]) -> str:
    sections = " ".join(f"BODY.PEEK[{part}]" for part in parts)
    return f"(UID FLAGS {sections})"


def _search_result(line: Line) -> Optional[List[int]]:
    """UIDs carried by a ``SEARCH`` result line, or ``None`` for any other line."""
    if not isinstance(line, (bytes, str)):
        return None
    data = _as_bytes(line)
    if data.startswith(b"SEARCH"):
        data = data[len(b"SEARCH"):]
    tokens = data.split()
    if not all(token.isdigit() for token in tokens):
        return None
    return [int(token) for token in tokens]


def split_search_response(lines: Sequence[Line]) -> Tuple[List[int], List[Line]]:
    """Separate the UID SEARCH result from untagged lines sharing its response."""
    for index, line in enumerate(lines):
        uids = _search_result(line)
        if uids is not None:
            return uids, [*lines[:index], *lines[index + 1:]]
    return [], list(lines)


def parse_search_response(lines: Sequence[Line]) -> List[int]:
    """Extract UIDs from a UID SEARCH response."""
    return split_search_response(lines)[0]


def parse_select_response(mailbox: str, lines: Sequence[Line]) -> MailboxStatus:
    """Read EXISTS, RECENT, UIDVALIDITY and UIDNEXT from a SELECT response."""
    exists = recent = uidvalidity = uidnext = 0
    read_only = False

    for raw in lines:
        if isinstance(raw, bytearray):
            continue
        line = _as_bytes(raw)
        exists = _int_group(_EXISTS.match(line), exists)
        recent = _int_group(_RECENT.match(line), recent)
        uidvalidity = _int_group(_UIDVALIDITY.search(line), uidvalidity)
        uidnext = _int_group(_UIDNEXT.search(line), uidnext)
        if b"[READ-ONLY]" in line:
            read_only = True

    return MailboxStatus(
        name=mailbox,
        exists=exists,
        recent=recent,
        uidvalidity=uidvalidity,
        uidnext=uidnext,
        read_only=read_only,
    )


def _int_group(match: Optional[re.Match], default: int) -> int:
    return int(match.group(1)) if match else default


def _parse_flags(raw: bytes) -> tuple:
    return tuple(flag.decode("utf-8", errors="replace") for flag in raw.split())


def _unescape_quoted(raw: bytes) -> bytes:
    return re.sub(rb"\\(.)", rb"\1", raw)


class _PendingMessage:
    __slots__ = ("seqno", "uid", "flags", "chunks")

    def __init__(self, seqno: int):
        self.seqno = seqno
        self.uid: Optional[int] = None
        self.flags: tuple = ()
        self.chunks: List[BodyChunk] = []

    def scan(self, line: bytes) -> None:
        uid = _UID.search(line)
        if uid:
            self.uid = int(uid.group(1))
        flags = _FLAGS.search(line)
        if flags:
            self.flags = _parse_flags(flags.group(1))

    def add_chunk(self, section: str, data: bytes) -> None:
        self.chunks.append(BodyChunk(self.seqno, section, data))

    def finish(self, has_body: bool) -> List[Union[FetchEvent, FlagsChanged]]:
        # Items without a body section are unsolicited flag updates
        if not has_body:
            return [FlagsChanged(self.seqno, self.flags)]
        return [
            MessageStarted(self.seqno),
            *self.chunks,
            AttributesReceived(seqno=self.seqno, uid=self.uid, flags=self.flags),
            MessageEnded(seqno=self.seqno),
        ]


def parse_fetch_response(lines: Sequence[Line]) -> List[Union[FetchEvent, FlagsChanged]]:
    """Turn the lines of a FETCH response into tagged fetch events.

    aioimaplib returns literal payloads as ``bytearray`` items that follow the
    line announcing them with ``{size}``. Every message yields
    ``MessageStarted``, its ``BodyChunk`` events, ``AttributesReceived`` and
    ``MessageEnded``; the stream ends with one ``FetchEnded``. A FETCH item
    with no ``BODY[...]`` section is a flag update the server sent alongside
    the fetch and yields a single ``FlagsChanged`` instead.
    """
    events: List[Union[FetchEvent, FlagsChanged]] = []
    current: Optional[_PendingMessage] = None
    has_body = False
    pending_section: Optional[str] = None

    for raw in lines:
        if isinstance(raw, bytearray):
            if current is not None and pending_section is not None:
                current.add_chunk(pending_section, bytes(raw))
            pending_section = None
            continue

        line = _as_bytes(raw)
        start = _FETCH_START.match(line)
        if start:
            if current is not None:
                events.extend(current.finish(has_body))
            current = _PendingMessage(int(start.group(1)))
            has_body = False

        if current is None:
            continue

        current.scan(line)
        for match in _QUOTED_SECTION.finditer(line):
            section = match.group(1).decode("ascii", errors="replace")
            current.add_chunk(section, _unescape_quoted(match.group(2)))
            has_body = True

        literal = _LITERAL_SECTION.search(line)
        if literal:
            pending_section = literal.group(1).decode("ascii", errors="replace")
            has_body = True
        elif line.rstrip().endswith(b")"):
            events.extend(current.finish(has_body))
            current = None

    if current is not None:
        events.extend(current.finish(has_body))

    events.append(FetchEnded())
    return events


## Engine


class AioImapEngine(ProtocolEngine):
    """IMAP engine using aioimaplib, with IDLE for push notifications.

    aioimaplib cannot interleave commands on one connection, so every command
    runs under ``self._lock`` and IDLE is suspended for its duration.
    """

    def __init__(self, config: MailstreamConfig):
        super().__init__()
        self._config = config
        self._client: Optional[aioimaplib.IMAP4] = None
        self._lock = asyncio.Lock()
        self._selected: Optional[str] = None
        self._exists = 0
        self._idle_task: Optional[asyncio.Task] = None
        self._idle_command: Optional[Awaitable] = None

    @property
    def idle_supported(self) -> bool:
        return (
            self._config.idle
            and self._client is not None
            and self._client.has_capability("IDLE")
        )

    def _ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if not self._config.verify_certificates:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def _require_client(self) -> aioimaplib.IMAP4:
        if self._client is None:
            raise ConnectionError("IMAP connection is not open")
        return self._client

    @async_log_call
    async def connect(self) -> None:
        config = self._config
        details = {"host": config.host, "port": config.port}

        logger.info("Connecting to IMAP server", extra=details)
        try:
            if config.tls:
                client = aioimaplib.IMAP4_SSL(
                    host=config.host,
                    port=config.port,
                    timeout=config.timeout,
                    ssl_context=self._ssl_context(),
                )
            else:
                client = aioimaplib.IMAP4(
                    host=config.host, port=config.port, timeout=config.timeout
                )

            await asyncio.wait_for(client.wait_hello_from_server(), timeout=config.timeout)
            response = await asyncio.wait_for(
                client.login(config.email, config.password), timeout=config.timeout
            )

        except asyncio.TimeoutError as e:
            raise ConnectionError("IMAP connection timed out", details=details) from e

        except Exception as e:
            raise ConnectionError(f"Failed to connect to IMAP server: {e}", details=details) from e

        if response.result != IMAPResponse.OK:
            raise ConnectionError(
                "IMAP authentication failed",
                details={**details, "response": _first_line(response.lines)},
            )

        self._client = client
        logger.info("IMAP connection established", extra=details)

    async def _execute(
        self,
        operation: str,
        command: Callable[[aioimaplib.IMAP4], Awaitable],
        error_cls: type,
        **details,
    ):
        async with self._lock:
            client = self._require_client()
            await self._stop_idle()
            try:
                response = await command(client)
            except MailstreamError:
                raise
            except Exception as e:
                raise error_cls(
                    f"IMAP {operation} error: {e}",
                    details={"operation": operation, **details},
                ) from e
            finally:
                self._start_idle()

        if response.result != IMAPResponse.OK:
            raise error_cls(
                f"IMAP {operation} failed",
                details={
                    "operation": operation,
                    "response": _first_line(response.lines),
                    **details,
                },
            )

        return response

    async def select(self, mailbox: str) -> MailboxStatus:
        self._selected = None
        response = await self._execute(
            "select",
            lambda client: client.select(quote_mailbox(mailbox)),
            MailboxError,
            mailbox=mailbox,
        )
        status = parse_select_response(mailbox, response.lines)

        try:
            status = replace(status, unseen=await self._unseen_count(mailbox))
        except MailstreamError as e:
            logger.debug("Unseen count unavailable", extra={"mailbox": mailbox, "error": str(e)})

        self._exists = status.exists
        self._selected = mailbox
        self._start_idle()

        logger.debug(
            "Selected IMAP mailbox",
            extra={"mailbox": mailbox, "exists": status.exists, "recent": status.recent},
        )
        return status

    async def _unseen_count(self, mailbox: str) -> int:
        response = await self._execute(
            "status",
            lambda client: client.status(quote_mailbox(mailbox), "(UNSEEN)"),
            MailboxError,
            mailbox=mailbox,
        )
        for line in response.lines:
            match = _STATUS_UNSEEN.search(_as_bytes(line))
            if match:
                return int(match.group(1))
        return 0

    async def search(self, criteria: str) -> List[int]:
        response = await self._execute(
            "search",
            lambda client: client.uid_search(criteria),
            FetchError,
            criteria=criteria,
        )
        uids, untagged = split_search_response(response.lines)
        self._handle_push_lines(untagged)
        logger.debug("UID search completed", extra={"criteria": criteria, "count": len(uids)})
        return uids

    async def fetch(
        self, message_set: str, parts: Sequence[str], by_uid: bool = True
    ) -> AsyncIterator[FetchEvent]:
        items = build_fetch_items(parts)

        async def command(client: aioimaplib.IMAP4):
            if by_uid:
                return await client.uid("fetch", message_set, items)
            return await client.fetch(message_set, items)

        response = await self._execute(
            "fetch", command, FetchError, message_set=message_set, by_uid=by_uid
        )
        for event in parse_fetch_response(response.lines):
            if isinstance(event, FlagsChanged):
                self._emit_push(event)
            else:
                yield event

    async def logout(self) -> None:
        client, self._client = self._client, None
        self._selected = None
        if client is None:
            return

        await self._stop_idle(client)
        await asyncio.wait_for(client.logout(), timeout=Timeouts.IMAP_LOGOUT)
        logger.debug("IMAP connection closed")

    ## IDLE handling

    def _start_idle(self) -> None:
        if self._selected is None or not self.idle_supported:
            return
        if self._idle_task is None or self._idle_task.done():
            self._idle_task = asyncio.create_task(self._idle_loop(self._client))

    async def _stop_idle(self, client: Optional[aioimaplib.IMAP4] = None) -> None:
        client = client or self._client
        task, self._idle_task = self._idle_task, None
        if task is None:
            return

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        if client is not None and client.has_pending_idle():
            client.idle_done()
            if self._idle_command is not None:
                try:
                    await asyncio.wait_for(self._idle_command, Timeouts.IMAP_IDLE_DONE)
                except (asyncio.TimeoutError, aioimaplib.AioImapException) as e:
                    logger.debug("IDLE did not end cleanly", extra={"error": str(e)})
        self._idle_command = None

    async def _idle_loop(self, client: aioimaplib.IMAP4) -> None:
        try:
            while True:
                self._idle_command = await client.idle_start(timeout=Timeouts.IMAP_IDLE)
                while client.has_pending_idle():
                    try:
                        push = await client.wait_server_push(
                            timeout=Timeouts.IMAP_IDLE + Timeouts.IMAP_IDLE_DONE
                        )
                    except asyncio.TimeoutError:
                        continue
                    if push == aioimaplib.STOP_WAIT_SERVER_PUSH:
                        break
                    self._handle_push_lines(push if isinstance(push, list) else [push])

                await asyncio.wait_for(self._idle_command, Timeouts.IMAP_IDLE_DONE)

        except asyncio.CancelledError:
            raise

        except Exception as e:
            logger.warning("IDLE loop stopped", extra={"error": str(e)})
            self._emit_push(
                ConnectionLost(ConnectionError(f"IDLE failed: {e}", details={"host": self._config.host}))
            )

    def _handle_push_lines(self, lines: Iterable[Line]) -> None:
        """Translate untagged EXISTS / EXPUNGE / FETCH FLAGS lines into push events."""
        for raw in lines:
            if isinstance(raw, bytearray) or not isinstance(raw, (bytes, str)):
                continue
            line = _as_bytes(raw)
            exists = _EXISTS.match(line)
            expunge = _EXPUNGE.match(line)
            fetch = _FETCH_START.match(line)

            if exists:
                count = int(exists.group(1))
                arrived, self._exists = count - self._exists, count
                if arrived > 0:
                    logger.debug("New mail pushed", extra={"count": arrived})
                    self._emit_push(NewMail(arrived))

            elif expunge:
                self._exists = max(self._exists - 1, 0)
                self._emit_push(MessageExpunged(int(expunge.group(1))))

            elif fetch:
                flags = _FLAGS.search(line)
                if flags:
                    self._emit_push(FlagsChanged(int(fetch.group(1)), _parse_flags(flags.group(1))))
