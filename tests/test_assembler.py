"""
Tests for message assembly

Tests cover:
- Fetch requests and message sets
- Reassembling streamed sections
- Output ordering and decode failure isolation
- Fetch failures
"""
import logging
import time
from datetime import datetime, timedelta, timezone

import pytest

from mailstream.core.assembler import FetchRequest, MessageAssembler
from mailstream.core.parser import MimeDecoder
from mailstream.imap.constants import FetchParts
from mailstream.imap.events import (
    AttributesReceived,
    BodyChunk,
    FetchEnded,
    MessageStarted,
)
from mailstream.utils.errors import DecodeError, FetchError

from .test_helpers import FakeEngine, FakeMessage, MessageTestHelper, fetch_failed


class SlowDecoder(MimeDecoder):
    """Decoder that takes longer for earlier messages"""

    DELAYS = {b"Subject 1": 0.2, b"Subject 2": 0.1}

    def decode(self, raw):
        for marker, delay in self.DELAYS.items():
            if marker in raw:
                time.sleep(delay)
        return super().decode(raw)


class BrokenDecoder(MimeDecoder):
    """Decoder that rejects any message mentioning 'broken'"""

    def decode(self, raw):
        if b"broken" in raw:
            raise DecodeError("Malformed MIME structure")
        return super().decode(raw)


class ScriptedEngine(FakeEngine):
    """Engine replaying a fixed list of fetch events"""

    def __init__(self, script):
        super().__init__()
        self.selected = "INBOX"
        self.script = script

    async def fetch(self, message_set, parts, by_uid=True):
        for event in self.script:
            yield event


class TestFetchRequest:
    """Tests for fetch request construction"""

    def test_message_set_compacts_ranges(self):
        """Test consecutive ids collapse into ranges"""
        request = FetchRequest.for_uids([7, 1, 2, 3, 9, 10])

        assert request.message_set() == "1:3,7,9:10"
        assert request.by_uid is True
        assert len(request) == 6

    def test_for_range_uses_sequence_numbers(self):
        """Test a push range is a run of sequence numbers"""
        request = FetchRequest.for_range(4, 3)

        assert request.ids == (4, 5, 6)
        assert request.by_uid is False
        assert request.message_set() == "4:6"

    def test_single_id(self):
        """Test a single id has no range syntax"""
        assert FetchRequest.for_uids([42]).message_set() == "42"


class TestAssemble:
    """Tests for MessageAssembler.assemble"""

    @pytest.mark.asyncio
    async def test_empty_request_skips_fetch(self, engine):
        """Test an empty request never reaches the engine"""
        engine.selected = "INBOX"
        assembler = MessageAssembler(engine)

        assert await assembler.assemble(FetchRequest.for_uids([])) == []
        assert engine.fetch_calls == []

    @pytest.mark.asyncio
    async def test_order_follows_fetch_not_decode_completion(self, engine):
        """Test slow decodes do not reorder the output"""
        engine.selected = "INBOX"
        assembler = MessageAssembler(engine, decoder=SlowDecoder(), decode_workers=3)

        records = await assembler.assemble(FetchRequest.for_uids([1, 2, 3]))

        assert [record.uid for record in records] == [1, 2, 3]
        assert [record.seqno for record in records] == [1, 2, 3]
        assembler.shutdown()

    @pytest.mark.asyncio
    async def test_chunked_sections_are_joined(self, engine):
        """Test a body streamed in small chunks is reassembled"""
        engine.selected = "INBOX"
        engine.chunk_size = 2
        assembler = MessageAssembler(engine)

        records = await assembler.assemble(FetchRequest.for_uids([2]))

        assert records[0].text.strip() == "Body 2"
        assert records[0].subject == "Subject 2"

    @pytest.mark.asyncio
    async def test_decode_failure_skips_one_message(self, caplog):
        """Test one undecodable message is dropped and the rest returned"""
        engine = FakeEngine([
            FakeMessage.build(1),
            FakeMessage.build(2, subject="broken"),
            FakeMessage.build(3),
        ])
        engine.selected = "INBOX"
        assembler = MessageAssembler(engine, decoder=BrokenDecoder())

        with caplog.at_level(logging.WARNING, logger="mailstream"):
            records = await assembler.assemble(FetchRequest.for_uids([1, 2, 3]))

        assert [record.uid for record in records] == [1, 3]
        assert "Skipping message that failed to decode" in caplog.text

    @pytest.mark.asyncio
    async def test_engine_fetch_error_propagates(self, engine):
        """Test a FetchError from the engine fails the batch"""
        engine.selected = "INBOX"
        engine.fetch_error = fetch_failed()
        engine.fetch_error_after = 1
        assembler = MessageAssembler(engine)

        with pytest.raises(FetchError):
            await assembler.assemble(FetchRequest.for_uids([1, 2, 3]))

    @pytest.mark.asyncio
    async def test_unexpected_fetch_exception_is_wrapped(self, engine):
        """Test transport exceptions become FetchError"""
        engine.selected = "INBOX"
        engine.fetch_error = OSError("Connection reset by peer")
        assembler = MessageAssembler(engine)

        with pytest.raises(FetchError) as exc_info:
            await assembler.assemble(FetchRequest.for_uids([1]))

        assert exc_info.value.details["message_set"] == "1"
        assert isinstance(exc_info.value.__cause__, OSError)

    @pytest.mark.asyncio
    async def test_requests_header_and_text_sections(self, engine):
        """Test the default parts are passed to the engine"""
        engine.selected = "INBOX"
        assembler = MessageAssembler(engine)

        await assembler.assemble(FetchRequest.for_range(1, 2))

        assert engine.fetch_calls[0].parts == FetchParts.DEFAULT
        assert engine.fetch_calls[0].by_uid is False

    @pytest.mark.asyncio
    async def test_missing_uid_and_date(self):
        """Test a message without UID or Date gets uid 0 and the current time"""
        header = MessageTestHelper.header(date=None)
        engine = ScriptedEngine([
            MessageStarted(1),
            BodyChunk(1, FetchParts.HEADER, header),
            BodyChunk(1, FetchParts.TEXT, MessageTestHelper.body()),
            AttributesReceived(1, uid=None),
            FetchEnded(),
        ])
        assembler = MessageAssembler(engine)
        before = datetime.now(timezone.utc)

        records = await assembler.assemble(FetchRequest.for_uids([5]))

        assert len(records) == 1
        assert records[0].uid == 0
        assert records[0].has_identifier is False
        assert before - timedelta(seconds=1) <= records[0].date <= datetime.now(timezone.utc)

    @pytest.mark.asyncio
    async def test_zoneless_date_is_utc(self):
        """Test a record dated with an unknown zone carries a UTC-aware date"""
        engine = ScriptedEngine([
            MessageStarted(1),
            BodyChunk(1, FetchParts.HEADER, MessageTestHelper.header(date="Thu, 02 Oct 2025 10:30:00 -0000")),
            AttributesReceived(1, uid=3),
            FetchEnded(),
        ])

        records = await MessageAssembler(engine).assemble(FetchRequest.for_uids([3]))

        assert records[0].date == datetime(2025, 10, 2, 10, 30, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_unterminated_messages_are_still_decoded(self):
        """Test messages lacking an end marker are decoded at end of fetch"""
        engine = ScriptedEngine([
            MessageStarted(2),
            BodyChunk(2, FetchParts.HEADER, MessageTestHelper.header(subject="Second")),
            AttributesReceived(2, uid=20),
            BodyChunk(1, FetchParts.HEADER, MessageTestHelper.header(subject="First")),
            AttributesReceived(1, uid=10),
            FetchEnded(),
        ])
        assembler = MessageAssembler(engine)

        records = await assembler.assemble(FetchRequest.for_uids([10, 20]))

        assert [(record.uid, record.subject) for record in records] == [(20, "Second"), (10, "First")]
        assert records[0].plain is None
