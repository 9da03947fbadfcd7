"""Tests for mailbox snapshots and processed UID tracking."""

import pytest

from mailstream.core.mailbox import MailboxSnapshot, ProcessedIdentifierSet
from mailstream.imap.events import MailboxStatus


class TestMailboxSnapshot:
    """Tests for MailboxSnapshot"""

    def snapshot(self, exists=10):
        return MailboxSnapshot.from_status(
            MailboxStatus(name="INBOX", exists=exists, recent=1, unseen=4, uidvalidity=7, uidnext=42)
        )

    def test_from_status(self):
        """Test the baseline starts at the reported message count"""
        snapshot = self.snapshot()

        assert snapshot.baseline == 10
        assert snapshot.status() == {"total": 10, "new": 1, "unseen": 4}
        assert snapshot.uidvalidity == 7

    def test_arrival_then_advance(self):
        """Test arrivals raise counters and only advance moves the baseline"""
        snapshot = self.snapshot()

        snapshot.record_arrival(3)
        assert snapshot.total == 13
        assert snapshot.new == 4
        assert snapshot.baseline == 10

        snapshot.advance(3)
        assert snapshot.baseline == 13

    def test_expunge_at_or_below_baseline(self):
        """Test expunging a known message shifts the baseline down"""
        snapshot = self.snapshot()

        snapshot.record_expunge(10)

        assert snapshot.baseline == 9
        assert snapshot.total == 9

    def test_expunge_above_baseline(self):
        """Test expunging an unfetched message keeps the baseline"""
        snapshot = self.snapshot()
        snapshot.record_arrival(2)

        snapshot.record_expunge(12)

        assert snapshot.baseline == 10
        assert snapshot.total == 11

    def test_copy_is_independent(self):
        """Test copies do not share state"""
        snapshot = self.snapshot()
        copy = snapshot.copy()

        copy.advance(5)

        assert snapshot.baseline == 10
        assert copy == MailboxSnapshot(**{**vars(snapshot), "baseline": 15})


class TestProcessedIdentifierSet:
    """Tests for ProcessedIdentifierSet"""

    def test_add_and_contains(self):
        """Test added UIDs are remembered"""
        processed = ProcessedIdentifierSet()
        processed.add(5)

        assert 5 in processed
        assert 6 not in processed
        assert len(processed) == 1

    def test_zero_is_never_recorded(self):
        """Test the placeholder UID 0 is ignored"""
        processed = ProcessedIdentifierSet()
        processed.add(0)

        assert len(processed) == 0

    def test_unprocessed_preserves_order_and_drops_repeats(self):
        """Test filtering keeps search order without duplicates"""
        processed = ProcessedIdentifierSet()
        processed.add(2)

        assert processed.unprocessed([5, 2, 3, 5, 1]) == [5, 3, 1]

    def test_eviction_drops_lowest(self):
        """Test exceeding max_size evicts the lowest UIDs"""
        processed = ProcessedIdentifierSet(max_size=3)
        for uid in (10, 4, 7, 12):
            processed.add(uid)

        assert list(processed) == [7, 10, 12]

    def test_prune_below(self):
        """Test pruning forgets UIDs under the floor"""
        processed = ProcessedIdentifierSet()
        for uid in (1, 2, 8, 9):
            processed.add(uid)

        removed = processed.prune_below(8)

        assert removed == 2
        assert list(processed) == [8, 9]

    def test_max_size_must_be_positive(self):
        """Test a zero bound is rejected"""
        with pytest.raises(ValueError):
            ProcessedIdentifierSet(max_size=0)
