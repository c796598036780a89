"""
Unit tests for call de-duplication and the status reply index.
"""
from src.models.message import SourceMessageKey
from src.services.bridge.call_deduplicator import CallDeduplicator
from src.services.bridge.reply_index import ReplyIndex


class TestCallDeduplicator:
    """Repeated call events inside the suppression window"""

    def test_first_event_notifies_repeats_suppressed(self, clock):
        dedup = CallDeduplicator(window=30, clock=clock)

        assert dedup.should_notify("caller_call1") is True
        clock.advance(10)
        assert dedup.should_notify("caller_call1") is False
        assert dedup.should_notify("caller_call2") is True

    def test_notifies_again_after_window(self, clock):
        dedup = CallDeduplicator(window=30, clock=clock)
        dedup.should_notify("caller_call1")

        clock.advance(30)

        assert dedup.should_notify("caller_call1") is True

    def test_cleanup_removes_expired_entries(self, clock):
        dedup = CallDeduplicator(window=30, clock=clock)
        dedup.should_notify("a")
        clock.advance(20)
        dedup.should_notify("b")
        clock.advance(15)

        assert dedup.cleanup_expired() == 1
        assert len(dedup) == 1

        stats = dedup.get_statistics()
        assert stats['notified'] == 2
        assert stats['expired'] == 1


class TestReplyIndex:
    """Forum message -> broadcast post lookups"""

    def key(self, participant="15551230001@s.whatsapp.net"):
        return SourceMessageKey(conversation_id="status@broadcast", message_id="ABC",
                                participant_id=participant)

    def test_lookup_returns_original_poster(self, clock):
        index = ReplyIndex(clock=clock)
        index.add(1001, self.key())

        entry = index.lookup(1001)

        assert entry.original_poster == "15551230001@s.whatsapp.net"
        assert index.lookup(9999) is None

    def test_expired_entries_are_not_returned(self, clock):
        index = ReplyIndex(max_age=60, clock=clock)
        index.add(1001, self.key())

        clock.advance(61)

        assert index.lookup(1001) is None

    def test_prune_drops_old_entries(self, clock):
        index = ReplyIndex(max_age=60, clock=clock)
        index.add(1, self.key())
        clock.advance(30)
        index.add(2, self.key())
        clock.advance(31)

        assert index.prune() == 1
        assert len(index) == 1
        assert index.lookup(2) is not None

    def test_readding_refreshes_age(self, clock):
        index = ReplyIndex(max_age=60, clock=clock)
        index.add(1, self.key())
        index.add(2, self.key())
        clock.advance(30)
        index.add(1, self.key("15551230002@s.whatsapp.net"))
        clock.advance(31)

        assert index.prune() == 1
        assert index.lookup(1).original_poster == "15551230002@s.whatsapp.net"
