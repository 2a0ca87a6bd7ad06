"""
Tests for the single-worker order mailbox.
"""

import threading
from datetime import datetime, timezone

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from hrvd_engine.errors import OrderRejectedError
from hrvd_engine.models import IntentKind, PositionIntent, ProtectiveLevels, Side
from hrvd_engine.order_mailbox import OrderMailbox


T0 = datetime(2026, 1, 13, 15, 0, tzinfo=timezone.utc)


def make_intent(kind=IntentKind.ENTRY, side=Side.LONG):
    return PositionIntent(side, kind, 100.0, 1.0, f"{side.value} test", T0)


class Sink:

    def __init__(self, error=None):
        self.error = error
        self.submitted = []
        self.levels = []
        self.delivered = threading.Event()

    def submit(self, intent):
        if self.error is not None:
            raise self.error
        self.submitted.append(intent)
        self.delivered.set()

    def update_protection(self, levels):
        self.levels.append(levels)


class Rejections:

    def __init__(self):
        self.calls = []

    def __call__(self, intent, reason):
        self.calls.append((intent, reason))


@pytest.fixture
def rejections():
    return Rejections()


class TestInline:

    def test_delivers_in_order(self, rejections):
        sink = Sink()
        mailbox = OrderMailbox(sink, rejections)
        first, second = make_intent(), make_intent(IntentKind.EXIT, Side.SHORT)
        levels = ProtectiveLevels("P1", 98.0, 110.0)

        assert mailbox.post(first)
        assert mailbox.post(levels)
        assert mailbox.post(second)
        assert len(mailbox) == 3

        assert mailbox.process_pending() == 3
        assert sink.submitted == [first, second]
        assert sink.levels == [levels]
        assert mailbox.delivered == 2
        assert rejections.calls == []

    def test_full_mailbox_rejects_immediately(self, rejections):
        mailbox = OrderMailbox(Sink(), rejections, maxsize=1)
        mailbox.post(make_intent())
        overflow = make_intent(side=Side.SHORT)

        assert not mailbox.post(overflow)
        assert rejections.calls == [(overflow, "Order mailbox full")]
        assert mailbox.rejected == 1

    def test_full_mailbox_drops_levels_quietly(self, rejections):
        mailbox = OrderMailbox(Sink(), rejections, maxsize=1)
        mailbox.post(make_intent())
        assert not mailbox.post(ProtectiveLevels("P1", 98.0, 110.0))
        assert rejections.calls == []

    def test_sink_refusal_reported(self, rejections):
        mailbox = OrderMailbox(Sink(OrderRejectedError("Insufficient margin")), rejections)
        intent = make_intent()
        mailbox.post(intent)
        mailbox.process_pending()
        assert rejections.calls == [(intent, "Insufficient margin")]

    def test_sink_failure_reported(self, rejections):
        mailbox = OrderMailbox(Sink(ConnectionError("socket closed")), rejections)
        mailbox.post(make_intent())
        mailbox.process_pending()
        assert rejections.calls[0][1] == "socket closed"
        assert mailbox.rejected == 1


class TestWorker:

    def test_worker_drains_queue(self, rejections):
        sink = Sink()
        mailbox = OrderMailbox(sink, rejections)
        mailbox.start()
        try:
            assert mailbox.is_running
            mailbox.post(make_intent())
            assert sink.delivered.wait(timeout=2.0)
        finally:
            mailbox.stop()

        assert not mailbox.is_running
        assert len(sink.submitted) == 1

    def test_start_twice_keeps_one_worker(self, rejections):
        mailbox = OrderMailbox(Sink(), rejections)
        mailbox.start()
        worker = mailbox._worker
        mailbox.start()
        assert mailbox._worker is worker
        mailbox.stop()
