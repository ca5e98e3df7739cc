"""Tests for push and polling message sources."""
import threading

import pytest

from guardian.shared.models import Message
from guardian.shared.utils import configure_pii_salt
from guardian.services.monitor_service.sources import (
    PollingMessageSource,
    QueueMessageSource,
)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


def make_message(message_id):
    return Message(
        message_id=message_id,
        child_id="child_1",
        app="Telegram",
        sender="Sam",
        text="hello",
    )


class TestQueueMessageSource:

    def test_yields_pushed_messages_in_order(self):
        source = QueueMessageSource(poll_interval=0.01)
        for i in range(3):
            source.push(make_message(f"m{i}"))
        source.close()

        assert [m.message_id for m in source] == ["m0", "m1", "m2"]

    def test_push_after_close_rejected(self):
        source = QueueMessageSource()
        source.close()

        with pytest.raises(RuntimeError):
            source.push(make_message("m1"))

    def test_consumer_sees_messages_pushed_later(self):
        source = QueueMessageSource(poll_interval=0.01)
        received = []

        consumer = threading.Thread(
            target=lambda: received.extend(m.message_id for m in source)
        )
        consumer.start()
        source.push(make_message("m1"))
        source.push(make_message("m2"))
        source.close()
        consumer.join(timeout=5)

        assert received == ["m1", "m2"]


class TestPollingMessageSource:

    def test_overlapping_windows_deduplicated(self):
        windows = iter([
            [make_message("m1"), make_message("m2")],
            [make_message("m2"), make_message("m3")],
            [make_message("m3")],
        ])
        source = PollingMessageSource(
            lambda: next(windows), poll_interval_seconds=0, max_polls=3
        )

        assert [m.message_id for m in source] == ["m1", "m2", "m3"]
        assert source.polls == 3

    def test_fetch_failure_skips_one_poll(self):
        calls = {"n": 0}

        def fetch():
            calls["n"] += 1
            if calls["n"] == 1:
                raise ConnectionError("store offline")
            return [make_message("m1")]

        source = PollingMessageSource(fetch, poll_interval_seconds=0, max_polls=2)

        assert [m.message_id for m in source] == ["m1"]
        assert source.fetch_failures == 0

    def test_seen_ids_bounded(self):
        source = PollingMessageSource(
            lambda: [make_message("m1"), make_message("m2"), make_message("m3")],
            seen_capacity=2,
        )

        list(source.poll_once())

        assert list(source._seen) == ["m2", "m3"]

    def test_close_stops_iteration(self):
        source = PollingMessageSource(lambda: [], poll_interval_seconds=60)
        finished = threading.Event()

        def consume():
            list(source)
            finished.set()

        consumer = threading.Thread(target=consume)
        consumer.start()
        source.close()
        consumer.join(timeout=5)

        assert finished.is_set()
