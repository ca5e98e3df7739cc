"""Tests for CooldownGate - dedup keys, cooldown window and races."""
import threading

import pytest

from guardian.shared.models import ClassificationResult, Message, Severity
from guardian.shared.utils import configure_pii_salt
from guardian.services.alert_service.cooldown_gate import (
    CooldownGate,
    build_dedup_key,
)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_message(sender="Alex", app="WhatsApp", child_id="child_1", text="greens"):
    return Message(
        message_id="m1",
        child_id=child_id,
        app=app,
        sender=sender,
        text=text,
    )


def make_result(phrases=("greens",), reasons=(), filters=()):
    return ClassificationResult(
        flagged=True,
        severity=Severity.MEDIUM,
        confidence=0.7,
        matched_phrases=frozenset(phrases),
        matched_pattern_reasons=frozenset(reasons),
        source_filters=tuple(filters),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gate(clock):
    return CooldownGate(cooldown_seconds=300, clock=clock)


class TestDedupKey:

    def test_deterministic(self):
        assert build_dedup_key(make_message(), make_result()) == build_dedup_key(
            make_message(), make_result()
        )

    def test_phrase_order_irrelevant(self):
        a = make_result(phrases=("greens", "smoke"))
        b = make_result(phrases=("smoke", "greens"))

        assert build_dedup_key(make_message(), a) == build_dedup_key(make_message(), b)

    def test_sender_changes_key(self):
        result = make_result()

        assert build_dedup_key(make_message(sender="Alex"), result) != build_dedup_key(
            make_message(sender="Sam"), result
        )

    def test_different_phrases_change_key(self):
        assert build_dedup_key(make_message(), make_result(("greens",))) != \
            build_dedup_key(make_message(), make_result(("bud",)))

    def test_pattern_only_events_do_not_collapse(self):
        photo = make_result(phrases=(), reasons=("photo request",))
        meeting = make_result(phrases=(), reasons=("meeting alone context",))

        assert build_dedup_key(make_message(), photo) != build_dedup_key(
            make_message(), meeting
        )

    def test_key_is_sha256_hex(self):
        key = build_dedup_key(make_message(), make_result())

        assert len(key) == 64
        int(key, 16)


class TestCooldownWindow:
    """Same event inside the window yields one alert; after it, another."""

    def test_first_event_emits(self, gate):
        emit, key = gate.should_emit("g1", "child_1", make_result(), make_message())

        assert emit is True
        assert key == build_dedup_key(make_message(), make_result())

    def test_repeats_within_window_suppressed(self, gate, clock):
        results = []
        for _ in range(5):
            results.append(
                gate.should_emit("g1", "child_1", make_result(), make_message())[0]
            )
            clock.advance(10)

        assert results == [True, False, False, False, False]
        assert gate.suppressed_count == 4

    def test_emits_again_after_window(self, gate, clock):
        gate.should_emit("g1", "child_1", make_result(), make_message())
        clock.advance(301)

        emit, _ = gate.should_emit("g1", "child_1", make_result(), make_message())

        assert emit is True

    def test_window_boundary_is_inclusive(self, gate, clock):
        gate.should_emit("g1", "child_1", make_result(), make_message())
        clock.advance(300)

        assert gate.should_emit("g1", "child_1", make_result(), make_message())[0]

    def test_guardians_are_independent(self, gate):
        first = gate.should_emit("g1", "child_1", make_result(), make_message())[0]
        second = gate.should_emit("g2", "child_1", make_result(), make_message())[0]

        assert first is True and second is True

    def test_distinct_content_not_suppressed(self, gate):
        gate.should_emit("g1", "child_1", make_result(("greens",)), make_message())

        emit, _ = gate.should_emit(
            "g1", "child_1", make_result(("cocaine",)), make_message()
        )

        assert emit is True


class TestConcurrency:

    def test_only_one_racer_emits(self, gate):
        barrier = threading.Barrier(16)
        outcomes = []
        lock = threading.Lock()

        def evaluate():
            barrier.wait()
            emit, _ = gate.should_emit("g1", "child_1", make_result(), make_message())
            with lock:
                outcomes.append(emit)

        threads = [threading.Thread(target=evaluate) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(True) == 1
        assert outcomes.count(False) == 15


class TestPurge:

    def test_purge_expired(self, gate, clock):
        gate.should_emit("g1", "child_1", make_result(("greens",)), make_message())
        clock.advance(200)
        gate.should_emit("g1", "child_1", make_result(("bud",)), make_message())
        clock.advance(150)

        removed = gate.purge_expired()

        assert removed == 1
        assert gate.tracked_keys == 1
