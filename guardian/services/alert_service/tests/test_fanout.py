"""Tests for SubscriptionHub - per-guardian live alert streams."""
import threading

import pytest

from guardian.shared.models import Alert, DeliveryUrgency, Severity
from guardian.shared.utils import configure_pii_salt
from guardian.services.alert_service.fanout import AlertSubscription, SubscriptionHub


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


def make_alert(alert_id, guardian_id="guardian_1"):
    return Alert(
        alert_id=alert_id,
        guardian_id=guardian_id,
        child_id="child_1",
        app="WhatsApp",
        sender="Alex",
        severity=Severity.MEDIUM,
        confidence=0.8,
        flagged_content="greens",
        reasoning="greens",
        dedup_key="key",
        urgency=DeliveryUrgency.DELAYED,
    )


@pytest.fixture
def hub():
    return SubscriptionHub(max_queue=10)


class TestDelivery:

    def test_guardian_receives_own_alert(self, hub):
        session = hub.subscribe("guardian_1")

        assert hub.publish(make_alert("a1")) == 1
        assert session.get(timeout=1).alert_id == "a1"

    def test_other_guardian_receives_nothing(self, hub):
        mine = hub.subscribe("guardian_1")
        other = hub.subscribe("guardian_2")

        hub.publish(make_alert("a1", guardian_id="guardian_1"))

        assert mine.get(timeout=1).alert_id == "a1"
        assert other.get(timeout=0.05) is None

    def test_each_session_receives_once(self, hub):
        phone = hub.subscribe("guardian_1")
        tablet = hub.subscribe("guardian_1")

        assert hub.publish(make_alert("a1")) == 2
        assert phone.get(timeout=1).alert_id == "a1"
        assert tablet.get(timeout=1).alert_id == "a1"
        assert phone.get(timeout=0.05) is None

    def test_no_replay_for_late_subscriber(self, hub):
        hub.publish(make_alert("a1"))
        session = hub.subscribe("guardian_1")

        assert session.get(timeout=0.05) is None

    def test_publish_order_preserved(self, hub):
        session = hub.subscribe("guardian_1")
        for i in range(5):
            hub.publish(make_alert(f"a{i}"))

        received = [session.get(timeout=1).alert_id for _ in range(5)]

        assert received == ["a0", "a1", "a2", "a3", "a4"]

    def test_orphaned_alert_goes_nowhere(self, hub):
        hub.subscribe("guardian_1")

        assert hub.publish(make_alert("a1", guardian_id=None)) == 0


class TestCancellation:

    def test_closed_session_stops_receiving(self, hub):
        leaving = hub.subscribe("guardian_1")
        staying = hub.subscribe("guardian_1")

        leaving.close()
        delivered = hub.publish(make_alert("a1"))

        assert delivered == 1
        assert leaving.get(timeout=0.05) is None
        assert staying.get(timeout=1).alert_id == "a1"
        assert hub.subscriber_count("guardian_1") == 1

    def test_unsubscribe_closes_session(self, hub):
        session = hub.subscribe("guardian_1")

        hub.unsubscribe(session)

        assert session.closed
        assert hub.subscriber_count() == 0

    def test_iteration_ends_on_close(self, hub):
        session = hub.subscribe("guardian_1")
        session.poll_interval = 0.05
        received = []

        def consume():
            for alert in session:
                received.append(alert.alert_id)
                if len(received) == 2:
                    session.close()

        consumer = threading.Thread(target=consume)
        consumer.start()
        hub.publish(make_alert("a1"))
        hub.publish(make_alert("a2"))
        consumer.join(timeout=5)

        assert not consumer.is_alive()
        assert received == ["a1", "a2"]
        hub.publish(make_alert("a3"))
        assert received == ["a1", "a2"]

    def test_last_close_releases_guardian_lock(self, hub):
        phone = hub.subscribe("guardian_1")
        tablet = hub.subscribe("guardian_1")
        hub.publish(make_alert("a1"))

        phone.close()
        assert "guardian_1" in hub._publish_locks
        tablet.close()

        assert "guardian_1" not in hub._publish_locks
        assert "guardian_1" not in hub._subscriptions

    def test_publish_without_sessions_keeps_no_lock(self, hub):
        for i in range(3):
            assert hub.publish(make_alert(f"a{i}", guardian_id=f"guardian_{i}")) == 0

        assert dict(hub._publish_locks) == {}


class TestBackpressure:

    def test_full_queue_is_local_to_session(self, hub):
        slow = AlertSubscription("guardian_1", max_queue=1)
        hub._subscriptions["guardian_1"].append(slow)
        fast = hub.subscribe("guardian_1")

        hub.publish(make_alert("a1"))
        hub.publish(make_alert("a2"))

        assert slow.dropped_count == 1
        assert fast.get(timeout=1).alert_id == "a1"
        assert fast.get(timeout=1).alert_id == "a2"
