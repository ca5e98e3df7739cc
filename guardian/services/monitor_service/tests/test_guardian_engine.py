"""Tests for GuardianEngine - end-to-end scenarios through the facade."""
import json
from datetime import datetime, timedelta
from dataclasses import replace

import pytest
from unittest.mock import MagicMock, patch

from guardian.shared.database import NotFoundError
from guardian.shared.models import (
    AlertState,
    Filter,
    MatchMode,
    Message,
    MonitoringSettings,
    Severity,
)
from guardian.shared.utils import configure_pii_salt
from guardian.services.audit_service import AuditAction
from guardian.services.classifier_service import ClassifierConfig
from guardian.services.monitor_service.engine import EngineConfig, GuardianEngine


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


SCENARIO_A = "Want to smoke some greens tonight? I got some bud"
SCENARIO_B = "Let's go to the movies together"
SCENARIO_C = "Send me some photos, meet me alone"


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_message(message_id, text, child_id="child_1"):
    return Message(
        message_id=message_id,
        child_id=child_id,
        app="WhatsApp",
        sender="Alex",
        text=text,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(clock):
    engine = GuardianEngine(
        EngineConfig(notifications_enabled=False, cooldown_seconds=300),
        clock=clock,
        sleep=lambda s: None,
    )
    engine.link_guardian("guardian_1", "child_1")
    return engine


def deliver(engine, message):
    engine.submit_message(message)
    engine.pipeline.process_pending()


class TestScenarios:

    def test_scenario_a_drug_content(self, engine):
        deliver(engine, make_message("m1", SCENARIO_A))

        alerts = engine.recent_alerts("guardian_1")
        assert len(alerts) == 1
        assert alerts[0].severity == Severity.MEDIUM
        assert alerts[0].title == "Drug-Related Content Detected"
        assert "greens" in alerts[0].reasoning
        assert "late night drug activity context" in alerts[0].reasoning

    def test_scenario_b_clean_message(self, engine):
        deliver(engine, make_message("m1", SCENARIO_B))

        assert engine.recent_alerts("guardian_1") == []

    def test_scenario_c_photo_request(self, engine):
        deliver(engine, make_message("m1", SCENARIO_C))

        alert = engine.recent_alerts("guardian_1")[0]
        assert alert.severity == Severity.HIGH
        assert alert.title == "Photo Request Detected"

    def test_scenario_d_cooldown(self, engine, clock):
        deliver(engine, make_message("m1", SCENARIO_A))
        clock.advance(45)
        deliver(engine, make_message("m2", SCENARIO_A))

        assert len(engine.recent_alerts("guardian_1")) == 1

        clock.advance(301)
        deliver(engine, make_message("m3", SCENARIO_A))

        assert len(engine.recent_alerts("guardian_1")) == 2


class TestAlertLifecycle:

    @pytest.fixture
    def alert(self, engine):
        deliver(engine, make_message("m1", SCENARIO_A))
        return engine.recent_alerts("guardian_1")[0]

    def test_mark_read(self, engine, alert):
        updated = engine.mark_alert_read(alert.alert_id)

        assert updated.state == AlertState.READ
        assert updated.read_at is not None
        assert engine.unread_count("guardian_1") == 0

    def test_acknowledge_from_unread(self, engine, alert):
        updated = engine.acknowledge_alert(alert.alert_id)

        assert updated.state == AlertState.ACKNOWLEDGED
        assert updated.read_at is not None
        assert updated.acknowledged_at is not None

    def test_transitions_never_move_backward(self, engine, alert):
        engine.acknowledge_alert(alert.alert_id)

        after_read = engine.mark_alert_read(alert.alert_id)

        assert after_read.state == AlertState.ACKNOWLEDGED

    def test_idempotent_and_audited_once(self, engine, alert):
        first = engine.mark_alert_read(alert.alert_id)
        second = engine.mark_alert_read(alert.alert_id)

        assert first == second
        assert len(engine.audit.query(action=AuditAction.ALERT_READ)) == 1
        assert engine.audit.verify_chain()

    def test_unknown_alert(self, engine):
        with pytest.raises(NotFoundError):
            engine.acknowledge_alert("alert_missing")

    def test_stats(self, engine, alert):
        deliver(engine, make_message("m2", SCENARIO_C))

        stats = engine.alert_stats("guardian_1")

        assert stats["total"] == 2
        assert stats["unread"] == 2
        assert stats["by_severity"] == {"low": 0, "medium": 1, "high": 1, "critical": 0}
        assert stats["by_category"]["drugs"] == 1

    def test_category_breakdown_covers_last_week(self, engine, alert):
        stale = replace(alert, alert_id="alert_old", created_at=datetime.utcnow() - timedelta(days=8))
        engine.alerts.save(stale)

        stats = engine.alert_stats("guardian_1")

        assert stats["total"] == 2
        assert stats["by_category"]["drugs"] == 1


class TestCustomFilters:

    @pytest.fixture
    def engine(self, clock):
        # Permissive thresholds so a single filter hit is alert-worthy
        config = EngineConfig(
            notifications_enabled=False,
            classifier=ClassifierConfig(
                severity_thresholds={severity: 0.1 for severity in Severity}
            ),
        )
        engine = GuardianEngine(config, clock=clock)
        engine.link_guardian("guardian_1", "child_1")
        engine.link_guardian("guardian_2", "child_1")
        return engine

    def make_filter(self, **kwargs):
        defaults = dict(
            filter_id="f1",
            guardian_id="guardian_1",
            match_text="roblox",
            match_mode=MatchMode.EXACT,
            severity=Severity.HIGH,
        )
        defaults.update(kwargs)
        return Filter(**defaults)

    def test_filter_applies_to_next_message(self, engine):
        deliver(engine, make_message("m1", "want to play roblox later"))
        assert engine.recent_alerts("guardian_1") == []

        engine.upsert_filter(self.make_filter())
        deliver(engine, make_message("m2", "want to play roblox later"))

        alerts = engine.recent_alerts("guardian_1")
        assert len(alerts) == 1
        assert alerts[0].severity == Severity.HIGH
        assert alerts[0].title == "Custom Filter Triggered"

    def test_filter_is_per_guardian(self, engine):
        engine.upsert_filter(self.make_filter())

        deliver(engine, make_message("m1", "want to play roblox later"))

        assert len(engine.recent_alerts("guardian_1")) == 1
        assert engine.recent_alerts("guardian_2") == []

    def test_filter_raises_severity_above_builtin(self, engine):
        engine.upsert_filter(self.make_filter(match_text="greens", severity=Severity.CRITICAL))

        deliver(engine, make_message("m1", SCENARIO_A))

        assert engine.recent_alerts("guardian_1")[0].severity == Severity.CRITICAL
        assert engine.recent_alerts("guardian_2")[0].severity == Severity.MEDIUM

    def test_delete_filter(self, engine):
        engine.upsert_filter(self.make_filter())

        assert engine.delete_filter("f1") is True
        assert engine.delete_filter("f1") is False
        deliver(engine, make_message("m1", "want to play roblox later"))
        assert engine.recent_alerts("guardian_1") == []

    def test_filter_changes_audited(self, engine):
        engine.upsert_filter(self.make_filter())
        engine.delete_filter("f1")

        assert len(engine.audit.query(action=AuditAction.FILTER_UPSERTED)) == 1
        assert len(engine.audit.query(action=AuditAction.FILTER_DELETED)) == 1
        assert engine.list_filters("guardian_1") == []


class TestDelivery:

    def test_live_subscription_receives_alert(self, engine):
        session = engine.subscribe_alerts("guardian_1")

        deliver(engine, make_message("m1", SCENARIO_C))

        received = session.get(timeout=1)
        assert received is not None
        assert received.alert_id == engine.recent_alerts("guardian_1")[0].alert_id

    def test_unlinked_child_orphaned(self, engine):
        deliver(engine, make_message("m1", SCENARIO_A, child_id="child_2"))

        orphaned = engine.orphaned_alerts("child_2")
        assert len(orphaned) == 1
        assert orphaned[0].guardian_id is None

    def test_low_severity_alert_collected_for_digest(self, engine):
        deliver(engine, make_message("m1", "you are such a loser, i hate you"))

        digest = engine.summary_digest("guardian_1")

        assert digest["alert_count"] == 1
        assert digest["by_severity"] == {"low": 1}
        assert engine.summary_digest("guardian_1")["alert_count"] == 0

    def test_status_reports_components(self, engine):
        deliver(engine, make_message("m1", SCENARIO_A))

        status = engine.status()

        assert status["pipeline"]["alerts_created"] == 1
        assert status["rule_store"]["degraded_reads"] == 0
        assert status["dead_lettered_alerts"] == 0
        assert status["cooldown"]["tracked_keys"] == 1
        assert status["notifier"]["enabled"] is False

    def test_maintenance_purges_expired_cooldowns(self, engine, clock):
        deliver(engine, make_message("m1", SCENARIO_A))
        clock.advance(300)

        assert engine.run_maintenance()["cooldown_entries_purged"] == 1


LOW_TEXT = "you are such a loser, i hate you"


class TestDigestMaintenance:

    @pytest.fixture
    def engine(self, clock):
        engine = GuardianEngine(
            EngineConfig(digest_interval_seconds=3600),
            clock=clock,
            sleep=lambda s: None,
        )
        engine.link_guardian("guardian_1", "child_1")
        return engine

    @patch('boto3.client')
    def test_digest_sent_once_interval_elapses(self, mock_boto_client, engine, clock):
        mock_kinesis = MagicMock()
        mock_kinesis.put_record.return_value = {"SequenceNumber": "1", "ShardId": "shard-0"}
        mock_boto_client.return_value = mock_kinesis
        deliver(engine, make_message("m1", LOW_TEXT))

        assert engine.run_maintenance()["digests_sent"] == 0
        assert "guardian_1" in engine.notifier._summaries

        clock.advance(3600)
        result = engine.run_maintenance()

        assert result["digests_sent"] == 1
        assert engine.notifier._summaries == {}
        payload = json.loads(mock_kinesis.put_record.call_args[1]["Data"])
        assert payload["event_type"] == "guardian.alert.digest"
        assert payload["data"]["alert_count"] == 1

    @patch('boto3.client')
    def test_interval_restarts_after_send(self, mock_boto_client, engine, clock):
        mock_boto_client.return_value = MagicMock()
        deliver(engine, make_message("m1", LOW_TEXT))
        clock.advance(3600)
        engine.run_maintenance()

        deliver(engine, make_message("m2", LOW_TEXT + "!"))
        clock.advance(1800)

        assert engine.run_maintenance()["digests_sent"] == 0
        assert engine.notifier._summaries["guardian_1"].alert_count == 1


class TestMonitoringSettings:

    def test_defaults_without_stored_settings(self, engine):
        settings = engine.get_monitoring_settings("guardian_1")

        assert settings == replace(
            MonitoringSettings(guardian_id="guardian_1"), updated_at=settings.updated_at
        )

    def test_update_applies_to_next_message(self, engine):
        deliver(engine, make_message("m1", SCENARIO_A))

        engine.update_monitoring_settings(
            MonitoringSettings(guardian_id="guardian_1", monitoring_enabled=False)
        )
        deliver(engine, make_message("m2", SCENARIO_C))

        assert len(engine.recent_alerts("guardian_1")) == 1
        assert engine.get_monitoring_settings("guardian_1").monitoring_enabled is False

    def test_update_audited(self, engine):
        engine.update_monitoring_settings(
            MonitoringSettings(guardian_id="guardian_1", monitored_apps=frozenset({"Discord"}))
        )

        entries = engine.audit.query(action=AuditAction.SETTINGS_UPDATED)
        assert len(entries) == 1
        assert entries[0].details["monitored_app_count"] == 1


class TestEngineConfig:

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("GUARDIAN_COOLDOWN_SECONDS", "120")
        monkeypatch.setenv("GUARDIAN_OVERFLOW_POLICY", "drop_oldest")
        monkeypatch.setenv("NOTIFICATIONS_ENABLED", "false")
        monkeypatch.setenv("GUARDIAN_DIGEST_INTERVAL_SECONDS", "600")
        monkeypatch.setenv("GUARDIAN_RETRY_BACKOFF_SECONDS", "0.25")

        config = EngineConfig.from_env()

        assert config.cooldown_seconds == 120
        assert config.overflow_policy == "drop_oldest"
        assert config.notifications_enabled is False
        assert config.digest_interval_seconds == 600
        assert config.retry_backoff_seconds == 0.25

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            EngineConfig(overflow_policy="block")
