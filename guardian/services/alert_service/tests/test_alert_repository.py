"""Tests for the alert, filter and link stores."""
from dataclasses import replace
from datetime import datetime, timedelta

import pytest
from unittest.mock import MagicMock

from guardian.shared.database import NotFoundError, RepositoryError
from guardian.shared.models import (
    Alert,
    AlertState,
    DeliveryUrgency,
    Filter,
    MatchMode,
    MonitoringSettings,
    Severity,
)
from guardian.shared.utils import configure_pii_salt
from guardian.services.alert_service.repository import (
    ALERT_COLUMNS,
    InMemoryAlertRepository,
    InMemoryFilterRepository,
    InMemoryLinkRepository,
    InMemorySettingsRepository,
    PostgresAlertRepository,
    PostgresFilterRepository,
    PostgresLinkRepository,
    PostgresSettingsRepository,
    SETTINGS_COLUMNS,
    category_breakdown,
    severity_breakdown,
)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


BASE_TIME = datetime(2025, 6, 1, 12, 0, 0)


def make_alert(alert_id, guardian_id="guardian_1", severity=Severity.MEDIUM,
               created_at=BASE_TIME, state=AlertState.UNREAD, child_id="child_1",
               categories=("drugs",)):
    return Alert(
        alert_id=alert_id,
        guardian_id=guardian_id,
        child_id=child_id,
        app="WhatsApp",
        sender="Alex",
        severity=severity,
        confidence=0.7,
        flagged_content="greens",
        reasoning="greens",
        dedup_key="key",
        urgency=DeliveryUrgency.for_severity(severity),
        state=state,
        created_at=created_at,
        categories=categories,
    )


def make_filter(filter_id, guardian_id="guardian_1", active=True, offset=0):
    return Filter(
        filter_id=filter_id,
        guardian_id=guardian_id,
        match_text="roblox",
        match_mode=MatchMode.SIMILAR,
        severity=Severity.HIGH,
        active=active,
        created_at=BASE_TIME + timedelta(seconds=offset),
    )


def mock_connection_manager():
    """Connection manager whose cursor is returned for assertions."""
    cursor = MagicMock()
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor
    manager = MagicMock()
    manager.get_connection.return_value.__enter__.return_value = conn
    return manager, conn, cursor


class TestInMemoryAlertRepository:

    def test_newest_first(self):
        repo = InMemoryAlertRepository()
        repo.save(make_alert("a1", created_at=BASE_TIME))
        repo.save(make_alert("a2", created_at=BASE_TIME + timedelta(minutes=5)))
        repo.save(make_alert("a3", created_at=BASE_TIME + timedelta(minutes=1)))

        assert [a.alert_id for a in repo.list_for_guardian("guardian_1")] == [
            "a2", "a3", "a1"
        ]

    def test_same_timestamp_latest_insert_first(self):
        repo = InMemoryAlertRepository()
        repo.save(make_alert("a1"))
        repo.save(make_alert("a2"))

        assert [a.alert_id for a in repo.list_for_guardian("guardian_1")] == ["a2", "a1"]

    def test_limit_and_guardian_scope(self):
        repo = InMemoryAlertRepository()
        for i in range(5):
            repo.save(make_alert(f"a{i}", created_at=BASE_TIME + timedelta(seconds=i)))
        repo.save(make_alert("other", guardian_id="guardian_2"))

        recent = repo.list_for_guardian("guardian_1", limit=2)

        assert [a.alert_id for a in recent] == ["a4", "a3"]

    def test_update_unknown_raises(self):
        repo = InMemoryAlertRepository()

        with pytest.raises(NotFoundError):
            repo.update(make_alert("missing"))

    def test_unread_count_follows_state(self):
        repo = InMemoryAlertRepository()
        repo.save(make_alert("a1"))
        repo.save(make_alert("a2"))

        repo.update(replace(repo.get("a1"), state=AlertState.READ))

        assert repo.count_unread("guardian_1") == 1

    def test_severity_counts_include_every_level(self):
        repo = InMemoryAlertRepository()
        repo.save(make_alert("a1", severity=Severity.HIGH))
        repo.save(make_alert("a2", severity=Severity.HIGH))
        repo.save(make_alert("a3", severity=Severity.LOW))

        assert repo.severity_counts("guardian_1") == {
            "low": 1, "medium": 0, "high": 2, "critical": 0,
        }

    def test_orphaned_alerts_by_child(self):
        repo = InMemoryAlertRepository()
        repo.save(make_alert("a1", guardian_id=None))
        repo.save(make_alert("a2", guardian_id=None, child_id="child_2"))
        repo.save(make_alert("a3"))

        assert [a.alert_id for a in repo.list_orphaned("child_1")] == ["a1"]

    def test_severity_breakdown_empty(self):
        assert severity_breakdown([]) == {
            "low": 0, "medium": 0, "high": 0, "critical": 0,
        }

    def test_category_counts_within_window(self):
        repo = InMemoryAlertRepository()
        repo.save(make_alert("a1", categories=("drugs",)))
        repo.save(make_alert("a2", categories=("drugs", "custom")))
        repo.save(make_alert(
            "old", categories=("violence",), created_at=BASE_TIME - timedelta(days=8)
        ))
        repo.save(make_alert("other", guardian_id="guardian_2", categories=("drugs",)))

        recent = repo.category_counts("guardian_1", since=BASE_TIME - timedelta(days=7))

        assert recent == {"custom": 1, "drugs": 2}
        assert repo.category_counts("guardian_1")["violence"] == 1

    def test_category_breakdown_empty(self):
        assert category_breakdown([]) == {}


class TestInMemoryFilterRepository:

    def test_upsert_replaces(self):
        repo = InMemoryFilterRepository()
        repo.upsert(make_filter("f1"))
        repo.upsert(replace(make_filter("f1"), match_text="minecraft"))

        filters = repo.list_for_guardian("guardian_1")

        assert len(filters) == 1
        assert filters[0].match_text == "minecraft"

    def test_active_only(self):
        repo = InMemoryFilterRepository()
        repo.upsert(make_filter("f1", offset=0))
        repo.upsert(make_filter("f2", active=False, offset=1))
        repo.upsert(make_filter("f3", guardian_id="guardian_2", offset=2))

        assert [f.filter_id for f in repo.list_active_for_guardian("guardian_1")] == ["f1"]

    def test_delete(self):
        repo = InMemoryFilterRepository()
        repo.upsert(make_filter("f1"))

        assert repo.delete("f1") is True
        assert repo.delete("f1") is False
        assert repo.get("f1") is None


class TestInMemoryLinkRepository:

    def test_guardians_sorted(self):
        repo = InMemoryLinkRepository()
        repo.link("guardian_b", "child_1")
        repo.link("guardian_a", "child_1")
        repo.link("guardian_c", "child_2")

        assert repo.guardians_for_child("child_1") == ["guardian_a", "guardian_b"]

    def test_unlink(self):
        repo = InMemoryLinkRepository()
        repo.link("guardian_a", "child_1")

        assert repo.unlink("guardian_a", "child_1") is True
        assert repo.unlink("guardian_a", "child_1") is False
        assert repo.guardians_for_child("child_1") == []


class TestInMemorySettingsRepository:

    def test_missing_guardian_has_no_settings(self):
        assert InMemorySettingsRepository().get("guardian_1") is None

    def test_save_replaces(self):
        repo = InMemorySettingsRepository()
        repo.save(MonitoringSettings(guardian_id="guardian_1"))
        repo.save(MonitoringSettings(guardian_id="guardian_1", monitoring_enabled=False))

        assert repo.get("guardian_1").monitoring_enabled is False


class TestPostgresAlertRepository:

    def test_save_upserts_on_alert_id(self):
        manager, conn, cursor = mock_connection_manager()
        repo = PostgresAlertRepository(manager)

        repo.save(make_alert("a1"))

        query, values = cursor.execute.call_args[0]
        assert "INSERT INTO alerts" in query
        assert "ON CONFLICT (alert_id)" in query
        assert values[0] == "a1"
        conn.commit.assert_called_once()

    def test_row_mapping(self):
        manager, _, cursor = mock_connection_manager()
        row = (
            "a1", "guardian_1", "child_1", "WhatsApp", "Alex", "high", 0.9,
            "text", "reason", "key", "immediate", "Content Flagged",
            ["drugs"], "m1", "read", BASE_TIME, BASE_TIME, None,
        )
        assert len(row) == len(ALERT_COLUMNS)
        cursor.fetchone.return_value = row
        repo = PostgresAlertRepository(manager)

        alert = repo.get("a1")

        assert alert.severity == Severity.HIGH
        assert alert.urgency == DeliveryUrgency.IMMEDIATE
        assert alert.state == AlertState.READ
        assert alert.categories == ("drugs",)
        assert alert.read_at == BASE_TIME
        query = cursor.execute.call_args[0][0]
        assert "SELECT alert_id, guardian_id" in query

    def test_update_missing_raises(self):
        manager, _, cursor = mock_connection_manager()
        cursor.rowcount = 0
        repo = PostgresAlertRepository(manager)

        with pytest.raises(NotFoundError):
            repo.update(make_alert("missing"))

    def test_driver_error_wrapped(self):
        manager, _, cursor = mock_connection_manager()
        cursor.execute.side_effect = Exception("connection reset")
        repo = PostgresAlertRepository(manager)

        with pytest.raises(RepositoryError):
            repo.save(make_alert("a1"))

    def test_severity_counts_fill_missing(self):
        manager, _, cursor = mock_connection_manager()
        cursor.fetchall.return_value = [("high", 3)]
        repo = PostgresAlertRepository(manager)

        assert repo.severity_counts("guardian_1") == {
            "low": 0, "medium": 0, "high": 3, "critical": 0,
        }

    def test_category_counts_unnests_categories(self):
        manager, _, cursor = mock_connection_manager()
        cursor.fetchall.return_value = [("custom", 1), ("drugs", 4)]
        repo = PostgresAlertRepository(manager)
        since = BASE_TIME - timedelta(days=7)

        counts = repo.category_counts("guardian_1", since=since)

        assert counts == {"custom": 1, "drugs": 4}
        query, params = cursor.execute.call_args[0]
        assert "unnest(categories)" in query
        assert "created_at >= %s" in query
        assert params == ["guardian_1", since]


class TestPostgresFilterAndLinkRepositories:

    def test_active_filters_query(self):
        manager, _, cursor = mock_connection_manager()
        cursor.fetchall.return_value = [
            ("f1", "guardian_1", "roblox", "similar", "high", True, BASE_TIME),
        ]
        repo = PostgresFilterRepository(manager)

        filters = repo.list_active_for_guardian("guardian_1")

        assert filters[0].match_mode == MatchMode.SIMILAR
        assert filters[0].severity == Severity.HIGH
        assert "active = TRUE" in cursor.execute.call_args[0][0]

    def test_link_is_idempotent_insert(self):
        manager, _, cursor = mock_connection_manager()
        repo = PostgresLinkRepository(manager)

        repo.link("guardian_1", "child_1")

        assert "DO NOTHING" in cursor.execute.call_args[0][0]

    def test_guardians_for_child(self):
        manager, _, cursor = mock_connection_manager()
        cursor.fetchall.return_value = [("guardian_a",), ("guardian_b",)]
        repo = PostgresLinkRepository(manager)

        assert repo.guardians_for_child("child_1") == ["guardian_a", "guardian_b"]


class TestPostgresSettingsRepository:

    def test_row_mapping(self):
        manager, _, cursor = mock_connection_manager()
        row = (
            "guardian_1", True, False, True, {"low": 0.3, "critical": 0.9},
            ["WhatsApp", "Discord"], BASE_TIME,
        )
        assert len(row) == len(SETTINGS_COLUMNS)
        cursor.fetchone.return_value = row
        repo = PostgresSettingsRepository(manager)

        settings = repo.get("guardian_1")

        assert settings.custom_filters_enabled is False
        assert settings.severity_thresholds == {Severity.LOW: 0.3, Severity.CRITICAL: 0.9}
        assert settings.monitored_apps == frozenset({"WhatsApp", "Discord"})
        assert "FROM guardian_monitoring_settings" in cursor.execute.call_args[0][0]

    def test_null_app_list_means_every_app(self):
        manager, _, cursor = mock_connection_manager()
        cursor.fetchone.return_value = (
            "guardian_1", True, True, True, "{}", None, BASE_TIME,
        )

        settings = PostgresSettingsRepository(manager).get("guardian_1")

        assert settings.monitored_apps is None
        assert settings.monitors("SMS")

    def test_save_upserts_on_guardian(self):
        manager, conn, cursor = mock_connection_manager()
        repo = PostgresSettingsRepository(manager)

        repo.save(MonitoringSettings(
            guardian_id="guardian_1",
            severity_thresholds={Severity.HIGH: 0.7},
            updated_at=BASE_TIME,
        ))

        query, values = cursor.execute.call_args[0]
        assert "ON CONFLICT (guardian_id)" in query
        assert values[4] == '{"high": 0.7}'
        assert values[5] is None
        conn.commit.assert_called_once()
