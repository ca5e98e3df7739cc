"""Alert, filter, guardian-link and monitoring settings stores.

Each store has an in-memory implementation (default, thread-safe, used by
tests and single-node deployments) and a PostgreSQL implementation built on
the shared BaseRepository.
"""
import json
import logging
import threading
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

from guardian.shared.database import (
    BaseRepository,
    ConnectionManager,
    NotFoundError,
)
from guardian.shared.models import (
    Alert,
    AlertState,
    DeliveryUrgency,
    Filter,
    GuardianLink,
    MatchMode,
    MonitoringSettings,
    Severity,
)

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS alerts (
    alert_id        TEXT PRIMARY KEY,
    guardian_id     TEXT,
    child_id        TEXT NOT NULL,
    app             TEXT NOT NULL,
    sender          TEXT NOT NULL,
    severity        TEXT NOT NULL,
    confidence      DOUBLE PRECISION NOT NULL,
    flagged_content TEXT NOT NULL,
    reasoning       TEXT NOT NULL,
    dedup_key       TEXT NOT NULL,
    urgency         TEXT NOT NULL,
    title           TEXT NOT NULL,
    categories      TEXT[] NOT NULL DEFAULT '{}',
    message_id      TEXT NOT NULL,
    state           TEXT NOT NULL,
    created_at      TIMESTAMP NOT NULL,
    read_at         TIMESTAMP,
    acknowledged_at TIMESTAMP
);
CREATE INDEX IF NOT EXISTS alerts_guardian_created_idx
    ON alerts (guardian_id, created_at DESC);

CREATE TABLE IF NOT EXISTS guardian_filters (
    filter_id   TEXT PRIMARY KEY,
    guardian_id TEXT NOT NULL,
    match_text  TEXT NOT NULL,
    match_mode  TEXT NOT NULL,
    severity    TEXT NOT NULL,
    active      BOOLEAN NOT NULL DEFAULT TRUE,
    created_at  TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS guardian_links (
    guardian_id TEXT NOT NULL,
    child_id    TEXT NOT NULL,
    PRIMARY KEY (guardian_id, child_id)
);

CREATE TABLE IF NOT EXISTS guardian_monitoring_settings (
    guardian_id              TEXT PRIMARY KEY,
    monitoring_enabled       BOOLEAN NOT NULL DEFAULT TRUE,
    custom_filters_enabled   BOOLEAN NOT NULL DEFAULT TRUE,
    context_analysis_enabled BOOLEAN NOT NULL DEFAULT TRUE,
    severity_thresholds      JSONB NOT NULL DEFAULT '{}',
    monitored_apps           TEXT[],
    updated_at               TIMESTAMP NOT NULL
);
"""


def create_schema(connection_manager: ConnectionManager) -> None:
    """Create the alert, filter, link and settings tables if they do not exist."""
    with connection_manager.get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)
        conn.commit()
    logger.info("DATABASE_SCHEMA_ENSURED")


def severity_breakdown(alerts: List[Alert]) -> Dict[str, int]:
    """Alert counts per severity, every severity present."""
    counts = Counter(alert.severity.value for alert in alerts)
    return {severity.value: counts.get(severity.value, 0) for severity in Severity}


def category_breakdown(alerts: List[Alert]) -> Dict[str, int]:
    """Alert counts per category; an alert counts once for each of its categories."""
    counts = Counter(category for alert in alerts for category in alert.categories)
    return dict(sorted(counts.items()))


# =============================================================================
# In-memory stores
# =============================================================================

class InMemoryAlertRepository:
    """Thread-safe in-memory alert store."""

    def __init__(self):
        self._alerts: Dict[str, Alert] = {}
        self._order: Dict[str, int] = {}
        self._lock = threading.Lock()

    def save(self, alert: Alert) -> Alert:
        with self._lock:
            if alert.alert_id not in self._order:
                self._order[alert.alert_id] = len(self._order)
            self._alerts[alert.alert_id] = alert
        return alert

    def get(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            return self._alerts.get(alert_id)

    def update(self, alert: Alert) -> Alert:
        """Replace an existing alert.

        Raises:
            NotFoundError: If the alert was never saved
        """
        with self._lock:
            if alert.alert_id not in self._alerts:
                raise NotFoundError(f"Alert not found: {alert.alert_id}")
            self._alerts[alert.alert_id] = alert
        return alert

    def list_for_guardian(self, guardian_id: str, limit: int = 20) -> List[Alert]:
        """Newest first."""
        with self._lock:
            alerts = [a for a in self._alerts.values() if a.guardian_id == guardian_id]
            alerts.sort(
                key=lambda a: (a.created_at, self._order[a.alert_id]),
                reverse=True,
            )
        return alerts[:limit]

    def list_orphaned(self, child_id: str) -> List[Alert]:
        with self._lock:
            alerts = [
                a for a in self._alerts.values()
                if a.guardian_id is None and a.child_id == child_id
            ]
        return sorted(alerts, key=lambda a: a.created_at, reverse=True)

    def count_unread(self, guardian_id: str) -> int:
        with self._lock:
            return sum(
                1 for a in self._alerts.values()
                if a.guardian_id == guardian_id and a.state == AlertState.UNREAD
            )

    def severity_counts(self, guardian_id: str) -> Dict[str, int]:
        with self._lock:
            alerts = [a for a in self._alerts.values() if a.guardian_id == guardian_id]
        return severity_breakdown(alerts)

    def category_counts(
        self, guardian_id: str, since: Optional[datetime] = None
    ) -> Dict[str, int]:
        with self._lock:
            alerts = [
                a for a in self._alerts.values()
                if a.guardian_id == guardian_id
                and (since is None or a.created_at >= since)
            ]
        return category_breakdown(alerts)

    def count(self) -> int:
        with self._lock:
            return len(self._alerts)


class InMemoryFilterRepository:
    """Thread-safe in-memory custom filter store."""

    def __init__(self):
        self._filters: Dict[str, Filter] = {}
        self._lock = threading.Lock()

    def upsert(self, custom_filter: Filter) -> Filter:
        with self._lock:
            self._filters[custom_filter.filter_id] = custom_filter
        return custom_filter

    def get(self, filter_id: str) -> Optional[Filter]:
        with self._lock:
            return self._filters.get(filter_id)

    def delete(self, filter_id: str) -> bool:
        with self._lock:
            return self._filters.pop(filter_id, None) is not None

    def list_for_guardian(self, guardian_id: str) -> List[Filter]:
        with self._lock:
            filters = [f for f in self._filters.values() if f.guardian_id == guardian_id]
        return sorted(filters, key=lambda f: f.created_at)

    def list_active_for_guardian(self, guardian_id: str) -> List[Filter]:
        return [f for f in self.list_for_guardian(guardian_id) if f.active]


class InMemoryLinkRepository:
    """Thread-safe in-memory guardian/child link store."""

    def __init__(self):
        self._links: set = set()
        self._lock = threading.Lock()

    def link(self, guardian_id: str, child_id: str) -> GuardianLink:
        with self._lock:
            self._links.add((guardian_id, child_id))
        return GuardianLink(guardian_id=guardian_id, child_id=child_id)

    def unlink(self, guardian_id: str, child_id: str) -> bool:
        with self._lock:
            if (guardian_id, child_id) in self._links:
                self._links.discard((guardian_id, child_id))
                return True
            return False

    def guardians_for_child(self, child_id: str) -> List[str]:
        with self._lock:
            return sorted(g for g, c in self._links if c == child_id)


class InMemorySettingsRepository:
    """Thread-safe in-memory store of guardian monitoring settings."""

    def __init__(self):
        self._settings: Dict[str, MonitoringSettings] = {}
        self._lock = threading.Lock()

    def get(self, guardian_id: str) -> Optional[MonitoringSettings]:
        with self._lock:
            return self._settings.get(guardian_id)

    def save(self, settings: MonitoringSettings) -> MonitoringSettings:
        with self._lock:
            self._settings[settings.guardian_id] = settings
        return settings


# =============================================================================
# PostgreSQL stores
# =============================================================================

ALERT_COLUMNS = (
    "alert_id", "guardian_id", "child_id", "app", "sender", "severity",
    "confidence", "flagged_content", "reasoning", "dedup_key", "urgency",
    "title", "categories", "message_id", "state", "created_at", "read_at",
    "acknowledged_at",
)

FILTER_COLUMNS = (
    "filter_id", "guardian_id", "match_text", "match_mode", "severity",
    "active", "created_at",
)


class PostgresAlertRepository(BaseRepository[Alert]):
    """Alert store backed by the `alerts` table."""

    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(
            connection_manager, "alerts", id_column="alert_id", columns=ALERT_COLUMNS
        )

    def _row_to_entity(self, row: tuple) -> Alert:
        return Alert(
            alert_id=row[0],
            guardian_id=row[1],
            child_id=row[2],
            app=row[3],
            sender=row[4],
            severity=Severity(row[5]),
            confidence=float(row[6]),
            flagged_content=row[7],
            reasoning=row[8],
            dedup_key=row[9],
            urgency=DeliveryUrgency(row[10]),
            title=row[11],
            categories=tuple(row[12] or ()),
            message_id=row[13],
            state=AlertState(row[14]),
            created_at=row[15],
            read_at=row[16],
            acknowledged_at=row[17],
        )

    def _entity_to_params(self, entity: Alert) -> Dict[str, Any]:
        return {
            "alert_id": entity.alert_id,
            "guardian_id": entity.guardian_id,
            "child_id": entity.child_id,
            "app": entity.app,
            "sender": entity.sender,
            "severity": entity.severity.value,
            "confidence": entity.confidence,
            "flagged_content": entity.flagged_content,
            "reasoning": entity.reasoning,
            "dedup_key": entity.dedup_key,
            "urgency": entity.urgency.value,
            "title": entity.title,
            "categories": list(entity.categories),
            "message_id": entity.message_id,
            "state": entity.state.value,
            "created_at": entity.created_at,
            "read_at": entity.read_at,
            "acknowledged_at": entity.acknowledged_at,
        }

    def get(self, alert_id: str) -> Optional[Alert]:
        return self.find_by_id(alert_id)

    def update(self, alert: Alert) -> Alert:
        """Persist a state transition.

        Raises:
            NotFoundError: If the alert does not exist
        """
        updated = self._execute(
            f"""
            UPDATE {self.table_name}
            SET state = %s, read_at = %s, acknowledged_at = %s
            WHERE alert_id = %s
            """,
            (alert.state.value, alert.read_at, alert.acknowledged_at, alert.alert_id),
        )
        if updated == 0:
            raise NotFoundError(f"Alert not found: {alert.alert_id}")
        return alert

    def list_for_guardian(self, guardian_id: str, limit: int = 20) -> List[Alert]:
        rows = self._fetch_all(
            f"""
            SELECT {self.select_columns} FROM {self.table_name}
            WHERE guardian_id = %s
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (guardian_id, limit),
        )
        return [self._row_to_entity(row) for row in rows]

    def list_orphaned(self, child_id: str) -> List[Alert]:
        rows = self._fetch_all(
            f"""
            SELECT {self.select_columns} FROM {self.table_name}
            WHERE guardian_id IS NULL AND child_id = %s
            ORDER BY created_at DESC
            """,
            (child_id,),
        )
        return [self._row_to_entity(row) for row in rows]

    def count_unread(self, guardian_id: str) -> int:
        row = self._fetch_one(
            f"SELECT COUNT(*) FROM {self.table_name} WHERE guardian_id = %s AND state = %s",
            (guardian_id, AlertState.UNREAD.value),
        )
        return row[0] if row else 0

    def severity_counts(self, guardian_id: str) -> Dict[str, int]:
        rows = self._fetch_all(
            f"""
            SELECT severity, COUNT(*) FROM {self.table_name}
            WHERE guardian_id = %s
            GROUP BY severity
            """,
            (guardian_id,),
        )
        counts = {severity.value: 0 for severity in Severity}
        for severity, total in rows:
            counts[severity] = total
        return counts

    def category_counts(
        self, guardian_id: str, since: Optional[datetime] = None
    ) -> Dict[str, int]:
        query = f"""
            SELECT category, COUNT(*)
            FROM {self.table_name}, unnest(categories) AS category
            WHERE guardian_id = %s
        """
        params: List[Any] = [guardian_id]
        if since is not None:
            query += " AND created_at >= %s"
            params.append(since)
        query += " GROUP BY category ORDER BY category"
        return {category: total for category, total in self._fetch_all(query, params)}


class PostgresFilterRepository(BaseRepository[Filter]):
    """Custom filter store backed by the `guardian_filters` table."""

    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(
            connection_manager, "guardian_filters",
            id_column="filter_id", columns=FILTER_COLUMNS,
        )

    def _row_to_entity(self, row: tuple) -> Filter:
        return Filter(
            filter_id=row[0],
            guardian_id=row[1],
            match_text=row[2],
            match_mode=MatchMode(row[3]),
            severity=Severity(row[4]),
            active=bool(row[5]),
            created_at=row[6] or datetime.utcnow(),
        )

    def _entity_to_params(self, entity: Filter) -> Dict[str, Any]:
        return {
            "filter_id": entity.filter_id,
            "guardian_id": entity.guardian_id,
            "match_text": entity.match_text,
            "match_mode": entity.match_mode.value,
            "severity": entity.severity.value,
            "active": entity.active,
            "created_at": entity.created_at,
        }

    def upsert(self, custom_filter: Filter) -> Filter:
        return self.save(custom_filter)

    def get(self, filter_id: str) -> Optional[Filter]:
        return self.find_by_id(filter_id)

    def list_for_guardian(self, guardian_id: str) -> List[Filter]:
        rows = self._fetch_all(
            f"""
            SELECT {self.select_columns} FROM {self.table_name}
            WHERE guardian_id = %s
            ORDER BY created_at
            """,
            (guardian_id,),
        )
        return [self._row_to_entity(row) for row in rows]

    def list_active_for_guardian(self, guardian_id: str) -> List[Filter]:
        rows = self._fetch_all(
            f"""
            SELECT {self.select_columns} FROM {self.table_name}
            WHERE guardian_id = %s AND active = TRUE
            ORDER BY created_at
            """,
            (guardian_id,),
        )
        return [self._row_to_entity(row) for row in rows]


class PostgresLinkRepository(BaseRepository[GuardianLink]):
    """Guardian/child links backed by the `guardian_links` table."""

    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(
            connection_manager, "guardian_links",
            id_column="guardian_id", columns=("guardian_id", "child_id"),
        )

    def _row_to_entity(self, row: tuple) -> GuardianLink:
        return GuardianLink(guardian_id=row[0], child_id=row[1])

    def _entity_to_params(self, entity: GuardianLink) -> Dict[str, Any]:
        return {"guardian_id": entity.guardian_id, "child_id": entity.child_id}

    def link(self, guardian_id: str, child_id: str) -> GuardianLink:
        self._execute(
            f"""
            INSERT INTO {self.table_name} (guardian_id, child_id)
            VALUES (%s, %s)
            ON CONFLICT (guardian_id, child_id) DO NOTHING
            """,
            (guardian_id, child_id),
        )
        return GuardianLink(guardian_id=guardian_id, child_id=child_id)

    def unlink(self, guardian_id: str, child_id: str) -> bool:
        return self._execute(
            f"DELETE FROM {self.table_name} WHERE guardian_id = %s AND child_id = %s",
            (guardian_id, child_id),
        ) > 0

    def guardians_for_child(self, child_id: str) -> List[str]:
        rows = self._fetch_all(
            f"SELECT guardian_id FROM {self.table_name} WHERE child_id = %s ORDER BY guardian_id",
            (child_id,),
        )
        return [row[0] for row in rows]


SETTINGS_COLUMNS = (
    "guardian_id", "monitoring_enabled", "custom_filters_enabled",
    "context_analysis_enabled", "severity_thresholds", "monitored_apps",
    "updated_at",
)


class PostgresSettingsRepository(BaseRepository[MonitoringSettings]):
    """Monitoring settings backed by the `guardian_monitoring_settings` table."""

    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(
            connection_manager, "guardian_monitoring_settings",
            id_column="guardian_id", columns=SETTINGS_COLUMNS,
        )

    def _row_to_entity(self, row: tuple) -> MonitoringSettings:
        thresholds = row[4] or {}
        if isinstance(thresholds, str):
            thresholds = json.loads(thresholds)
        return MonitoringSettings(
            guardian_id=row[0],
            monitoring_enabled=bool(row[1]),
            custom_filters_enabled=bool(row[2]),
            context_analysis_enabled=bool(row[3]),
            severity_thresholds={
                Severity(name): float(value) for name, value in thresholds.items()
            },
            monitored_apps=frozenset(row[5]) if row[5] is not None else None,
            updated_at=row[6] or datetime.utcnow(),
        )

    def _entity_to_params(self, entity: MonitoringSettings) -> Dict[str, Any]:
        return {
            "guardian_id": entity.guardian_id,
            "monitoring_enabled": entity.monitoring_enabled,
            "custom_filters_enabled": entity.custom_filters_enabled,
            "context_analysis_enabled": entity.context_analysis_enabled,
            "severity_thresholds": json.dumps({
                severity.value: threshold
                for severity, threshold in entity.severity_thresholds.items()
            }, sort_keys=True),
            "monitored_apps": (
                sorted(entity.monitored_apps) if entity.monitored_apps is not None else None
            ),
            "updated_at": entity.updated_at,
        }

    def get(self, guardian_id: str) -> Optional[MonitoringSettings]:
        return self.find_by_id(guardian_id)
