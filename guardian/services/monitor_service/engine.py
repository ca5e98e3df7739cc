"""GuardianEngine: the external interface of the monitoring system.

Wires the rule store, classifier, cooldown gate, alert router, notifier and
subscription hub together, and exposes the guardian-facing operations:
message intake, alert history and live streams, alert state transitions,
custom filter management and per-guardian monitoring settings.
"""
import logging
import os
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from guardian.shared.database import (
    ConnectionManager,
    DatabaseConfig,
    NotFoundError,
)
from guardian.shared.models import Alert, AlertState, Filter, Message, MonitoringSettings
from guardian.shared.utils import hash_pii
from guardian.services.alert_service import (
    AlertNotifier,
    AlertRouter,
    AlertSubscription,
    CooldownGate,
    InMemoryAlertRepository,
    InMemoryFilterRepository,
    InMemoryLinkRepository,
    InMemorySettingsRepository,
    PostgresAlertRepository,
    PostgresFilterRepository,
    PostgresLinkRepository,
    PostgresSettingsRepository,
    SubscriptionHub,
)
from guardian.services.alert_service.repository import create_schema
from guardian.services.audit_service import AuditAction, AuditLogger
from guardian.services.classifier_service import (
    ClassifierConfig,
    ContentClassifier,
    RuleStore,
)
from .pipeline import OVERFLOW_POLICIES, MonitoringPipeline

logger = logging.getLogger(__name__)

STORAGE_MEMORY = "memory"
STORAGE_POSTGRES = "postgres"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class EngineConfig:
    """Engine configuration.

    Defaults suit a single-node deployment with in-memory stores.
    """
    storage: str = STORAGE_MEMORY
    cooldown_seconds: float = 300.0
    filter_refresh_seconds: float = 30.0
    queue_maxsize: int = 1000
    overflow_policy: str = "reject"
    worker_count: int = 4
    persist_max_attempts: int = 5
    persist_backoff_seconds: float = 0.5
    persist_backoff_max_seconds: float = 8.0
    max_rule_store_retries: int = 3
    retry_backoff_seconds: float = 1.0
    retry_backoff_max_seconds: float = 30.0
    subscriber_queue_size: int = 100
    maintenance_interval_seconds: float = 60.0
    digest_interval_seconds: float = 86400.0
    stats_window_days: int = 7
    notification_stream_name: str = "guardian-alert-notifications"
    notifications_enabled: bool = True
    aws_region: str = "us-east-1"
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)

    def __post_init__(self):
        if self.storage not in (STORAGE_MEMORY, STORAGE_POSTGRES):
            raise ValueError(f"Unknown storage backend: {self.storage!r}")
        if self.overflow_policy not in OVERFLOW_POLICIES:
            raise ValueError(f"Unknown overflow policy: {self.overflow_policy!r}")
        if self.cooldown_seconds < 0:
            raise ValueError("cooldown_seconds must not be negative")
        if self.persist_max_attempts < 1:
            raise ValueError("persist_max_attempts must be at least 1")
        if self.digest_interval_seconds <= 0:
            raise ValueError("digest_interval_seconds must be positive")

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create config from environment variables.

        Environment variables:
            GUARDIAN_STORAGE: memory | postgres (default memory)
            GUARDIAN_COOLDOWN_SECONDS: default 300
            GUARDIAN_FILTER_REFRESH_SECONDS: default 30
            GUARDIAN_QUEUE_MAXSIZE: default 1000
            GUARDIAN_OVERFLOW_POLICY: reject | drop_oldest (default reject)
            GUARDIAN_WORKERS: default 4
            GUARDIAN_PERSIST_MAX_ATTEMPTS: default 5
            GUARDIAN_RETRY_BACKOFF_SECONDS: default 1
            GUARDIAN_RETRY_BACKOFF_MAX_SECONDS: default 30
            GUARDIAN_SUBSCRIBER_QUEUE_SIZE: default 100
            GUARDIAN_DIGEST_INTERVAL_SECONDS: default 86400
            NOTIFICATION_STREAM_NAME: Kinesis stream for alert notifications
            NOTIFICATIONS_ENABLED: default true
            AWS_REGION: default us-east-1
        """
        return cls(
            storage=os.getenv("GUARDIAN_STORAGE", STORAGE_MEMORY),
            cooldown_seconds=float(os.getenv("GUARDIAN_COOLDOWN_SECONDS", "300")),
            filter_refresh_seconds=float(os.getenv("GUARDIAN_FILTER_REFRESH_SECONDS", "30")),
            queue_maxsize=int(os.getenv("GUARDIAN_QUEUE_MAXSIZE", "1000")),
            overflow_policy=os.getenv("GUARDIAN_OVERFLOW_POLICY", "reject"),
            worker_count=int(os.getenv("GUARDIAN_WORKERS", "4")),
            persist_max_attempts=int(os.getenv("GUARDIAN_PERSIST_MAX_ATTEMPTS", "5")),
            retry_backoff_seconds=float(os.getenv("GUARDIAN_RETRY_BACKOFF_SECONDS", "1")),
            retry_backoff_max_seconds=float(
                os.getenv("GUARDIAN_RETRY_BACKOFF_MAX_SECONDS", "30")
            ),
            subscriber_queue_size=int(os.getenv("GUARDIAN_SUBSCRIBER_QUEUE_SIZE", "100")),
            digest_interval_seconds=float(
                os.getenv("GUARDIAN_DIGEST_INTERVAL_SECONDS", "86400")
            ),
            notification_stream_name=os.getenv(
                "NOTIFICATION_STREAM_NAME", "guardian-alert-notifications"
            ),
            notifications_enabled=_env_bool("NOTIFICATIONS_ENABLED", "true"),
            aws_region=os.getenv("AWS_REGION", "us-east-1"),
            classifier=ClassifierConfig.from_env(),
        )


class GuardianEngine:
    """Facade over the classification and alert distribution components."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        alert_repository=None,
        filter_repository=None,
        link_repository=None,
        settings_repository=None,
        notifier: Optional[AlertNotifier] = None,
        audit_logger: Optional[AuditLogger] = None,
        connection_manager: Optional[ConnectionManager] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize engine.

        Args:
            config: Engine configuration (default EngineConfig())
            alert_repository: Alert store (default in-memory)
            filter_repository: Custom filter store (default in-memory)
            link_repository: Guardian/child link store (default in-memory)
            settings_repository: Monitoring settings store (default in-memory)
            notifier: Urgency-based notifier (default built from config)
            audit_logger: Audit trail (default new AuditLogger)
            connection_manager: Database pool, when PostgreSQL stores are used
            clock: Wall-clock source for the cooldown window and digest interval
            sleep: Sleep function for persistence backoff
        """
        self.config = config or EngineConfig()
        self.connection_manager = connection_manager
        self.alerts = (
            alert_repository if alert_repository is not None else InMemoryAlertRepository()
        )
        self.filters = (
            filter_repository if filter_repository is not None else InMemoryFilterRepository()
        )
        self.links = (
            link_repository if link_repository is not None else InMemoryLinkRepository()
        )
        self.settings = (
            settings_repository if settings_repository is not None
            else InMemorySettingsRepository()
        )
        self.audit = audit_logger if audit_logger is not None else AuditLogger()
        self.notifier = notifier if notifier is not None else AlertNotifier(
            stream_name=self.config.notification_stream_name,
            enabled=self.config.notifications_enabled,
            region=self.config.aws_region,
        )
        self.hub = SubscriptionHub(max_queue=self.config.subscriber_queue_size)

        self.rule_store = RuleStore(
            self.filters,
            refresh_seconds=self.config.filter_refresh_seconds,
            settings_repository=self.settings,
        )
        self.classifier = ContentClassifier(
            rules=self.rule_store.get_builtin_rules(),
            config=self.config.classifier,
        )
        self.gate = CooldownGate(
            cooldown_seconds=self.config.cooldown_seconds,
            clock=clock,
        )
        self.router = AlertRouter(
            self.alerts,
            self.links,
            notifier=self.notifier,
            hub=self.hub,
            audit_logger=self.audit,
            max_attempts=self.config.persist_max_attempts,
            backoff_seconds=self.config.persist_backoff_seconds,
            backoff_max_seconds=self.config.persist_backoff_max_seconds,
            sleep=sleep,
        )
        self.pipeline = MonitoringPipeline(
            self.classifier,
            self.rule_store,
            self.gate,
            self.router,
            queue_maxsize=self.config.queue_maxsize,
            overflow_policy=self.config.overflow_policy,
            worker_count=self.config.worker_count,
            max_rule_store_retries=self.config.max_rule_store_retries,
            retry_backoff_seconds=self.config.retry_backoff_seconds,
            retry_backoff_max_seconds=self.config.retry_backoff_max_seconds,
        )
        self._clock = clock
        self._last_digest_at = clock()
        self._transition_lock = threading.Lock()
        self._maintenance_stop = threading.Event()
        self._maintenance_thread: Optional[threading.Thread] = None

        logger.info(
            "GUARDIAN_ENGINE_INITIALIZED",
            extra={
                "storage": self.config.storage,
                "cooldown_seconds": self.config.cooldown_seconds,
                "worker_count": self.config.worker_count,
                "rules_version": self.classifier.rules.version,
            }
        )

    @classmethod
    def from_config(cls, config: EngineConfig) -> "GuardianEngine":
        """Build an engine with the stores the config selects.

        PostgreSQL credentials come from Secrets Manager when DB_SECRET_ARN
        is set, otherwise from DB_* environment variables.
        """
        if config.storage != STORAGE_POSTGRES:
            return cls(config=config)

        secret_arn = os.getenv("DB_SECRET_ARN")
        if secret_arn:
            db_config = DatabaseConfig.from_secrets_manager(secret_arn, config.aws_region)
        else:
            db_config = DatabaseConfig.from_env()
        manager = ConnectionManager(db_config)
        return cls(
            config=config,
            alert_repository=PostgresAlertRepository(manager),
            filter_repository=PostgresFilterRepository(manager),
            link_repository=PostgresLinkRepository(manager),
            settings_repository=PostgresSettingsRepository(manager),
            connection_manager=manager,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Open the database pool (if any) and start the workers."""
        if self.connection_manager is not None:
            self.connection_manager.initialize()
            create_schema(self.connection_manager)
        self.pipeline.start()
        self._maintenance_stop.clear()
        self._maintenance_thread = threading.Thread(
            target=self._maintenance_loop, name="guardian-maintenance", daemon=True
        )
        self._maintenance_thread.start()

    def stop(self) -> None:
        """Stop the workers, flush batched notifications, close the pool."""
        self._maintenance_stop.set()
        if self._maintenance_thread is not None:
            self._maintenance_thread.join(timeout=5.0)
            self._maintenance_thread = None
        self.pipeline.stop()
        self.notifier.flush_delayed()
        if self.connection_manager is not None:
            self.connection_manager.close()

    def run_maintenance(self) -> Dict[str, int]:
        """Send batched notifications and forget expired cooldown entries.

        Summary digests go out once per digest interval.
        """
        digests_sent = 0
        now = self._clock()
        if now - self._last_digest_at >= self.config.digest_interval_seconds:
            self._last_digest_at = now
            digests_sent = self.notifier.publish_digests()
        return {
            "notifications_flushed": self.notifier.flush_delayed(),
            "cooldown_entries_purged": self.gate.purge_expired(),
            "digests_sent": digests_sent,
        }

    def _maintenance_loop(self) -> None:
        while not self._maintenance_stop.wait(self.config.maintenance_interval_seconds):
            try:
                self.run_maintenance()
            except Exception as e:
                logger.error(
                    "ENGINE_MAINTENANCE_FAILED",
                    extra={"error": str(e), "error_type": type(e).__name__}
                )

    def is_ready(self) -> bool:
        if self.connection_manager is None:
            return True
        return self.connection_manager.health_check()["healthy"]

    # ------------------------------------------------------------------
    # Intake and alerts
    # ------------------------------------------------------------------

    def submit_message(self, message: Message) -> None:
        """Queue a message for classification; never blocks.

        Raises:
            PipelineBackpressureError: Intake queue full (retry later)
        """
        self.pipeline.submit(message)

    def link_guardian(self, guardian_id: str, child_id: str) -> None:
        self.links.link(guardian_id, child_id)
        logger.info(
            "GUARDIAN_LINKED",
            extra={
                "guardian_id_hash": hash_pii(guardian_id),
                "child_id_hash": hash_pii(child_id),
            }
        )

    def recent_alerts(self, guardian_id: str, limit: int = 20) -> List[Alert]:
        """The guardian's alerts, newest first."""
        return self.alerts.list_for_guardian(guardian_id, limit)

    def subscribe_alerts(self, guardian_id: str) -> AlertSubscription:
        """Open a live stream of the guardian's new alerts (no replay)."""
        return self.hub.subscribe(guardian_id)

    def mark_alert_read(self, alert_id: str) -> Alert:
        """Move an alert to READ. Idempotent; never moves backward.

        Raises:
            NotFoundError: Unknown alert id
        """
        return self._transition(alert_id, AlertState.READ, AuditAction.ALERT_READ)

    def acknowledge_alert(self, alert_id: str) -> Alert:
        """Move an alert to ACKNOWLEDGED. Idempotent.

        Raises:
            NotFoundError: Unknown alert id
        """
        return self._transition(
            alert_id, AlertState.ACKNOWLEDGED, AuditAction.ALERT_ACKNOWLEDGED
        )

    def _transition(
        self,
        alert_id: str,
        target: AlertState,
        action: AuditAction,
    ) -> Alert:
        with self._transition_lock:
            alert = self.alerts.get(alert_id)
            if alert is None:
                raise NotFoundError(f"Alert not found: {alert_id}")
            if alert.state.rank >= target.rank:
                return alert

            now = datetime.utcnow()
            changes: Dict[str, Any] = {"state": target, "read_at": alert.read_at or now}
            if target == AlertState.ACKNOWLEDGED:
                changes["acknowledged_at"] = now
            updated = self.alerts.update(replace(alert, **changes))

        self.audit.log_alert_event(action, updated, actor_role="guardian")
        logger.info(
            "ALERT_STATE_CHANGED",
            extra={
                "alert_id": alert_id,
                "guardian_id_hash": hash_pii(updated.guardian_id),
                "from_state": alert.state.value,
                "to_state": target.value,
            }
        )
        return updated

    def unread_count(self, guardian_id: str) -> int:
        return self.alerts.count_unread(guardian_id)

    def alert_stats(self, guardian_id: str) -> Dict[str, Any]:
        """Severity breakdown of the guardian's alerts.

        by_category covers only the last stats_window_days.
        """
        by_severity = self.alerts.severity_counts(guardian_id)
        since = datetime.utcnow() - timedelta(days=self.config.stats_window_days)
        return {
            "guardian_id": guardian_id,
            "total": sum(by_severity.values()),
            "unread": self.unread_count(guardian_id),
            "by_severity": by_severity,
            "by_category": self.alerts.category_counts(guardian_id, since=since),
            "category_window_days": self.config.stats_window_days,
        }

    def summary_digest(self, guardian_id: str) -> Dict[str, Any]:
        """Return and clear the guardian's digest of low-urgency alerts."""
        return self.notifier.build_digest(guardian_id)

    def orphaned_alerts(self, child_id: str) -> List[Alert]:
        """Alerts stored while no guardian was linked to the child."""
        return self.alerts.list_orphaned(child_id)

    # ------------------------------------------------------------------
    # Custom filters
    # ------------------------------------------------------------------

    def upsert_filter(self, custom_filter: Filter) -> Filter:
        """Create or replace a guardian filter; applies from the next message."""
        saved = self.filters.upsert(custom_filter)
        self.rule_store.invalidate(custom_filter.guardian_id)
        self.audit.log_filter_event(
            AuditAction.FILTER_UPSERTED,
            custom_filter.filter_id,
            custom_filter.guardian_id,
            custom_filter,
        )
        return saved

    def delete_filter(self, filter_id: str) -> bool:
        """Remove a filter; False when it does not exist."""
        existing = self.filters.get(filter_id)
        if existing is None:
            return False
        deleted = self.filters.delete(filter_id)
        self.rule_store.invalidate(existing.guardian_id)
        if deleted:
            self.audit.log_filter_event(
                AuditAction.FILTER_DELETED, filter_id, existing.guardian_id
            )
        return deleted

    def list_filters(self, guardian_id: str) -> List[Filter]:
        return self.filters.list_for_guardian(guardian_id)

    # ------------------------------------------------------------------
    # Monitoring settings
    # ------------------------------------------------------------------

    def get_monitoring_settings(self, guardian_id: str) -> MonitoringSettings:
        """Stored settings, or the defaults when the guardian has none."""
        return self.settings.get(guardian_id) or MonitoringSettings(guardian_id=guardian_id)

    def update_monitoring_settings(self, settings: MonitoringSettings) -> MonitoringSettings:
        """Replace a guardian's settings; applies from the next message."""
        saved = self.settings.save(replace(settings, updated_at=datetime.utcnow()))
        self.rule_store.invalidate(settings.guardian_id)
        self.audit.log_settings_event(saved)
        logger.info(
            "MONITORING_SETTINGS_UPDATED",
            extra={
                "guardian_id_hash": hash_pii(settings.guardian_id),
                "monitoring_enabled": saved.monitoring_enabled,
            }
        )
        return saved

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        """Operational counters, including degraded and dead-lettered paths."""
        return {
            "storage": self.config.storage,
            "pipeline": self.pipeline.status(),
            "rule_store": self.rule_store.status(),
            "cooldown": {
                "cooldown_seconds": self.gate.cooldown_seconds,
                "tracked_keys": self.gate.tracked_keys,
                "suppressed": self.gate.suppressed_count,
            },
            "subscribers": self.hub.subscriber_count(),
            "notifier": self.notifier.status(),
            "dead_lettered_alerts": len(self.router.failed_log),
            "audit_entries": len(self.audit),
        }
