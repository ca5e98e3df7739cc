"""Audit logger - append-only, hash-chained trail of alert and filter changes.

Alerts are the safety record for a child: every creation and guardian state
transition, and every change to a guardian's custom filters, emits an entry.
Each entry carries the hash of its predecessor so tampering is detectable.
"""
import hashlib
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from guardian.shared.models import Alert, Filter, MonitoringSettings
from guardian.shared.utils import hash_pii

logger = logging.getLogger(__name__)

GENESIS_HASH = "genesis"


class AuditAction(Enum):
    """Actions that require audit logging."""
    # Alert lifecycle
    ALERT_CREATED = "alert_created"
    ALERT_READ = "alert_read"
    ALERT_ACKNOWLEDGED = "alert_acknowledged"
    ALERT_DEAD_LETTERED = "alert_dead_lettered"

    # Guardian configuration
    FILTER_UPSERTED = "filter_upserted"
    FILTER_DELETED = "filter_deleted"
    SETTINGS_UPDATED = "settings_updated"


class AuditEntity(Enum):
    """Entity types for audit logging."""
    ALERT = "alert"
    FILTER = "filter"
    SETTINGS = "settings"


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit log entry."""
    entry_id: str
    timestamp: datetime
    action: AuditAction
    entity_type: AuditEntity
    entity_id: str
    actor_id: str   # Hashed guardian id, or "system"
    actor_role: str
    details: Dict[str, Any] = field(default_factory=dict)
    previous_hash: str = ""
    entry_hash: str = ""

    def compute_hash(self) -> str:
        """SHA-256 over every field except entry_hash."""
        content = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "details": self.details,
            "previous_hash": self.previous_hash,
        }
        content_str = json.dumps(content, sort_keys=True, default=str)
        return hashlib.sha256(content_str.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "details": self.details,
            "previous_hash": self.previous_hash,
            "entry_hash": self.entry_hash,
        }


class AuditLogger:
    """Keeps the hash-chained audit trail.

    Entries are held in memory; appends are serialized so the chain stays
    linear when several pipeline workers create alerts at once.
    """

    def __init__(self):
        self._entries: List[AuditEntry] = []
        self._last_hash: str = GENESIS_HASH
        self._lock = threading.Lock()

        logger.info("AUDIT_LOGGER_INITIALIZED")

    def log(
        self,
        action: AuditAction,
        entity_type: AuditEntity,
        entity_id: str,
        actor_id: str,
        actor_role: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Append an audit entry.

        Args:
            action: Action being audited
            entity_type: Type of entity being acted upon
            entity_id: Identifier of the entity
            actor_id: Who performed the action (hashed if a person)
            actor_role: guardian or system
            details: Additional context (no raw identifiers or message text)

        Returns:
            Created AuditEntry

        Logs:
            - AUDIT_ENTRY_CREATED: After entry is stored
        """
        with self._lock:
            entry = AuditEntry(
                entry_id=f"audit_{uuid.uuid4().hex[:16]}",
                timestamp=datetime.utcnow(),
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                actor_id=actor_id,
                actor_role=actor_role,
                details=details or {},
                previous_hash=self._last_hash,
            )
            entry = replace(entry, entry_hash=entry.compute_hash())
            self._entries.append(entry)
            self._last_hash = entry.entry_hash

        logger.info(
            "AUDIT_ENTRY_CREATED",
            extra={
                "entry_id": entry.entry_id,
                "action": action.value,
                "entity_type": entity_type.value,
                "entity_id": entity_id,
                "actor_role": actor_role,
                "entry_hash": entry.entry_hash[:16],  # Truncated for logs
            }
        )
        return entry

    def log_alert_event(
        self,
        action: AuditAction,
        alert: Alert,
        actor_role: str = "system",
    ) -> AuditEntry:
        """Record an alert creation or state transition."""
        actor_id = "system"
        if actor_role == "guardian" and alert.guardian_id:
            actor_id = hash_pii(alert.guardian_id)

        return self.log(
            action=action,
            entity_type=AuditEntity.ALERT,
            entity_id=alert.alert_id,
            actor_id=actor_id,
            actor_role=actor_role,
            details={
                "child_id_hash": hash_pii(alert.child_id),
                "guardian_id_hash": hash_pii(alert.guardian_id) if alert.guardian_id else None,
                "severity": alert.severity.value,
                "state": alert.state.value,
                "dedup_key": alert.dedup_key,
            },
        )

    def log_filter_event(
        self,
        action: AuditAction,
        filter_id: str,
        guardian_id: str,
        custom_filter: Optional[Filter] = None,
    ) -> AuditEntry:
        """Record a guardian filter change."""
        details: Dict[str, Any] = {}
        if custom_filter is not None:
            details = {
                "match_mode": custom_filter.match_mode.value,
                "severity": custom_filter.severity.value,
                "active": custom_filter.active,
            }

        return self.log(
            action=action,
            entity_type=AuditEntity.FILTER,
            entity_id=filter_id,
            actor_id=hash_pii(guardian_id),
            actor_role="guardian",
            details=details,
        )

    def log_settings_event(self, settings: MonitoringSettings) -> AuditEntry:
        """Record a change to a guardian's monitoring settings."""
        return self.log(
            action=AuditAction.SETTINGS_UPDATED,
            entity_type=AuditEntity.SETTINGS,
            entity_id=hash_pii(settings.guardian_id),
            actor_id=hash_pii(settings.guardian_id),
            actor_role="guardian",
            details={
                "monitoring_enabled": settings.monitoring_enabled,
                "custom_filters_enabled": settings.custom_filters_enabled,
                "context_analysis_enabled": settings.context_analysis_enabled,
                "threshold_overrides": sorted(s.value for s in settings.severity_thresholds),
                "monitored_app_count": (
                    None if settings.monitored_apps is None else len(settings.monitored_apps)
                ),
            },
        )

    def verify_chain(self) -> bool:
        """Verify integrity of the audit chain.

        Returns:
            True if chain is valid, False if tampered
        """
        with self._lock:
            entries = list(self._entries)

        expected_prev = GENESIS_HASH
        for entry in entries:
            if entry.previous_hash != expected_prev:
                logger.critical(
                    "AUDIT_CHAIN_VERIFICATION_FAILED",
                    extra={
                        "entry_id": entry.entry_id,
                        "expected_prev": expected_prev[:16],
                        "actual_prev": entry.previous_hash[:16],
                    }
                )
                return False

            computed = entry.compute_hash()
            if computed != entry.entry_hash:
                logger.critical(
                    "AUDIT_ENTRY_HASH_MISMATCH",
                    extra={
                        "entry_id": entry.entry_id,
                        "computed": computed[:16],
                        "stored": entry.entry_hash[:16],
                    }
                )
                return False

            expected_prev = entry.entry_hash

        logger.info("AUDIT_CHAIN_VERIFIED", extra={"entry_count": len(entries)})
        return True

    def query(
        self,
        entity_type: Optional[AuditEntity] = None,
        entity_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        since: Optional[datetime] = None,
    ) -> List[AuditEntry]:
        """Entries matching every given criterion, oldest first."""
        with self._lock:
            results = list(self._entries)

        if entity_type:
            results = [e for e in results if e.entity_type == entity_type]
        if entity_id:
            results = [e for e in results if e.entity_id == entity_id]
        if action:
            results = [e for e in results if e.action == action]
        if since:
            results = [e for e in results if e.timestamp >= since]
        return results

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
