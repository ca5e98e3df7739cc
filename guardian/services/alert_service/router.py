"""Alert router: turns an emitted classification into persisted guardian alerts.

One alert per guardian linked to the child; with no linked guardian a single
orphaned alert is stored for later retrieval. Persisting is retried with
bounded exponential backoff. An alert that still cannot be stored is moved
to the dead-letter log and reported, never dropped silently.

Creating, storing and handing off one guardian's alerts happens under that
guardian's lock stripe, so live subscribers see alerts in creation order.
"""
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from guardian.shared.database import RepositoryError
from guardian.shared.models import (
    Alert,
    ClassificationResult,
    DeliveryUrgency,
    Message,
)
from guardian.shared.utils import hash_pii, hash_text_for_audit
from guardian.services.audit_service.audit_logger import AuditAction

logger = logging.getLogger(__name__)

# Longest flagged excerpt kept on an alert
MAX_FLAGGED_CONTENT = 500


@dataclass(frozen=True)
class FailedAlert:
    """An alert that exhausted its persistence retries."""
    alert: Alert
    error: str
    error_type: str
    attempts: int
    failed_at: datetime = field(default_factory=datetime.utcnow)


class FailedAlertLog:
    """Dead-letter log for alerts that could not be persisted.

    Operators replay entries once the store recovers; the size is exposed
    on the engine status.
    """

    def __init__(self):
        self._entries: List[FailedAlert] = []
        self._lock = threading.Lock()

    def record(self, alert: Alert, error: BaseException, attempts: int) -> FailedAlert:
        entry = FailedAlert(
            alert=alert,
            error=str(error),
            error_type=type(error).__name__,
            attempts=attempts,
        )
        with self._lock:
            self._entries.append(entry)
        return entry

    def entries(self) -> List[FailedAlert]:
        with self._lock:
            return list(self._entries)

    def drain(self) -> List[FailedAlert]:
        """Remove and return every entry (for replay)."""
        with self._lock:
            entries, self._entries = self._entries, []
        return entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def alert_title(classification: ClassificationResult) -> str:
    """Guardian-facing headline for a classification."""
    reasons = classification.matched_pattern_reasons
    if "photo request" in reasons:
        return "Photo Request Detected"
    if any("meeting" in reason for reason in reasons) or any(
        "meet me" in phrase for phrase in classification.matched_phrases
    ):
        return "Meeting Request Detected"
    if "drugs" in classification.categories or any(
        "drug" in reason or "marijuana" in reason or "smoking" in reason
        for reason in reasons
    ):
        return "Drug-Related Content Detected"
    if classification.source_filters and not (
        classification.matched_phrases or reasons
    ):
        return "Custom Filter Triggered"
    return "Content Flagged"


class AlertRouter:
    """Creates, persists and hands off alerts."""

    LOCK_STRIPES = 64

    def __init__(
        self,
        alert_repository,
        link_repository,
        notifier=None,
        hub=None,
        audit_logger=None,
        failed_log: Optional[FailedAlertLog] = None,
        max_attempts: int = 5,
        backoff_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize router.

        Args:
            alert_repository: Store with save(alert)
            link_repository: Store with guardians_for_child(child_id)
            notifier: Urgency-based notifier (optional)
            hub: Live subscription hub (optional)
            audit_logger: Audit trail (optional)
            failed_log: Dead-letter log for unpersistable alerts
            max_attempts: Persistence attempts before dead-lettering
            backoff_seconds: First retry delay, doubled per attempt
            backoff_max_seconds: Upper bound on a single retry delay
            sleep: Sleep function used between attempts (injectable for tests)
        """
        self._alerts = alert_repository
        self._links = link_repository
        self._notifier = notifier
        self._hub = hub
        self._audit = audit_logger
        self.failed_log = failed_log if failed_log is not None else FailedAlertLog()
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._sleep = sleep
        self._stripes: List[threading.Lock] = [
            threading.Lock() for _ in range(self.LOCK_STRIPES)
        ]

    def resolve_guardians(self, child_id: str) -> List[str]:
        return list(self._links.guardians_for_child(child_id))

    def route(
        self,
        message: Message,
        classification: ClassificationResult,
        dedup_key: str,
        guardian_ids: Optional[Sequence[Optional[str]]] = None,
    ) -> List[Alert]:
        """Create and persist alerts for a flagged message.

        Args:
            message: The flagged message
            classification: Its (flagged) classification
            dedup_key: Key the cooldown gate emitted under
            guardian_ids: Recipients; resolved from the child's links when
                omitted. None inside the list means an orphaned alert.

        Returns:
            The alerts that were persisted
        """
        if guardian_ids is None:
            guardian_ids = self.resolve_guardians(message.child_id) or [None]

        persisted = []
        for guardian_id in guardian_ids:
            with self._stripe_for(guardian_id):
                alert = self.build_alert(message, classification, dedup_key, guardian_id)
                if self.persist(alert):
                    persisted.append(alert)
                    self._hand_off(alert)
        return persisted

    def _stripe_for(self, guardian_id: Optional[str]) -> threading.Lock:
        return self._stripes[hash(guardian_id) % self.LOCK_STRIPES]

    def build_alert(
        self,
        message: Message,
        classification: ClassificationResult,
        dedup_key: str,
        guardian_id: Optional[str],
    ) -> Alert:
        return Alert(
            alert_id=f"alert_{uuid.uuid4().hex}",
            guardian_id=guardian_id,
            child_id=message.child_id,
            app=message.app,
            sender=message.sender,
            severity=classification.severity,
            confidence=classification.confidence,
            flagged_content=message.text[:MAX_FLAGGED_CONTENT],
            reasoning=classification.reasoning,
            dedup_key=dedup_key,
            urgency=DeliveryUrgency.for_severity(classification.severity),
            title=alert_title(classification),
            categories=tuple(sorted(classification.categories)),
            message_id=message.message_id,
        )

    def persist(self, alert: Alert) -> bool:
        """Store an alert, retrying repository failures with backoff.

        Returns:
            True if stored; False if dead-lettered
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.backoff_seconds,
                max=self.backoff_max_seconds,
            ),
            retry=retry_if_exception_type(RepositoryError),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            retrying(self._alerts.save, alert)
        except (RepositoryError, RetryError) as e:
            self._dead_letter(alert, e)
            return False

        logger.info(
            "ALERT_PERSISTED",
            extra={
                "alert_id": alert.alert_id,
                "guardian_id_hash": hash_pii(alert.guardian_id),
                "child_id_hash": hash_pii(alert.child_id),
                "severity": alert.severity.value,
                "urgency": alert.urgency.value,
                "orphaned": alert.is_orphaned,
            }
        )
        if self._audit is not None:
            self._audit.log_alert_event(AuditAction.ALERT_CREATED, alert)
        return True

    def _hand_off(self, alert: Alert) -> None:
        # Delivery is best-effort; the stored alert is the source of truth
        if self._notifier is not None:
            try:
                self._notifier.dispatch(alert)
            except Exception as e:
                logger.error(
                    "ALERT_NOTIFICATION_FAILED",
                    extra={
                        "alert_id": alert.alert_id,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    }
                )
        if self._hub is not None:
            try:
                self._hub.publish(alert)
            except Exception as e:
                logger.error(
                    "ALERT_FANOUT_FAILED",
                    extra={
                        "alert_id": alert.alert_id,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    }
                )

    def _dead_letter(self, alert: Alert, error: BaseException) -> None:
        self.failed_log.record(alert, error, self.max_attempts)
        logger.critical(
            "ALERT_PERSIST_FAILED",
            extra={
                "alert_id": alert.alert_id,
                "guardian_id_hash": hash_pii(alert.guardian_id),
                "child_id_hash": hash_pii(alert.child_id),
                "text_hash": hash_text_for_audit(alert.flagged_content),
                "severity": alert.severity.value,
                "attempts": self.max_attempts,
                "error": str(error),
                "error_type": type(error).__name__,
                "action": "DEAD_LETTERED_MANUAL_REPLAY_REQUIRED",
                "dead_letter_size": len(self.failed_log),
            }
        )
        if self._audit is not None:
            self._audit.log_alert_event(AuditAction.ALERT_DEAD_LETTERED, alert)

    def _log_retry(self, retry_state) -> None:
        logger.warning(
            "ALERT_PERSIST_RETRY",
            extra={
                "attempt": retry_state.attempt_number,
                "max_attempts": self.max_attempts,
                "error": str(retry_state.outcome.exception()),
            }
        )
