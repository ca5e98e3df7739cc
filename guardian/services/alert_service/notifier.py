"""Urgency-based notification delivery for persisted alerts.

The alert row is the source of truth; notification is best-effort and a
failure here never affects it.

- immediate (critical/high): published to Kinesis right away
- delayed (medium): batched, sent by flush_delayed()
- summary (low): totalled per guardian, returned by build_digest() or sent
  as one digest record per guardian by publish_digests()
"""
import json
import logging
import os
import threading
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Tuple

from guardian.shared.models import Alert, DeliveryUrgency
from guardian.shared.utils import hash_pii

logger = logging.getLogger(__name__)

# Kinesis PutRecords accepts at most 500 records per call
MAX_BATCH_RECORDS = 500

# Alert ids kept per pending digest; older ids are dropped, totals are not
MAX_DIGEST_ALERT_IDS = 100

DIGEST_EVENT_TYPE = "guardian.alert.digest"


@dataclass(frozen=True)
class AlertNotificationEvent:
    """Immutable notification event consumed by the push-delivery service."""
    event_id: str
    alert_id: str
    guardian_id: str
    child_id_hash: str
    severity: str
    urgency: str
    title: str
    categories: Tuple[str, ...] = ()
    event_type: str = "guardian.alert.created"
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def from_alert(cls, alert: Alert) -> "AlertNotificationEvent":
        return cls(
            event_id=f"evt_{uuid.uuid4().hex[:12]}",
            alert_id=alert.alert_id,
            guardian_id=alert.guardian_id or "",
            child_id_hash=hash_pii(alert.child_id),
            severity=alert.severity.value,
            urgency=alert.urgency.value,
            title=alert.title,
            categories=tuple(alert.categories),
        )

    @property
    def partition_key(self) -> str:
        """Same guardian -> same shard, so per-guardian order is kept."""
        return hash_pii(self.guardian_id)

    def to_kinesis_payload(self) -> dict:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "timestamp": self.timestamp.isoformat() + "Z",
            "source": "alert-service",
            "data": {
                "alert_id": self.alert_id,
                "guardian_id": self.guardian_id,
                "child_id_hash": self.child_id_hash,
                "severity": self.severity,
                "urgency": self.urgency,
                "title": self.title,
                "categories": list(self.categories),
            }
        }


class PendingDigest:
    """Running totals of one guardian's summary alerts since the last digest."""

    def __init__(self, max_alert_ids: int = MAX_DIGEST_ALERT_IDS):
        self.alert_count = 0
        self.by_severity: Counter = Counter()
        self.by_child: Counter = Counter()
        self.alert_ids: Deque[str] = deque(maxlen=max_alert_ids)

    def add(self, alert: Alert) -> None:
        self.alert_count += 1
        self.by_severity[alert.severity.value] += 1
        self.by_child[alert.child_id] += 1
        self.alert_ids.append(alert.alert_id)

    def to_dict(self, guardian_id: str) -> Dict[str, Any]:
        return {
            "guardian_id": guardian_id,
            "alert_count": self.alert_count,
            "by_severity": dict(self.by_severity),
            "by_child": dict(self.by_child),
            "alert_ids": list(self.alert_ids),
            "generated_at": datetime.utcnow().isoformat(),
        }


class AlertNotifier:
    """Publishes alert notifications according to their urgency.

    Failure Handling:
        - Publishing failure does NOT raise; the alert is already stored
        - Failures are logged at CRITICAL level for alerting
        - Guardians recover missed notifications via recent alerts
    """

    def __init__(
        self,
        stream_name: str = "guardian-alert-notifications",
        enabled: bool = True,
        region: Optional[str] = None,
        max_digest_alert_ids: int = MAX_DIGEST_ALERT_IDS,
    ):
        """Initialize notifier.

        Args:
            stream_name: Kinesis stream name
            enabled: Whether publishing is enabled (disable for local dev)
            region: AWS region (defaults to AWS_REGION env var)
            max_digest_alert_ids: Alert ids listed per pending digest
        """
        self.stream_name = stream_name
        self.enabled = enabled
        self.region = region or os.getenv("AWS_REGION", "us-east-1")
        self._kinesis_client = None
        self._lock = threading.Lock()
        self._delayed: List[AlertNotificationEvent] = []
        self.max_digest_alert_ids = max_digest_alert_ids
        self._summaries: Dict[str, PendingDigest] = {}
        self._published = 0
        self._failed = 0

        logger.info(
            "ALERT_NOTIFIER_INITIALIZED",
            extra={
                "stream_name": stream_name,
                "enabled": enabled,
                "region": self.region,
            }
        )

    @property
    def kinesis_client(self):
        """Lazy initialization of Kinesis client."""
        if self._kinesis_client is None and self.enabled:
            try:
                import boto3
                self._kinesis_client = boto3.client(
                    "kinesis",
                    region_name=self.region,
                )
            except Exception as e:
                logger.error(
                    "KINESIS_CLIENT_INIT_FAILED",
                    extra={"error": str(e)}
                )
        return self._kinesis_client

    def dispatch(self, alert: Alert) -> DeliveryUrgency:
        """Hand a persisted alert to the channel its urgency calls for.

        Orphaned alerts have nobody to notify and are skipped.

        Returns:
            The urgency the alert was dispatched with
        """
        if alert.is_orphaned:
            logger.info(
                "NOTIFICATION_SKIPPED",
                extra={"alert_id": alert.alert_id, "reason": "orphaned_alert"}
            )
            return alert.urgency

        if alert.urgency == DeliveryUrgency.IMMEDIATE:
            self.publish_immediate(alert)
        elif alert.urgency == DeliveryUrgency.DELAYED:
            with self._lock:
                self._delayed.append(AlertNotificationEvent.from_alert(alert))
                pending = len(self._delayed)
            logger.info(
                "NOTIFICATION_BATCHED",
                extra={"alert_id": alert.alert_id, "pending": pending}
            )
        else:
            with self._lock:
                digest = self._summaries.get(alert.guardian_id)
                if digest is None:
                    digest = PendingDigest(self.max_digest_alert_ids)
                    self._summaries[alert.guardian_id] = digest
                digest.add(alert)
        return alert.urgency

    def publish_immediate(self, alert: Alert) -> bool:
        """Publish one notification now.

        Returns:
            True if published successfully, False otherwise
        """
        if not self.enabled:
            logger.info(
                "NOTIFICATION_PUBLISH_SKIPPED",
                extra={"alert_id": alert.alert_id, "reason": "publishing_disabled"}
            )
            return False

        event = AlertNotificationEvent.from_alert(alert)
        payload = event.to_kinesis_payload()

        try:
            if self.kinesis_client is None:
                logger.critical(
                    "NOTIFICATION_FALLBACK_LOG",
                    extra={
                        "event_id": event.event_id,
                        "alert_id": alert.alert_id,
                        "reason": "kinesis_client_unavailable",
                        "action": "MANUAL_PROCESSING_REQUIRED",
                    }
                )
                self._record(failed=1)
                return False

            response = self.kinesis_client.put_record(
                StreamName=self.stream_name,
                Data=json.dumps(payload),
                PartitionKey=event.partition_key,
            )
        except Exception as e:
            logger.critical(
                "NOTIFICATION_PUBLISH_FAILED",
                extra={
                    "event_id": event.event_id,
                    "alert_id": alert.alert_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "action": "MANUAL_REVIEW_REQUIRED",
                }
            )
            self._record(failed=1)
            return False

        logger.info(
            "NOTIFICATION_PUBLISHED",
            extra={
                "event_id": event.event_id,
                "alert_id": alert.alert_id,
                "severity": event.severity,
                "shard_id": response.get("ShardId"),
                "sequence_number": response.get("SequenceNumber"),
            }
        )
        self._record(published=1)
        return True

    def flush_delayed(self) -> int:
        """Send every batched notification.

        Records Kinesis rejects, or that could not be sent at all, stay
        queued for the next flush.

        Returns:
            Number of notifications published
        """
        with self._lock:
            events, self._delayed = self._delayed, []

        if not events:
            return 0

        if not self.enabled:
            logger.info(
                "NOTIFICATION_BATCH_SKIPPED",
                extra={"count": len(events), "reason": "publishing_disabled"}
            )
            return 0

        published = 0
        retry: List[AlertNotificationEvent] = []
        for start in range(0, len(events), MAX_BATCH_RECORDS):
            chunk = events[start:start + MAX_BATCH_RECORDS]
            sent, rejected = self._put_batch(chunk)
            published += sent
            retry.extend(rejected)

        if retry:
            with self._lock:
                self._delayed = retry + self._delayed

        logger.info(
            "NOTIFICATION_BATCH_FLUSHED",
            extra={
                "total": len(events),
                "published": published,
                "requeued": len(retry),
            }
        )
        return published

    def build_digest(self, guardian_id: str) -> Dict[str, Any]:
        """Return and clear the guardian's pending summary digest."""
        with self._lock:
            digest = self._summaries.pop(guardian_id, None)
        if digest is None:
            digest = PendingDigest(self.max_digest_alert_ids)
        return digest.to_dict(guardian_id)

    def publish_digests(self) -> int:
        """Send every pending summary digest and clear them all.

        A digest that cannot be sent is logged and dropped; its alerts stay
        in the guardian's alert history.

        Returns:
            Number of digests published
        """
        with self._lock:
            pending, self._summaries = self._summaries, {}

        if not pending:
            return 0

        if not self.enabled:
            logger.info(
                "DIGEST_PUBLISH_SKIPPED",
                extra={"count": len(pending), "reason": "publishing_disabled"}
            )
            return 0

        published = sum(
            1 for guardian_id, digest in pending.items()
            if self._put_digest(guardian_id, digest)
        )
        logger.info(
            "SUMMARY_DIGESTS_PUBLISHED",
            extra={"total": len(pending), "published": published}
        )
        return published

    def _put_digest(self, guardian_id: str, digest: PendingDigest) -> bool:
        data = digest.to_dict(guardian_id)
        # Children are identified by hash outside the guardian-facing API
        data["by_child"] = {
            hash_pii(child_id): count for child_id, count in digest.by_child.items()
        }
        payload = {
            "event_id": f"evt_{uuid.uuid4().hex[:12]}",
            "event_type": DIGEST_EVENT_TYPE,
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "source": "alert-service",
            "data": data,
        }

        try:
            if self.kinesis_client is None:
                raise RuntimeError("Kinesis client unavailable")
            self.kinesis_client.put_record(
                StreamName=self.stream_name,
                Data=json.dumps(payload),
                PartitionKey=hash_pii(guardian_id),
            )
        except Exception as e:
            logger.critical(
                "DIGEST_PUBLISH_FAILED",
                extra={
                    "event_id": payload["event_id"],
                    "guardian_id_hash": hash_pii(guardian_id),
                    "alert_count": digest.alert_count,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )
            self._record(failed=1)
            return False

        self._record(published=1)
        return True

    @property
    def pending_delayed(self) -> int:
        with self._lock:
            return len(self._delayed)

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "enabled": self.enabled,
                "stream_name": self.stream_name,
                "published": self._published,
                "failed": self._failed,
                "pending_delayed": len(self._delayed),
                "pending_summaries": sum(d.alert_count for d in self._summaries.values()),
                "pending_digests": len(self._summaries),
            }

    def _put_batch(
        self, events: List[AlertNotificationEvent]
    ) -> Tuple[int, List[AlertNotificationEvent]]:
        if self.kinesis_client is None:
            logger.error(
                "NOTIFICATION_BATCH_PUBLISH_FAILED",
                extra={"reason": "kinesis_client_unavailable", "count": len(events)}
            )
            self._record(failed=len(events))
            return 0, events

        records = [
            {
                "Data": json.dumps(event.to_kinesis_payload()),
                "PartitionKey": event.partition_key,
            }
            for event in events
        ]

        try:
            response = self.kinesis_client.put_records(
                StreamName=self.stream_name,
                Records=records,
            )
        except Exception as e:
            logger.critical(
                "NOTIFICATION_BATCH_PUBLISH_FAILED",
                extra={
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "count": len(events),
                }
            )
            self._record(failed=len(events))
            return 0, events

        # Per-record results come back in request order
        results = response.get("Records") or [{} for _ in events]
        rejected = [
            event for event, result in zip(events, results)
            if result.get("ErrorCode")
        ]
        sent = len(events) - len(rejected)
        self._record(published=sent, failed=len(rejected))
        return sent, rejected

    def _record(self, published: int = 0, failed: int = 0) -> None:
        with self._lock:
            self._published += published
            self._failed += failed
