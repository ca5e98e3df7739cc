"""Monitoring pipeline: bounded intake queue and classification workers.

Messages are submitted without blocking. Worker threads take them off the
queue and, for every guardian linked to the child, apply that guardian's
monitoring settings, classify against its filters, check the alert
threshold, pass the cooldown gate and hand the result to the alert router.

A message whose filters cannot be loaded is parked with exponential backoff
and re-queued once its delay has passed.
"""
import heapq
import itertools
import logging
import queue
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from tenacity import RetryCallState, wait_exponential

from guardian.shared.models import Alert, Message, MonitoringSettings
from guardian.shared.utils import hash_pii, hash_text_for_audit
from guardian.services.classifier_service import RuleStoreUnavailableError

logger = logging.getLogger(__name__)

OVERFLOW_REJECT = "reject"
OVERFLOW_DROP_OLDEST = "drop_oldest"
OVERFLOW_POLICIES = (OVERFLOW_REJECT, OVERFLOW_DROP_OLDEST)


class PipelineBackpressureError(Exception):
    """The intake queue is full; the caller should retry later."""

    def __init__(self, queue_size: int, retry_after_seconds: float = 1.0):
        self.queue_size = queue_size
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"Intake queue full ({queue_size} messages)")


@dataclass(frozen=True)
class QueuedMessage:
    """A message waiting for classification.

    guardian_ids is None for a fresh message (recipients resolved when it
    is processed) and holds the outstanding guardians after a re-queue.
    """
    message: Message
    rule_store_attempts: int = 0
    guardian_ids: Optional[Sequence[Optional[str]]] = None


class MonitoringPipeline:
    """Runs classification and alert routing for submitted messages."""

    def __init__(
        self,
        classifier,
        rule_store,
        gate,
        router,
        queue_maxsize: int = 1000,
        overflow_policy: str = OVERFLOW_REJECT,
        worker_count: int = 4,
        max_rule_store_retries: int = 3,
        retry_backoff_seconds: float = 1.0,
        retry_backoff_max_seconds: float = 30.0,
        poll_interval: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize pipeline.

        Args:
            classifier: ContentClassifier
            rule_store: RuleStore serving each guardian's filters and settings
            gate: CooldownGate
            router: AlertRouter
            queue_maxsize: Bound on queued messages, and on parked retries
            overflow_policy: "reject" or "drop_oldest"
            worker_count: Worker threads started by start()
            max_rule_store_retries: Re-queues allowed while filters are unavailable
            retry_backoff_seconds: Delay before the first re-queue, doubled per attempt
            retry_backoff_max_seconds: Upper bound on a single re-queue delay
            poll_interval: How often idle workers check for shutdown
            sleep: Sleep function used by consume() on backpressure
            clock: Monotonic time source for retry delays (injectable for tests)
        """
        if overflow_policy not in OVERFLOW_POLICIES:
            raise ValueError(f"Unknown overflow policy: {overflow_policy!r}")

        self.classifier = classifier
        self.rule_store = rule_store
        self.gate = gate
        self.router = router
        self.queue_maxsize = queue_maxsize
        self.overflow_policy = overflow_policy
        self.worker_count = worker_count
        self.max_rule_store_retries = max_rule_store_retries
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock
        self._retry_wait = wait_exponential(
            multiplier=retry_backoff_seconds, max=retry_backoff_max_seconds
        )

        self._queue: "queue.Queue[QueuedMessage]" = queue.Queue(maxsize=queue_maxsize)
        # (not_before, sequence, item), ordered by due time
        self._deferred: List[Tuple[float, int, QueuedMessage]] = []
        self._deferred_lock = threading.Lock()
        self._deferred_sequence = itertools.count()
        self._submit_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._workers: List[threading.Thread] = []
        self._stats_lock = threading.Lock()
        self._stats: Dict[str, int] = {
            "submitted": 0,
            "processed": 0,
            "flagged": 0,
            "below_threshold": 0,
            "suppressed": 0,
            "alerts_created": 0,
            "rejected": 0,
            "dropped": 0,
            "requeued": 0,
            "skipped": 0,
            "failed": 0,
            "not_monitored": 0,
        }

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def submit(self, message: Message) -> None:
        """Queue a message for classification without blocking.

        Raises:
            PipelineBackpressureError: Queue full under the "reject" policy
        """
        item = QueuedMessage(message=message)
        with self._submit_lock:
            try:
                self._queue.put_nowait(item)
            except queue.Full:
                if self.overflow_policy == OVERFLOW_REJECT:
                    self._count("rejected")
                    logger.warning(
                        "MESSAGE_REJECTED_BACKPRESSURE",
                        extra={
                            "message_id": message.message_id,
                            "queue_size": self.queue_maxsize,
                        }
                    )
                    raise PipelineBackpressureError(self.queue_maxsize)
                self._drop_oldest()
                self._queue.put_nowait(item)
        self._count("submitted")

    def consume(self, source, stop_event: Optional[threading.Event] = None) -> int:
        """Feed every message from an event source into the queue.

        Blocks until the source is exhausted or stop_event is set. On
        backpressure the message is retried after the advertised delay.

        Returns:
            Number of messages submitted
        """
        stop_event = stop_event or self._stop_event
        submitted = 0
        for message in source:
            while True:
                if stop_event.is_set():
                    return submitted
                try:
                    self.submit(message)
                    break
                except PipelineBackpressureError as e:
                    self._sleep(e.retry_after_seconds)
            submitted += 1
        return submitted

    def _drop_oldest(self) -> None:
        try:
            dropped = self._queue.get_nowait()
        except queue.Empty:
            return
        self._queue.task_done()
        self._count("dropped")
        logger.warning(
            "MESSAGE_DROPPED_OLDEST",
            extra={
                "message_id": dropped.message.message_id,
                "child_id_hash": hash_pii(dropped.message.child_id),
                "queue_size": self.queue_maxsize,
            }
        )

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_message(
        self,
        message: Message,
        guardian_ids: Optional[Sequence[Optional[str]]] = None,
    ) -> List[Alert]:
        """Classify a message for each recipient and route emitted alerts.

        Args:
            message: Message to process
            guardian_ids: Recipients; resolved from the child's links when
                omitted. With no linked guardian the message is classified
                against built-in rules only and alerts are orphaned.

        Returns:
            Alerts created

        Raises:
            RuleStoreUnavailableError: A guardian's filters could not be
                loaded; `pending_guardian_ids` on the error lists every
                recipient not yet processed
        """
        if guardian_ids is None:
            guardian_ids = self.router.resolve_guardians(message.child_id) or [None]

        created: List[Alert] = []
        for index, guardian_id in enumerate(guardian_ids):
            settings = None
            filters = []
            if guardian_id is not None:
                settings = self.rule_store.get_monitoring_settings(guardian_id)
                if not settings.monitors(message.app):
                    self._skip_unmonitored(message, settings)
                    continue
                if settings.custom_filters_enabled:
                    try:
                        filters = self.rule_store.get_active_filters(guardian_id)
                    except RuleStoreUnavailableError as e:
                        e.pending_guardian_ids = list(guardian_ids[index:])
                        raise
            created.extend(
                self._process_for_guardian(message, guardian_id, filters, settings)
            )
        return created

    def _skip_unmonitored(self, message: Message, settings: MonitoringSettings) -> None:
        self._count("not_monitored")
        logger.info(
            "MESSAGE_NOT_MONITORED",
            extra={
                "message_id": message.message_id,
                "guardian_id_hash": hash_pii(settings.guardian_id),
                "app": message.app,
                "monitoring_enabled": settings.monitoring_enabled,
            }
        )

    def _process_for_guardian(
        self,
        message: Message,
        guardian_id: Optional[str],
        filters,
        settings: Optional[MonitoringSettings] = None,
    ) -> List[Alert]:
        if settings is None:
            result = self.classifier.classify(message, filters)
            overrides = None
        else:
            result = self.classifier.classify(
                message, filters, context_patterns=settings.context_analysis_enabled
            )
            overrides = settings.severity_thresholds
        if not result.flagged:
            return []
        self._count("flagged")

        if not self.classifier.meets_alert_threshold(result, overrides):
            self._count("below_threshold")
            logger.info(
                "ALERT_BELOW_THRESHOLD",
                extra={
                    "message_id": message.message_id,
                    "guardian_id_hash": hash_pii(guardian_id),
                    "severity": result.severity.value,
                    "confidence": result.confidence,
                }
            )
            return []

        emit, dedup_key = self.gate.should_emit(
            guardian_id, message.child_id, result, message
        )
        if not emit:
            self._count("suppressed")
            return []

        alerts = self.router.route(message, result, dedup_key, [guardian_id])
        self._count("alerts_created", len(alerts))
        return alerts

    def process_pending(self, max_items: Optional[int] = None) -> int:
        """Process queued messages on the calling thread.

        Returns:
            Number of queue items handled
        """
        handled = 0
        while max_items is None or handled < max_items:
            self._promote_due()
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            try:
                self._process_item(item)
            finally:
                self._queue.task_done()
            handled += 1
        return handled

    def _process_item(self, item: QueuedMessage) -> None:
        message = item.message
        try:
            self.process_message(message, item.guardian_ids)
        except RuleStoreUnavailableError as e:
            self._retry_later(item, e)
        except Exception as e:
            self._count("failed")
            logger.error(
                "MESSAGE_PROCESSING_FAILED",
                extra={
                    "message_id": message.message_id,
                    "child_id_hash": hash_pii(message.child_id),
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )
        else:
            self._count("processed")

    def _retry_later(self, item: QueuedMessage, error: RuleStoreUnavailableError) -> None:
        message = item.message
        pending = error.pending_guardian_ids or item.guardian_ids
        attempts = item.rule_store_attempts + 1

        if attempts <= self.max_rule_store_retries:
            retry = replace(item, rule_store_attempts=attempts, guardian_ids=pending)
            delay = self.retry_delay(attempts)
            if self._defer(retry, delay):
                self._count("requeued")
                logger.warning(
                    "CLASSIFICATION_DEFERRED",
                    extra={
                        "message_id": message.message_id,
                        "guardian_id_hash": hash_pii(error.guardian_id),
                        "attempt": attempts,
                        "max_retries": self.max_rule_store_retries,
                        "retry_in_seconds": delay,
                    }
                )
                return

        self._count("skipped")
        logger.critical(
            "CLASSIFICATION_SKIPPED",
            extra={
                "message_id": message.message_id,
                "child_id_hash": hash_pii(message.child_id),
                "guardian_id_hash": hash_pii(error.guardian_id),
                "text_hash": hash_text_for_audit(message.text),
                "attempts": attempts,
                "reason": "rule_store_unavailable",
                "action": "MANUAL_REVIEW_REQUIRED",
            }
        )

    def retry_delay(self, attempt: int) -> float:
        """Seconds a message waits before its `attempt`-th re-queue."""
        retry_state = RetryCallState(None, None, (), {})
        retry_state.attempt_number = attempt
        return self._retry_wait(retry_state)

    def _defer(self, item: QueuedMessage, delay: float) -> bool:
        with self._deferred_lock:
            if len(self._deferred) >= self.queue_maxsize:
                return False
            heapq.heappush(
                self._deferred,
                (self._clock() + delay, next(self._deferred_sequence), item),
            )
        return True

    def _promote_due(self) -> int:
        """Move parked messages whose delay has passed onto the queue."""
        now = self._clock()
        promoted = 0
        with self._deferred_lock:
            while self._deferred and self._deferred[0][0] <= now:
                try:
                    self._queue.put_nowait(self._deferred[0][2])
                except queue.Full:
                    break  # Stays parked until workers catch up
                heapq.heappop(self._deferred)
                promoted += 1
        return promoted

    def _next_wait(self) -> float:
        """How long an idle worker may block before parked work falls due."""
        with self._deferred_lock:
            if not self._deferred:
                return self.poll_interval
            due_in = self._deferred[0][0] - self._clock()
        return max(0.0, min(self.poll_interval, due_in))

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return any(worker.is_alive() for worker in self._workers)

    def start(self) -> None:
        """Start the worker threads."""
        if self.running:
            return
        self._stop_event.clear()
        self._workers = [
            threading.Thread(
                target=self._worker_loop,
                name=f"guardian-worker-{i}",
                daemon=True,
            )
            for i in range(self.worker_count)
        ]
        for worker in self._workers:
            worker.start()

        logger.info(
            "MONITORING_PIPELINE_STARTED",
            extra={
                "worker_count": self.worker_count,
                "queue_maxsize": self.queue_maxsize,
                "overflow_policy": self.overflow_policy,
            }
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Signal workers to finish and wait for them."""
        self._stop_event.set()
        for worker in self._workers:
            worker.join(timeout=timeout)
        self._workers = []
        logger.info(
            "MONITORING_PIPELINE_STOPPED",
            extra={"queued": self._queue.qsize(), "deferred": self.deferred_count}
        )

    def join(self) -> None:
        """Block until every queued and parked message has been handled.

        Needs running workers, like Queue.join().
        """
        while True:
            self._queue.join()
            with self._deferred_lock:
                if not self._deferred and self._queue.unfinished_tasks == 0:
                    return
            self._promote_due()
            time.sleep(self._next_wait())

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            self._promote_due()
            try:
                item = self._queue.get(timeout=self._next_wait())
            except queue.Empty:
                continue
            try:
                self._process_item(item)
            finally:
                self._queue.task_done()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    @property
    def deferred_count(self) -> int:
        with self._deferred_lock:
            return len(self._deferred)

    def status(self) -> Dict[str, object]:
        with self._stats_lock:
            stats = dict(self._stats)
        stats.update({
            "queue_depth": self._queue.qsize(),
            "deferred": self.deferred_count,
            "queue_maxsize": self.queue_maxsize,
            "overflow_policy": self.overflow_policy,
            "running": self.running,
        })
        return stats

    def _count(self, key: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[key] += amount
