"""Live alert fan-out to guardian sessions.

Each open session (device, browser tab) holds its own AlertSubscription, a
bounded queue the hub pushes new alerts into. There is no replay: a session
sees only alerts published after it subscribed, and pulls history through
recent alerts on (re)connect.
"""
import logging
import queue
import threading
import uuid
from collections import defaultdict
from typing import Dict, Iterator, List, Optional

from guardian.shared.models import Alert
from guardian.shared.utils import hash_pii

logger = logging.getLogger(__name__)

_CLOSED = object()


class AlertSubscription:
    """One guardian session's stream of alerts.

    Iterate to consume alerts as they arrive; iteration ends once the
    subscription is closed.
    """

    def __init__(
        self,
        guardian_id: str,
        max_queue: int = 100,
        hub: Optional["SubscriptionHub"] = None,
        poll_interval: float = 0.5,
    ):
        self.subscription_id = f"sub_{uuid.uuid4().hex[:12]}"
        self.guardian_id = guardian_id
        self.poll_interval = poll_interval
        self._queue: "queue.Queue" = queue.Queue(maxsize=max_queue)
        self._hub = hub
        self._closed = threading.Event()
        self.delivered_count = 0
        self.dropped_count = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def deliver(self, alert: Alert) -> bool:
        """Queue an alert for this session; False if closed or full."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(alert)
        except queue.Full:
            self.dropped_count += 1
            logger.warning(
                "SUBSCRIBER_QUEUE_FULL",
                extra={
                    "subscription_id": self.subscription_id,
                    "guardian_id_hash": hash_pii(self.guardian_id),
                    "alert_id": alert.alert_id,
                    "dropped_count": self.dropped_count,
                }
            )
            return False
        self.delivered_count += 1
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[Alert]:
        """Next alert, or None on timeout or once closed."""
        if self.closed:
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED or self.closed:
            return None
        return item

    def __iter__(self) -> Iterator[Alert]:
        while not self.closed:
            alert = self.get(timeout=self.poll_interval)
            if alert is not None:
                yield alert

    def close(self) -> None:
        """Stop this stream; other sessions are unaffected."""
        if self.closed:
            return
        self._closed.set()
        try:
            self._queue.put_nowait(_CLOSED)
        except queue.Full:
            pass  # Iterators notice the flag on their next poll
        if self._hub is not None:
            self._hub.unsubscribe(self)


class SubscriptionHub:
    """Registry of live subscriptions, keyed by guardian.

    Publishing for one guardian holds that guardian's lock, so every session
    receives that guardian's alerts in publish order. Subscribing and
    unsubscribing only touch the registry lock and never wait on a publish.
    """

    def __init__(self, max_queue: int = 100):
        self.max_queue = max_queue
        self._subscriptions: Dict[str, List[AlertSubscription]] = defaultdict(list)
        self._registry_lock = threading.Lock()
        self._publish_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)

    def subscribe(self, guardian_id: str) -> AlertSubscription:
        subscription = AlertSubscription(guardian_id, self.max_queue, hub=self)
        with self._registry_lock:
            self._subscriptions[guardian_id].append(subscription)
            count = len(self._subscriptions[guardian_id])

        logger.info(
            "ALERT_SUBSCRIPTION_OPENED",
            extra={
                "subscription_id": subscription.subscription_id,
                "guardian_id_hash": hash_pii(guardian_id),
                "guardian_sessions": count,
            }
        )
        return subscription

    def unsubscribe(self, subscription: AlertSubscription) -> None:
        """Remove one session; closes it if still open."""
        if not subscription.closed:
            # close() calls back here once the session is marked closed
            subscription.close()
            return

        with self._registry_lock:
            sessions = self._subscriptions.get(subscription.guardian_id, [])
            if subscription in sessions:
                sessions.remove(subscription)
            if not sessions:
                self._subscriptions.pop(subscription.guardian_id, None)
                self._publish_locks.pop(subscription.guardian_id, None)

        logger.info(
            "ALERT_SUBSCRIPTION_CLOSED",
            extra={
                "subscription_id": subscription.subscription_id,
                "delivered": subscription.delivered_count,
                "dropped": subscription.dropped_count,
            }
        )

    def publish(self, alert: Alert) -> int:
        """Push an alert to every open session of its guardian.

        Returns:
            Number of sessions the alert was queued for
        """
        if alert.guardian_id is None:
            return 0

        with self._registry_lock:
            if not self._subscriptions.get(alert.guardian_id):
                return 0
            publish_lock = self._publish_locks[alert.guardian_id]

        with publish_lock:
            with self._registry_lock:
                sessions = list(self._subscriptions.get(alert.guardian_id, ()))
            delivered = sum(1 for session in sessions if session.deliver(alert))

        return delivered

    def subscriber_count(self, guardian_id: Optional[str] = None) -> int:
        with self._registry_lock:
            if guardian_id is not None:
                return len(self._subscriptions.get(guardian_id, ()))
            return sum(len(s) for s in self._subscriptions.values())
