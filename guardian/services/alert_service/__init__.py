"""Alert Service: deduplication, routing, notification and live fan-out.

Components:
- cooldown_gate.py: CooldownGate, one alert per guardian per event per window
- router.py: AlertRouter, persistence with retry and dead-letter log
- notifier.py: AlertNotifier, urgency-based Kinesis delivery
- fanout.py: SubscriptionHub, per-guardian live alert streams
- repository.py: In-memory and PostgreSQL alert/filter/link/settings stores
"""

from .cooldown_gate import CooldownGate, build_dedup_key
from .fanout import AlertSubscription, SubscriptionHub
from .notifier import AlertNotificationEvent, AlertNotifier
from .repository import (
    InMemoryAlertRepository,
    InMemoryFilterRepository,
    InMemoryLinkRepository,
    InMemorySettingsRepository,
    PostgresAlertRepository,
    PostgresFilterRepository,
    PostgresLinkRepository,
    PostgresSettingsRepository,
)
from .router import AlertRouter, FailedAlert, FailedAlertLog

__all__ = [
    "CooldownGate",
    "build_dedup_key",
    "AlertSubscription",
    "SubscriptionHub",
    "AlertNotificationEvent",
    "AlertNotifier",
    "InMemoryAlertRepository",
    "InMemoryFilterRepository",
    "InMemoryLinkRepository",
    "InMemorySettingsRepository",
    "PostgresAlertRepository",
    "PostgresFilterRepository",
    "PostgresLinkRepository",
    "PostgresSettingsRepository",
    "AlertRouter",
    "FailedAlert",
    "FailedAlertLog",
]
