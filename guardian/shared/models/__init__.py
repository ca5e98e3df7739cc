"""Shared domain models for the Guardian alerts platform."""
from .safety import (
    Severity,
    MatchMode,
    AlertState,
    DeliveryUrgency,
    Message,
    Filter,
    ClassificationResult,
    Alert,
    GuardianLink,
    MonitoringSettings,
)

__all__ = [
    "Severity",
    "MatchMode",
    "AlertState",
    "DeliveryUrgency",
    "Message",
    "Filter",
    "ClassificationResult",
    "Alert",
    "GuardianLink",
    "MonitoringSettings",
]
