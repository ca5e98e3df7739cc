"""Severity, message, filter and alert domain models.

This file defines the core enums and data structures for content safety
classification and alert delivery. Severity carries a single total order so
every "which one wins" decision is a max() over Severity values.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple


class Severity(Enum):
    """How concerning matched content is judged to be.

    Ordered LOW < MEDIUM < HIGH < CRITICAL.
    """
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def __lt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def highest(cls, severities: Iterable["Severity"]) -> Optional["Severity"]:
        """Reduce severities to the highest one, None for an empty input."""
        result = None
        for severity in severities:
            if result is None or severity > result:
                result = severity
        return result

    @classmethod
    def parse(cls, value: str) -> "Severity":
        """Parse a severity name, case-insensitively."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown severity: {value!r}") from None


_SEVERITY_RANK: Dict[Severity, int] = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class MatchMode(Enum):
    """How a guardian-authored filter is matched against message text."""
    EXACT = "exact"             # Substring containment
    SIMILAR = "similar"         # Token-level edit-distance similarity
    CONTEXTUAL = "contextual"   # Match text plus a risk-context word


class AlertState(Enum):
    """Lifecycle of an alert. Transitions only move forward."""
    UNREAD = "unread"
    READ = "read"
    ACKNOWLEDGED = "acknowledged"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]


_STATE_RANK: Dict[AlertState, int] = {
    AlertState.UNREAD: 0,
    AlertState.READ: 1,
    AlertState.ACKNOWLEDGED: 2,
}


class DeliveryUrgency(Enum):
    """When the guardian is notified about a persisted alert."""
    IMMEDIATE = "immediate"     # critical/high: push right away
    DELAYED = "delayed"         # medium: batched
    SUMMARY = "summary"         # low: daily/weekly digest

    @classmethod
    def for_severity(cls, severity: Severity) -> "DeliveryUrgency":
        if severity >= Severity.HIGH:
            return cls.IMMEDIATE
        if severity == Severity.MEDIUM:
            return cls.DELAYED
        return cls.SUMMARY


@dataclass(frozen=True)
class Message:
    """One unit of monitored content, normalized by an ingest adapter.

    Immutable - consumed exactly once by the classifier.
    """
    message_id: str
    child_id: str
    app: str
    sender: str
    text: str
    received_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        """Build a message from an adapter payload.

        Raises:
            ValueError: If a required identifier is missing
        """
        for key in ("message_id", "child_id"):
            if not data.get(key):
                raise ValueError(f"Missing required field: {key}")
        received_at = data.get("received_at")
        if isinstance(received_at, str):
            received_at = datetime.fromisoformat(received_at.replace("Z", ""))
        return cls(
            message_id=str(data["message_id"]),
            child_id=str(data["child_id"]),
            app=str(data.get("app") or "Unknown"),
            sender=str(data.get("sender") or "Unknown"),
            text=data.get("text") if isinstance(data.get("text"), str) else "",
            received_at=received_at or datetime.utcnow(),
        )


@dataclass(frozen=True)
class Filter:
    """A guardian-authored rule layered on top of the built-in rules."""
    filter_id: str
    guardian_id: str
    match_text: str
    match_mode: MatchMode = MatchMode.EXACT
    severity: Severity = Severity.MEDIUM
    active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if not self.match_text or not self.match_text.strip():
            raise ValueError("Filter match_text must not be empty")
        if not self.guardian_id:
            raise ValueError("Filter guardian_id is required")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filter_id": self.filter_id,
            "guardian_id": self.guardian_id,
            "match_text": self.match_text,
            "match_mode": self.match_mode.value,
            "severity": self.severity.value,
            "active": self.active,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class ClassificationResult:
    """Outcome of evaluating one message against the rules.

    Invariant: confidence == 0 exactly when the message is not flagged.
    """
    flagged: bool
    severity: Optional[Severity] = None
    confidence: float = 0.0
    matched_phrases: FrozenSet[str] = frozenset()
    matched_pattern_reasons: FrozenSet[str] = frozenset()
    source_filters: Tuple[str, ...] = ()
    categories: FrozenSet[str] = frozenset()
    filter_texts: Tuple[str, ...] = ()
    rules_version: str = ""

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be 0.0-1.0, got {self.confidence}")
        if self.flagged != (self.confidence > 0.0):
            raise ValueError("Confidence must be zero exactly when not flagged")
        if self.flagged != (self.severity is not None):
            raise ValueError("Severity must be set exactly when flagged")

    @classmethod
    def not_flagged(cls, rules_version: str = "") -> "ClassificationResult":
        return cls(flagged=False, rules_version=rules_version)

    @property
    def match_count(self) -> int:
        return (
            len(self.matched_phrases)
            + len(self.matched_pattern_reasons)
            + len(self.source_filters)
        )

    @property
    def reasoning(self) -> str:
        """Matched phrases, pattern reasons and filter texts, joined."""
        parts = sorted(self.matched_phrases)
        parts.extend(sorted(self.matched_pattern_reasons))
        parts.extend(self.filter_texts)
        return ", ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flagged": self.flagged,
            "severity": self.severity.value if self.severity else None,
            "confidence": round(self.confidence, 3),
            "matched_phrases": sorted(self.matched_phrases),
            "matched_pattern_reasons": sorted(self.matched_pattern_reasons),
            "source_filters": list(self.source_filters),
            "categories": sorted(self.categories),
            "rules_version": self.rules_version,
        }


@dataclass(frozen=True)
class Alert:
    """Guardian-facing notification of one flagged message.

    Alerts are never deleted; guardian actions produce a new instance
    with an advanced state.
    """
    alert_id: str
    guardian_id: Optional[str]      # None when no guardian is linked yet
    child_id: str
    app: str
    sender: str
    severity: Severity
    confidence: float
    flagged_content: str
    reasoning: str
    dedup_key: str
    urgency: DeliveryUrgency
    title: str = "Content Flagged"
    categories: Tuple[str, ...] = ()
    message_id: str = ""
    state: AlertState = AlertState.UNREAD
    created_at: datetime = field(default_factory=datetime.utcnow)
    read_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None

    @property
    def is_orphaned(self) -> bool:
        return self.guardian_id is None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses and event payloads."""
        return {
            "alert_id": self.alert_id,
            "guardian_id": self.guardian_id,
            "child_id": self.child_id,
            "app": self.app,
            "sender": self.sender,
            "severity": self.severity.value,
            "confidence": round(self.confidence, 3),
            "flagged_content": self.flagged_content,
            "reasoning": self.reasoning,
            "dedup_key": self.dedup_key,
            "urgency": self.urgency.value,
            "title": self.title,
            "categories": list(self.categories),
            "message_id": self.message_id,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "acknowledged_at": (
                self.acknowledged_at.isoformat() if self.acknowledged_at else None
            ),
        }


@dataclass(frozen=True)
class GuardianLink:
    """Guardian/child relation, established outside the engine."""
    guardian_id: str
    child_id: str


@dataclass(frozen=True)
class MonitoringSettings:
    """A guardian's monitoring preferences.

    severity_thresholds only holds the guardian's overrides; severities not
    listed use the engine-wide thresholds. monitored_apps of None means
    every app is monitored.
    """
    guardian_id: str
    monitoring_enabled: bool = True
    custom_filters_enabled: bool = True
    context_analysis_enabled: bool = True
    severity_thresholds: Mapping[Severity, float] = field(default_factory=dict)
    monitored_apps: Optional[FrozenSet[str]] = None
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if not self.guardian_id:
            raise ValueError("MonitoringSettings guardian_id is required")
        for severity, threshold in self.severity_thresholds.items():
            if not 0.0 <= threshold <= 1.0:
                raise ValueError(
                    f"Threshold for {severity.value} must be 0.0-1.0, got {threshold}"
                )

    def monitors(self, app: str) -> bool:
        """Whether messages from `app` are classified for this guardian."""
        if not self.monitoring_enabled:
            return False
        if self.monitored_apps is None:
            return True
        wanted = (app or "").strip().lower()
        return any(wanted == name.strip().lower() for name in self.monitored_apps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "guardian_id": self.guardian_id,
            "monitoring_enabled": self.monitoring_enabled,
            "custom_filters_enabled": self.custom_filters_enabled,
            "context_analysis_enabled": self.context_analysis_enabled,
            "severity_thresholds": {
                severity.value: threshold
                for severity, threshold in sorted(self.severity_thresholds.items())
            },
            "monitored_apps": (
                sorted(self.monitored_apps) if self.monitored_apps is not None else None
            ),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, guardian_id: str, data: Dict[str, Any]) -> "MonitoringSettings":
        """Build settings from an API payload; omitted keys take defaults.

        Raises:
            ValueError: Unknown severity, bad threshold or malformed app list
        """
        raw_thresholds = data.get("severity_thresholds") or {}
        if not isinstance(raw_thresholds, dict):
            raise ValueError("severity_thresholds must map severity names to scores")
        thresholds = {
            Severity.parse(name): float(value)
            for name, value in raw_thresholds.items()
        }
        apps = data.get("monitored_apps")
        if apps is not None:
            if isinstance(apps, str) or not isinstance(apps, (list, tuple, set, frozenset)):
                raise ValueError("monitored_apps must be a list of app names")
            apps = frozenset(str(app) for app in apps)
        return cls(
            guardian_id=guardian_id,
            monitoring_enabled=bool(data.get("monitoring_enabled", True)),
            custom_filters_enabled=bool(data.get("custom_filters_enabled", True)),
            context_analysis_enabled=bool(data.get("context_analysis_enabled", True)),
            severity_thresholds=thresholds,
            monitored_apps=apps,
        )
