"""Alert deduplication: at most one alert per guardian per event per cooldown window.

The dedup key identifies "the same kind of flagged content from the same
conversation". For each (guardian_id, dedup_key) the gate remembers when an
alert was last emitted; repeats inside the window are suppressed.
"""
import hashlib
import json
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from guardian.shared.models import ClassificationResult, Message
from guardian.shared.utils import hash_pii

logger = logging.getLogger(__name__)


def build_dedup_key(message: Message, classification: ClassificationResult) -> str:
    """Deterministic key for (child, app, sender, matched phrases).

    When no built-in phrase matched, the pattern reasons and filter ids
    stand in for the phrase list.
    """
    matched = sorted(classification.matched_phrases)
    if not matched:
        matched = sorted(
            [f"pattern:{reason}" for reason in classification.matched_pattern_reasons]
            + [f"filter:{filter_id}" for filter_id in classification.source_filters]
        )
    payload = json.dumps(
        [message.child_id, message.app, message.sender, matched],
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class CooldownGate:
    """Suppresses repeat alerts inside the cooldown window.

    Check-and-set for a key runs under that key's lock stripe, so of two
    concurrent evaluations of one key exactly one emits.
    """

    LOCK_STRIPES = 64

    def __init__(
        self,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the gate.

        Args:
            cooldown_seconds: Suppression window per (guardian, dedup key)
            clock: Wall-clock time source in seconds (injectable for tests)
        """
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._last_emitted: Dict[Tuple[Optional[str], str], float] = {}
        self._stripes: List[threading.Lock] = [
            threading.Lock() for _ in range(self.LOCK_STRIPES)
        ]
        self._suppressed = 0

        logger.info(
            "COOLDOWN_GATE_INITIALIZED",
            extra={"cooldown_seconds": cooldown_seconds}
        )

    def should_emit(
        self,
        guardian_id: Optional[str],
        child_id: str,
        classification: ClassificationResult,
        message: Message,
    ) -> Tuple[bool, str]:
        """Decide whether this flagged event produces an alert.

        Args:
            guardian_id: Guardian the alert would go to (None when orphaned)
            child_id: Child the message belongs to
            classification: Flagged classification of the message
            message: The message itself

        Returns:
            (emit, dedup_key); emit is False inside the cooldown window
        """
        dedup_key = build_dedup_key(message, classification)
        key = (guardian_id, dedup_key)

        with self._stripe_for(key):
            now = self._clock()
            last = self._last_emitted.get(key)
            if last is not None and now - last < self.cooldown_seconds:
                self._suppressed += 1
                emit = False
            else:
                self._last_emitted[key] = now
                emit = True

        if not emit:
            logger.info(
                "ALERT_SUPPRESSED_BY_COOLDOWN",
                extra={
                    "guardian_id_hash": hash_pii(guardian_id),
                    "child_id_hash": hash_pii(child_id),
                    "dedup_key": dedup_key,
                    "seconds_since_last": now - last,
                }
            )
        return emit, dedup_key

    def purge_expired(self) -> int:
        """Drop entries whose window has passed; returns how many were removed."""
        removed = 0
        for key, _ in list(self._last_emitted.items()):
            with self._stripe_for(key):
                last = self._last_emitted.get(key)
                if last is not None and self._clock() - last >= self.cooldown_seconds:
                    del self._last_emitted[key]
                    removed += 1

        if removed:
            logger.info(
                "COOLDOWN_ENTRIES_PURGED",
                extra={"removed": removed, "remaining": len(self._last_emitted)}
            )
        return removed

    @property
    def tracked_keys(self) -> int:
        return len(self._last_emitted)

    @property
    def suppressed_count(self) -> int:
        return self._suppressed

    def _stripe_for(self, key: Tuple[Optional[str], str]) -> threading.Lock:
        return self._stripes[hash(key) % self.LOCK_STRIPES]
