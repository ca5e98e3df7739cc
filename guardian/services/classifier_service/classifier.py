"""Content classifier - deterministic phrase, pattern and custom-filter matching.

Every monitored message passes through ContentClassifier.classify() before
any alert is considered. Classification is pure: the same message, rule set
and filters always produce the same result, so it is safe to run on any
number of worker threads.

Layers:
- Built-in phrase scan (substring containment, tiered severity)
- Contextual patterns (co-occurrence of term groups, can raise severity)
- Guardian custom filters (exact / similar / contextual)

Severity is the highest contribution of all layers; it is never downgraded.
"""
import logging
import time
from typing import Iterable, List, Mapping, Optional, Set, Tuple

from guardian.shared.models import (
    ClassificationResult,
    Filter,
    MatchMode,
    Message,
    Severity,
)
from guardian.shared.utils import hash_pii, hash_text_for_audit
from .config import DEFAULT_RULES, ClassifierConfig, RuleSet
from .similarity import any_token_similar
from .text_normalizer import TextNormalizer

logger = logging.getLogger(__name__)

CUSTOM_CATEGORY = "custom"


class ContentClassifier:
    """Classifies message text against an injected rule set.

    The rule set is an immutable snapshot; swapping rules means building a
    new classifier (or passing a different RuleSet in tests).
    """

    # Confidence contributed per match, and its cap
    MATCH_WEIGHT = 0.2
    MATCH_CAP = 0.8
    # Density bonus: matches per 100 characters, and its cap
    DENSITY_WEIGHT = 0.1
    DENSITY_CAP = 0.2

    def __init__(
        self,
        rules: RuleSet = DEFAULT_RULES,
        config: Optional[ClassifierConfig] = None,
        normalizer: Optional[TextNormalizer] = None,
    ):
        """Initialize classifier.

        Args:
            rules: Built-in phrases and contextual patterns
            config: Similarity threshold, risk words and alert thresholds
            normalizer: Text normalizer (default TextNormalizer())
        """
        self.rules = rules
        self.config = config or ClassifierConfig()
        self._normalizer = normalizer or TextNormalizer()

        logger.info(
            "CONTENT_CLASSIFIER_INITIALIZED",
            extra={
                "rules_version": rules.version,
                "phrase_count": len(rules.phrases),
                "pattern_count": len(rules.patterns),
                "similarity_threshold": self.config.similarity_threshold,
            }
        )

    def classify(
        self,
        message: Message,
        filters: Iterable[Filter] = (),
        context_patterns: bool = True,
    ) -> ClassificationResult:
        """Classify one message.

        Args:
            message: Message to evaluate
            filters: The guardian's custom filters; inactive ones are ignored
            context_patterns: Whether the contextual pattern layer runs

        Returns:
            ClassificationResult; not flagged (confidence 0) for empty text
            or when nothing matched

        Logs:
            - CONTENT_FLAGGED: When anything matched
            - HIGH_SEVERITY_CONTENT_DETECTED: For high/critical results
        """
        start_time = time.perf_counter()
        normalized = self._normalizer.normalize(message.text)
        if not normalized:
            return ClassificationResult.not_flagged(self.rules.version)

        phrases, phrase_severities, categories = self._scan_phrases(normalized)
        reasons: List[str] = []
        pattern_severities: List[Severity] = []
        if context_patterns:
            reasons, pattern_severities = self._scan_patterns(normalized)
        filter_ids, filter_texts, filter_severities = self._apply_filters(
            normalized, filters
        )

        match_count = len(phrases) + len(reasons) + len(filter_ids)
        if match_count == 0:
            return ClassificationResult.not_flagged(self.rules.version)

        if filter_ids:
            categories.add(CUSTOM_CATEGORY)

        severity = Severity.highest(
            phrase_severities + pattern_severities + filter_severities
        )
        confidence = self.calculate_confidence(match_count, len(message.text))

        result = ClassificationResult(
            flagged=True,
            severity=severity,
            confidence=confidence,
            matched_phrases=frozenset(phrases),
            matched_pattern_reasons=frozenset(reasons),
            source_filters=tuple(filter_ids),
            categories=frozenset(categories),
            filter_texts=tuple(filter_texts),
            rules_version=self.rules.version,
        )
        self._log_flagged(message, result, start_time)
        return result

    def classify_text(
        self,
        text: str,
        filters: Iterable[Filter] = (),
    ) -> ClassificationResult:
        """Classify bare text (used by demos and threshold tuning)."""
        message = Message(
            message_id="adhoc",
            child_id="adhoc",
            app="Unknown",
            sender="Unknown",
            text=text,
        )
        return self.classify(message, filters)

    def meets_alert_threshold(
        self,
        result: ClassificationResult,
        overrides: Optional[Mapping[Severity, float]] = None,
    ) -> bool:
        """Whether a flagged result is confident enough to alert on.

        `overrides` holds per-guardian thresholds; severities it lacks use
        the configured ones.
        """
        if not result.flagged:
            return False
        threshold = self.config.threshold_for(result.severity)
        if overrides and result.severity in overrides:
            threshold = overrides[result.severity]
        return result.confidence >= threshold

    @classmethod
    def calculate_confidence(cls, match_count: int, text_length: int) -> float:
        """Confidence for `match_count` matches in a text of `text_length` chars.

        min(0.2n, 0.8) + min(0.1 * n / (length / 100), 0.2), clamped to [0, 1].
        """
        if match_count <= 0:
            return 0.0
        base = min(cls.MATCH_WEIGHT * match_count, cls.MATCH_CAP)
        density = cls.DENSITY_CAP
        if text_length > 0:
            density = min(
                cls.DENSITY_WEIGHT * match_count / (text_length / 100),
                cls.DENSITY_CAP,
            )
        return max(0.0, min(1.0, base + density))

    def _scan_phrases(
        self, normalized: str
    ) -> Tuple[List[str], List[Severity], Set[str]]:
        phrases: List[str] = []
        severities: List[Severity] = []
        categories: Set[str] = set()
        for phrase in self.rules.phrases:
            if phrase in normalized:
                phrases.append(phrase)
                severities.append(self.rules.severity_for(phrase))
                category = self.rules.category_for(phrase)
                if category:
                    categories.add(category)
        return phrases, severities, categories

    def _scan_patterns(self, normalized: str) -> Tuple[List[str], List[Severity]]:
        reasons: List[str] = []
        severities: List[Severity] = []
        for pattern in self.rules.patterns:
            if pattern.matches(normalized):
                reasons.append(pattern.reason)
                severities.append(pattern.severity)
        return reasons, severities

    def _apply_filters(
        self,
        normalized: str,
        filters: Iterable[Filter],
    ) -> Tuple[List[str], List[str], List[Severity]]:
        filter_ids: List[str] = []
        filter_texts: List[str] = []
        severities: List[Severity] = []
        tokens = normalized.split()

        for custom_filter in filters:
            if not custom_filter.active:
                continue
            if self._filter_fires(custom_filter, normalized, tokens):
                filter_ids.append(custom_filter.filter_id)
                filter_texts.append(custom_filter.match_text)
                severities.append(custom_filter.severity)

        return filter_ids, filter_texts, severities

    def _filter_fires(
        self,
        custom_filter: Filter,
        normalized: str,
        tokens: List[str],
    ) -> bool:
        target = self._normalizer.normalize(custom_filter.match_text)
        if not target:
            return False

        if custom_filter.match_mode == MatchMode.EXACT:
            return target in normalized

        if custom_filter.match_mode == MatchMode.SIMILAR:
            return any_token_similar(
                tokens, target.split(), self.config.similarity_threshold
            )

        if custom_filter.match_mode == MatchMode.CONTEXTUAL:
            return target in normalized and any(
                word in normalized for word in self.config.risk_context_words
            )

        return False

    def _log_flagged(
        self,
        message: Message,
        result: ClassificationResult,
        start_time: float,
    ) -> None:
        latency_ms = (time.perf_counter() - start_time) * 1000
        log_extra = {
            "message_id": message.message_id,
            "child_id_hash": hash_pii(message.child_id),
            "text_hash": hash_text_for_audit(message.text),
            "severity": result.severity.value,
            "confidence": round(result.confidence, 3),
            "phrase_matches": len(result.matched_phrases),
            "pattern_matches": len(result.matched_pattern_reasons),
            "filter_matches": len(result.source_filters),
            "latency_ms": latency_ms,
        }

        if result.severity >= Severity.HIGH:
            logger.critical("HIGH_SEVERITY_CONTENT_DETECTED", extra=log_extra)
        else:
            logger.warning("CONTENT_FLAGGED", extra=log_extra)
