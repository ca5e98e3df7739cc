"""Classifier Service: deterministic content safety classification.

Every monitored message is scored here against the built-in phrase table,
the contextual co-occurrence patterns and the guardian's own filters.

Components:
- classifier.py: ContentClassifier (phrase, pattern and filter layers)
- config.py: Built-in phrase tables, contextual patterns, ClassifierConfig
- rule_store.py: RuleStore with per-guardian filter cache
- text_normalizer.py: Case/unicode/whitespace folding
- similarity.py: Levenshtein token similarity for `similar` filters

Usage:
    from guardian.services.classifier_service import ContentClassifier
    classifier = ContentClassifier()
    result = classifier.classify(message, filters)
"""

from .classifier import ContentClassifier
from .config import (
    DEFAULT_RULES,
    CONTEXT_PATTERNS,
    ClassifierConfig,
    ContextPattern,
    RuleSet,
)
from .rule_store import RuleStore, RuleStoreUnavailableError

__all__ = [
    "ContentClassifier",
    "DEFAULT_RULES",
    "CONTEXT_PATTERNS",
    "ClassifierConfig",
    "ContextPattern",
    "RuleSet",
    "RuleStore",
    "RuleStoreUnavailableError",
]
