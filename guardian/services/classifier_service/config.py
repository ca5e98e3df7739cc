"""Classifier configuration, built-in phrase tables and contextual patterns.

The built-in tables are module-level constants, but the classifier never
reads them directly: they are packed into an immutable RuleSet snapshot
(DEFAULT_RULES) that is injected at construction time.
"""
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, Mapping, Optional, Tuple

from guardian.shared.models import Severity


@dataclass(frozen=True)
class ContextPattern:
    """Co-occurrence rule: fires when every term group has a term present.

    Patterns can upgrade the severity of a message but never lower it.
    """
    reason: str
    severity: Severity
    term_groups: Tuple[FrozenSet[str], ...]

    def __post_init__(self):
        if len(self.term_groups) < 2:
            raise ValueError(f"Pattern {self.reason!r} needs at least two term groups")

    def matches(self, normalized_text: str) -> bool:
        return all(
            any(term in normalized_text for term in group)
            for group in self.term_groups
        )


@dataclass(frozen=True)
class RuleSet:
    """Immutable snapshot of the built-in rules shared by all classifications."""
    phrases: Tuple[str, ...]
    phrase_severities: Mapping[str, Severity]
    phrase_categories: Mapping[str, str]
    patterns: Tuple[ContextPattern, ...]
    version: str = ""
    default_severity: Severity = Severity.LOW

    def severity_for(self, phrase: str) -> Severity:
        return self.phrase_severities.get(phrase, self.default_severity)

    def category_for(self, phrase: str) -> Optional[str]:
        return self.phrase_categories.get(phrase)

    @classmethod
    def build(
        cls,
        categories: Mapping[str, Tuple[str, ...]],
        severity_tiers: Mapping[Severity, FrozenSet[str]],
        patterns: Tuple[ContextPattern, ...],
        version: str = "",
    ) -> "RuleSet":
        """Assemble a rule set from category phrase lists and severity tiers."""
        phrases = []
        phrase_categories: Dict[str, str] = {}
        for category, category_phrases in categories.items():
            for phrase in category_phrases:
                phrase = phrase.casefold()
                if phrase not in phrase_categories:
                    phrases.append(phrase)
                    phrase_categories[phrase] = category

        phrase_severities: Dict[str, Severity] = {}
        for severity, tier_phrases in severity_tiers.items():
            for phrase in tier_phrases:
                phrase = phrase.casefold()
                current = phrase_severities.get(phrase)
                if current is None or severity > current:
                    phrase_severities[phrase] = severity

        return cls(
            phrases=tuple(phrases),
            phrase_severities=MappingProxyType(phrase_severities),
            phrase_categories=MappingProxyType(phrase_categories),
            patterns=patterns,
            version=version,
        )


@dataclass(frozen=True)
class ClassifierConfig:
    """Tunables for classification and alert-worthiness."""

    # Token similarity must exceed this for a `similar` filter to fire
    similarity_threshold: float = 0.7

    # Minimum confidence for a flagged result to be alert-worthy
    severity_thresholds: Mapping[Severity, float] = field(
        default_factory=lambda: MappingProxyType({
            Severity.LOW: 0.4,
            Severity.MEDIUM: 0.6,
            Severity.HIGH: 0.8,
            Severity.CRITICAL: 0.8,
        })
    )

    # Words that turn a `contextual` filter match into a hit
    risk_context_words: FrozenSet[str] = frozenset(
        {"alone", "secret", "private", "meet", "send", "show"}
    )

    # Confidence threshold for severities missing from severity_thresholds
    fallback_threshold: float = 0.5

    def threshold_for(self, severity: Severity) -> float:
        return self.severity_thresholds.get(severity, self.fallback_threshold)

    @classmethod
    def from_env(cls) -> "ClassifierConfig":
        """Create config from environment variables.

        Environment variables:
            GUARDIAN_SIMILARITY_THRESHOLD: default 0.7
            GUARDIAN_THRESHOLD_LOW / _MEDIUM / _HIGH / _CRITICAL
        """
        defaults = cls()
        thresholds = {
            severity: float(os.getenv(
                f"GUARDIAN_THRESHOLD_{severity.name}",
                str(defaults.threshold_for(severity)),
            ))
            for severity in Severity
        }
        return cls(
            similarity_threshold=float(os.getenv(
                "GUARDIAN_SIMILARITY_THRESHOLD", str(defaults.similarity_threshold)
            )),
            severity_thresholds=MappingProxyType(thresholds),
        )


RULES_VERSION = "2025.06.01"

# Built-in phrases by category. Matching is substring containment on
# case-folded text.
BUILTIN_CATEGORIES: Mapping[str, Tuple[str, ...]] = MappingProxyType({
    # ==========================================================================
    # SEXUAL CONTENT
    # ==========================================================================
    "sexual": (
        "nude", "naked", "sex", "sexual", "porn", "pornography", "adult content",
        "hook up", "hookup", "intimate", "private parts",
    ),

    # ==========================================================================
    # PROFANITY
    # ==========================================================================
    "profanity": ("fuck", "fucking", "shit", "bitch", "whore"),

    # ==========================================================================
    # VIOLENCE AND THREATS
    # ==========================================================================
    "violence": (
        "kill", "murder", "suicide", "hurt", "violence", "weapon", "gun", "knife",
        "threat", "threaten", "beat up", "fight", "attack",
    ),

    # ==========================================================================
    # DRUGS AND ALCOHOL (direct terms, slang, smoking context)
    # Slang evolves quickly - review quarterly
    # ==========================================================================
    "drugs": (
        "drugs", "marijuana", "weed", "cocaine", "heroin", "alcohol", "drunk",
        "high", "stoned", "party drugs", "pills",
        "greens", "green stuff", "bud", "buds", "herb", "grass", "pot", "mary jane",
        "smoke", "smoking", "hit", "hits", "joint", "joints", "blunt", "blunts",
        "bowl", "bowls", "bong", "bongs", "pipe", "pipes", "vape", "vaping",
        "edibles", "gummies", "cookies", "brownies", "tincture", "oil", "wax",
        "dabs", "concentrate", "concentrates", "thc", "cbd", "cannabis",
        "white stuff", "powder", "lines", "snort", "snorting", "coke", "crack",
        "speed", "meth", "crystal", "ice", "ecstasy", "molly", "mdma", "acid",
        "lsd", "shrooms", "mushrooms", "psychedelics", "tripping", "rolling",
        "bars", "xans", "benzos", "valium", "oxy", "percs", "vicodin",
        "lean", "purple drank", "syrup", "codeine", "morphine", "fentanyl",
        "light up", "lighting up", "spark up", "sparking up", "roll up", "rolling up",
        "pack a bowl", "packing a bowl", "take a hit", "taking hits",
        "smoke session", "smoking session", "sesh", "smoke break",
    ),

    # ==========================================================================
    # BULLYING AND HARASSMENT
    # ==========================================================================
    "bullying": (
        "ugly", "fat", "stupid", "loser", "hate", "disgusting", "pathetic",
        "kill yourself", "die", "worthless", "nobody likes you",
    ),

    # ==========================================================================
    # PERSONAL INFORMATION DISCLOSURE
    # ==========================================================================
    "personal_info": (
        "address", "phone number", "social security", "credit card", "password",
        "meet me at", "my house is", "come over", "alone",
    ),

    # ==========================================================================
    # INAPPROPRIATE REQUESTS (grooming indicators)
    # ==========================================================================
    "inappropriate_requests": (
        "send me", "show me", "take off", "touch", "feel",
        "underwear", "bra", "panties",
    ),
})

# Phrases not listed in any tier fall back to RuleSet.default_severity (low).
HIGH_SEVERITY_PHRASES: FrozenSet[str] = frozenset({
    "nude", "naked", "sex", "sexual", "porn", "kill", "murder", "suicide",
    "drugs", "cocaine", "heroin", "meth", "crystal", "ice", "ecstasy", "molly",
    "acid", "lsd", "shrooms", "mushrooms", "bars", "xans", "oxy", "percs",
    "fentanyl", "lean", "purple drank", "codeine", "morphine",
})

MEDIUM_SEVERITY_PHRASES: FrozenSet[str] = frozenset({
    "fuck", "shit", "bitch", "threat", "violence", "weapon", "alcohol", "drunk",
    "ugly", "fat", "stupid", "greens", "green stuff", "bud", "buds", "herb",
    "grass", "pot", "mary jane", "smoke", "smoking", "hit", "hits", "joint",
    "joints", "blunt", "blunts", "bowl", "bowls", "bong", "bongs", "pipe",
    "pipes", "vape", "vaping", "edibles", "gummies", "cookies", "brownies",
    "thc", "cbd", "cannabis", "white stuff", "powder", "lines", "snort",
    "snorting", "coke", "crack", "speed", "psychedelics", "tripping", "rolling",
    "benzos", "valium", "vicodin", "syrup", "light up", "lighting up", "spark up",
    "sparking up", "roll up", "rolling up", "pack a bowl", "packing a bowl",
    "take a hit", "taking hits", "smoke session", "smoking session", "sesh",
})

LOW_SEVERITY_PHRASES: FrozenSet[str] = frozenset({
    "hate", "disgusting", "pathetic", "loser", "address", "phone number",
    "meet me at", "tincture", "oil", "wax", "dabs", "concentrate", "concentrates",
    "smoke break",
})

_MARIJUANA = frozenset({"green", "bud", "herb", "grass", "pot", "mary jane"})
_SMOKING = frozenset({"smoke", "smoking", "hit", "joint", "blunt", "bowl", "bong", "pipe"})
_INTOXICATED = frozenset({"high", "stoned", "baked", "blazed", "fried"})

# Evaluated in order; every matching pattern contributes.
CONTEXT_PATTERNS: Tuple[ContextPattern, ...] = (
    ContextPattern("smoking context", Severity.MEDIUM, (_MARIJUANA, _SMOKING)),
    ContextPattern(
        "marijuana intoxication context", Severity.MEDIUM,
        (_MARIJUANA - {"mary jane"}, _INTOXICATED),
    ),
    ContextPattern(
        "marijuana session context", Severity.MEDIUM,
        (
            frozenset({"smoke", "smoking"}),
            frozenset({"session", "sesh", "break"}),
            _MARIJUANA - {"mary jane"},
        ),
    ),
    ContextPattern(
        "marijuana preparation context", Severity.MEDIUM,
        (frozenset({"roll"}), (_MARIJUANA - {"mary jane"}) | {"joint", "blunt"}),
    ),
    ContextPattern(
        "marijuana meeting context", Severity.MEDIUM,
        (
            frozenset({"meet", "come over", "hang out"}),
            frozenset({"smoke", "smoking", "green", "bud", "herb", "grass", "pot"}),
        ),
    ),
    ContextPattern(
        "marijuana acquisition context", Severity.MEDIUM,
        (
            frozenset({"buy", "get", "pick up", "picking up"}),
            frozenset({"green", "bud", "herb", "grass", "pot", "weed"}),
        ),
    ),
    ContextPattern(
        "marijuana dealing context", Severity.MEDIUM,
        (
            frozenset({"sell", "have", "got"}),
            frozenset({"green", "bud", "herb", "grass", "pot", "weed"}),
        ),
    ),
    ContextPattern(
        "marijuana edibles context", Severity.MEDIUM,
        (
            frozenset({"eat", "gummies", "cookies", "brownies"}),
            frozenset({"high", "stoned", "baked", "green", "thc"}),
        ),
    ),
    ContextPattern(
        "marijuana vaping context", Severity.MEDIUM,
        (
            frozenset({"vape", "vaping", "hit"}),
            frozenset({"green", "bud", "herb", "grass", "pot", "oil", "wax"}),
        ),
    ),
    ContextPattern(
        "meeting alone context", Severity.MEDIUM,
        (frozenset({"meet"}), frozenset({"alone"})),
    ),
    ContextPattern(
        "photo request", Severity.HIGH,
        (frozenset({"send"}), frozenset({"photo", "picture"})),
    ),
    ContextPattern(
        "late night drug activity context", Severity.MEDIUM,
        (frozenset({"greens", "bud", "smoke"}), frozenset({"tonight", "late", "midnight"})),
    ),
    ContextPattern(
        "drug quantity context", Severity.MEDIUM,
        (
            frozenset({"greens", "bud", "weed"}),
            frozenset({"gram", "ounce", "pound", "bag", "dime", "eighth"}),
        ),
    ),
)

DEFAULT_RULES: RuleSet = RuleSet.build(
    categories=BUILTIN_CATEGORIES,
    severity_tiers={
        Severity.HIGH: HIGH_SEVERITY_PHRASES,
        Severity.MEDIUM: MEDIUM_SEVERITY_PHRASES,
        Severity.LOW: LOW_SEVERITY_PHRASES,
    },
    patterns=CONTEXT_PATTERNS,
    version=RULES_VERSION,
)
