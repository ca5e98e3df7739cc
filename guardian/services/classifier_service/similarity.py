"""Token similarity used by `similar` custom filters."""
from typing import Iterable


def levenshtein(a: str, b: str) -> int:
    """Edit distance (insertions, deletions, substitutions) between two strings."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    # Keep the shorter string as the row for O(min(len)) memory
    if len(a) < len(b):
        a, b = b, a

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (char_a != char_b),
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """Normalized similarity: 1 - distance / longer length, in [0, 1]."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest


def any_token_similar(
    text_tokens: Iterable[str],
    filter_tokens: Iterable[str],
    threshold: float,
) -> bool:
    """True if any message token / filter token pair scores above threshold."""
    filter_tokens = list(filter_tokens)
    return any(
        similarity(token, candidate) > threshold
        for token in text_tokens
        for candidate in filter_tokens
    )
