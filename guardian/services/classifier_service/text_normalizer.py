"""Text normalization applied before every phrase, pattern and filter check.

Folds the formatting differences that should never change a classification:
letter case, unicode compatibility forms (fullwidth, circled and styled
letters), invisible characters and runs of whitespace.
"""
import logging
import unicodedata
from typing import FrozenSet, Optional

logger = logging.getLogger(__name__)


# Characters to strip (zero-width, invisible)
STRIP_CHARS: FrozenSet[str] = frozenset({
    "\u200b",  # Zero-width space
    "\u200c",  # Zero-width non-joiner
    "\u200d",  # Zero-width joiner
    "\ufeff",  # Byte order mark
    "\u00ad",  # Soft hyphen
    "\u2060",  # Word joiner
})


class TextNormalizer:
    """Normalizes message text for matching.

    Handles:
    - Zero-width characters (s\\u200bmoke -> smoke)
    - Unicode compatibility forms (ＳＭＯＫＥ, ⓢⓜⓞⓚⓔ -> smoke)
    - Mixed case, including case-folding (Straße -> strasse)
    - Newlines, tabs and repeated spaces
    """

    def normalize(self, text: Optional[str]) -> str:
        """Normalize text for matching.

        Applies in order:
        1. Strip zero-width/invisible characters
        2. NFKC unicode normalization
        3. Collapse whitespace
        4. Case-fold

        Args:
            text: Raw message text; None is treated as empty

        Returns:
            Normalized text, empty string for blank input
        """
        if not text:
            return ""

        result = "".join(c for c in text if c not in STRIP_CHARS)
        result = unicodedata.normalize("NFKC", result)
        result = " ".join(result.split())
        return result.casefold()
