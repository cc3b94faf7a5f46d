"""Pattern-based sensitivity classification for content entering the model context."""

import re

LOW = "low"
MEDIUM = "medium"
HIGH = "high"

_HIGH_PATTERNS = re.compile(
    r"calendar|schedule|event|meeting|email|draft|order|payment|price|budget|name|address"
    r"|phone|birth|health|medical|password|credit|bank|salary",
    re.IGNORECASE,
)
_MEDIUM_PATTERNS = re.compile(
    r"preference|search|query|pattern|browse|history|bookmark|wishlist|cart|interest",
    re.IGNORECASE,
)


def classify_sensitivity(text: str) -> str:
    """Return ``high``, ``medium`` or ``low`` for the serialized content."""
    if _HIGH_PATTERNS.search(text):
        return HIGH
    if _MEDIUM_PATTERNS.search(text):
        return MEDIUM
    return LOW
