"""
Per-platform content adaptation.

Rules are table-driven: adding a platform means adding a ``PlatformRule``
to ``PLATFORM_RULES``, never a new branch.  Adaptation is pure and
deterministic.

- Text longer than the platform limit is cut at the last whitespace that
  fits and ends with ``ELLIPSIS``.  A single unbroken word is hard-cut.
- Hashtag density above the platform threshold adds a warning; it never
  blocks publishing.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

ELLIPSIS = "…"


@dataclass(frozen=True)
class PlatformRule:
    """Adaptation limits for one platform.

    Attributes:
        max_length: Maximum number of characters, ellipsis included.
        max_hashtag_density: Highest allowed share of hashtag tokens
            among all whitespace-separated tokens (0-1).
    """

    max_length: int
    max_hashtag_density: float = 0.3


PLATFORM_RULES: Dict[str, PlatformRule] = {
    "linkedin": PlatformRule(max_length=3000, max_hashtag_density=0.2),
    "x": PlatformRule(max_length=280, max_hashtag_density=0.3),
    "twitter": PlatformRule(max_length=280, max_hashtag_density=0.3),
    "threads": PlatformRule(max_length=500, max_hashtag_density=0.3),
    "bluesky": PlatformRule(max_length=300, max_hashtag_density=0.3),
    "instagram": PlatformRule(max_length=2200, max_hashtag_density=0.5),
    "facebook": PlatformRule(max_length=63206, max_hashtag_density=0.2),
}

# Unknown platforms pass through unless absurdly long
DEFAULT_RULE = PlatformRule(max_length=63206, max_hashtag_density=1.0)


@dataclass(frozen=True)
class AdaptedContent:
    text: str
    truncated: bool = False
    warnings: List[str] = field(default_factory=list)


def rule_for(platform: str) -> PlatformRule:
    return PLATFORM_RULES.get(platform.lower(), DEFAULT_RULE)


def truncate(text: str, max_length: int) -> str:
    """Cut *text* to at most *max_length* characters, ending in an ellipsis.

    The cut lands on the last whitespace before the limit; when there is
    none (one long word), the word itself is cut.
    """
    if max_length < 1:
        raise ValueError(f"max_length must be >= 1, got {max_length}")
    if len(text) <= max_length:
        return text

    budget = max_length - len(ELLIPSIS)
    head = text[:budget]
    if not text[budget].isspace():
        boundary = max((head.rfind(ws) for ws in (" ", "\n", "\t")), default=-1)
        if boundary > 0:
            head = head[:boundary]
    return head.rstrip() + ELLIPSIS


def hashtag_density(text: str) -> float:
    tokens = text.split()
    if not tokens:
        return 0.0
    hashtags = [t for t in tokens if t.startswith("#") and len(t) > 1]
    return len(hashtags) / len(tokens)


def adapt_content(
    text: str,
    platform: str,
    rules: Optional[Dict[str, PlatformRule]] = None,
) -> AdaptedContent:
    """Adapt *text* for *platform*.

    Args:
        text: Original post text.
        platform: Target platform key (case-insensitive).
        rules: Rule table override; defaults to ``PLATFORM_RULES``.

    Returns:
        The adapted text, whether it was truncated, and any warnings.
    """
    table = rules if rules is not None else PLATFORM_RULES
    rule = table.get(platform.lower(), DEFAULT_RULE)
    warnings: List[str] = []

    adapted = truncate(text, rule.max_length)
    truncated = adapted != text
    if truncated:
        warnings.append(
            f"Content truncated from {len(text)} to {len(adapted)} characters "
            f"for {platform} (limit {rule.max_length})"
        )

    density = hashtag_density(adapted)
    if density > rule.max_hashtag_density:
        warnings.append(
            f"Hashtag density {density:.0%} exceeds {rule.max_hashtag_density:.0%} "
            f"recommended for {platform}"
        )

    for warning in warnings:
        logger.warning("[DISPATCH] %s", warning)

    return AdaptedContent(text=adapted, truncated=truncated, warnings=warnings)


__all__ = [
    "ELLIPSIS",
    "PlatformRule",
    "PLATFORM_RULES",
    "DEFAULT_RULE",
    "AdaptedContent",
    "rule_for",
    "truncate",
    "hashtag_density",
    "adapt_content",
]
