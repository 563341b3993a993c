"""
Category-aware logging for tuneshift

Every module logs under one category so a noisy concern (say, the EventSub
keepalive chatter) can be muted with LOG_CATEGORIES without touching levels:

    LOG_CATEGORIES=auth,subscriptions,effects

Usage:
    from tuneshift.utils.logging import get_logger

    logger = get_logger(__name__, category="eventsub")
"""

import logging
from typing import FrozenSet, Optional

from tuneshift.config import settings

CATEGORIES = frozenset(
    {"auth", "eventsub", "subscriptions", "rules", "effects", "activity", "rewards", "system"}
)
DEFAULT_CATEGORY = "system"


def parse_categories(value: Optional[str]) -> Optional[FrozenSet[str]]:
    """Comma-separated LOG_CATEGORIES value -> allowed set, or None to allow everything."""
    if not value:
        return None
    return frozenset(part.strip().lower() for part in value.split(",") if part.strip())


def resolve_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


class CategoryFilter(logging.Filter):
    """Drops records whose category is not in the allowed set."""

    def __init__(self, category: Optional[str] = None, allowed: Optional[FrozenSet[str]] = None):
        super().__init__()
        category = (category or DEFAULT_CATEGORY).lower()
        self.category = category if category in CATEGORIES else DEFAULT_CATEGORY
        self.allowed = allowed

    def filter(self, record: logging.LogRecord) -> bool:
        return self.allowed is None or self.category in self.allowed


def get_logger(name: str, category: Optional[str] = None) -> logging.Logger:
    """
    Logger for `name`, levelled from LOG_LEVEL and filtered by LOG_CATEGORIES.

    Unknown categories log as "system". Calling it again for the same name
    replaces the previous category rather than stacking filters.
    """
    logger = logging.getLogger(name)
    logger.setLevel(resolve_level(settings.log_level))
    for existing in [f for f in logger.filters if isinstance(f, CategoryFilter)]:
        logger.removeFilter(existing)
    logger.addFilter(CategoryFilter(category, parse_categories(settings.log_categories)))
    return logger
