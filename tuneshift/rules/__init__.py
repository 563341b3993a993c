"""Event normalization, binding matching and chat templates."""

from .matcher import MatchOutcome, ScheduleRequest, match
from .normalizer import normalize

__all__ = ["MatchOutcome", "ScheduleRequest", "match", "normalize"]
