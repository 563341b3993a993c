"""Effect scheduling and aggregation."""

from .scheduler import EffectScheduler, ScheduledEffect

__all__ = ["EffectScheduler", "ScheduledEffect"]
