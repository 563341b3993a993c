"""
Memory layer: key-value storage and the activity log
"""

from .activity_log import ActivityLog
from .store import JsonFileStore, KeyValueStore, MemoryStore, RedisStore, create_store

__all__ = [
    "ActivityLog",
    "JsonFileStore",
    "KeyValueStore",
    "MemoryStore",
    "RedisStore",
    "create_store",
]
