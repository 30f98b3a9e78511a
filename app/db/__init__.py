from .kv import InMemoryKeyValueStore, KeyValueStore, SqlKeyValueStore
from .models import Base, KeyValueEntry

__all__ = [
    "Base",
    "InMemoryKeyValueStore",
    "KeyValueEntry",
    "KeyValueStore",
    "SqlKeyValueStore",
]
