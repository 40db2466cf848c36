"""Persistent key-value storage."""
from .kv import (
    CART_ITEMS_KEY,
    REFRESH_FLAG_KEY,
    SESSION_KEYS,
    TOKEN_KEY,
    USER_ID_KEY,
    JsonFileKeyValueStore,
    KeyValueStore,
    MemoryKeyValueStore,
)

__all__ = [
    "CART_ITEMS_KEY",
    "REFRESH_FLAG_KEY",
    "SESSION_KEYS",
    "TOKEN_KEY",
    "USER_ID_KEY",
    "JsonFileKeyValueStore",
    "KeyValueStore",
    "MemoryKeyValueStore"
]
