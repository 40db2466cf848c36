"""Durable string key-value storage used for session and cart state."""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

# Session-scoped keys: removed on logout and before every login
TOKEN_KEY = "token"
USER_ID_KEY = "userId"
CART_ITEMS_KEY = "cartItems"
SESSION_KEYS = (TOKEN_KEY, USER_ID_KEY, CART_ITEMS_KEY)

# One-shot flag consumed by the app refresher
REFRESH_FLAG_KEY = "triggerAppRefresh"


class KeyValueStore(ABC):
    """Async string-keyed storage that survives process restarts."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def remove(self, key: str) -> None:
        ...

    async def remove_many(self, *keys: str) -> None:
        for key in keys:
            await self.remove(key)


class MemoryKeyValueStore(KeyValueStore):
    """In-process store for tests and ephemeral sessions."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError(f"Values must be strings, got {type(value).__name__} for '{key}'")
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def snapshot(self) -> Dict[str, str]:
        return dict(self._data)


class JsonFileKeyValueStore(KeyValueStore):
    """
    Store backed by a single JSON document on disk.

    File I/O runs in a worker thread so the event loop is never blocked, and
    writes are serialized by a lock. The whole document is rewritten through
    a temporary file on every change.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._data: Optional[Dict[str, str]] = None
        self._lock = asyncio.Lock()

    def _read_file(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"[STORAGE] Could not read {self.path}, starting empty: {e}")
            return {}
        if not isinstance(data, dict):
            logger.error(f"[STORAGE] {self.path} does not hold an object, starting empty")
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _write_file(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        tmp_path.replace(self.path)

    async def _load(self) -> Dict[str, str]:
        if self._data is None:
            self._data = await asyncio.to_thread(self._read_file)
        return self._data

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            data = await self._load()
            return data.get(key)

    async def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError(f"Values must be strings, got {type(value).__name__} for '{key}'")
        async with self._lock:
            data = await self._load()
            data[key] = value
            await asyncio.to_thread(self._write_file, dict(data))

    async def remove(self, key: str) -> None:
        async with self._lock:
            data = await self._load()
            if key in data:
                del data[key]
                await asyncio.to_thread(self._write_file, dict(data))
