"""
Key/Value Storage Layer
=======================

Async string key/value store consulted by the dispatch core. The app owns
the store; the core only relies on ``get``/``set``/``remove`` and on every
failure surfacing as ``StorageError`` (never swallowed).

Keys used by the core:

| Key                          | Value                                   |
|------------------------------|-----------------------------------------|
| ``{provider}_api_key``       | raw secret                              |
| ``{provider}_model``         | model name                              |
| ``verified_models``          | JSON provider -> [{name, order}]        |
| ``current_models``           | JSON provider -> model name             |
| ``@active_providers``        | JSON provider -> bool                   |
| ``selected_provider``        | provider id (global scope)              |
| ``{tool}_selected_provider`` | provider id (tool scope)                |
| ``{tool}_selected_models``   | JSON provider -> model name (tool)      |
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from .errors import StorageError

logger = logging.getLogger(__name__)

ACTIVE_PROVIDERS_KEY = "@active_providers"
VERIFIED_MODELS_KEY = "verified_models"
CURRENT_MODELS_KEY = "current_models"
GLOBAL_PROVIDER_KEY = "selected_provider"
API_KEY_SUFFIX = "_api_key"


def api_key_key(provider: str) -> str:
    return f"{provider}{API_KEY_SUFFIX}"


def model_key(provider: str) -> str:
    return f"{provider}_model"


def tool_provider_key(tool: str) -> str:
    return f"{tool}_selected_provider"


def tool_models_key(tool: str) -> str:
    return f"{tool}_selected_models"


def get_storage_path() -> Path:
    """Get the storage directory path, creating it if needed."""
    storage_dir = Path(os.environ.get("AI_THUB_HOME", "~/.ai_thub")).expanduser()
    storage_dir.mkdir(parents=True, exist_ok=True)
    return storage_dir


class KeyValueStore(ABC):
    """Async string key/value store"""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the stored value or None"""

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``"""

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete ``key`` (no error if missing)"""

    async def get_json(self, key: str) -> Any | None:
        """Read and decode a JSON value; malformed JSON reads as None"""
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Ignoring malformed JSON stored under {key!r}")
            return None

    async def set_json(self, key: str, value: Any) -> None:
        await self.set(key, json.dumps(value))


class MemoryStore(KeyValueStore):
    """Process-local store. ``fail_writes`` simulates a broken backend,
    ``fail_keys`` a backend that rejects only some keys."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(initial or {})
        self.fail_writes = False
        self.fail_keys: set[str] = set()

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        if self.fail_writes or key in self.fail_keys:
            raise StorageError(f"Write failed for {key!r}")
        self.data[key] = value

    async def remove(self, key: str) -> None:
        if self.fail_writes or key in self.fail_keys:
            raise StorageError(f"Remove failed for {key!r}")
        self.data.pop(key, None)


class JsonFileStore(KeyValueStore):
    """Single JSON document on disk, rewritten atomically on each change"""

    def __init__(self, path: Path | None = None) -> None:
        if path is None:
            path = get_storage_path() / "store.json"
        self.path = path
        self._cache: dict[str, str] | None = None
        self._mtime: float | None = None

    def _current_mtime(self) -> float | None:
        try:
            return self.path.stat().st_mtime
        except OSError:
            return None

    def _load(self) -> dict[str, str]:
        mtime = self._current_mtime()
        # reread when another writer touched the file
        if self._cache is not None and mtime == self._mtime:
            return self._cache
        if mtime is None:
            self._cache, self._mtime = {}, None
            return self._cache
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                loaded = json.load(fh)
        except (OSError, ValueError) as e:
            raise StorageError(f"Failed to read {self.path}: {e}") from e
        if not isinstance(loaded, dict):
            raise StorageError(f"{self.path} did not contain an object")
        self._cache = {str(k): str(v) for k, v in loaded.items()}
        self._mtime = mtime
        return self._cache

    def _write(self, data: dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_file = self.path.with_suffix(".tmp")
            with temp_file.open("w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, ensure_ascii=False)
            temp_file.replace(self.path)
        except OSError as e:
            raise StorageError(f"Failed to write {self.path}: {e}") from e
        self._cache = data
        self._mtime = self._current_mtime()

    async def get(self, key: str) -> str | None:
        data = await asyncio.to_thread(self._load)
        return data.get(key)

    async def set(self, key: str, value: str) -> None:
        data = dict(await asyncio.to_thread(self._load))
        data[key] = value
        await asyncio.to_thread(self._write, data)

    async def remove(self, key: str) -> None:
        data = dict(await asyncio.to_thread(self._load))
        if key not in data:
            return
        del data[key]
        await asyncio.to_thread(self._write, data)
