"""
Durable key/value storage.

Credentials and file handle metadata are kept in small JSON documents
under the graphkeep home, one document per store. Writes go to a temp
file first and are renamed into place, so a crash mid-write never
leaves a truncated document behind.

Keys are namespaced (``graphkeep.access_token``) so several stores can
share one document without colliding.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterator, Optional

logger = logging.getLogger("graphkeep.storage")


class KeyValueStore(ABC):
    """Abstract durable key/value store holding JSON-compatible values."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for ``key`` or ``default``."""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``."""

    @abstractmethod
    def remove(self, key: str) -> bool:
        """Delete ``key``. Returns True if it existed."""

    @abstractmethod
    def keys(self) -> list[str]:
        """All keys currently stored."""

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def update(self, values: dict[str, Any]) -> None:
        for key, value in values.items():
            self.set(key, value)

    def remove_many(self, keys: list[str]) -> int:
        return sum(1 for key in keys if self.remove(key))


class MemoryStore(KeyValueStore):
    """Process-local store; nothing survives a restart."""

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self._data: dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def remove(self, key: str) -> bool:
        if key not in self._data:
            return False
        del self._data[key]
        return True

    def keys(self) -> list[str]:
        return list(self._data)


class JsonFileStore(KeyValueStore):
    """Store backed by a single JSON document on disk.

    The document is re-read on every access, so two stores pointing at
    the same path always agree.

    Args:
        path: Location of the JSON document.
    """

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()

    def get(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def update(self, values: dict[str, Any]) -> None:
        data = self._load()
        data.update(values)
        self._save(data)

    def remove(self, key: str) -> bool:
        data = self._load()
        if key not in data:
            return False
        del data[key]
        self._save(data)
        return True

    def remove_many(self, keys: list[str]) -> int:
        data = self._load()
        removed = [k for k in keys if k in data]
        for key in removed:
            del data[key]
        if removed:
            self._save(data)
        return len(removed)

    def keys(self) -> list[str]:
        return list(self._load())

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Failed to read store %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f".{self.path.name}.tmp")
        tmp_path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
        os.replace(tmp_path, self.path)


class NamespacedStore(KeyValueStore):
    """View of another store with every key prefixed by ``namespace.``."""

    def __init__(self, inner: KeyValueStore, namespace: str):
        self._inner = inner
        self._prefix = f"{namespace}."

    def get(self, key: str, default: Any = None) -> Any:
        return self._inner.get(self._prefix + key, default)

    def set(self, key: str, value: Any) -> None:
        self._inner.set(self._prefix + key, value)

    def update(self, values: dict[str, Any]) -> None:
        self._inner.update({self._prefix + k: v for k, v in values.items()})

    def remove(self, key: str) -> bool:
        return self._inner.remove(self._prefix + key)

    def remove_many(self, keys: list[str]) -> int:
        return self._inner.remove_many([self._prefix + k for k in keys])

    def keys(self) -> list[str]:
        n = len(self._prefix)
        return [k[n:] for k in self._inner.keys() if k.startswith(self._prefix)]
