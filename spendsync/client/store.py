"""File-backed durable storage for the client.

Everything lives in a single JSON object per file, keyed by name. Each write
replaces the whole file atomically, so a crash leaves either the old or the new
contents on disk and never a torn write.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Iterable, List

import structlog

from spendsync.client.mutations import QueuedMutation

logger = structlog.get_logger(__name__)

SYNC_QUEUE_KEY = "sync-queue"
ABANDONED_KEY = "sync-abandoned"


class JsonFileStore:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def get(self, key: str, default: Any = None) -> Any:
        return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("store_unreadable", path=str(self.path), reason=str(exc))
            return {}
        if not isinstance(data, dict):
            logger.warning("store_unreadable", path=str(self.path), reason="not a JSON object")
            return {}
        return data

    def _write(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


class SyncQueueStore:
    """Ordered list of queued mutations held under one key of a :class:`JsonFileStore`."""

    def __init__(self, store: JsonFileStore, key: str = SYNC_QUEUE_KEY) -> None:
        self._store = store
        self._key = key

    @classmethod
    def at(cls, path: str | Path, key: str = SYNC_QUEUE_KEY) -> "SyncQueueStore":
        return cls(JsonFileStore(path), key=key)

    def load(self) -> List[QueuedMutation]:
        raw = self._store.get(self._key) or []
        mutations: List[QueuedMutation] = []
        for item in raw:
            try:
                mutations.append(QueuedMutation.from_dict(item))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("queue_entry_skipped", key=self._key, reason=str(exc))
        return mutations

    def save(self, mutations: Iterable[QueuedMutation]) -> None:
        self._store.set(self._key, [mutation.to_dict() for mutation in mutations])

    def clear(self, user_id: int | None = None) -> None:
        if user_id is None:
            self._store.delete(self._key)
            return
        self.save(mutation for mutation in self.load() if mutation.user_id != user_id)
