from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, replace
from typing import Any


@dataclass(frozen=True)
class QueuedMutation:
    id: str
    user_id: int
    method: str
    url: str
    data: Any
    timestamp: int
    attempts: int = 0

    @classmethod
    def create(cls, method: str, url: str, data: Any, user_id: int) -> "QueuedMutation":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            method=method.upper(),
            url=url,
            data=data,
            timestamp=int(time.time() * 1000),
        )

    @classmethod
    def from_dict(cls, raw: dict) -> "QueuedMutation":
        return cls(
            id=str(raw["id"]),
            user_id=int(raw.get("userId") or 0),
            method=str(raw["method"]).upper(),
            url=str(raw["url"]),
            data=raw.get("data"),
            timestamp=int(raw.get("timestamp") or 0),
            attempts=int(raw.get("attempts") or 0),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "method": self.method,
            "url": self.url,
            "data": self.data,
            "timestamp": self.timestamp,
            "attempts": self.attempts,
        }

    def with_attempt(self) -> "QueuedMutation":
        return replace(self, attempts=self.attempts + 1)

    @property
    def path(self) -> str:
        return self.url.split("?", 1)[0]
