from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, replace
from typing import Any, Iterable, List

from spendsync.client.mutations import QueuedMutation


class PendingState(str, enum.Enum):
    OPTIMISTIC = "optimistic"
    QUEUED = "queued"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class PendingRecord:
    """A record the user created that the server may not know about yet.

    The state says where it is in its life: rendered before any network call
    (optimistic), parked in the sync queue (queued), accepted by the server
    (confirmed), or rejected (failed). Local ids are strings, so they never
    clash with the integer ids the server assigns.
    """

    state: PendingState
    local_id: str
    data: dict
    server_id: Any = None

    @classmethod
    def optimistic(cls, data: dict) -> "PendingRecord":
        return cls(state=PendingState.OPTIMISTIC, local_id=f"optimistic-{uuid.uuid4()}", data=dict(data))

    @classmethod
    def from_mutation(cls, mutation: QueuedMutation) -> "PendingRecord":
        data = mutation.data if isinstance(mutation.data, dict) else {}
        return cls(state=PendingState.QUEUED, local_id=mutation.id, data=dict(data))

    def queued(self, mutation_id: str) -> "PendingRecord":
        return replace(self, state=PendingState.QUEUED, local_id=mutation_id)

    def confirm(self, server_record: dict) -> "PendingRecord":
        return replace(self, state=PendingState.CONFIRMED, data=dict(server_record), server_id=server_record.get("id"))

    def fail(self) -> "PendingRecord":
        return replace(self, state=PendingState.FAILED)

    @property
    def is_pending(self) -> bool:
        return self.state in (PendingState.OPTIMISTIC, PendingState.QUEUED)

    def to_display(self) -> dict:
        if self.state is PendingState.CONFIRMED:
            return dict(self.data)
        return {
            **self.data,
            "id": self.local_id,
            "pending": True,
            "pendingState": self.state.value,
        }


def merge_pending(
    server_records: Iterable[dict],
    mutations: Iterable[QueuedMutation],
    creation_url: str,
) -> List[dict]:
    """Queued creates for `creation_url` first, then server rows not already shown."""
    pending = [
        PendingRecord.from_mutation(mutation).to_display()
        for mutation in mutations
        if mutation.method == "POST" and mutation.path == creation_url
    ]
    pending_ids = {record["id"] for record in pending}
    return pending + [record for record in server_records if record.get("id") not in pending_ids]
