from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Iterable, List

import structlog

from spendsync.client.errors import ApiError
from spendsync.client.mutations import QueuedMutation
from spendsync.client.store import SyncQueueStore

logger = structlog.get_logger(__name__)

RequestFn = Callable[[str, str, Any], Awaitable[Any]]


@dataclass
class SyncResult:
    synced: List[QueuedMutation] = field(default_factory=list)
    failed: List[QueuedMutation] = field(default_factory=list)
    abandoned: List[QueuedMutation] = field(default_factory=list)


class SyncQueue:
    """Per-user queue of mutations that could not reach the server.

    Every read filters by user so one account never sees or replays another
    account's pending changes.
    """

    def __init__(self, store: SyncQueueStore, abandoned_store: SyncQueueStore | None = None) -> None:
        self._store = store
        self._abandoned_store = abandoned_store

    def enqueue(self, method: str, url: str, data: Any, user_id: int) -> QueuedMutation:
        mutation = QueuedMutation.create(method, url, data, user_id)
        queue = self._store.load()
        queue.append(mutation)
        self._store.save(queue)
        logger.info(
            "mutation_queued",
            mutation_id=mutation.id,
            user_id=user_id,
            method=mutation.method,
            url=url,
            queue_size=len(queue),
        )
        return mutation

    def pending(self, user_id: int | None = None) -> List[QueuedMutation]:
        return [m for m in self._store.load() if user_id is None or m.user_id == user_id]

    def pending_creates(self, user_id: int | None, url: str) -> List[QueuedMutation]:
        return [m for m in self.pending(user_id) if m.method == "POST" and m.path == url]

    def remove(self, ids: Iterable[str]) -> None:
        doomed = set(ids)
        self._store.save(m for m in self._store.load() if m.id not in doomed)

    def clear(self, user_id: int | None = None) -> None:
        self._store.clear(user_id)

    def abandoned(self, user_id: int | None = None) -> List[QueuedMutation]:
        if self._abandoned_store is None:
            return []
        return [m for m in self._abandoned_store.load() if user_id is None or m.user_id == user_id]

    def discard_abandoned(self, ids: Iterable[str]) -> None:
        if self._abandoned_store is None:
            return
        doomed = set(ids)
        self._abandoned_store.save(m for m in self._abandoned_store.load() if m.id not in doomed)

    def retry_abandoned(self, ids: Iterable[str]) -> List[QueuedMutation]:
        """Put abandoned mutations back at the end of the queue with a fresh attempt count."""
        if self._abandoned_store is None:
            return []
        wanted = set(ids)
        revived = [
            replace(m, attempts=0)
            for m in self._abandoned_store.load()
            if m.id in wanted
        ]
        if revived:
            self._store.save([*self._store.load(), *revived])
            self.discard_abandoned(m.id for m in revived)
        return revived

    async def process(
        self,
        request_fn: RequestFn,
        user_id: int | None = None,
        max_attempts: int | None = None,
    ) -> SyncResult:
        """Replay queued mutations in enqueue order, one at a time.

        The pass stops at the first mutation that fails: it and everything
        queued after it stay put, so a later update never overtakes the create
        it depends on. Server rejections count towards `max_attempts`; once the
        limit is reached the mutation is moved to the abandoned list and the
        pass carries on. Connectivity failures never count.
        """
        result = SyncResult()
        batch = self.pending(user_id)
        if not batch:
            return result

        logger.info("sync_pass_started", user_id=user_id, queued=len(batch))
        bumped: dict[str, QueuedMutation] = {}
        for index, mutation in enumerate(batch):
            try:
                await request_fn(mutation.method, mutation.url, mutation.data)
            except ApiError as exc:
                retried = mutation.with_attempt()
                if max_attempts is not None and retried.attempts >= max_attempts:
                    logger.warning(
                        "mutation_abandoned",
                        mutation_id=mutation.id,
                        status=exc.status,
                        attempts=retried.attempts,
                    )
                    result.abandoned.append(retried)
                    continue
                logger.warning("mutation_rejected", mutation_id=mutation.id, status=exc.status, attempts=retried.attempts)
                bumped[retried.id] = retried
                result.failed = [retried, *batch[index + 1:]]
                break
            except OSError as exc:
                logger.warning("mutation_sync_failed", mutation_id=mutation.id, reason=str(exc))
                result.failed = list(batch[index:])
                break
            else:
                result.synced.append(mutation)

        self._commit(result, bumped)
        logger.info(
            "sync_pass_finished",
            user_id=user_id,
            synced=len(result.synced),
            failed=len(result.failed),
            abandoned=len(result.abandoned),
        )
        return result

    def _commit(self, result: SyncResult, bumped: dict[str, QueuedMutation]) -> None:
        # Reload so that mutations enqueued while the pass was awaiting survive.
        done = {m.id for m in result.synced} | {m.id for m in result.abandoned}
        remaining = [bumped.get(m.id, m) for m in self._store.load() if m.id not in done]
        self._store.save(remaining)
        if result.abandoned and self._abandoned_store is not None:
            self._abandoned_store.save([*self._abandoned_store.load(), *result.abandoned])


async def process_queue(
    queue: SyncQueue,
    request_fn: RequestFn,
    user_id: int | None = None,
    max_attempts: int | None = None,
) -> SyncResult:
    return await queue.process(request_fn, user_id=user_id, max_attempts=max_attempts)
