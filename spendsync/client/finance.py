from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Any, List

import httpx
import structlog

from spendsync.client import routes
from spendsync.client.cache import QueryCache
from spendsync.client.connectivity import ConnectivityMonitor
from spendsync.client.errors import OfflineError
from spendsync.client.http import OfflineAwareClient, is_queued_response
from spendsync.client.mutations import QueuedMutation
from spendsync.client.pending import PendingRecord, merge_pending
from spendsync.client.queue import SyncQueue, SyncResult
from spendsync.client.store import ABANDONED_KEY, SYNC_QUEUE_KEY, JsonFileStore, SyncQueueStore
from spendsync.config import ClientSettings, get_client_settings

logger = structlog.get_logger(__name__)


class FinanceClient:
    """Offline-capable client for the SpendSync API.

    Owns its query cache and sync queue. When the connectivity monitor flips
    back online, queued mutations for the signed-in user are replayed and every
    cached query is marked stale.
    """

    def __init__(
        self,
        base_url: str,
        queue: SyncQueue,
        cache: QueryCache | None = None,
        monitor: ConnectivityMonitor | None = None,
        timeout: float = 3.0,
        max_sync_attempts: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.queue = queue
        self.cache = cache or QueryCache()
        self.monitor = monitor or ConnectivityMonitor()
        self.max_sync_attempts = max_sync_attempts
        self.http = OfflineAwareClient(base_url, queue, monitor=self.monitor, timeout=timeout, transport=transport)
        self.user: dict | None = None
        # Creates the server rejected; kept so a caller can show or retry them.
        self.failed_creates: List[PendingRecord] = []
        self._unsubscribe = self.monitor.on_change(self._on_connectivity_change)

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "FinanceClient":
        settings = settings or get_client_settings()
        queue_file = JsonFileStore(settings.queue_path)
        queue = SyncQueue(
            SyncQueueStore(queue_file, key=SYNC_QUEUE_KEY),
            abandoned_store=SyncQueueStore(queue_file, key=ABANDONED_KEY),
        )
        cache = QueryCache(JsonFileStore(settings.cache_path) if settings.cache_path else None)
        cache.restore()
        return cls(
            settings.base_url,
            queue,
            cache=cache,
            timeout=settings.request_timeout_seconds,
            max_sync_attempts=settings.max_sync_attempts,
            transport=transport,
        )

    async def __aenter__(self) -> "FinanceClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self._unsubscribe()
        self.cache.persist()
        await self.http.aclose()

    @property
    def user_id(self) -> int:
        return int(self.user["id"]) if self.user else 0

    # --- Auth ---

    async def register(self, username: str, password: str) -> dict:
        response = await self.http.send("POST", routes.REGISTER, {"username": username, "password": password})
        self.user = response.json()
        return self.user

    async def login(self, username: str, password: str) -> dict:
        response = await self.http.send("POST", routes.LOGIN, {"username": username, "password": password})
        self.user = response.json()
        return self.user

    async def logout(self) -> None:
        await self.http.send("POST", routes.LOGOUT)
        self.user = None
        self.cache.remove()

    async def current_user(self) -> dict:
        response = await self.http.send("GET", routes.CURRENT_USER)
        self.user = response.json()
        return self.user

    # --- Connectivity and sync ---

    async def go_online(self) -> None:
        await self.monitor.set_online(True)

    async def go_offline(self) -> None:
        await self.monitor.set_online(False)

    async def _on_connectivity_change(self, online: bool) -> None:
        if online:
            await self.sync()

    async def sync(self) -> SyncResult:
        result = await self.queue.process(self.http.send, self.user_id, max_attempts=self.max_sync_attempts)
        self.cache.invalidate()
        return result

    def pending_changes(self) -> List[QueuedMutation]:
        return self.queue.pending(self.user_id)

    def abandoned_changes(self) -> List[QueuedMutation]:
        return self.queue.abandoned(self.user_id)

    # --- Expenses ---

    async def list_expenses(
        self,
        start_date: date | str | None = None,
        end_date: date | str | None = None,
        category: str | None = None,
    ) -> List[dict]:
        params = {"startDate": _iso(start_date), "endDate": _iso(end_date), "category": category}
        rows = await self._query(routes.EXPENSES, params)
        return merge_pending(rows, self.queue.pending_creates(self.user_id, routes.EXPENSES), routes.EXPENSES)

    async def create_expense(self, expense: dict) -> PendingRecord:
        return await self._create(routes.EXPENSES, expense, invalidates=(routes.STATS,))

    async def update_expense(self, expense_id: int | str, changes: dict) -> dict:
        return await self._mutate("PUT", routes.build_url(routes.EXPENSE, {"id": expense_id}), changes, (routes.EXPENSES, routes.STATS))

    async def delete_expense(self, expense_id: int | str) -> None:
        await self._mutate("DELETE", routes.build_url(routes.EXPENSE, {"id": expense_id}), None, (routes.EXPENSES, routes.STATS))

    async def get_stats(self) -> dict:
        return await self._query(routes.STATS)

    async def get_daily_spending(self) -> List[dict]:
        return await self._query(routes.STATS_DAILY)

    # --- Recurring ---

    async def list_recurring(self) -> List[dict]:
        rows = await self._query(routes.RECURRING)
        return merge_pending(rows, self.queue.pending_creates(self.user_id, routes.RECURRING), routes.RECURRING)

    async def create_recurring(self, recurring: dict) -> PendingRecord:
        return await self._create(routes.RECURRING, recurring)

    async def delete_recurring(self, recurring_id: int | str) -> None:
        await self._mutate("DELETE", routes.build_url(routes.RECURRING_ITEM, {"id": recurring_id}), None, (routes.RECURRING,))

    async def process_recurring(self) -> dict:
        return await self._mutate("POST", routes.RECURRING_PROCESS, None, (routes.RECURRING, routes.EXPENSES, routes.STATS))

    # --- Invoices ---

    async def list_invoices(self) -> List[dict]:
        rows = await self._query(routes.INVOICES)
        return merge_pending(rows, self.queue.pending_creates(self.user_id, routes.INVOICES_UPLOAD), routes.INVOICES_UPLOAD)

    async def upload_invoice(self, filename: str, content: bytes, content_type: str = "image/jpeg") -> dict:
        response = await self.http.request(
            "POST",
            routes.INVOICES_UPLOAD,
            files={"file": (Path(filename).name, content, content_type)},
            user_id=self.user_id,
        )
        self.cache.invalidate(routes.INVOICES)
        return response.json()

    async def process_invoice(self, invoice_id: int | str) -> dict:
        return await self._mutate(
            "POST",
            routes.build_url(routes.INVOICE_PROCESS, {"id": invoice_id}),
            None,
            (routes.INVOICES, routes.EXPENSES, routes.STATS),
        )

    # --- Settings ---

    async def get_settings(self) -> dict:
        return await self._query(routes.SETTINGS)

    async def update_settings(self, changes: dict) -> dict:
        response = await self.http.request("PATCH", routes.SETTINGS, changes, user_id=self.user_id)
        body = response.json()
        if not is_queued_response(response):
            self.cache.set(routes.SETTINGS, body)
        self.cache.invalidate(routes.STATS)
        return body

    # --- Internals ---

    async def _query(self, path: str, params: dict | None = None) -> Any:
        if self.cache.is_fresh(path, params):
            return self.cache.get(path, params)
        try:
            response = await self.http.request("GET", routes.with_query(path, params), user_id=self.user_id)
        except OfflineError:
            if self.cache.has(path, params):
                logger.warning("serving_cached_data", path=path)
                return self.cache.get(path, params)
            raise
        data = response.json()
        self.cache.set(path, data, params)
        return data

    async def _create(self, path: str, payload: dict, invalidates: tuple = ()) -> PendingRecord:
        optimistic = PendingRecord.optimistic(payload)
        if self.cache.has(path):
            self.cache.update(path, lambda rows: [optimistic.to_display(), *(rows or [])])

        try:
            response = await self.http.request("POST", path, payload, user_id=self.user_id)
        except Exception:
            if self.cache.has(path):
                self.cache.update(path, lambda rows: _without(rows, optimistic.local_id))
            failed = optimistic.fail()
            self.failed_creates.append(failed)
            logger.warning("optimistic_create_failed", path=path, local_id=failed.local_id)
            raise

        body = response.json()
        record = optimistic.queued(body["id"]) if is_queued_response(response) else optimistic.confirm(body)
        if self.cache.has(path):
            self.cache.update(path, lambda rows: _swap(rows, optimistic.local_id, record.to_display()))
        for prefix in (path, *invalidates):
            self.cache.invalidate(prefix)
        return record

    async def _mutate(self, method: str, url: str, payload: Any, invalidates: tuple) -> Any:
        response = await self.http.request(method, url, payload, user_id=self.user_id)
        for prefix in invalidates:
            self.cache.invalidate(prefix)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()


def _iso(value: date | str | None) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return value.isoformat()


def _without(rows: list | None, record_id: str) -> list:
    return [row for row in rows or [] if row.get("id") != record_id]


def _swap(rows: list | None, record_id: str, replacement: dict) -> list:
    return [replacement if row.get("id") == record_id else row for row in rows or []]
