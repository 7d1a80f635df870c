from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from spendsync.client.connectivity import ConnectivityMonitor
from spendsync.client.errors import ApiError, OfflineError
from spendsync.client.queue import SyncQueue

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 3.0
READ_METHODS = {"GET", "HEAD"}


class OfflineAwareClient:
    """HTTP wrapper that turns unreachable mutations into queued ones.

    Reads always go to the network and raise :class:`OfflineError` when it is
    unreachable. Mutations that cannot reach the server are written to the
    sync queue and answered with a synthetic 202 so callers handle both paths
    the same way.
    """

    def __init__(
        self,
        base_url: str,
        queue: SyncQueue,
        monitor: ConnectivityMonitor | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.queue = queue
        self.monitor = monitor or ConnectivityMonitor()
        self.timeout = timeout
        self._client = httpx.AsyncClient(base_url=base_url, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def send(
        self,
        method: str,
        path: str,
        payload: Any = None,
        timeout: float | None = None,
        files: Any = None,
    ) -> httpx.Response:
        """Issue the call without any queueing."""
        limit = timeout if timeout is not None else self.timeout
        kwargs: dict[str, Any] = {"timeout": limit}
        if files is not None:
            kwargs["files"] = files
            if payload:
                kwargs["data"] = payload
        elif payload is not None:
            kwargs["json"] = payload

        try:
            # wait_for cancels the in-flight call once the limit passes.
            response = await asyncio.wait_for(self._client.request(method.upper(), path, **kwargs), timeout=limit)
        except asyncio.TimeoutError as exc:
            logger.warning("request_timeout", method=method, path=path, timeout=limit)
            raise OfflineError(f"{method} {path} timed out after {limit}s") from exc
        except httpx.TransportError as exc:
            logger.warning("request_unreachable", method=method, path=path, reason=type(exc).__name__)
            raise OfflineError(f"{method} {path} failed: {exc}") from exc

        if response.is_error:
            raise _api_error(response)
        return response

    async def request(
        self,
        method: str,
        path: str,
        payload: Any = None,
        timeout: float | None = None,
        user_id: int | None = None,
        files: Any = None,
    ) -> httpx.Response:
        method = method.upper()
        is_read = method in READ_METHODS
        # File uploads cannot be replayed from a JSON queue.
        queueable = not is_read and files is None

        if queueable and not self.monitor.is_online:
            return self._queue_mutation(method, path, payload, user_id)

        try:
            return await self.send(method, path, payload, timeout=timeout, files=files)
        except OfflineError:
            if not queueable:
                raise
            return self._queue_mutation(method, path, payload, user_id)

    def _queue_mutation(self, method: str, path: str, payload: Any, user_id: int | None) -> httpx.Response:
        mutation = self.queue.enqueue(method, path, payload, user_id or 0)
        now = datetime.now(timezone.utc).isoformat()
        body = dict(payload) if isinstance(payload, dict) else {}
        body.update(
            id=mutation.id,
            pendingId=mutation.id,
            createdAt=now,
            updatedAt=now,
            status="pending",
            message="Queued for sync",
            isOffline=True,
        )
        return httpx.Response(202, json=body, request=httpx.Request(method, self._client.base_url.join(path)))


def is_queued_response(response: httpx.Response) -> bool:
    if response.status_code != 202:
        return False
    try:
        body = response.json()
    except ValueError:
        return False
    return isinstance(body, dict) and body.get("isOffline") is True


def _api_error(response: httpx.Response) -> ApiError:
    message = response.reason_phrase or "Request failed"
    field = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = str(body.get("message") or message)
        field = body.get("field")
    elif response.text:
        message = response.text
    return ApiError(response.status_code, message, field)
