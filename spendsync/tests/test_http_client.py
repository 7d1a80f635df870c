import asyncio
import json
import tempfile
import time
import unittest
from pathlib import Path

import httpx

from spendsync.client.connectivity import ConnectivityMonitor
from spendsync.client.errors import ApiError, OfflineError
from spendsync.client.http import OfflineAwareClient, is_queued_response
from spendsync.client.queue import SyncQueue
from spendsync.client.store import SyncQueueStore


class OfflineAwareClientTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.queue = SyncQueue(SyncQueueStore.at(Path(self.tmp.name) / "queue.json"))
        self.monitor = ConnectivityMonitor()
        self.requests = []
        self.handler = self.ok

    async def asyncTearDown(self) -> None:
        await self.client.aclose()
        self.tmp.cleanup()

    async def asyncSetUp(self) -> None:
        async def dispatch(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return await self.handler(request)

        self.client = OfflineAwareClient(
            "http://api.test",
            self.queue,
            monitor=self.monitor,
            timeout=0.2,
            transport=httpx.MockTransport(dispatch),
        )

    async def ok(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(201, json={"id": 7, **json.loads(request.content or b"{}")})

    async def unreachable(self, request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("network down", request=request)

    async def test_online_mutation_passes_through(self) -> None:
        response = await self.client.request("POST", "/api/expenses", {"amount": 100}, user_id=1)

        self.assertEqual(response.status_code, 201)
        self.assertFalse(is_queued_response(response))
        self.assertEqual(self.queue.pending(), [])

    async def test_offline_monitor_queues_without_network(self) -> None:
        await self.monitor.set_online(False)

        response = await self.client.request("POST", "/api/expenses", {"amount": 100}, user_id=3)

        self.assertEqual(self.requests, [])
        self.assertEqual(response.status_code, 202)
        self.assertTrue(is_queued_response(response))
        body = response.json()
        self.assertEqual(body["amount"], 100)
        self.assertEqual(body["status"], "pending")
        self.assertEqual(body["message"], "Queued for sync")
        queued = self.queue.pending(3)
        self.assertEqual([m.id for m in queued], [body["id"]])
        self.assertEqual(body["pendingId"], body["id"])

    async def test_connect_error_queues_mutation(self) -> None:
        self.handler = self.unreachable

        response = await self.client.request("DELETE", "/api/expenses/5", user_id=1)

        self.assertTrue(is_queued_response(response))
        self.assertEqual([(m.method, m.url) for m in self.queue.pending(1)], [("DELETE", "/api/expenses/5")])

    async def test_reads_are_never_queued(self) -> None:
        self.handler = self.unreachable

        with self.assertRaises(OfflineError):
            await self.client.request("GET", "/api/expenses", user_id=1)
        self.assertEqual(self.queue.pending(), [])

    async def test_hanging_server_resolves_within_timeout(self) -> None:
        async def hang(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(30)
            return httpx.Response(201, json={})

        self.handler = hang
        started = time.monotonic()

        response = await self.client.request("POST", "/api/expenses", {"amount": 1}, timeout=0.05, user_id=1)

        self.assertLess(time.monotonic() - started, 2)
        self.assertTrue(is_queued_response(response))
        self.assertEqual(len(self.queue.pending(1)), 1)

    async def test_server_rejection_raises_and_is_not_queued(self) -> None:
        async def reject(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"message": "Must be positive", "field": "amount"})

        self.handler = reject

        with self.assertRaises(ApiError) as ctx:
            await self.client.request("POST", "/api/expenses", {"amount": -1}, user_id=1)

        self.assertEqual((ctx.exception.status, ctx.exception.message, ctx.exception.field), (400, "Must be positive", "amount"))
        self.assertEqual(self.queue.pending(), [])

    async def test_uploads_are_never_queued(self) -> None:
        self.handler = self.unreachable

        with self.assertRaises(OfflineError):
            await self.client.request("POST", "/api/invoices/upload", files={"file": ("a.png", b"x", "image/png")}, user_id=1)
        self.assertEqual(self.queue.pending(), [])

    async def test_send_never_queues(self) -> None:
        self.handler = self.unreachable

        with self.assertRaises(OfflineError):
            await self.client.send("POST", "/api/expenses", {"amount": 1})
        self.assertEqual(self.queue.pending(), [])


class ConnectivityMonitorTests(unittest.IsolatedAsyncioTestCase):
    async def test_listeners_fire_only_on_change(self) -> None:
        monitor = ConnectivityMonitor()
        seen = []

        async def listener(online: bool) -> None:
            seen.append(online)

        unsubscribe = monitor.on_change(listener)
        await monitor.set_online(True)
        await monitor.set_online(False)
        await monitor.set_online(True)
        unsubscribe()
        await monitor.set_online(False)

        self.assertEqual(seen, [False, True])
        self.assertFalse(monitor.is_online)


if __name__ == "__main__":
    unittest.main()
