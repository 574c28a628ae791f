"""Tests for the host-side agent RPC client."""

import asyncio
import json
import unittest
from typing import Any, Callable, Optional
from unittest.mock import AsyncMock, patch

from cowork_sandbox.errors import (
    JSONRPC_SECURITY_VIOLATION,
    RemoteUnavailable,
    SandboxTimeout,
    SecurityViolation,
    UpstreamFailure,
)
from cowork_sandbox.sandbox.rpc_client import AgentRpcClient, AgentState


class FakeStreamReader:
    """Simulates an asyncio.StreamReader fed line by line."""

    def __init__(self):
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()

    def feed_message(self, message: dict[str, Any]) -> None:
        self._queue.put_nowait((json.dumps(message) + "\n").encode())

    def feed_eof(self) -> None:
        self._queue.put_nowait(b"")

    async def readline(self) -> bytes:
        line = await self._queue.get()
        if not line:
            self._queue.put_nowait(b"")
        return line


class FakeStreamWriter:
    """Simulates the agent's stdin, handing every request to a callback."""

    def __init__(self, on_message: Callable[[dict], None], on_close: Callable[[], None]):
        self._on_message = on_message
        self._on_close = on_close
        self.closed = False

    def write(self, data: bytes) -> None:
        for line in data.decode().splitlines():
            self._on_message(json.loads(line))

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True
        self._on_close()


class FakeAgentProcess:
    """
    Simulates an agent subprocess. Answers ping and shutdown by itself and
    keeps every other request for the test to answer. Exits when its stdin
    is closed.
    """

    def __init__(self, answer_pings: bool = True):
        self.answer_pings = answer_pings
        self.exit_on_shutdown = False
        self.received: list[dict] = []
        self.stdout = FakeStreamReader()
        self.stderr = FakeStreamReader()
        self.stdin = FakeStreamWriter(self._on_message, self.exit)
        self.returncode: Optional[int] = None
        self._exited = asyncio.Event()

    def _on_message(self, message: dict) -> None:
        if message["method"] == "shutdown" and self.exit_on_shutdown:
            self.exit()
            return
        if message["method"] in ("ping", "shutdown"):
            if self.answer_pings:
                self.respond(message["id"], {"pong": True})
            return
        self.received.append(message)

    def respond(self, request_id: str, result: Any = None) -> None:
        self.stdout.feed_message({"jsonrpc": "2.0", "id": request_id, "result": result})

    def respond_error(self, request_id: str, code: int, message: str) -> None:
        self.stdout.feed_message(
            {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}
        )

    def exit(self, code: int = 0) -> None:
        if self.returncode is None:
            self.returncode = code
            self.stdout.feed_eof()
            self.stderr.feed_eof()
            self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def kill(self) -> None:
        self.exit(-9)


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class TestAgentRpcClient(unittest.IsolatedAsyncioTestCase):
    """Test cases for AgentRpcClient."""

    async def asyncSetUp(self):
        self.proc = FakeAgentProcess()
        self.client = AgentRpcClient(["agent"], rpc_timeout=1.0)
        self.spawn = patch(
            "asyncio.create_subprocess_exec",
            new_callable=AsyncMock,
            return_value=self.proc,
        )
        self.mock_spawn = self.spawn.start()

    async def asyncTearDown(self):
        await self.client.stop()
        self.spawn.stop()

    async def test_start_pings_and_becomes_ready(self):
        await self.client.start()

        self.assertEqual(self.client.state, AgentState.READY)
        self.assertTrue(self.client.is_running)
        self.mock_spawn.assert_awaited_once()

    async def test_request_before_start(self):
        with self.assertRaises(RemoteUnavailable):
            await self.client.request("readFile", {"path": "/w/a"})

    async def test_concurrent_requests_answered_out_of_order(self):
        await self.client.start()

        tasks = [
            asyncio.ensure_future(self.client.request("work", {"n": n})) for n in range(5)
        ]
        await _wait_until(lambda: len(self.proc.received) == 5)

        ids = {m["id"] for m in self.proc.received}
        self.assertEqual(len(ids), 5)

        for message in reversed(self.proc.received):
            self.proc.respond(message["id"], {"n": message["params"]["n"]})

        results = await asyncio.gather(*tasks)
        self.assertEqual([r["n"] for r in results], list(range(5)))
        self.assertEqual(self.client.pending_count, 0)

    async def test_agent_exit_rejects_all_pending(self):
        await self.client.start()

        tasks = [asyncio.ensure_future(self.client.request("work", {})) for _ in range(3)]
        await _wait_until(lambda: len(self.proc.received) == 3)
        self.assertEqual(self.client.pending_count, 3)

        self.proc.exit(1)

        results = await asyncio.gather(*tasks, return_exceptions=True)
        self.assertTrue(all(isinstance(r, RemoteUnavailable) for r in results))
        self.assertEqual(self.client.pending_count, 0)
        self.assertEqual(self.client.state, AgentState.UNHEALTHY)

    async def test_timeout_evicts_pending_entry(self):
        await self.client.start()

        with self.assertRaises(SandboxTimeout):
            await self.client.request("slow", {}, timeout=0.05)
        self.assertEqual(self.client.pending_count, 0)

        # a late answer for the evicted id is dropped
        self.proc.respond(self.proc.received[0]["id"], {"late": True})
        self.assertTrue(await self.client.ping())
        self.assertEqual(self.client.state, AgentState.READY)

    async def test_error_codes_map_to_exceptions(self):
        await self.client.start()

        task = asyncio.ensure_future(self.client.request("readFile", {"path": "/etc/passwd"}))
        await _wait_until(lambda: len(self.proc.received) == 1)
        self.proc.respond_error(
            self.proc.received[0]["id"], JSONRPC_SECURITY_VIOLATION, "Path is outside workspace"
        )

        with self.assertRaises(SecurityViolation):
            await task

        task = asyncio.ensure_future(self.client.request("readFile", {"path": "/w/missing"}))
        await _wait_until(lambda: len(self.proc.received) == 2)
        self.proc.respond_error(self.proc.received[1]["id"], -32000, "File not found")

        with self.assertRaises(UpstreamFailure):
            await task

    async def test_non_json_lines_are_ignored(self):
        await self.client.start()

        self.proc.stdout._queue.put_nowait(b"not json\n")
        self.assertTrue(await self.client.ping())

    async def test_spawn_failure(self):
        self.mock_spawn.side_effect = FileNotFoundError("no such file")

        with self.assertRaises(RemoteUnavailable):
            await self.client.start()
        self.assertEqual(self.client.state, AgentState.STOPPED)

    async def test_unresponsive_agent_fails_start(self):
        self.proc.answer_pings = False
        self.client.rpc_timeout = 0.05

        with self.assertRaises(RemoteUnavailable):
            await self.client.start()
        self.assertEqual(self.client.state, AgentState.STOPPED)
        self.assertTrue(self.proc.stdin.closed)

    async def test_response_with_unhashable_id_is_ignored(self):
        await self.client.start()

        task = asyncio.ensure_future(self.client.request("work", {}))
        await _wait_until(lambda: len(self.proc.received) == 1)
        self.proc.stdout.feed_message({"jsonrpc": "2.0", "id": [1], "result": {}})
        self.proc.stdout.feed_message({"jsonrpc": "2.0", "id": {"n": 1}, "result": {}})
        self.proc.respond(self.proc.received[0]["id"], {"ok": True})

        self.assertEqual(await task, {"ok": True})
        self.assertEqual(self.client.state, AgentState.READY)
        self.assertTrue(await self.client.ping())

    async def test_agent_exiting_on_shutdown_is_a_clean_stop(self):
        await self.client.start()
        self.proc.exit_on_shutdown = True

        states = []
        set_state = self.client._set_state

        def record(state):
            states.append(state)
            set_state(state)

        loop = asyncio.get_running_loop()
        started = loop.time()
        with patch.object(self.client, "_set_state", side_effect=record):
            await self.client.stop()

        self.assertEqual(states[0], AgentState.SHUTTING_DOWN)
        self.assertNotIn(AgentState.UNHEALTHY, states)
        self.assertEqual(self.client.state, AgentState.STOPPED)
        self.assertLess(loop.time() - started, 1.5)

    async def test_stop(self):
        await self.client.start()
        await self.client.stop()

        self.assertEqual(self.client.state, AgentState.STOPPED)
        self.assertFalse(self.client.is_running)
        self.assertEqual(self.proc.returncode, 0)


if __name__ == "__main__":
    unittest.main()
