"""
Host-side JSON-RPC 2.0 client for the sandbox agent, over NDJSON stdio.

Many requests are multiplexed onto the agent's single stdin/stdout pair.
Each request gets a fresh id and a future in the pending map; the read
loop resolves whichever future a response line names, so requests may
complete in any order.
"""

import asyncio
import collections
import contextlib
import json
import logging
import os
from enum import Enum
from typing import Any, Optional

from ..errors import RemoteUnavailable, SandboxError, SandboxTimeout, error_from_rpc

logger = logging.getLogger(__name__)

MAX_LINE_BYTES = 64 * 1024 * 1024
STDERR_LINES_KEPT = 200
STOP_GRACE_SECONDS = 5.0


class AgentState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"
    UNHEALTHY = "unhealthy"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class AgentRpcClient:
    """
    Owns one agent subprocess and the request/response correlation for it.

    Lifecycle: NOT_STARTED -> STARTING -> READY on a successful spawn and
    ping; READY -> UNHEALTHY when the process exits unexpectedly or a
    health ping times out; any state -> SHUTTING_DOWN -> STOPPED on stop().
    """

    def __init__(
        self,
        argv: list[str],
        env: Optional[dict[str, str]] = None,
        rpc_timeout: float = 30.0,
        id_prefix: str = "req",
        name: str = "agent",
    ):
        self.argv = list(argv)
        self.name = name
        self.rpc_timeout = rpc_timeout
        self._extra_env = dict(env) if env else {}
        self._id_prefix = id_prefix
        self._next_id = 0
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._pending: dict[str, asyncio.Future] = {}
        self._read_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._stderr_lines: collections.deque[str] = collections.deque(maxlen=STDERR_LINES_KEPT)
        self._write_lock = asyncio.Lock()
        self.state = AgentState.NOT_STARTED

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def stderr_output(self) -> str:
        """Last lines the agent wrote to stderr."""
        return "\n".join(self._stderr_lines)

    def _set_state(self, state: AgentState) -> None:
        if state != self.state:
            logger.debug(f"{self.name}: {self.state.value} -> {state.value}")
            self.state = state

    async def start(self) -> None:
        """
        Spawn the agent and wait for it to answer a ping.

        Raises:
            RemoteUnavailable: The process could not be spawned or did not answer
        """
        if self.state == AgentState.READY and self.is_running:
            return
        if self._proc is not None:
            await self._teardown("Agent restarting")

        self._set_state(AgentState.STARTING)
        logger.info(f"Starting {self.name}: {' '.join(self.argv)}")
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self._extra_env},
                limit=MAX_LINE_BYTES,
            )
        except OSError as e:
            self._set_state(AgentState.STOPPED)
            raise RemoteUnavailable(f"Failed to start {self.name}", detail=str(e)) from e

        self._read_task = asyncio.ensure_future(self._read_loop())
        if self._proc.stderr is not None:
            self._stderr_task = asyncio.ensure_future(self._stderr_loop())

        try:
            await self.request("ping", {})
        except SandboxError as e:
            await self._teardown("Agent failed to start")
            self._set_state(AgentState.STOPPED)
            detail = self.stderr_output or str(e)
            raise RemoteUnavailable(f"{self.name} did not respond", detail=detail) from e

        self._set_state(AgentState.READY)
        logger.info(f"{self.name} ready")

    async def request(
        self,
        method: str,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Send a request and wait for its correlated response.

        Args:
            method: Agent method name
            params: Method parameters
            timeout: Seconds to wait for the response (default: rpc_timeout)

        Returns:
            The ``result`` member of the response

        Raises:
            RemoteUnavailable: Agent not running, or it exited before answering
            SandboxTimeout: No response within the timeout; the agent keeps running
            SandboxError: The agent answered with an error (mapped by code)
        """
        if self.state not in (AgentState.STARTING, AgentState.READY) or not self.is_running:
            raise RemoteUnavailable(f"{self.name} is {self.state.value}")
        return await self._exchange(method, params, timeout)

    async def _exchange(
        self,
        method: str,
        params: Optional[dict[str, Any]],
        timeout: Optional[float],
    ) -> Any:
        self._next_id += 1
        request_id = f"{self._id_prefix}-{self._next_id}"
        message = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}}

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await self._write(message)
        except (OSError, RuntimeError) as e:
            self._pending.pop(request_id, None)
            if self.state != AgentState.SHUTTING_DOWN:
                self._set_state(AgentState.UNHEALTHY)
            raise RemoteUnavailable(f"Failed to write to {self.name}", detail=str(e)) from e

        budget = timeout if timeout is not None else self.rpc_timeout
        try:
            response = await asyncio.wait_for(future, timeout=budget)
        except asyncio.TimeoutError:
            self._pending.pop(request_id, None)
            raise SandboxTimeout(
                f"No response to {method} ({request_id}) within {budget:g}s"
            ) from None
        finally:
            self._pending.pop(request_id, None)

        if "error" in response:
            error = response["error"] or {}
            raise error_from_rpc(error.get("code", 0), error.get("message", "Unknown agent error"))
        return response.get("result")

    async def ping(self, timeout: Optional[float] = None) -> bool:
        """Health probe. A timeout marks the agent unhealthy."""
        try:
            await self.request("ping", {}, timeout=timeout)
        except SandboxTimeout:
            logger.warning(f"{self.name} did not answer ping")
            self._set_state(AgentState.UNHEALTHY)
            return False
        except RemoteUnavailable:
            return False
        return True

    async def stop(self) -> None:
        """Ask the agent to exit, then terminate it if it does not."""
        if self._proc is None:
            self._set_state(AgentState.STOPPED)
            return

        was_ready = self.state == AgentState.READY and self.is_running
        self._set_state(AgentState.SHUTTING_DOWN)
        if was_ready:
            try:
                await self._exchange("shutdown", {}, timeout=2.0)
            except SandboxError as e:
                logger.debug(f"{self.name} shutdown request failed: {e}")

        await self._teardown(f"{self.name} stopped")
        self._set_state(AgentState.STOPPED)
        logger.info(f"{self.name} stopped")

    # ---- internal ----

    async def _teardown(self, reason: str) -> None:
        proc, self._proc = self._proc, None
        if proc is not None:
            if proc.stdin is not None:
                with contextlib.suppress(OSError, RuntimeError):
                    proc.stdin.close()
            try:
                await asyncio.wait_for(proc.wait(), timeout=STOP_GRACE_SECONDS)
            except asyncio.TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        for task in (self._read_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
        self._read_task = None
        self._stderr_task = None
        self._reject_pending(reason)

    def _reject_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(RemoteUnavailable(reason))
        if pending:
            logger.warning(f"Rejected {len(pending)} pending request(s): {reason}")

    async def _write(self, message: dict[str, Any]) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None:
            raise RemoteUnavailable(f"{self.name} is not running")
        data = json.dumps(message, separators=(",", ":")) + "\n"
        logger.debug(f"{self.name} <- {message['method']} ({message['id']})")
        async with self._write_lock:
            proc.stdin.write(data.encode("utf-8"))
            await proc.stdin.drain()

    async def _read_loop(self) -> None:
        proc = self._proc
        if proc is None or proc.stdout is None:
            return

        try:
            while True:
                try:
                    raw = await proc.stdout.readline()
                except ValueError as e:
                    logger.warning(f"{self.name}: dropped oversized line: {e}")
                    continue
                if not raw:
                    break

                line = raw.decode("utf-8", errors="replace").strip()
                if line:
                    self._route_line(line)
        finally:
            if self._proc is proc:
                if self.state not in (AgentState.SHUTTING_DOWN, AgentState.STOPPED):
                    logger.warning(f"{self.name} exited unexpectedly")
                    self._set_state(AgentState.UNHEALTHY)
                self._reject_pending(f"{self.name} exited")

    def _route_line(self, line: str) -> None:
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            logger.warning(f"{self.name}: ignoring non-JSON line: {line[:200]}")
            return
        if not isinstance(parsed, dict) or "id" not in parsed:
            logger.warning(f"{self.name}: ignoring message without id")
            return
        if not isinstance(parsed["id"], str):
            # request ids are always strings
            logger.warning(f"{self.name}: ignoring response with invalid id: {parsed['id']!r}")
            return

        future = self._pending.pop(parsed["id"], None)
        if future is None:
            logger.debug(f"{self.name}: response for unknown id {parsed['id']}")
            return
        if not future.done():
            future.set_result(parsed)

    async def _stderr_loop(self) -> None:
        proc = self._proc
        if proc is None or proc.stderr is None:
            return

        while True:
            try:
                raw = await proc.stderr.readline()
            except ValueError:
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip()
            self._stderr_lines.append(line)
            logger.debug(f"{self.name} stderr: {line}")
