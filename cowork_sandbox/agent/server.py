"""
JSON-RPC 2.0 server for the sandbox agent.

The agent trusts nothing the host validated: every path and command is
checked again against the workspace roots it was given through
``setWorkspace`` and ``addWorkspace``. Requests may name the root they
are confined to in a ``workspace`` parameter.
"""

import argparse
import asyncio
import contextlib
import json
import logging
import os
import shutil
import signal
import sys
from typing import Any, Awaitable, Callable, Optional

from .. import __version__
from ..errors import (
    JSONRPC_INVALID_REQUEST,
    JSONRPC_METHOD_NOT_FOUND,
    ConfigurationError,
    SandboxError,
    UpstreamFailure,
    rpc_code_for,
)
from ..path_guard import WorkspaceGuards

logger = logging.getLogger("cowork_sandbox.agent")

# Requests carrying whole files travel as a single line
MAX_LINE_BYTES = 64 * 1024 * 1024

DEFAULT_COMMAND_TIMEOUT = 60.0
CLAUDE_CODE_TIMEOUT = 300.0
TIMEOUT_EXIT_CODE = -9
KILL_GRACE_SECONDS = 2.0

AGENT_METHODS = (
    "ping",
    "setWorkspace",
    "addWorkspace",
    "removeWorkspace",
    "executeCommand",
    "readFile",
    "writeFile",
    "listDirectory",
    "fileExists",
    "deleteFile",
    "createDirectory",
    "copyFile",
    "runClaudeCode",
    "shutdown",
)


class UnknownMethod(SandboxError):
    rpc_code = JSONRPC_METHOD_NOT_FOUND


def _error_response(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": {"code": code, "message": message},
    }


def _require(params: dict[str, Any], key: str) -> Any:
    value = params.get(key)
    if value is None or value == "":
        raise ConfigurationError(f"Missing parameter: {key}")
    return value


async def run_process(
    argv: list[str],
    cwd: str,
    env: dict[str, str],
    timeout: float,
) -> tuple[int, str, str, bool]:
    """
    Run a process to completion or timeout.

    Returns (exit_code, stdout, stderr, timed_out). The process gets its own
    session so a timeout kills the whole group, not just the shell. The
    budget also covers background children that keep the output pipes
    open after the shell exited; they are killed and the shell's exit code
    is kept.
    """
    proc = await asyncio.create_subprocess_exec(
        *argv,
        cwd=cwd,
        env=env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )
    readers = asyncio.gather(proc.stdout.read(), proc.stderr.read())

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    timed_out = False
    try:
        await asyncio.wait_for(proc.wait(), timeout=timeout)
        await asyncio.wait_for(asyncio.shield(readers), timeout=max(deadline - loop.time(), 0))
    except asyncio.TimeoutError:
        timed_out = proc.returncode is None
        with contextlib.suppress(ProcessLookupError):
            os.killpg(proc.pid, signal.SIGKILL)
        try:
            await asyncio.wait_for(proc.wait(), timeout=KILL_GRACE_SECONDS)
            await asyncio.wait_for(asyncio.shield(readers), timeout=KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.error(f"Output of process {proc.pid} still open after kill")
            readers.cancel()
            return TIMEOUT_EXIT_CODE, "", "", True

    out, err = readers.result()
    stdout = out.decode("utf-8", errors="replace")
    stderr = err.decode("utf-8", errors="replace")
    exit_code = TIMEOUT_EXIT_CODE if timed_out else proc.returncode
    return exit_code, stdout, stderr, timed_out


class SandboxAgent:
    """Executes validated operations inside the isolated environment."""

    def __init__(
        self,
        external_mount_prefixes: Optional[list[str]] = None,
        claude_bin: str = "claude",
    ):
        self.external_mount_prefixes = external_mount_prefixes
        self.claude_bin = claude_bin
        self.guards = WorkspaceGuards(external_mount_prefixes, windows=False, case_insensitive=False)
        # VM root -> host path of the same workspace
        self.host_paths: dict[str, str] = {}
        self._shutdown = asyncio.Event()
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[Any]]] = {
            "ping": self.ping,
            "setWorkspace": self.set_workspace,
            "addWorkspace": self.add_workspace,
            "removeWorkspace": self.remove_workspace,
            "executeCommand": self.execute_command,
            "readFile": self.read_file,
            "writeFile": self.write_file,
            "listDirectory": self.list_directory,
            "fileExists": self.file_exists,
            "deleteFile": self.delete_file,
            "createDirectory": self.create_directory,
            "copyFile": self.copy_file,
            "runClaudeCode": self.run_claude_code,
            "shutdown": self.shutdown,
        }

    @property
    def workspace_path(self) -> str:
        primary = self.guards.primary
        return primary.workspace_root if primary else ""

    @property
    def shutting_down(self) -> bool:
        return self._shutdown.is_set()

    def request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown.set()

    # ---- methods ----

    async def ping(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"pong": True, "version": __version__}

    def _validate(self, params: dict[str, Any], key: str = "path") -> str:
        return self.guards.validate_path(_require(params, key), params.get("workspace"))

    def _register(self, params: dict[str, Any]) -> str:
        path = os.path.abspath(_require(params, "path"))
        if not os.path.isdir(path):
            raise ConfigurationError(f"Workspace does not exist: {path}")
        root = self.guards.add(path).workspace_root
        self.host_paths[root] = params.get("hostPath") or ""
        return root

    async def set_workspace(self, params: dict[str, Any]) -> dict[str, Any]:
        """Make `path` the only workspace root."""
        path = os.path.abspath(_require(params, "path"))
        if not os.path.isdir(path):
            raise ConfigurationError(f"Workspace does not exist: {path}")
        self.guards.clear()
        self.host_paths.clear()
        root = self._register(params)
        logger.info(f"Workspace set to: {root}")
        return {"success": True, "workspace": root}

    async def add_workspace(self, params: dict[str, Any]) -> dict[str, Any]:
        root = self._register(params)
        logger.info(f"Workspace added: {root}")
        return {"success": True, "workspace": root}

    async def remove_workspace(self, params: dict[str, Any]) -> dict[str, Any]:
        guard = self.guards.remove(_require(params, "path"))
        if guard is not None:
            self.host_paths.pop(guard.workspace_root, None)
            logger.info(f"Workspace removed: {guard.workspace_root}")
        return {"success": True, "removed": guard is not None}

    async def execute_command(self, params: dict[str, Any]) -> dict[str, Any]:
        command = _require(params, "command")
        guard, cwd = self.guards.validate_command(command, params.get("cwd"), params.get("workspace"))
        timeout = float(params.get("timeout") or DEFAULT_COMMAND_TIMEOUT)

        env = {
            **os.environ,
            **(params.get("env") or {}),
            "WORKSPACE": guard.workspace_root,
            "HOST_WORKSPACE": self.host_paths.get(guard.workspace_root, ""),
        }
        logger.info(f"Executing: {command} in {cwd}")
        try:
            code, stdout, stderr, timed_out = await run_process(
                ["/bin/bash", "-c", command], cwd, env, timeout
            )
        except OSError as e:
            return {"exitCode": 1, "stdout": "", "stderr": str(e), "timedOut": False}

        if timed_out:
            stderr += f"\nCommand timed out after {timeout:g} seconds"
        return {"exitCode": code, "stdout": stdout, "stderr": stderr, "timedOut": timed_out}

    async def read_file(self, params: dict[str, Any]) -> dict[str, Any]:
        path = self._validate(params)
        if not os.path.isfile(path):
            raise UpstreamFailure(f"File not found: {params['path']}")

        def _read() -> str:
            with open(path, encoding="utf-8") as f:
                return f.read()

        try:
            return {"content": await asyncio.to_thread(_read)}
        except (OSError, UnicodeDecodeError) as e:
            raise UpstreamFailure(f"Failed to read {params['path']}", detail=str(e)) from e

    async def write_file(self, params: dict[str, Any]) -> dict[str, Any]:
        path = self._validate(params)
        content = params.get("content") or ""

        def _write() -> None:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                f.write(content)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise UpstreamFailure(f"Failed to write {params['path']}", detail=str(e)) from e
        return {"success": True}

    async def list_directory(self, params: dict[str, Any]) -> dict[str, Any]:
        path = self._validate(params)
        if not os.path.isdir(path):
            raise UpstreamFailure(f"Directory not found: {params['path']}")

        def _list() -> list[dict[str, Any]]:
            entries = []
            with os.scandir(path) as it:
                for entry in it:
                    is_dir = entry.is_dir()
                    entries.append({
                        "name": entry.name,
                        "isDirectory": is_dir,
                        "size": entry.stat().st_size if entry.is_file() else None,
                    })
            return entries

        try:
            return {"entries": await asyncio.to_thread(_list)}
        except OSError as e:
            raise UpstreamFailure(f"Failed to list {params['path']}", detail=str(e)) from e

    async def file_exists(self, params: dict[str, Any]) -> dict[str, Any]:
        try:
            path = self._validate(params)
        except SandboxError:
            return {"exists": False}
        return {"exists": os.path.exists(path)}

    async def delete_file(self, params: dict[str, Any]) -> dict[str, Any]:
        path = self._validate(params)
        if os.path.isdir(path):
            raise UpstreamFailure(f"Is a directory: {params['path']}")
        try:
            if os.path.lexists(path):
                os.remove(path)
        except OSError as e:
            raise UpstreamFailure(f"Failed to delete {params['path']}", detail=str(e)) from e
        return {"success": True}

    async def create_directory(self, params: dict[str, Any]) -> dict[str, Any]:
        path = self._validate(params)
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            raise UpstreamFailure(f"Failed to create {params['path']}", detail=str(e)) from e
        return {"success": True}

    async def copy_file(self, params: dict[str, Any]) -> dict[str, Any]:
        src = self._validate(params, "src")
        dest = self._validate(params, "dest")
        if not os.path.isfile(src):
            raise UpstreamFailure(f"File not found: {params['src']}")

        def _copy() -> None:
            os.makedirs(os.path.dirname(dest), exist_ok=True)
            shutil.copyfile(src, dest)

        try:
            await asyncio.to_thread(_copy)
        except OSError as e:
            raise UpstreamFailure(f"Failed to copy {params['src']}", detail=str(e)) from e
        return {"success": True}

    async def run_claude_code(self, params: dict[str, Any]) -> dict[str, Any]:
        prompt = _require(params, "prompt")
        guard = self.guards.guard_for(params.get("cwd"), params.get("workspace"))
        cwd = guard.validate_path(params.get("cwd") or guard.workspace_root)

        argv = [self.claude_bin, "--print"]
        if params.get("model"):
            argv.extend(["--model", str(params["model"])])
        if params.get("maxTurns"):
            argv.extend(["--max-turns", str(params["maxTurns"])])
        argv.append(prompt)

        logger.info(f"Running {self.claude_bin} in: {cwd}")
        env = {**os.environ, **(params.get("env") or {})}
        try:
            code, stdout, stderr, timed_out = await run_process(
                argv, cwd, env, CLAUDE_CODE_TIMEOUT
            )
        except OSError as e:
            raise UpstreamFailure(f"Failed to start {self.claude_bin}", detail=str(e)) from e

        if timed_out or code != 0:
            raise UpstreamFailure(f"{self.claude_bin} exited with code {code}", detail=stderr.strip())
        return {"messages": parse_message_lines(stdout)}

    async def shutdown(self, params: dict[str, Any]) -> dict[str, Any]:
        self.request_shutdown()
        return {"success": True}

    # ---- protocol ----

    async def handle_request(self, request: dict[str, Any]) -> Any:
        handler = self._handlers.get(request["method"])
        if handler is None:
            raise UnknownMethod(f"Unknown method: {request['method']}")
        params = request.get("params") or {}
        if not isinstance(params, dict):
            raise ConfigurationError("params must be an object")
        return await handler(params)

    async def process_line(self, line: str) -> Optional[dict[str, Any]]:
        """Turn one request line into its response object."""
        if not line.strip():
            return None

        try:
            request = json.loads(line)
        except json.JSONDecodeError as e:
            logger.error(f"Unparsable request: {e}")
            return _error_response("unknown", JSONRPC_INVALID_REQUEST, f"Parse error: {e}")

        if (
            not isinstance(request, dict)
            or request.get("jsonrpc") != "2.0"
            or not request.get("id")
            or not isinstance(request.get("method"), str)
            or not request["method"]
        ):
            request_id = request.get("id") if isinstance(request, dict) else None
            return _error_response(
                request_id or "unknown", JSONRPC_INVALID_REQUEST, "Invalid JSON-RPC request"
            )

        request_id = request["id"]
        logger.debug(f"-> {request['method']} ({request_id})")
        try:
            result = await self.handle_request(request)
        except SandboxError as e:
            logger.error(f"Request failed: {e}")
            return _error_response(request_id, rpc_code_for(e), str(e))
        except Exception as e:
            logger.exception(f"Unexpected failure in {request['method']}")
            return _error_response(request_id, JSONRPC_INVALID_REQUEST, str(e))
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    async def serve(
        self,
        reader: asyncio.StreamReader,
        write_line: Callable[[str], None],
    ) -> None:
        """
        Serve requests until stdin closes or shutdown is requested.

        Every request runs in its own task so responses may be written in
        any order; correlation is by id on the host side.
        """
        in_flight: set[asyncio.Task] = set()

        async def _respond(line: str) -> None:
            response = await self.process_line(line)
            if response is not None:
                write_line(json.dumps(response, separators=(",", ":")))

        stop_task = asyncio.ensure_future(self._shutdown.wait())
        try:
            while not self._shutdown.is_set():
                read_task = asyncio.ensure_future(reader.readline())
                done, _ = await asyncio.wait(
                    {read_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if read_task not in done:
                    read_task.cancel()
                    break
                try:
                    raw = read_task.result()
                except ValueError as e:
                    logger.error(f"Dropped oversized request line: {e}")
                    continue
                if not raw:
                    logger.info("Input stream closed, shutting down")
                    break

                task = asyncio.ensure_future(_respond(raw.decode("utf-8", errors="replace")))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)
        finally:
            stop_task.cancel()
            # let the shutdown response itself go out before cancelling the rest
            await asyncio.sleep(0)
            for task in list(in_flight):
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)


def parse_message_lines(output: str) -> list[dict[str, Any]]:
    """Parse newline-delimited CLI output into structured messages."""
    messages = []
    for line in output.splitlines():
        if not line.strip():
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            messages.append(parsed)
        else:
            messages.append({"type": "text", "content": line})
    return messages


def _write_stdout(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


async def _run_stdio(agent: SandboxAgent) -> None:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=MAX_LINE_BYTES)
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, agent.request_shutdown)

    logger.info("Sandbox agent started")
    await agent.serve(reader, _write_stdout)
    logger.info("Sandbox agent stopped")


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        prog="cowork-sandbox-agent",
        description="JSON-RPC sandbox agent (stdin/stdout)",
    )
    parser.add_argument("--version", action="store_true", help="print the version and exit")
    parser.add_argument("--workspace", help="initial workspace root")
    parser.add_argument(
        "--mount-prefix",
        action="append",
        dest="mount_prefixes",
        help="external mount prefix checked in commands (repeatable)",
    )
    parser.add_argument("--claude-bin", default="claude")
    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return

    logging.basicConfig(
        stream=sys.stderr,
        level=os.environ.get("COWORK_AGENT_LOG_LEVEL", "INFO").upper(),
        format="[sandbox-agent] %(levelname)s %(message)s",
    )

    agent = SandboxAgent(external_mount_prefixes=args.mount_prefixes, claude_bin=args.claude_bin)
    if args.workspace:
        asyncio.run(agent.set_workspace({"path": args.workspace}))

    try:
        asyncio.run(_run_stdio(agent))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
