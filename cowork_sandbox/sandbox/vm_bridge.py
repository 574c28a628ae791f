"""
Executor contract implemented over a sandbox agent running in a VM.
"""

import logging
import os
import re
import shlex
import sys
from abc import abstractmethod
from typing import Any, Optional

from ..errors import ConfigurationError, RemoteUnavailable, SandboxError, SecurityViolation
from ..path_guard import WorkspaceGuards
from .base import DirectoryEntry, ExecutionResult, SandboxExecutor, SandboxSettings
from .path_converter import PathConverter, PrefixPathConverter
from .rpc_client import AgentRpcClient, AgentState

logger = logging.getLogger(__name__)

# Relative to $HOME inside the VM; written by the bootstrap deploy phase
AGENT_HOME = ".cowork-sandbox/agent"
CLAUDE_CODE_TIMEOUT = 300.0


def build_agent_command(
    external_mount_prefixes: Optional[list[str]] = None,
    claude_bin: str = "claude",
    python: str = "python3",
) -> str:
    """Shell snippet that starts the agent inside the VM."""
    args = [python, "-m", "cowork_sandbox.agent", "--claude-bin", claude_bin]
    for prefix in external_mount_prefixes or ():
        args.extend(["--mount-prefix", prefix])
    return f'cd ~ && PYTHONPATH="$HOME/{AGENT_HOME}" exec ' + " ".join(
        shlex.quote(a) for a in args
    )


class VMBridge(SandboxExecutor):
    """
    Forwards every executor operation to the agent over JSON-RPC.

    Paths are validated on the host against the host workspace that holds
    them, converted into the VM namespace, and validated again by the
    agent against the matching VM root. Commands are pattern-checked on
    the host; mount-prefix checks happen in the agent, which knows the VM
    namespace. Paths in agent errors are mapped back to host paths.
    """

    name = "vm"

    def __init__(
        self,
        converter: Optional[PathConverter] = None,
        claude_bin: str = "claude",
    ):
        self.converter = converter or PathConverter()
        self.claude_bin = claude_bin
        self.settings: Optional[SandboxSettings] = None
        self.guards: Optional[WorkspaceGuards] = None
        self.client: Optional[AgentRpcClient] = None
        # host root -> (converter, VM root); filled by add_workspace
        self._mounts: dict[str, tuple[PathConverter, str]] = {}
        # host root -> mirrored copy in the VM, replayed after a restart
        self._sandbox_paths: dict[str, Optional[str]] = {}

    @abstractmethod
    def agent_argv(self) -> list[str]:
        """Host command line that starts the agent inside the VM."""
        pass

    @abstractmethod
    async def check_available(self) -> bool:
        """Whether the VM runtime is present on this host."""
        pass

    @property
    def is_initialized(self) -> bool:
        return self.client is not None and self.client.state == AgentState.READY

    @property
    def agent_state(self) -> AgentState:
        return self.client.state if self.client else AgentState.NOT_STARTED

    @property
    def vm_workspace_path(self) -> str:
        """VM root of the primary workspace."""
        primary = self.guards.primary if self.guards else None
        if primary is None or primary.workspace_root not in self._mounts:
            return ""
        return self._mounts[primary.workspace_root][1]

    def agent_command(self) -> str:
        prefixes = None
        if self.settings is not None:
            prefixes = self.settings.external_mount_prefixes
        return build_agent_command(prefixes, self.claude_bin)

    async def initialize(self, settings: SandboxSettings) -> None:
        if self.is_initialized and self.settings == settings:
            return
        if not settings.workspace_path:
            raise ConfigurationError("Workspace path is required")
        if not os.path.isdir(settings.workspace_path):
            raise ConfigurationError(f"Workspace does not exist: {settings.workspace_path}")
        if not await self.check_available():
            raise RemoteUnavailable(f"{self.name} runtime is not available on this host")

        self.settings = settings
        self.guards = WorkspaceGuards(external_mount_prefixes=(), windows=False)
        self._mounts = {}
        self._sandbox_paths = {}
        root = self.guards.add(settings.workspace_path).workspace_root
        self._sandbox_paths[root] = settings.sandbox_workspace_path

        await self.start_agent()

    def _converter_for(self, host_root: str, sandbox_path: Optional[str]) -> PathConverter:
        if sandbox_path:
            return PrefixPathConverter(
                host_root,
                sandbox_path,
                windows_host=sys.platform.startswith("win"),
            )
        return self.converter

    async def _register(self, host_root: str, replace: bool = False) -> None:
        converter = self._converter_for(host_root, self._sandbox_paths.get(host_root))
        vm_root = converter.to_vm(host_root)
        result = await self._require_client().request(
            "setWorkspace" if replace else "addWorkspace",
            {"path": vm_root, "hostPath": host_root},
        )
        self._mounts[host_root] = (converter, result.get("workspace", vm_root))
        logger.info(f"{self.name} agent workspace: {host_root} -> {self._mounts[host_root][1]}")

    async def start_agent(self) -> None:
        """Spawn the agent and register every workspace with it."""
        if self.settings is None or self.guards is None:
            raise ConfigurationError("Executor not initialized")
        if self.client is not None:
            await self.client.stop()

        self.client = AgentRpcClient(
            self.agent_argv(),
            rpc_timeout=self.settings.rpc_timeout,
            id_prefix=self.name,
            name=f"{self.name} agent",
        )
        await self.client.start()

        self._mounts = {}
        for index, host_root in enumerate(self.guards.roots):
            await self._register(host_root, replace=index == 0)

    async def restart(self) -> None:
        logger.warning(f"Restarting {self.name} agent")
        await self.start_agent()

    async def add_workspace(self, workspace_path: str, sandbox_path: Optional[str] = None) -> None:
        guards = self._require_guards()
        if not os.path.isdir(workspace_path):
            raise ConfigurationError(f"Workspace does not exist: {workspace_path}")
        root = guards.add(workspace_path).workspace_root
        self._sandbox_paths[root] = sandbox_path
        try:
            await self._register(root, replace=len(guards) == 1)
        except SandboxError as e:
            # an unreachable agent is restarted with every registered root
            if not e.retryable:
                guards.remove(root)
                self._sandbox_paths.pop(root, None)
            raise

    async def remove_workspace(self, workspace_path: str) -> None:
        guards = self._require_guards()
        guard = guards.remove(workspace_path)
        if guard is None:
            return
        root = guard.workspace_root
        self._sandbox_paths.pop(root, None)
        mount = self._mounts.pop(root, None)
        if mount is not None:
            await self._call("removeWorkspace", {"path": mount[1]})

    def _require_guards(self) -> WorkspaceGuards:
        if self.guards is None:
            raise ConfigurationError("Executor not initialized")
        return self.guards

    def _require_client(self) -> AgentRpcClient:
        if self.client is None or self.guards is None:
            raise ConfigurationError("Executor not initialized")
        return self.client

    def _mount(self, host_root: str) -> tuple[PathConverter, str]:
        mount = self._mounts.get(host_root)
        if mount is None:
            raise ConfigurationError(f"Workspace not registered with the agent: {host_root}")
        return mount

    def _to_vm(self, path: str, workspace: Optional[str] = None) -> tuple[str, str]:
        """Validate `path` on the host; return it and its VM root in VM form."""
        guard = self._require_guards().guard_for(path, workspace)
        target = guard.validate_path(path)
        converter, vm_root = self._mount(guard.workspace_root)
        return converter.to_vm(target), vm_root

    def to_host(self, vm_path: str) -> str:
        """Map a VM path under one of the workspace roots back to the host."""
        for converter, vm_root in self._mounts.values():
            if vm_path == vm_root or vm_path.startswith(vm_root.rstrip("/") + "/"):
                return converter.to_host(vm_path)
        return vm_path

    def _host_paths(self, message: str) -> str:
        for vm_root in sorted((m[1] for m in self._mounts.values()), key=len, reverse=True):
            if not vm_root.rstrip("/"):
                continue
            pattern = re.escape(vm_root.rstrip("/")) + r"(?![^/\s'\",;])[^\s'\",;]*"
            message = re.sub(pattern, lambda m: self.to_host(m.group(0)), message)
        return message

    async def _call(self, method: str, params: dict[str, Any], timeout: Optional[float] = None) -> Any:
        try:
            return await self._require_client().request(method, params, timeout=timeout)
        except SandboxError as e:
            message = self._host_paths(e.message)
            if message == e.message:
                raise
            raise type(e)(message, detail=e.detail) from e

    async def execute_command(
        self,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        workspace: Optional[str] = None,
    ) -> ExecutionResult:
        self._require_client()
        guard, work_dir = self._require_guards().validate_command(command, cwd, workspace)
        converter, vm_root = self._mount(guard.workspace_root)

        timeout = timeout or self.settings.command_timeout
        result = await self._call(
            "executeCommand",
            {
                "command": command,
                "cwd": converter.to_vm(work_dir),
                "workspace": vm_root,
                "env": {**self.settings.env, **(env or {})},
                "timeout": timeout,
            },
            # the agent enforces the command budget; this only catches a hung agent
            timeout=timeout + self.settings.rpc_timeout,
        )
        exit_code = result.get("exitCode")
        timed_out = bool(result.get("timedOut"))
        return ExecutionResult(
            success=exit_code == 0 and not timed_out,
            stdout=result.get("stdout", ""),
            stderr=result.get("stderr", ""),
            exit_code=exit_code,
            timed_out=timed_out,
        )

    async def read_file(self, path: str, workspace: Optional[str] = None) -> str:
        self._require_client()
        target, vm_root = self._to_vm(path, workspace)
        result = await self._call("readFile", {"path": target, "workspace": vm_root})
        return result["content"]

    async def write_file(self, path: str, content: str, workspace: Optional[str] = None) -> None:
        self._require_client()
        target, vm_root = self._to_vm(path, workspace)
        await self._call("writeFile", {"path": target, "content": content, "workspace": vm_root})

    async def list_directory(self, path: str, workspace: Optional[str] = None) -> list[DirectoryEntry]:
        self._require_client()
        target, vm_root = self._to_vm(path, workspace)
        result = await self._call("listDirectory", {"path": target, "workspace": vm_root})
        return [
            DirectoryEntry(
                name=entry["name"],
                is_directory=bool(entry.get("isDirectory")),
                size=entry.get("size"),
            )
            for entry in result.get("entries", [])
        ]

    async def file_exists(self, path: str, workspace: Optional[str] = None) -> bool:
        self._require_client()
        target, vm_root = self._to_vm(path, workspace)
        result = await self._call("fileExists", {"path": target, "workspace": vm_root})
        return bool(result.get("exists"))

    async def delete_file(self, path: str, workspace: Optional[str] = None) -> None:
        self._require_client()
        target, vm_root = self._to_vm(path, workspace)
        await self._call("deleteFile", {"path": target, "workspace": vm_root})

    async def create_directory(self, path: str, workspace: Optional[str] = None) -> None:
        self._require_client()
        target, vm_root = self._to_vm(path, workspace)
        await self._call("createDirectory", {"path": target, "workspace": vm_root})

    async def copy_file(self, src: str, dest: str, workspace: Optional[str] = None) -> None:
        self._require_client()
        source, source_root = self._to_vm(src, workspace)
        destination, dest_root = self._to_vm(dest, workspace)
        if source_root != dest_root:
            raise SecurityViolation(f"Cannot copy between workspaces: {src} -> {dest}")
        await self._call("copyFile", {"src": source, "dest": destination, "workspace": source_root})

    async def run_claude_code(
        self,
        prompt: str,
        cwd: Optional[str] = None,
        model: Optional[str] = None,
        max_turns: Optional[int] = None,
        workspace: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Run the Claude Code CLI inside the VM and return its parsed messages."""
        self._require_client()
        if cwd is None:
            cwd = self._require_guards().guard_for(None, workspace).workspace_root
        target, vm_root = self._to_vm(cwd, workspace)
        params: dict[str, Any] = {"prompt": prompt, "cwd": target, "workspace": vm_root}
        if model:
            params["model"] = model
        if max_turns:
            params["maxTurns"] = max_turns
        result = await self._call(
            "runClaudeCode", params, timeout=CLAUDE_CODE_TIMEOUT + self.settings.rpc_timeout
        )
        return result.get("messages", [])

    async def ping(self) -> bool:
        if self.client is None:
            return False
        return await self.client.ping()

    async def shutdown(self) -> None:
        if self.client is not None:
            await self.client.stop()
        self.client = None
