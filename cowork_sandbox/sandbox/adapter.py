"""
SandboxAdapter: picks a backend, falls back when it fails, and exposes
one executor surface to the tool layer.
"""

import asyncio
import dataclasses
import logging
import os
from enum import Enum
from typing import Any, Callable, Optional

from ..errors import (
    ConfigurationError,
    RemoteUnavailable,
    SandboxError,
    SecurityViolation,
)
from .base import DirectoryEntry, ExecutionResult, SandboxExecutor, SandboxSettings, get_current_platform
from .config import SandboxConfig
from .lima_bridge import LimaBridge
from .native_executor import NativeExecutor
from .retry_handler import SandboxRetryHandler
from .rpc_client import AgentState
from .vm_bridge import VMBridge
from .wsl_bridge import WSLBridge

logger = logging.getLogger(__name__)


class SandboxMode(str, Enum):
    WSL = "wsl"
    LIMA = "lima"
    NATIVE = "native"
    NONE = "none"


ExecutorFactory = Callable[[], SandboxExecutor]

NATIVE_FALLBACK_WARNING = (
    "Sandbox VM unavailable, commands run directly on the host with path checks only"
)


def _workspace_key(path: str) -> str:
    return os.path.normpath(os.path.abspath(path))


class SandboxAdapter:
    """
    Holds exactly one active executor and delegates every call to it.
    Every session shares that executor; each registers its workspace and
    names it on the calls it makes.

    Mode is resolved once by initialize(): the preferred backend for the
    platform (or the configured one), then native if that fails and
    fallback is allowed. A VM agent that becomes unreachable is restarted
    once; if that fails too the adapter switches to native.
    """

    def __init__(
        self,
        config: SandboxConfig,
        platform: Optional[str] = None,
        factories: Optional[dict[SandboxMode, ExecutorFactory]] = None,
    ):
        """
        Args:
            config: Persisted sandbox preferences
            platform: "windows", "macos" or "linux" (default: this host)
            factories: Executor constructors per mode, for substitution
        """
        self.config = config
        self.platform = platform or get_current_platform()
        self.mode = SandboxMode.NONE
        self.executor: Optional[SandboxExecutor] = None
        self.settings: Optional[SandboxSettings] = None
        self.warnings: list[str] = []
        # host workspace -> mirrored copy in the VM, one entry per session
        self.workspaces: dict[str, Optional[str]] = {}
        self.retry_handler = SandboxRetryHandler(config)
        self._factories = factories or {
            SandboxMode.WSL: lambda: WSLBridge(distro=config.wsl_distro, claude_bin=config.claude_bin),
            SandboxMode.LIMA: lambda: LimaBridge(instance=config.lima_instance, claude_bin=config.claude_bin),
            SandboxMode.NATIVE: NativeExecutor,
        }
        self._init_lock = asyncio.Lock()
        self._recover_lock = asyncio.Lock()

    # ---- mode selection ----

    def preferred_mode(self) -> SandboxMode:
        if not self.config.enabled:
            return SandboxMode.NATIVE
        if self.config.mode != "auto":
            return SandboxMode(self.config.mode)
        if self.platform == "windows":
            return SandboxMode.WSL
        if self.platform == "macos":
            return SandboxMode.LIMA
        return SandboxMode.NATIVE

    def cascade(self) -> list[SandboxMode]:
        """Backends to try, in order."""
        preferred = self.preferred_mode()
        modes = [preferred]
        if preferred != SandboxMode.NATIVE and self.config.allow_native_fallback:
            modes.append(SandboxMode.NATIVE)
        return modes

    @property
    def is_initialized(self) -> bool:
        return self.executor is not None and self.executor.is_initialized

    @property
    def is_vm_mode(self) -> bool:
        return self.mode in (SandboxMode.WSL, SandboxMode.LIMA)

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    async def initialize(self, settings: SandboxSettings) -> SandboxMode:
        """
        Bring the backend up, or add a workspace to the one already running.

        The first call resolves the mode and starts its executor with
        `settings`; later calls while the executor is live only register
        `settings.workspace_path` next to the other sessions' workspaces.
        Backend settings therefore stay those of the first call until
        shutdown().

        Returns:
            The mode that ended up active

        Raises:
            ConfigurationError: Bad workspace; never retried on another backend
            RemoteUnavailable: Every backend in the cascade failed
        """
        async with self._init_lock:
            if self.is_initialized:
                await self._add_workspace(settings.workspace_path, settings.sandbox_workspace_path)
                return self.mode
            if self.executor is not None:
                await self._shutdown_executor(self.executor)
                self.executor = None

            self.settings = settings
            self.workspaces[_workspace_key(settings.workspace_path)] = settings.sandbox_workspace_path
            self.warnings = []
            self.retry_handler.reset()
            preferred = self.preferred_mode()
            last_error: Optional[SandboxError] = None

            for mode in self.cascade():
                executor = self._factories[mode]()
                try:
                    await self._bring_up(executor)
                except (ConfigurationError, SecurityViolation):
                    self.mode = SandboxMode.NONE
                    await self._shutdown_executor(executor)
                    raise
                except SandboxError as e:
                    last_error = e
                    self._warn(f"{mode.value} backend failed to initialize: {e}")
                    await self._shutdown_executor(executor)
                    continue

                self.executor = executor
                self.mode = mode
                if mode == SandboxMode.NATIVE and preferred != SandboxMode.NATIVE:
                    self._warn(NATIVE_FALLBACK_WARNING)
                logger.info(f"Sandbox initialized in {mode.value} mode")
                return mode

            self.mode = SandboxMode.NONE
            raise RemoteUnavailable(
                "No sandbox backend could be initialized",
                detail=str(last_error) if last_error else None,
            )

    async def _bring_up(self, executor: SandboxExecutor) -> None:
        """Initialize `executor` with every workspace currently served."""
        workspaces = list(self.workspaces.items())
        settings = self.settings
        if workspaces:
            path, sandbox_path = workspaces[0]
            settings = dataclasses.replace(
                settings, workspace_path=path, sandbox_workspace_path=sandbox_path
            )
        await executor.initialize(settings)
        for path, sandbox_path in workspaces[1:]:
            await executor.add_workspace(path, sandbox_path)

    async def _add_workspace(self, workspace_path: str, sandbox_path: Optional[str]) -> None:
        self.workspaces[_workspace_key(workspace_path)] = sandbox_path
        try:
            await self._delegate("add_workspace", workspace_path, sandbox_path)
        except SandboxError:
            self.workspaces.pop(_workspace_key(workspace_path), None)
            raise

    async def remove_workspace(self, workspace_path: str) -> None:
        """Stop serving a workspace; the backend stays up for the others."""
        self.workspaces.pop(_workspace_key(workspace_path), None)
        if self.executor is not None:
            await self._delegate("remove_workspace", workspace_path)

    # ---- recovery ----

    async def _shutdown_executor(self, executor: SandboxExecutor) -> None:
        try:
            await executor.shutdown()
        except SandboxError as e:
            logger.error(f"Failed to shut down {executor.name} executor: {e}")

    async def _fall_back_to_native(self, reason: str) -> SandboxExecutor:
        previous = self.executor
        native = self._factories[SandboxMode.NATIVE]()
        await self._bring_up(native)
        self.executor = native
        self.mode = SandboxMode.NATIVE
        self._warn(f"{NATIVE_FALLBACK_WARNING} ({reason})")
        if previous is not None:
            await self._shutdown_executor(previous)
        return native

    async def _recover(self, failed: VMBridge, error: RemoteUnavailable) -> SandboxExecutor:
        """Restart the agent once, or replace it with native execution."""
        async with self._recover_lock:
            if self.executor is not failed:
                return self._require_executor()
            if failed.agent_state == AgentState.READY and failed.client.is_running:
                # restarted by a concurrent caller
                return failed

            if self.retry_handler.should_restart_agent(error):
                self.retry_handler.record_restart()
                try:
                    await failed.restart()
                    return failed
                except RemoteUnavailable as restart_error:
                    logger.warning(f"{failed.name} agent restart failed: {restart_error}")
                    error = restart_error

            if self.retry_handler.should_fall_back():
                return await self._fall_back_to_native(str(error))

            self.mode = SandboxMode.NONE
            raise RemoteUnavailable(f"{failed.name} agent unavailable", detail=str(error))

    def _require_executor(self) -> SandboxExecutor:
        if self.executor is None:
            raise ConfigurationError("Sandbox not initialized")
        return self.executor

    async def _delegate(self, operation: str, *args: Any, **kwargs: Any) -> Any:
        executor = self._require_executor()
        try:
            return await getattr(executor, operation)(*args, **kwargs)
        except RemoteUnavailable as e:
            if not isinstance(executor, VMBridge):
                raise
            logger.warning(f"{executor.name} agent unavailable during {operation}: {e}")
            recovered = await self._recover(executor, e)

        return await getattr(recovered, operation)(*args, **kwargs)

    # ---- executor surface ----

    async def execute_command(
        self,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        workspace: Optional[str] = None,
    ) -> ExecutionResult:
        return await self._delegate(
            "execute_command", command, cwd=cwd, env=env, timeout=timeout, workspace=workspace
        )

    async def read_file(self, path: str, workspace: Optional[str] = None) -> str:
        return await self._delegate("read_file", path, workspace=workspace)

    async def write_file(self, path: str, content: str, workspace: Optional[str] = None) -> None:
        await self._delegate("write_file", path, content, workspace=workspace)

    async def list_directory(self, path: str, workspace: Optional[str] = None) -> list[DirectoryEntry]:
        return await self._delegate("list_directory", path, workspace=workspace)

    async def file_exists(self, path: str, workspace: Optional[str] = None) -> bool:
        return await self._delegate("file_exists", path, workspace=workspace)

    async def delete_file(self, path: str, workspace: Optional[str] = None) -> None:
        await self._delegate("delete_file", path, workspace=workspace)

    async def create_directory(self, path: str, workspace: Optional[str] = None) -> None:
        await self._delegate("create_directory", path, workspace=workspace)

    async def copy_file(self, src: str, dest: str, workspace: Optional[str] = None) -> None:
        await self._delegate("copy_file", src, dest, workspace=workspace)

    async def run_claude_code(self, prompt: str, **kwargs: Any) -> list[dict[str, Any]]:
        if not isinstance(self._require_executor(), VMBridge):
            raise ConfigurationError("Claude Code pass-through needs a VM backend")
        return await self._delegate("run_claude_code", prompt, **kwargs)

    # ---- probes ----

    def get_status(self) -> dict:
        """Snapshot of the adapter state. Never changes the active backend."""
        agent_state = None
        if isinstance(self.executor, VMBridge):
            agent_state = self.executor.agent_state.value
        return {
            "mode": self.mode.value,
            "preferred_mode": self.preferred_mode().value,
            "platform": self.platform,
            "initialized": self.is_initialized,
            "workspace": next(iter(self.workspaces), None),
            "workspaces": list(self.workspaces),
            "agent_state": agent_state,
            "restarts": self.retry_handler.restart_count,
            "warnings": list(self.warnings),
        }

    async def check_wsl(self) -> dict:
        """Probe WSL availability without touching the active backend."""
        probe = WSLBridge(distro=self.config.wsl_distro)
        return {
            "available": await probe.check_available(),
            "distro": self.config.wsl_distro,
            "active": self.mode == SandboxMode.WSL,
        }

    async def check_lima(self) -> dict:
        """Probe Lima availability without touching the active backend."""
        probe = LimaBridge(instance=self.config.lima_instance)
        return {
            "available": await probe.check_available(),
            "instance": self.config.lima_instance,
            "active": self.mode == SandboxMode.LIMA,
        }

    async def shutdown(self) -> None:
        async with self._init_lock:
            if self.executor is not None:
                await self._shutdown_executor(self.executor)
            self.executor = None
            self.mode = SandboxMode.NONE
            self.workspaces.clear()
            logger.info("Sandbox adapter shut down")
