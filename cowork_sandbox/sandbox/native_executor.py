"""
Direct host execution, guarded by one PathGuard per workspace root.
"""

import asyncio
import logging
import os
import shutil
import sys
from typing import Any, Callable, Optional

from ..errors import ConfigurationError, UpstreamFailure
from ..path_guard import WorkspaceGuards
from .base import DirectoryEntry, ExecutionResult, SandboxExecutor, SandboxSettings
from .process import run_process

logger = logging.getLogger(__name__)

POWERSHELL_ARGS = [
    "-NoLogo",
    "-NoProfile",
    "-NonInteractive",
    "-ExecutionPolicy",
    "Restricted",
    "-Command",
]


def shell_argv(command: str, windows: Optional[bool] = None) -> list[str]:
    """Build the platform shell invocation for a command string."""
    if windows is None:
        windows = sys.platform.startswith("win")
    if windows:
        return ["powershell.exe", *POWERSHELL_ARGS, command]
    bash = "/bin/bash" if os.path.exists("/bin/bash") else shutil.which("bash")
    return [bash or "/bin/sh", "-c", command]


class NativeExecutor(SandboxExecutor):
    """Runs commands and file operations directly on the host."""

    name = "native"

    def __init__(self):
        self.settings: Optional[SandboxSettings] = None
        self.guards: Optional[WorkspaceGuards] = None

    @property
    def is_initialized(self) -> bool:
        return self.guards is not None

    @property
    def workspace_path(self) -> str:
        primary = self.guards.primary if self.guards else None
        return primary.workspace_root if primary else ""

    async def initialize(self, settings: SandboxSettings) -> None:
        if self.is_initialized and self.settings == settings:
            return
        if not settings.workspace_path:
            raise ConfigurationError("Workspace path is required")
        if not os.path.isdir(settings.workspace_path):
            raise ConfigurationError(f"Workspace does not exist: {settings.workspace_path}")

        self.settings = settings
        self.guards = WorkspaceGuards(settings.external_mount_prefixes)
        self.guards.add(settings.workspace_path)
        logger.info(f"Native executor initialized for: {self.workspace_path}")

    async def add_workspace(self, workspace_path: str, sandbox_path: Optional[str] = None) -> None:
        guards = self._require_guards()
        if not os.path.isdir(workspace_path):
            raise ConfigurationError(f"Workspace does not exist: {workspace_path}")
        guard = guards.add(workspace_path)
        logger.info(f"Native executor serving: {guard.workspace_root}")

    async def remove_workspace(self, workspace_path: str) -> None:
        if self._require_guards().remove(workspace_path):
            logger.info(f"Native executor released: {workspace_path}")

    def _require_guards(self) -> WorkspaceGuards:
        if self.guards is None:
            raise ConfigurationError("Executor not initialized")
        return self.guards

    def _validate(self, path: str, workspace: Optional[str]) -> str:
        return self._require_guards().validate_path(path, workspace)

    async def _run_file_op(self, action: str, path: str, fn: Callable[[], Any]) -> Any:
        try:
            return await asyncio.to_thread(fn)
        except FileNotFoundError as e:
            raise UpstreamFailure(f"File not found: {path}") from e
        except (OSError, UnicodeDecodeError) as e:
            raise UpstreamFailure(f"Failed to {action} {path}", detail=str(e)) from e

    async def execute_command(
        self,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        workspace: Optional[str] = None,
    ) -> ExecutionResult:
        guard, work_dir = self._require_guards().validate_command(command, cwd, workspace)

        timeout = timeout or self.settings.command_timeout
        child_env = {
            **os.environ,
            **self.settings.env,
            **(env or {}),
            "WORKSPACE": guard.workspace_root,
        }

        logger.debug(f"Executing natively: {command} in {work_dir}")
        try:
            output = await run_process(shell_argv(command), cwd=work_dir, env=child_env, timeout=timeout)
        except OSError as e:
            logger.error(f"Failed to spawn command: {e}")
            return ExecutionResult(success=False, stdout="", stderr=str(e), exit_code=1)

        stderr = output.stderr
        if output.timed_out:
            stderr += f"\nCommand timed out after {timeout:g} seconds"
        return ExecutionResult(
            success=output.ok,
            stdout=output.stdout,
            stderr=stderr,
            exit_code=output.exit_code,
            timed_out=output.timed_out,
        )

    async def read_file(self, path: str, workspace: Optional[str] = None) -> str:
        target = self._validate(path, workspace)

        def _read() -> str:
            with open(target, encoding="utf-8") as f:
                return f.read()

        return await self._run_file_op("read", path, _read)

    async def write_file(self, path: str, content: str, workspace: Optional[str] = None) -> None:
        target = self._validate(path, workspace)

        def _write() -> None:
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, "w", encoding="utf-8") as f:
                f.write(content)

        await self._run_file_op("write", path, _write)

    async def list_directory(self, path: str, workspace: Optional[str] = None) -> list[DirectoryEntry]:
        target = self._validate(path, workspace)

        def _list() -> list[DirectoryEntry]:
            entries = []
            with os.scandir(target) as it:
                for entry in it:
                    is_file = entry.is_file()
                    entries.append(
                        DirectoryEntry(
                            name=entry.name,
                            is_directory=entry.is_dir(),
                            size=entry.stat().st_size if is_file else None,
                        )
                    )
            return entries

        return await self._run_file_op("list", path, _list)

    async def file_exists(self, path: str, workspace: Optional[str] = None) -> bool:
        target = self._validate(path, workspace)
        return os.path.exists(target)

    async def delete_file(self, path: str, workspace: Optional[str] = None) -> None:
        target = self._validate(path, workspace)
        if os.path.isdir(target):
            raise UpstreamFailure(f"Is a directory: {path}")

        def _delete() -> None:
            if os.path.lexists(target):
                os.remove(target)

        await self._run_file_op("delete", path, _delete)

    async def create_directory(self, path: str, workspace: Optional[str] = None) -> None:
        target = self._validate(path, workspace)
        await self._run_file_op("create", path, lambda: os.makedirs(target, exist_ok=True))

    async def copy_file(self, src: str, dest: str, workspace: Optional[str] = None) -> None:
        source = self._validate(src, workspace)
        destination = self._validate(dest, workspace)

        def _copy() -> None:
            os.makedirs(os.path.dirname(destination), exist_ok=True)
            shutil.copyfile(source, destination)

        await self._run_file_op("copy", src, _copy)

    async def shutdown(self) -> None:
        self.guards = None
        self.settings = None
