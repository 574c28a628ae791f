"""
Base classes and interfaces for sandbox executors.
"""

import platform
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel

DEFAULT_COMMAND_TIMEOUT = 60
DEFAULT_RPC_TIMEOUT = 30


class ExecutionResult(BaseModel):
    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    timed_out: bool = False


class DirectoryEntry(BaseModel):
    name: str
    is_directory: bool
    size: int | None = None


@dataclass
class SandboxSettings:
    """Settings an executor is initialized with."""

    # Host path of the first workspace served
    workspace_path: str

    # Process-level budget for executeCommand, in seconds
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT

    # Per-request budget for calls to a remote agent, in seconds
    rpc_timeout: float = DEFAULT_RPC_TIMEOUT

    # Extra environment for spawned commands
    env: dict[str, str] = field(default_factory=dict)

    # Foreign mount prefixes checked in command text; None means the default
    external_mount_prefixes: Optional[list[str]] = None

    # When set, the VM works on this mirrored copy instead of the mount
    sandbox_workspace_path: Optional[str] = None


class SandboxExecutor(ABC):
    """
    One way of running commands and file operations against workspaces.

    An executor is brought up once with the settings of its first
    workspace; further sessions register their roots with add_workspace()
    and share the backend. Operations take an optional `workspace` naming
    the root they are confined to; without it a path is checked against
    the registered root that holds it.

    Every implementation validates path containment itself, whatever the
    caller already checked. Failures are raised as SandboxError subclasses;
    a command that runs and exits nonzero is a result, not an error.
    """

    name = "base"

    @property
    @abstractmethod
    def is_initialized(self) -> bool:
        """Whether initialize() completed."""
        pass

    @abstractmethod
    async def initialize(self, settings: SandboxSettings) -> None:
        """Prepare the executor. Calling it again with the same settings is a no-op."""
        pass

    @abstractmethod
    async def add_workspace(self, workspace_path: str, sandbox_path: Optional[str] = None) -> None:
        """
        Serve another workspace root next to the ones already registered.

        Args:
            workspace_path: Host path of the workspace
            sandbox_path: Mirrored copy inside the VM, when one exists
        """
        pass

    @abstractmethod
    async def remove_workspace(self, workspace_path: str) -> None:
        pass

    @abstractmethod
    async def execute_command(
        self,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        workspace: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Run a shell command.

        Args:
            command: Shell command text
            cwd: Working directory (default: workspace root)
            env: Extra environment variables
            timeout: Seconds before the process is killed
            workspace: Root the command is confined to

        Returns:
            ExecutionResult; spawn failures come back as success=False with
            exit_code 1 and the error text in stderr
        """
        pass

    @abstractmethod
    async def read_file(self, path: str, workspace: Optional[str] = None) -> str:
        pass

    @abstractmethod
    async def write_file(self, path: str, content: str, workspace: Optional[str] = None) -> None:
        pass

    @abstractmethod
    async def list_directory(self, path: str, workspace: Optional[str] = None) -> list[DirectoryEntry]:
        pass

    @abstractmethod
    async def file_exists(self, path: str, workspace: Optional[str] = None) -> bool:
        pass

    @abstractmethod
    async def delete_file(self, path: str, workspace: Optional[str] = None) -> None:
        pass

    @abstractmethod
    async def create_directory(self, path: str, workspace: Optional[str] = None) -> None:
        pass

    @abstractmethod
    async def copy_file(self, src: str, dest: str, workspace: Optional[str] = None) -> None:
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        pass


def get_current_platform() -> str:
    """Get the current platform name."""
    system = platform.system().lower()
    if system == "darwin":
        return "macos"
    return system
