"""
Sandboxed execution for cowork-sandbox.

Runs an agent's shell commands and file operations against a workspace,
either inside an isolated Linux environment or directly on the host.

Supports:
- Windows: WSL2 distribution, reached through a JSON-RPC agent over wsl.exe
- macOS: Lima VM, reached through the same agent over limactl shell
- All platforms: native execution with path and command validation
- Workspace mirroring into the VM with rsync
- Phased, cached bootstrap of each backend
"""

from .adapter import SandboxAdapter, SandboxMode
from .base import DirectoryEntry, ExecutionResult, SandboxExecutor, SandboxSettings
from .bootstrap import BootstrapPhase, LimaBootstrap, NativeBootstrap, WSLBootstrap
from .config import SandboxConfig
from .context import SandboxContext, create_sandbox_context
from .lima_bridge import LimaBridge
from .lima_sync import LimaSync
from .native_executor import NativeExecutor
from .path_resolver import MountedPath, PathResolver
from .sync import SandboxSync
from .wsl_bridge import WSLBridge

__all__ = [
    "BootstrapPhase",
    "DirectoryEntry",
    "ExecutionResult",
    "LimaBootstrap",
    "LimaBridge",
    "LimaSync",
    "MountedPath",
    "NativeBootstrap",
    "NativeExecutor",
    "PathResolver",
    "SandboxAdapter",
    "SandboxConfig",
    "SandboxContext",
    "SandboxExecutor",
    "SandboxMode",
    "SandboxSettings",
    "SandboxSync",
    "WSLBootstrap",
    "WSLBridge",
    "create_sandbox_context",
]
