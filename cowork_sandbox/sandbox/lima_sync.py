"""
Workspace mirror for the Lima VM.

Lima mounts the host home directory at the same path, so rsync reads the
workspace straight from the mount and no path conversion is needed.
"""

from typing import Optional

from .lima_bridge import DEFAULT_INSTANCE
from .path_converter import PathConverter
from .sync import SandboxSync
from .vm_shell import LimaShell


class LimaSync(SandboxSync):
    backend_id = "lima"

    def __init__(
        self,
        instance: str = DEFAULT_INSTANCE,
        excludes: Optional[list[str]] = None,
        sandbox_root: Optional[str] = None,
    ):
        super().__init__(
            shell=LimaShell(instance),
            converter=PathConverter(),
            excludes=excludes,
            sandbox_root=sandbox_root,
        )
        self.instance = instance
