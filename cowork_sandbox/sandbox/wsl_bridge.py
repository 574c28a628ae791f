"""
WSL2 backend: the agent runs inside a WSL distribution, reached via wsl.exe.
"""

import logging
import shutil
import sys
from typing import Optional

from .path_converter import PathConverter, WslPathConverter
from .vm_bridge import VMBridge

logger = logging.getLogger(__name__)


def wsl_command(distro: Optional[str] = None) -> list[str]:
    """Prefix for running a command in a WSL distribution."""
    argv = ["wsl.exe"]
    if distro:
        argv.extend(["-d", distro])
    return argv


class WSLBridge(VMBridge):
    name = "wsl"

    def __init__(
        self,
        distro: Optional[str] = None,
        converter: Optional[PathConverter] = None,
        claude_bin: str = "claude",
    ):
        super().__init__(converter or WslPathConverter(), claude_bin=claude_bin)
        self.distro = distro

    def agent_argv(self) -> list[str]:
        return [*wsl_command(self.distro), "--", "bash", "-c", self.agent_command()]

    async def check_available(self) -> bool:
        if not sys.platform.startswith("win"):
            return False
        available = shutil.which("wsl.exe") is not None
        if not available:
            logger.info("wsl.exe not found")
        return available
