"""
Lima backend: the agent runs inside a Lima VM, reached via limactl shell.

Lima mounts the user's home directory at the same path inside the VM, so
the default converter is the identity mapping.
"""

import logging
import shutil
from typing import Optional

from .path_converter import PathConverter
from .vm_bridge import VMBridge

logger = logging.getLogger(__name__)

DEFAULT_INSTANCE = "cowork-sandbox"


class LimaBridge(VMBridge):
    name = "lima"

    def __init__(
        self,
        instance: str = DEFAULT_INSTANCE,
        converter: Optional[PathConverter] = None,
        claude_bin: str = "claude",
    ):
        super().__init__(converter, claude_bin=claude_bin)
        self.instance = instance

    def agent_argv(self) -> list[str]:
        return ["limactl", "shell", self.instance, "bash", "-c", self.agent_command()]

    async def check_available(self) -> bool:
        available = shutil.which("limactl") is not None
        if not available:
            logger.info("limactl not found")
        return available
