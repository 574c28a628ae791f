"""
One-shot bash runners for the isolated environment.

Bootstrap and sync need to run plain shell scripts in the VM without the
agent (which may not be deployed yet). Each shell knows how to wrap a
script in the host command that reaches its environment.
"""

import logging
from typing import Optional

from .process import ProcessOutput, run_process
from .wsl_bridge import wsl_command

logger = logging.getLogger(__name__)


class LocalShell:
    """Runs scripts with the host's bash. Used for native mode and tests."""

    name = "local"

    def argv(self, script: str) -> list[str]:
        return ["bash", "-c", script]

    async def run(
        self,
        script: str,
        timeout: Optional[float] = None,
        input_data: Optional[bytes] = None,
    ) -> ProcessOutput:
        logger.debug(f"[{self.name}] {script}")
        return await run_process(self.argv(script), timeout=timeout, input_data=input_data)


class WslShell(LocalShell):
    name = "wsl"

    def __init__(self, distro: Optional[str] = None):
        self.distro = distro

    def argv(self, script: str) -> list[str]:
        return [*wsl_command(self.distro), "--", "bash", "-c", script]


class LimaShell(LocalShell):
    name = "lima"

    def __init__(self, instance: str):
        self.instance = instance

    def argv(self, script: str) -> list[str]:
        return ["limactl", "shell", self.instance, "bash", "-c", script]
