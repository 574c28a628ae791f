"""
Async subprocess runner shared by the native executor, bootstrap and sync.
"""

import asyncio
import contextlib
import logging
import os
import signal
import sys
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = -9
_CHUNK_SIZE = 8192
KILL_GRACE_SECONDS = 2.0

OutputCallback = Callable[[str, str], None]


@dataclass
class ProcessOutput:
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


def _kill_process_tree(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the process group, whether or not its leader already exited."""
    if sys.platform.startswith("win"):
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        if proc.returncode is None:
            proc.kill()


async def _drain(
    stream: asyncio.StreamReader,
    name: str,
    chunks: list[bytes],
    on_output: Optional[OutputCallback],
) -> None:
    while True:
        chunk = await stream.read(_CHUNK_SIZE)
        if not chunk:
            break
        chunks.append(chunk)
        if on_output is not None:
            on_output(name, chunk.decode("utf-8", errors="replace"))


async def run_process(
    argv: list[str],
    cwd: Optional[str] = None,
    env: Optional[dict[str, str]] = None,
    timeout: Optional[float] = None,
    input_data: Optional[bytes] = None,
    on_output: Optional[OutputCallback] = None,
    encoding: str = "utf-8",
) -> ProcessOutput:
    """
    Run `argv` to completion, capturing output incrementally.

    Args:
        argv: Program and arguments
        cwd: Working directory
        env: Full environment for the child (default: inherit)
        timeout: Seconds before the process group is killed
        input_data: Bytes written to stdin, which is then closed
        on_output: Called with ("stdout"|"stderr", text) for every chunk read
        encoding: Codec for the captured output (wsl.exe writes UTF-16)

    Returns:
        ProcessOutput; a timeout yields exit_code -9 and timed_out=True.
        When the program exited in time but left background processes
        holding its output open past the budget, those are killed and
        the program's own exit code is kept.

    Raises:
        OSError: The program could not be started
    """
    logger.debug(f"Spawning: {argv}")
    proc = await asyncio.create_subprocess_exec(
        *argv,
        cwd=cwd,
        env=env,
        stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=not sys.platform.startswith("win"),
    )

    stdout_chunks: list[bytes] = []
    stderr_chunks: list[bytes] = []
    readers = asyncio.gather(
        _drain(proc.stdout, "stdout", stdout_chunks, on_output),
        _drain(proc.stderr, "stderr", stderr_chunks, on_output),
    )

    if input_data is not None:
        try:
            proc.stdin.write(input_data)
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Child closed stdin before all input was written")
        finally:
            proc.stdin.close()

    loop = asyncio.get_running_loop()
    deadline = None if timeout is None else loop.time() + timeout
    timed_out = False
    try:
        await asyncio.wait_for(proc.wait(), timeout=timeout)
        remaining = None if deadline is None else max(deadline - loop.time(), 0)
        await asyncio.wait_for(asyncio.shield(readers), timeout=remaining)
    except asyncio.TimeoutError:
        # a background child can hold the pipes open after the leader exited
        timed_out = proc.returncode is None
        if timed_out:
            logger.warning(f"Process timed out after {timeout}s: {argv[0]}")
        else:
            logger.warning(f"Killing background processes left by: {argv[0]}")
        _kill_process_tree(proc)
        await _settle(proc, readers)
    except asyncio.CancelledError:
        _kill_process_tree(proc)
        raise

    return ProcessOutput(
        exit_code=TIMEOUT_EXIT_CODE if timed_out else proc.returncode,
        stdout=b"".join(stdout_chunks).decode(encoding, errors="replace"),
        stderr=b"".join(stderr_chunks).decode(encoding, errors="replace"),
        timed_out=timed_out,
    )


async def _settle(proc: asyncio.subprocess.Process, readers: asyncio.Future) -> None:
    """Wait a bounded time for a killed process and its output pipes."""
    try:
        await asyncio.wait_for(proc.wait(), timeout=KILL_GRACE_SECONDS)
    except asyncio.TimeoutError:
        logger.error(f"Process {proc.pid} did not exit after SIGKILL")
    try:
        await asyncio.wait_for(readers, timeout=KILL_GRACE_SECONDS)
    except asyncio.TimeoutError:
        # a process outside the group still holds the pipes; keep what was read
        logger.error(f"Output of process {proc.pid} still open after kill, dropping the rest")
