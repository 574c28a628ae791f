"""
Per-session mirror of the workspace inside the isolated environment.

initSync copies the host workspace into a private directory in the VM,
finalSync copies changes back, cleanup removes the directory. The session
registry lives in memory only; directories of sessions that were never
cleaned up are orphaned when the process exits.
"""

import logging
import re
import shlex
import sys
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel

from ..errors import SecurityViolation, UpstreamFailure
from .config import DEFAULT_SYNC_EXCLUDES
from .path_converter import PathConverter, PrefixPathConverter, WslPathConverter
from .process import ProcessOutput
from .vm_shell import LocalShell, WslShell

logger = logging.getLogger(__name__)

SYNC_TIMEOUT = 300.0
PROBE_TIMEOUT = 30.0
SANDBOX_DIR = ".cowork-sandbox/sandbox"

_SESSION_ID = re.compile(r"^[A-Za-z0-9._-]+$")


@dataclass
class SyncSession:
    session_id: str
    host_path: str
    sandbox_path: str
    backend_id: str
    initialized: bool = False
    file_count: int = 0
    total_size: int = 0


class SyncResult(BaseModel):
    success: bool
    sandbox_path: str = ""
    file_count: int = 0
    total_size: int = 0
    error: str | None = None


def format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    if size < 1024 * 1024 * 1024:
        return f"{size / (1024 * 1024):.1f} MB"
    return f"{size / (1024 * 1024 * 1024):.1f} GB"


def validate_session_id(session_id: str) -> str:
    """Session ids become directory names inside the VM."""
    if not session_id or session_id in (".", "..") or not _SESSION_ID.match(session_id):
        raise SecurityViolation(f"Invalid session id: {session_id!r}")
    return session_id


class SandboxSync:
    """
    Mirrors workspaces into a WSL distribution with rsync.

    The shell and converter can be swapped, which is how LimaSync and the
    local tests reuse the same lifecycle.
    """

    backend_id = "wsl"

    def __init__(
        self,
        shell: Optional[LocalShell] = None,
        converter: Optional[PathConverter] = None,
        excludes: Optional[list[str]] = None,
        sandbox_root: Optional[str] = None,
        distro: Optional[str] = None,
    ):
        """
        Args:
            shell: Runs scripts in the VM (default: WSL)
            converter: Host -> VM path mapping for the rsync source
            excludes: rsync exclude patterns
            sandbox_root: Parent of the session directories inside the VM
                (default: ~/.cowork-sandbox/sandbox)
            distro: WSL distribution for the default shell
        """
        self.shell = shell or WslShell(distro)
        self.converter = converter or WslPathConverter()
        self.excludes = list(excludes if excludes is not None else DEFAULT_SYNC_EXCLUDES)
        self.sandbox_root = sandbox_root
        self.windows_host = sys.platform.startswith("win")
        self._sessions: dict[str, SyncSession] = {}

    # ---- shell helpers ----

    async def _run(self, script: str, failure: str, timeout: float = PROBE_TIMEOUT) -> ProcessOutput:
        try:
            output = await self.shell.run(script, timeout=timeout)
        except OSError as e:
            raise UpstreamFailure(failure, detail=str(e)) from e
        if output.timed_out:
            raise UpstreamFailure(failure, detail=f"timed out after {timeout:g}s")
        if output.exit_code != 0:
            raise UpstreamFailure(failure, detail=(output.stderr or output.stdout).strip())
        return output

    async def _resolve_sandbox_root(self) -> str:
        if self.sandbox_root is None:
            output = await self._run('printf %s "$HOME"', "Failed to resolve home directory")
            home = output.stdout.strip()
            if not home.startswith("/"):
                raise UpstreamFailure(f"Unexpected home directory: {home!r}")
            self.sandbox_root = f"{home.rstrip('/')}/{SANDBOX_DIR}"
        return self.sandbox_root

    def _rsync_script(self, source: str, destination: str) -> str:
        excludes = " ".join(f"--exclude={shlex.quote(p)}" for p in self.excludes)
        return (
            f"rsync -a --delete {excludes} "
            f"{shlex.quote(source.rstrip('/') + '/')} {shlex.quote(destination.rstrip('/') + '/')}"
        )

    async def _measure(self, path: str) -> tuple[int, int]:
        quoted = shlex.quote(path)
        count = await self._run(f"find {quoted} -type f | wc -l", "Failed to count files")
        size = await self._run(
            f"find {quoted} -type f -printf '%s\\n' | awk '{{s+=$1}} END {{print s+0}}'",
            "Failed to measure size",
        )
        return int(count.stdout.strip() or 0), int(size.stdout.strip() or 0)

    # ---- lifecycle ----

    async def init_sync(
        self,
        host_path: str,
        session_id: str,
        backend_id: Optional[str] = None,
    ) -> SyncResult:
        """
        Create the session directory in the VM and mirror the workspace into it.

        Raises:
            SecurityViolation: session_id is not usable as a directory name
        """
        validate_session_id(session_id)
        sandbox_path = ""
        logger.info(f"Starting sync for session {session_id} from {host_path}")
        try:
            root = await self._resolve_sandbox_root()
            sandbox_path = f"{root}/{session_id}"
            source = self.converter.to_vm(host_path)

            await self._run(f"mkdir -p {shlex.quote(sandbox_path)}", "Failed to create sandbox directory")
            await self._run(
                self._rsync_script(source, sandbox_path),
                "Failed to copy workspace into sandbox",
                timeout=SYNC_TIMEOUT,
            )
            file_count, total_size = await self._measure(sandbox_path)
        except UpstreamFailure as e:
            logger.error(f"Sync failed for session {session_id}: {e}")
            return SyncResult(success=False, sandbox_path=sandbox_path, error=str(e))

        self._sessions[session_id] = SyncSession(
            session_id=session_id,
            host_path=host_path,
            sandbox_path=sandbox_path,
            backend_id=backend_id or self.backend_id,
            initialized=True,
            file_count=file_count,
            total_size=total_size,
        )
        logger.info(f"Sync complete: {file_count} files, {format_size(total_size)}")
        return SyncResult(
            success=True,
            sandbox_path=sandbox_path,
            file_count=file_count,
            total_size=total_size,
        )

    async def final_sync(self, session_id: str) -> SyncResult:
        """Mirror the sandbox directory back onto the host workspace."""
        session = self._sessions.get(session_id)
        if session is None:
            return SyncResult(success=False, error=f"No sync session: {session_id}")

        logger.info(f"Syncing session {session_id} back to {session.host_path}")
        destination = self.converter.to_vm(session.host_path)
        try:
            await self._run(
                self._rsync_script(session.sandbox_path, destination),
                "Failed to copy sandbox back to workspace",
                timeout=SYNC_TIMEOUT,
            )
            file_count, total_size = await self._measure(session.sandbox_path)
        except UpstreamFailure as e:
            logger.error(f"Final sync failed for session {session_id}: {e}")
            return SyncResult(success=False, sandbox_path=session.sandbox_path, error=str(e))

        session.file_count = file_count
        session.total_size = total_size
        return SyncResult(
            success=True,
            sandbox_path=session.sandbox_path,
            file_count=file_count,
            total_size=total_size,
        )

    async def cleanup(self, session_id: str) -> None:
        """Delete the session directory and forget the session."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            logger.debug(f"No sync session to clean up: {session_id}")
            return
        try:
            await self._run(f"rm -rf {shlex.quote(session.sandbox_path)}", "Failed to remove sandbox directory")
        except UpstreamFailure as e:
            logger.error(f"Cleanup failed for session {session_id}, directory left behind: {e}")
            return
        logger.info(f"Cleaned up sandbox for session {session_id}")

    # ---- lookups ----

    def get_session(self, session_id: str) -> Optional[SyncSession]:
        return self._sessions.get(session_id)

    def get_sandbox_path(self, session_id: str) -> Optional[str]:
        session = self._sessions.get(session_id)
        return session.sandbox_path if session else None

    def _mapping(self, session_id: str) -> Optional[PrefixPathConverter]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return PrefixPathConverter(session.host_path, session.sandbox_path, windows_host=self.windows_host)

    def is_path_in_sandbox(self, path: str, session_id: str) -> bool:
        mapping = self._mapping(session_id)
        return mapping is not None and mapping.contains_vm(path)

    def host_to_sandbox_path(self, host_path: str, session_id: str) -> Optional[str]:
        mapping = self._mapping(session_id)
        if mapping is None or not mapping.contains_host(host_path):
            return None
        return mapping.to_vm(host_path)

    def sandbox_to_host_path(self, sandbox_path: str, session_id: str) -> Optional[str]:
        mapping = self._mapping(session_id)
        if mapping is None or not mapping.contains_vm(sandbox_path):
            return None
        return mapping.to_host(sandbox_path)
