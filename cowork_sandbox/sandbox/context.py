"""
SandboxContext: the sandbox objects one host process needs, built once at
startup and handed to the session and tool layers.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from ..config import get_sandbox_debug
from ..errors import ConfigurationError, SandboxError
from .adapter import SandboxAdapter, SandboxMode
from .base import SandboxSettings
from .bootstrap import ProgressCallback, SandboxBootstrap, create_bootstrap
from .config import SandboxConfig
from .lima_sync import LimaSync
from .path_resolver import DEFAULT_VIRTUAL_MOUNT, MountedPath, PathResolver
from .sync import SandboxSync, SyncResult

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "cowork_sandbox"


def apply_debug_logging() -> None:
    """Set the package logger level from the `sandbox_debug` setting."""
    level = logging.DEBUG if get_sandbox_debug() else logging.NOTSET
    logging.getLogger(PACKAGE_LOGGER).setLevel(level)


@dataclass
class SandboxContext:
    config: SandboxConfig
    adapter: SandboxAdapter
    path_resolver: PathResolver
    sync: Optional[SandboxSync] = None
    bootstrap: Optional[SandboxBootstrap] = None
    sessions: dict[str, str] = field(default_factory=dict)

    def create_bootstrap(
        self,
        mode: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SandboxBootstrap:
        """Bootstrap for `mode` (default: the adapter's preferred mode)."""
        mode = mode or self.adapter.preferred_mode().value
        self.bootstrap = create_bootstrap(mode, self.config, on_progress=on_progress)
        return self.bootstrap

    def _create_sync(self, mode: SandboxMode) -> Optional[SandboxSync]:
        if mode == SandboxMode.WSL:
            return SandboxSync(distro=self.config.wsl_distro, excludes=self.config.sync_excludes)
        if mode == SandboxMode.LIMA:
            return LimaSync(instance=self.config.lima_instance, excludes=self.config.sync_excludes)
        return None

    async def start_session(self, session_id: str, workspace_path: str) -> SandboxMode:
        """
        Mount a session's workspace and bring the backend up for it.

        When mirroring is enabled and a VM backend is running or preferred,
        the workspace is copied into the VM first and the agent works on the
        copy. Later sessions join the backend the first one brought up.

        Returns:
            The mode the adapter ended up in
        """
        if not os.path.isdir(workspace_path):
            raise ConfigurationError(f"Workspace does not exist: {workspace_path}")

        self.path_resolver.set_mounts(session_id, [MountedPath(DEFAULT_VIRTUAL_MOUNT, workspace_path)])
        self.sessions[session_id] = workspace_path

        settings = SandboxSettings(
            workspace_path=workspace_path,
            command_timeout=self.config.command_timeout,
            rpc_timeout=self.config.rpc_timeout,
            external_mount_prefixes=self.config.external_mount_prefixes,
        )

        mirror_error = None
        preferred = self.adapter.mode if self.adapter.is_initialized else self.adapter.preferred_mode()
        if self.config.use_sync and preferred in (SandboxMode.WSL, SandboxMode.LIMA):
            self.sync = self.sync or self._create_sync(preferred)
            result: SyncResult = await self.sync.init_sync(workspace_path, session_id, preferred.value)
            if result.success:
                settings.sandbox_workspace_path = result.sandbox_path
            else:
                mirror_error = result.error

        try:
            mode = await self.adapter.initialize(settings)
        except SandboxError:
            await self._forget(session_id, discard_mirror=True)
            raise
        if mirror_error:
            self.adapter.warnings.append(f"Workspace mirror failed, using the mount: {mirror_error}")
        if settings.sandbox_workspace_path and mode == SandboxMode.NATIVE:
            # the copy is useless once execution fell back to the host
            await self.sync.cleanup(session_id)
        return mode

    async def _forget(self, session_id: str, discard_mirror: bool = False) -> None:
        if discard_mirror and self.sync is not None and self.sync.get_session(session_id) is not None:
            await self.sync.cleanup(session_id)
        self.path_resolver.clear_session(session_id)
        self.sessions.pop(session_id, None)

    async def end_session(self, session_id: str) -> Optional[SyncResult]:
        """
        Copy mirrored changes back, then drop the session's state.

        A mirror is only copied back while a VM backend is active; after a
        fallback to native the host copy holds the session's work. The
        backend is shut down with the last session, so mode and enable
        changes apply to the next one.
        """
        workspace_path = self.sessions.get(session_id)
        result = None
        if self.sync is not None and self.sync.get_session(session_id) is not None:
            if self.adapter.is_vm_mode:
                result = await self.sync.final_sync(session_id)
                if result.success:
                    await self.sync.cleanup(session_id)
                else:
                    logger.error(f"Keeping sandbox copy of {session_id}, final sync failed: {result.error}")
            else:
                logger.warning(f"Discarding sandbox copy of {session_id}, execution moved to the host")
                await self.sync.cleanup(session_id)
        await self._forget(session_id)

        if not self.sessions:
            await self.adapter.shutdown()
        elif workspace_path and workspace_path not in self.sessions.values():
            try:
                await self.adapter.remove_workspace(workspace_path)
            except SandboxError as e:
                logger.error(f"Failed to release workspace {workspace_path}: {e}")
        return result

    async def shutdown(self) -> None:
        for session_id in list(self.sessions):
            await self.end_session(session_id)
        await self.adapter.shutdown()


def create_sandbox_context(
    config: Optional[SandboxConfig] = None,
    platform: Optional[str] = None,
) -> SandboxContext:
    config = config or SandboxConfig()
    apply_debug_logging()
    return SandboxContext(
        config=config,
        adapter=SandboxAdapter(config, platform=platform),
        path_resolver=PathResolver(),
    )
