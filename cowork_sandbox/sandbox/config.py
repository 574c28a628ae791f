"""
Configuration management for sandboxing.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from .. import config as global_config
from .base import DEFAULT_COMMAND_TIMEOUT, DEFAULT_RPC_TIMEOUT

logger = logging.getLogger(__name__)

SANDBOX_MODES = ("auto", "wsl", "lima", "native")

DEFAULT_SYNC_EXCLUDES = [
    "node_modules",
    ".git",
    "dist",
    "build",
    "__pycache__",
    "*.pyc",
    ".next",
    ".cache",
    "coverage",
    ".nyc_output",
    "venv",
    ".venv",
    "env",
    ".env.local",
    "*.log",
    ".DS_Store",
    "Thumbs.db",
]


class SandboxConfig:
    """Manages sandbox configuration and persistence."""

    def __init__(self, config_dir: Optional[Path] = None):
        """
        Initialize sandbox configuration.

        Args:
            config_dir: Directory to store sandbox config (default: ~/.cowork_sandbox)
        """
        if config_dir is None:
            config_dir = Path(global_config.CONFIG_DIR)

        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / "sandbox_config.json"

        self._config = {
            # off runs every command natively, with path checks only
            "enabled": True,
            # auto picks wsl on Windows, lima on macOS, native elsewhere
            "mode": "auto",
            "allow_native_fallback": True,
            "command_timeout": DEFAULT_COMMAND_TIMEOUT,
            "rpc_timeout": DEFAULT_RPC_TIMEOUT,
            "wsl_distro": None,  # None means the default distribution
            "lima_instance": "cowork-sandbox",
            # Mirror the workspace into the VM instead of working on the mount
            "use_sync": False,
            "sync_excludes": list(DEFAULT_SYNC_EXCLUDES),
            "external_mount_prefixes": ["/mnt/"],
            "claude_bin": "claude",
            "max_agent_restarts": 1,
        }

        self._load()

    def _load(self):
        """Load configuration from disk."""
        if self.config_file.exists():
            try:
                with open(self.config_file) as f:
                    loaded = json.load(f)
                    self._config.update(loaded)
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load sandbox config: {e}")

    def save(self):
        """Save configuration to disk."""
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, "w") as f:
                json.dump(self._config, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save sandbox config: {e}")

    @property
    def enabled(self) -> bool:
        """Check if sandboxing is enabled."""
        return self._config.get("enabled", True)

    @enabled.setter
    def enabled(self, value: bool):
        """Enable or disable sandboxing."""
        self._config["enabled"] = bool(value)
        self.save()

    @property
    def mode(self) -> str:
        """Preferred backend: auto, wsl, lima or native."""
        return self._config.get("mode", "auto")

    @mode.setter
    def mode(self, value: str):
        if value not in SANDBOX_MODES:
            raise ValueError(f"mode must be one of: {', '.join(SANDBOX_MODES)}")
        self._config["mode"] = value
        self.save()

    @property
    def allow_native_fallback(self) -> bool:
        """Whether a failed VM backend may fall back to native execution."""
        return self._config.get("allow_native_fallback", True)

    @allow_native_fallback.setter
    def allow_native_fallback(self, value: bool):
        self._config["allow_native_fallback"] = bool(value)
        self.save()

    @property
    def command_timeout(self) -> float:
        """Process-level command timeout in seconds."""
        return self._config.get("command_timeout", DEFAULT_COMMAND_TIMEOUT)

    @command_timeout.setter
    def command_timeout(self, value: float):
        if value <= 0:
            raise ValueError("command_timeout must be positive")
        self._config["command_timeout"] = value
        self.save()

    @property
    def rpc_timeout(self) -> float:
        """Per-request agent timeout in seconds."""
        return self._config.get("rpc_timeout", DEFAULT_RPC_TIMEOUT)

    @rpc_timeout.setter
    def rpc_timeout(self, value: float):
        if value <= 0:
            raise ValueError("rpc_timeout must be positive")
        self._config["rpc_timeout"] = value
        self.save()

    @property
    def wsl_distro(self) -> Optional[str]:
        return self._config.get("wsl_distro")

    @wsl_distro.setter
    def wsl_distro(self, value: Optional[str]):
        self._config["wsl_distro"] = value or None
        self.save()

    @property
    def lima_instance(self) -> str:
        return self._config.get("lima_instance", "cowork-sandbox")

    @lima_instance.setter
    def lima_instance(self, value: str):
        if not value:
            raise ValueError("lima_instance must not be empty")
        self._config["lima_instance"] = value
        self.save()

    @property
    def use_sync(self) -> bool:
        """Whether sessions work on a mirrored copy inside the VM."""
        return self._config.get("use_sync", False)

    @use_sync.setter
    def use_sync(self, value: bool):
        self._config["use_sync"] = bool(value)
        self.save()

    @property
    def sync_excludes(self) -> list[str]:
        return self._config.get("sync_excludes", list(DEFAULT_SYNC_EXCLUDES))

    def add_sync_exclude(self, pattern: str):
        """Add a pattern to the mirror exclude list."""
        excludes = self._config.get("sync_excludes", list(DEFAULT_SYNC_EXCLUDES))
        if pattern not in excludes:
            excludes.append(pattern)
            self._config["sync_excludes"] = excludes
            self.save()

    def remove_sync_exclude(self, pattern: str):
        """Remove a pattern from the mirror exclude list."""
        excludes = self._config.get("sync_excludes", list(DEFAULT_SYNC_EXCLUDES))
        if pattern in excludes:
            excludes.remove(pattern)
            self._config["sync_excludes"] = excludes
            self.save()

    @property
    def external_mount_prefixes(self) -> list[str]:
        return self._config.get("external_mount_prefixes", ["/mnt/"])

    @property
    def claude_bin(self) -> str:
        return self._config.get("claude_bin", "claude")

    @claude_bin.setter
    def claude_bin(self, value: str):
        if not value:
            raise ValueError("claude_bin must not be empty")
        self._config["claude_bin"] = value
        self.save()

    @property
    def max_agent_restarts(self) -> int:
        """How many times a crashed agent is restarted before giving up."""
        return self._config.get("max_agent_restarts", 1)

    @max_agent_restarts.setter
    def max_agent_restarts(self, value: int):
        if value < 0:
            raise ValueError("max_agent_restarts must not be negative")
        self._config["max_agent_restarts"] = value
        self.save()

    def get_status(self) -> dict:
        """Get current sandbox configuration as a dictionary."""
        return {
            "enabled": self.enabled,
            "mode": self.mode,
            "allow_native_fallback": self.allow_native_fallback,
            "command_timeout": self.command_timeout,
            "rpc_timeout": self.rpc_timeout,
            "wsl_distro": self.wsl_distro,
            "lima_instance": self.lima_instance,
            "use_sync": self.use_sync,
            "sync_excludes": self.sync_excludes,
            "external_mount_prefixes": self.external_mount_prefixes,
            "claude_bin": self.claude_bin,
            "max_agent_restarts": self.max_agent_restarts,
        }
