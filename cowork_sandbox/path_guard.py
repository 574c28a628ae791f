"""
Path and command validation against workspace roots.

Used on the host by every executor and, independently, by the sandbox
agent inside the VM against its own workspace root. Only depends on the
standard library so it can be shipped into the VM next to the agent.
"""

import logging
import os
import re
import sys
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .errors import ConfigurationError, SecurityViolation

logger = logging.getLogger(__name__)

# `..` as a whole path component, plus the plain `../` and `..\` substrings
TRAVERSAL_PATTERN = re.compile(r"(?:^|[\s;|&])\.\.(?:[\s;|&/\\]|$)")
TRAVERSAL_SUBSTRINGS = ("../", "..\\")

POSIX_DANGEROUS_PATTERNS = [
    # recursive delete of the filesystem root or the home directory
    r"\brm\s+(?:-{1,2}[\w-]*\s+)*-(?:[a-zA-Z]*[rR]|-recursive)[\w-]*\s+(?:-{1,2}[\w-]*\s+)*"
    r"[\"']?(?:/|~/?)\*?[\"']?(?=\s|$|[;&|])",
    r"\bdd\s+if=",
    r"\bmkfs",
    r">\s*/dev/(?!(?:null|stdout|stderr)\b)",
    r"\b(?:curl|wget)\b.*\|\s*(?:sudo\s+)?(?:ba|z|da)?sh\b",
    r"\b(?:sudo|doas|pkexec)\s",
    r"\bchmod\s+(?:-R\s+)?777\s+/",
    r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:",
]

WINDOWS_DANGEROUS_PATTERNS = [
    r"\bformat\s+[A-Za-z]:",
    r"\bdel\s+/[sfq]",
    r"\b(?:rmdir|rd)\s+/[sq]",
    r"\breg\s+(?:add|delete)",
    r"\bnet\s+(?:user|localgroup)",
    r"\bpowershell\b.*\s-e(?:nc|ncodedcommand)?\b",
    r"\bSet-ExecutionPolicy\b",
    r"\bRemove-Item\b[^|;&]*\s[\"']?[A-Za-z]:\\?[\"']?(?:\s|$)",
]

POSIX_PATH_TOKEN = re.compile(r"/[\w/\-.]+")
WINDOWS_PATH_TOKEN = re.compile(r"[A-Za-z]:[\\/][\w\\/\-. ]*")

DEFAULT_EXTERNAL_MOUNT_PREFIXES = ("/mnt/",)


@dataclass
class ValidationResult:
    """Outcome of a non-raising validation. Either valid, or a list of errors."""

    valid: bool
    errors: list[str] = field(default_factory=list)

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True, errors=[])

    @classmethod
    def fail(cls, *errors: str) -> "ValidationResult":
        return cls(valid=False, errors=list(errors))


def extract_absolute_paths(command: str, windows: bool = False) -> list[str]:
    """Return the absolute-path-looking tokens found in a command string."""
    tokens = POSIX_PATH_TOKEN.findall(command)
    if windows:
        tokens.extend(t.rstrip() for t in WINDOWS_PATH_TOKEN.findall(command))
    return tokens


class PathGuard:
    """
    Validates paths and shell commands against a workspace root.

    A path is accepted when its normalized form, and its symlink-resolved
    form, both lie on or below the workspace root. Commands are rejected
    when they contain traversal, match a destructive pattern, or reference
    a path under one of the external mount prefixes that resolves outside
    the workspace.
    """

    def __init__(
        self,
        workspace_root: Optional[str],
        external_mount_prefixes: Optional[Iterable[str]] = None,
        windows: Optional[bool] = None,
        case_insensitive: Optional[bool] = None,
    ):
        """
        Args:
            workspace_root: Directory every validated path must stay under
            external_mount_prefixes: Prefixes of foreign mounts (e.g. /mnt/)
                whose paths must resolve inside the workspace when they
                appear in a command
            windows: Also apply Windows command patterns (default: host OS)
            case_insensitive: Fold case when comparing (default: Windows and
                macOS hosts)
        """
        if windows is None:
            windows = sys.platform.startswith("win")
        if case_insensitive is None:
            case_insensitive = sys.platform.startswith("win") or sys.platform == "darwin"

        self.windows = windows
        self.case_insensitive = case_insensitive
        self.external_mount_prefixes = tuple(
            external_mount_prefixes
            if external_mount_prefixes is not None
            else DEFAULT_EXTERNAL_MOUNT_PREFIXES
        )

        self.workspace_root = ""
        self._real_root = ""
        if workspace_root:
            self.workspace_root = os.path.normpath(os.path.abspath(workspace_root))
            self._real_root = os.path.realpath(self.workspace_root)

        patterns = list(POSIX_DANGEROUS_PATTERNS)
        if windows:
            patterns.extend(WINDOWS_DANGEROUS_PATTERNS)
        self._dangerous = [re.compile(p, re.IGNORECASE) for p in patterns]

    def _fold(self, path: str) -> str:
        return path.lower() if self.case_insensitive else path

    def _is_under(self, path: str, root: str) -> bool:
        path, root = self._fold(path), self._fold(root)
        if path == root:
            return True
        return path.startswith(root.rstrip("/\\") + os.sep)

    def is_within_workspace(self, path: str) -> bool:
        """Lexical containment check, no filesystem access."""
        if not self.workspace_root:
            return False
        return self._is_under(path, self.workspace_root) or self._is_under(
            path, self._real_root
        )

    def validate_path(self, target: str) -> str:
        """
        Return the normalized absolute form of `target` if it is inside the
        workspace, otherwise raise.

        Raises:
            ConfigurationError: No workspace root configured
            SecurityViolation: Path outside the workspace or symlink escape
        """
        if not self.workspace_root:
            raise ConfigurationError("Workspace not configured")
        if not target or "\x00" in target:
            raise SecurityViolation("Invalid path", detail=repr(target))

        candidate = target if os.path.isabs(target) else os.path.join(self.workspace_root, target)
        resolved = os.path.normpath(os.path.abspath(candidate))

        if not self.is_within_workspace(resolved):
            raise SecurityViolation(f"Path is outside workspace: {resolved}")

        # realpath resolves existing components, which also catches a
        # symlinked parent of a file that does not exist yet
        real = os.path.realpath(resolved)
        if not self._is_under(real, self._real_root):
            raise SecurityViolation(f"Symlink escape detected: {resolved} -> {real}")

        return resolved

    def validate_command(self, command: str, cwd: str) -> None:
        """
        Raise SecurityViolation if `command` run in `cwd` is not allowed.
        """
        self.validate_path(cwd)

        if TRAVERSAL_PATTERN.search(command) or any(
            s in command for s in TRAVERSAL_SUBSTRINGS
        ):
            raise SecurityViolation("Path traversal detected in command")

        for pattern in self._dangerous:
            if pattern.search(command):
                logger.warning(f"Blocked dangerous command pattern: {pattern.pattern}")
                raise SecurityViolation("Potentially dangerous command blocked")

        for token in extract_absolute_paths(command, windows=self.windows):
            if not self._is_external_mount_path(token):
                continue
            normalized = os.path.normpath(token)
            if not self.is_within_workspace(normalized):
                raise SecurityViolation(f"Command references path outside workspace: {token}")

    def _is_external_mount_path(self, token: str) -> bool:
        folded = self._fold(token)
        return any(folded.startswith(self._fold(p)) for p in self.external_mount_prefixes)

    def check_path(self, target: str) -> ValidationResult:
        """Non-raising form of validate_path."""
        try:
            self.validate_path(target)
        except (ConfigurationError, SecurityViolation) as e:
            return ValidationResult.fail(str(e))
        return ValidationResult.ok()

    def check_command(self, command: str, cwd: str) -> ValidationResult:
        """Non-raising form of validate_command."""
        try:
            self.validate_command(command, cwd)
        except (ConfigurationError, SecurityViolation) as e:
            return ValidationResult.fail(str(e))
        return ValidationResult.ok()


class WorkspaceGuards:
    """
    One PathGuard per workspace root served by a shared backend.

    Sessions that share an executor each register their own root. A call
    naming a workspace is checked against that root only; otherwise an
    absolute path is checked against the registered root that holds it,
    and a relative path against the primary (first registered) root.
    """

    def __init__(
        self,
        external_mount_prefixes: Optional[Iterable[str]] = None,
        windows: Optional[bool] = None,
        case_insensitive: Optional[bool] = None,
    ):
        if case_insensitive is None:
            case_insensitive = sys.platform.startswith("win") or sys.platform == "darwin"
        self.case_insensitive = case_insensitive
        self._options = {
            "external_mount_prefixes": external_mount_prefixes,
            "windows": windows,
            "case_insensitive": case_insensitive,
        }
        self._guards: dict[str, PathGuard] = {}

    def __len__(self) -> int:
        return len(self._guards)

    def _key(self, root: str) -> str:
        key = os.path.normpath(os.path.abspath(root))
        return key.lower() if self.case_insensitive else key

    @property
    def roots(self) -> list[str]:
        return [guard.workspace_root for guard in self._guards.values()]

    @property
    def primary(self) -> Optional[PathGuard]:
        return next(iter(self._guards.values()), None)

    def add(self, root: str) -> PathGuard:
        """Register `root`; registering it again returns the existing guard."""
        if not root:
            raise ConfigurationError("Workspace path is required")
        key = self._key(root)
        if key not in self._guards:
            self._guards[key] = PathGuard(root, **self._options)
        return self._guards[key]

    def remove(self, root: str) -> Optional[PathGuard]:
        return self._guards.pop(self._key(root), None)

    def clear(self) -> None:
        self._guards.clear()

    def get(self, root: str) -> PathGuard:
        guard = self._guards.get(self._key(root))
        if guard is None:
            raise ConfigurationError(f"Workspace not registered: {root}")
        return guard

    def guard_for(self, target: Optional[str], workspace: Optional[str] = None) -> PathGuard:
        """The guard `target` is checked against."""
        if workspace:
            return self.get(workspace)
        if not self._guards:
            raise ConfigurationError("Workspace not configured")
        if target and os.path.isabs(target):
            normalized = os.path.normpath(target)
            holders = [g for g in self._guards.values() if g.is_within_workspace(normalized)]
            if holders:
                # nested roots: the innermost one owns the path
                return max(holders, key=lambda g: len(g.workspace_root))
        return self.primary

    def validate_path(self, target: str, workspace: Optional[str] = None) -> str:
        return self.guard_for(target, workspace).validate_path(target)

    def validate_command(
        self,
        command: str,
        cwd: Optional[str] = None,
        workspace: Optional[str] = None,
    ) -> tuple[PathGuard, str]:
        """
        Check `command` against the root it runs in.

        Returns:
            The guard that accepted it and the validated working directory
        """
        guard = self.guard_for(cwd, workspace)
        work_dir = guard.validate_path(cwd or guard.workspace_root)
        guard.validate_command(command, work_dir)
        return guard, work_dir
