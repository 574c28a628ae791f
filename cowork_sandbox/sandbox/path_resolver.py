"""
Per-session mapping of virtual mount paths to real workspace paths.
"""

import logging
import os
import posixpath
import sys
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_VIRTUAL_MOUNT = "/mnt/workspace"


@dataclass
class MountedPath:
    """A virtual prefix mapped to a canonical real directory."""

    virtual: str
    real: str

    def __post_init__(self):
        self.virtual = posixpath.normpath("/" + self.virtual.strip().lstrip("/"))
        self.real = os.path.realpath(os.path.abspath(self.real))


class PathResolver:
    """
    Holds one ordered mount table per session and resolves virtual paths.

    Resolution fails closed: a path that matches no mount, or that escapes
    its mount after normalization, resolves to None.
    """

    def __init__(self, case_insensitive: Optional[bool] = None):
        if case_insensitive is None:
            case_insensitive = sys.platform.startswith("win") or sys.platform == "darwin"
        self.case_insensitive = case_insensitive
        self._mounts: dict[str, list[MountedPath]] = {}

    def set_mounts(self, session_id: str, mounts: list[MountedPath]) -> None:
        """Replace the mount table for a session."""
        self._mounts[session_id] = list(mounts)
        logger.debug(f"Mounts for {session_id}: {[m.virtual for m in mounts]}")

    def add_mount(self, session_id: str, virtual: str, real: str) -> MountedPath:
        mount = MountedPath(virtual=virtual, real=real)
        self._mounts.setdefault(session_id, []).append(mount)
        return mount

    def get_mounts(self, session_id: str) -> list[MountedPath]:
        return list(self._mounts.get(session_id, []))

    def clear_session(self, session_id: str) -> None:
        self._mounts.pop(session_id, None)

    def _fold(self, path: str) -> str:
        return path.lower() if self.case_insensitive else path

    def _is_under(self, path: str, root: str) -> bool:
        path, root = self._fold(path), self._fold(root)
        return path == root or path.startswith(root.rstrip(os.sep) + os.sep)

    def mount_for(self, session_id: str, real_path: str) -> Optional[MountedPath]:
        """The innermost of the session's mounts holding a real path."""
        candidates = (os.path.normpath(os.path.abspath(real_path)), os.path.realpath(real_path))
        holders = [
            m for m in self._mounts.get(session_id, []) if any(self._is_under(c, m.real) for c in candidates)
        ]
        return max(holders, key=lambda m: len(m.real), default=None)

    def is_mounted(self, session_id: str, real_path: str) -> bool:
        """Whether a real path lies inside one of the session's mounts."""
        return self.mount_for(session_id, real_path) is not None

    def resolve(self, session_id: str, virtual_path: str) -> Optional[str]:
        """
        Translate a virtual path into a real path.

        Args:
            session_id: Session whose mount table is used
            virtual_path: POSIX-style path under one of the virtual mounts

        Returns:
            The real path, or None when no mount matches or the result
            escapes the matched mount
        """
        if not virtual_path or "\x00" in virtual_path:
            return None

        normalized = posixpath.normpath("/" + virtual_path.replace("\\", "/").lstrip("/"))
        for mount in self._mounts.get(session_id, []):
            if normalized == mount.virtual:
                relative = ""
            elif normalized.startswith(mount.virtual.rstrip("/") + "/"):
                relative = normalized[len(mount.virtual.rstrip("/")) + 1:]
            else:
                continue

            parts = [p for p in relative.split("/") if p]
            real = os.path.normpath(os.path.join(mount.real, *parts))
            if not self._is_under(real, mount.real):
                logger.warning(f"Rejected path escaping mount {mount.virtual}: {virtual_path}")
                return None
            return real

        return None

    def to_virtual(self, session_id: str, real_path: str) -> Optional[str]:
        """Inverse of resolve: map a real path back to its virtual form."""
        for mount in self._mounts.get(session_id, []):
            real = os.path.normpath(os.path.abspath(real_path))
            if not self._is_under(real, mount.real):
                real = os.path.realpath(real_path)
                if not self._is_under(real, mount.real):
                    continue
            relative = real[len(mount.real):].lstrip(os.sep)
            if not relative:
                return mount.virtual
            return posixpath.join(mount.virtual, *relative.split(os.sep))
        return None
