"""
Bidirectional host <-> VM path mapping.

Paths sent across a bridge go through ``to_vm``; paths coming back go
through ``to_host`` before a caller sees them.
"""

import ntpath
import posixpath
import re
from typing import Optional

_DRIVE_PATH = re.compile(r"^([A-Za-z]):(?:([\\/])(.*))?$")


class PathConverter:
    """Identity mapping, used when host and VM share a namespace."""

    def to_vm(self, host_path: str) -> str:
        return host_path

    def to_host(self, vm_path: str) -> str:
        return vm_path


class WslPathConverter(PathConverter):
    """
    Maps Windows drive paths onto the WSL automount root.

    ``C:\\Users\\me\\proj`` <-> ``/mnt/c/Users/me/proj``. Paths already in
    POSIX form pass through unchanged in both directions except for
    ``/mnt/<drive>`` paths, which map back to drive paths.

    WSL names every drive in lower case, so the converter remembers how
    the host spelled each drive letter and which separator it used; a
    converted path maps back to the same spelling, trailing separator
    included. Drive-relative paths (``C:foo``) are not accepted.
    """

    def __init__(self, mount_root: str = "/mnt"):
        self.mount_root = mount_root.rstrip("/")
        self._mount_pattern = re.compile(
            r"^" + re.escape(self.mount_root) + r"/([a-z])(?:/(.*))?$"
        )
        # drive -> (letter as written on the host, separator)
        self._drive_styles: dict[str, tuple[str, str]] = {}

    def to_vm(self, host_path: str) -> str:
        match = _DRIVE_PATH.match(host_path)
        if not match:
            return host_path.replace("\\", "/")
        letter, sep, rest = match.group(1), match.group(2), match.group(3) or ""
        drive = letter.lower()
        self._drive_styles[drive] = (letter, sep or "\\")
        base = f"{self.mount_root}/{drive}"
        if not rest:
            return base
        return base + "/" + rest.replace("\\", "/")

    def to_host(self, vm_path: str) -> str:
        match = self._mount_pattern.match(vm_path)
        if not match:
            return vm_path
        drive, rest = match.group(1), match.group(2) or ""
        letter, sep = self._drive_styles.get(drive, (drive.upper(), "\\"))
        return f"{letter}:{sep}" + rest.replace("/", sep)


class PrefixPathConverter(PathConverter):
    """
    Maps one host directory onto one VM directory.

    Used for Lima mounts at a different location and for mirrored sandbox
    directories. Paths outside the prefix pass through unchanged.
    """

    def __init__(self, host_prefix: str, vm_prefix: str, windows_host: bool = False):
        self._host_mod = ntpath if windows_host else posixpath
        self.host_prefix = self._host_mod.normpath(host_prefix)
        self.vm_prefix = posixpath.normpath(vm_prefix)

    @staticmethod
    def _relative(path: str, prefix: str, sep: str) -> Optional[str]:
        if path == prefix:
            return ""
        if path.startswith(prefix.rstrip(sep) + sep):
            return path[len(prefix.rstrip(sep)) + 1:]
        return None

    def contains_host(self, host_path: str) -> bool:
        return self._relative(host_path, self.host_prefix, self._host_mod.sep) is not None

    def contains_vm(self, vm_path: str) -> bool:
        return self._relative(vm_path, self.vm_prefix, "/") is not None

    def to_vm(self, host_path: str) -> str:
        relative = self._relative(host_path, self.host_prefix, self._host_mod.sep)
        if relative is None:
            return host_path
        if not relative:
            return self.vm_prefix
        return posixpath.join(self.vm_prefix, *relative.split(self._host_mod.sep))

    def to_host(self, vm_path: str) -> str:
        relative = self._relative(vm_path, self.vm_prefix, "/")
        if relative is None:
            return vm_path
        if not relative:
            return self.host_prefix
        return self._host_mod.join(self.host_prefix, *relative.split("/"))

