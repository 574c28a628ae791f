import fnmatch
import logging
import os
import re
from typing import Any, Optional

from pydantic import BaseModel
from pydantic_ai import RunContext

from cowork_sandbox.errors import SandboxError, SecurityViolation
from cowork_sandbox.sandbox.adapter import SandboxAdapter
from cowork_sandbox.sandbox.path_resolver import PathResolver
from cowork_sandbox.sandbox.sync import format_size

logger = logging.getLogger(__name__)

MAX_GLOB_RESULTS = 100
MAX_GREP_MATCHES = 50
GREP_LINE_WIDTH = 100

SKIPPED_DIRECTORIES = {"node_modules", ".git", "dist", "build", "__pycache__"}
TEXT_EXTENSIONS = {
    "",
    ".ts",
    ".tsx",
    ".js",
    ".jsx",
    ".json",
    ".md",
    ".txt",
    ".css",
    ".html",
    ".py",
    ".rs",
    ".go",
    ".java",
    ".c",
    ".cpp",
    ".h",
    ".toml",
    ".yaml",
    ".yml",
}


class ToolResult(BaseModel):
    success: bool
    output: str | None = None
    error: str | None = None


class SandboxToolExecutor:
    """
    Tool-facing operations for one host process.

    User-supplied paths are resolved per session: a virtual mount path goes
    through the PathResolver, an absolute real path must lie in a mount, and
    a relative path is joined to the session's primary mount.
    """

    def __init__(self, adapter: SandboxAdapter, path_resolver: PathResolver):
        self.adapter = adapter
        self.path_resolver = path_resolver

    @property
    def mode(self) -> str:
        return self.adapter.mode.value

    def resolve_workspace_path(self, session_id: str, input_path: Optional[str]) -> str:
        """
        Map a tool-supplied path to a real path inside the session's mounts.

        Raises:
            SecurityViolation: No mount for the session, or path outside every mount
        """
        mounts = self.path_resolver.get_mounts(session_id)
        if not mounts:
            raise SecurityViolation("No mounted workspace for this session")

        trimmed = (input_path or "").strip() or "."
        if trimmed.startswith("/"):
            resolved = self.path_resolver.resolve(session_id, trimmed)
            if resolved is not None:
                return resolved

        if os.path.isabs(trimmed) or re.match(r"^[A-Za-z]:", trimmed):
            candidate = os.path.normpath(trimmed)
        else:
            candidate = os.path.normpath(os.path.join(mounts[0].real, trimmed))

        if not self.path_resolver.is_mounted(session_id, candidate):
            raise SecurityViolation("Path is outside the mounted workspace")
        return candidate

    def _target(self, session_id: str, path: Optional[str]) -> tuple[str, str]:
        """Resolve `path` and name the mounted root the backend checks it against."""
        real = self.resolve_workspace_path(session_id, path)
        return real, self.path_resolver.mount_for(session_id, real).real

    def _display_path(self, session_id: str, real_path: str) -> str:
        return self.path_resolver.to_virtual(session_id, real_path) or real_path

    # ---- operations ----

    async def read_file(self, session_id: str, path: str) -> str:
        target, workspace = self._target(session_id, path)
        return await self.adapter.read_file(target, workspace=workspace)

    async def write_file(self, session_id: str, path: str, content: str) -> None:
        target, workspace = self._target(session_id, path)
        await self.adapter.create_directory(os.path.dirname(target), workspace=workspace)
        await self.adapter.write_file(target, content, workspace=workspace)

    async def edit_file(self, session_id: str, path: str, old_string: str, new_string: str) -> None:
        """Replace the first occurrence of `old_string`; fails if it is absent."""
        target, workspace = self._target(session_id, path)
        if not await self.adapter.file_exists(target, workspace=workspace):
            raise ValueError(f"File not found: {path}")
        content = await self.adapter.read_file(target, workspace=workspace)
        if old_string not in content:
            raise ValueError(f'String not found in file: "{old_string[:50]}..."')
        await self.adapter.write_file(target, content.replace(old_string, new_string, 1), workspace=workspace)

    async def list_directory(self, session_id: str, path: str) -> str:
        target, workspace = self._target(session_id, path)
        entries = await self.adapter.list_directory(target, workspace=workspace)
        lines = []
        for entry in entries:
            if entry.is_directory:
                lines.append(f"[DIR] {entry.name}")
            else:
                size = f" ({format_size(entry.size)})" if entry.size is not None else ""
                lines.append(f"[FILE] {entry.name}{size}")
        return "\n".join(lines) if lines else "Directory is empty"

    async def execute_command(
        self,
        session_id: str,
        command: str,
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        work_dir, workspace = self._target(session_id, cwd or ".")
        result = await self.adapter.execute_command(
            command, cwd=work_dir, timeout=timeout, workspace=workspace
        )
        if result.success:
            return result.stdout or "Command completed successfully"
        raise ValueError(result.stderr.strip() or f"Command exited with code {result.exit_code}")

    async def _walk(self, root: str, workspace: str):
        """Yield (path, is_directory) below root through the active backend."""
        pending = [root]
        while pending:
            directory = pending.pop()
            try:
                entries = await self.adapter.list_directory(directory, workspace=workspace)
            except SandboxError as e:
                logger.debug(f"Skipping unlistable directory {directory}: {e}")
                continue
            for entry in sorted(entries, key=lambda e: e.name):
                full_path = os.path.join(directory, entry.name)
                if entry.is_directory:
                    if entry.name in SKIPPED_DIRECTORIES:
                        continue
                    pending.append(full_path)
                yield full_path, entry.is_directory

    async def glob(self, session_id: str, pattern: str, path: Optional[str] = None) -> str:
        root, workspace = self._target(session_id, path or ".")
        patterns = [pattern]
        if pattern.startswith("**/"):
            patterns.append(pattern[3:])

        matches = []
        async for full_path, _ in self._walk(root, workspace):
            relative = os.path.relpath(full_path, root).replace(os.sep, "/")
            if any(fnmatch.fnmatch(relative, p) for p in patterns):
                matches.append(relative)
                if len(matches) >= MAX_GLOB_RESULTS:
                    break
        return "\n".join(matches) if matches else "No files found"

    async def grep(self, session_id: str, pattern: str, path: Optional[str] = None) -> str:
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            raise ValueError(f"Invalid pattern: {e}") from e
        root, workspace = self._target(session_id, path or ".")

        results: list[str] = []
        async for full_path, is_directory in self._walk(root, workspace):
            if is_directory:
                continue
            if os.path.splitext(full_path)[1].lower() not in TEXT_EXTENSIONS:
                continue
            try:
                content = await self.adapter.read_file(full_path, workspace=workspace)
            except SandboxError as e:
                logger.debug(f"Skipping unreadable file {full_path}: {e}")
                continue

            display = self._display_path(session_id, full_path)
            for number, line in enumerate(content.split("\n"), start=1):
                if regex.search(line):
                    results.append(f"{display}:{number}: {line.strip()[:GREP_LINE_WIDTH]}")
                    if len(results) >= MAX_GREP_MATCHES:
                        return "\n".join(results)
        return "\n".join(results) if results else "No matches found"

    async def execute(
        self,
        tool: str,
        tool_input: dict[str, Any],
        session_id: str,
        cwd: Optional[str] = None,
    ) -> ToolResult:
        """Run a tool by name; every failure comes back as a tagged ToolResult."""
        try:
            if tool == "read":
                output = await self.read_file(session_id, tool_input["path"])
            elif tool == "write":
                await self.write_file(session_id, tool_input["path"], tool_input.get("content", ""))
                output = f"File written: {tool_input['path']}"
            elif tool == "edit":
                await self.edit_file(
                    session_id,
                    tool_input["path"],
                    tool_input["old_string"],
                    tool_input["new_string"],
                )
                output = f"File edited: {tool_input['path']}"
            elif tool == "list":
                output = await self.list_directory(session_id, tool_input.get("path", "."))
            elif tool == "glob":
                output = await self.glob(session_id, tool_input["pattern"], tool_input.get("path"))
            elif tool == "grep":
                output = await self.grep(session_id, tool_input["pattern"], tool_input.get("path"))
            elif tool == "bash":
                output = await self.execute_command(
                    session_id,
                    tool_input["command"],
                    tool_input.get("cwd") or cwd,
                    tool_input.get("timeout"),
                )
            else:
                return ToolResult(success=False, error=f"Unknown tool: {tool}")
        except KeyError as e:
            return ToolResult(success=False, error=f"{tool} failed: missing input {e}")
        except (SandboxError, ValueError) as e:
            logger.info(f"{tool} failed: {e}")
            return ToolResult(success=False, error=f"{tool} failed: {e}")
        return ToolResult(success=True, output=output)


def register_sandbox_tools(agent, executor: SandboxToolExecutor, session_id: str):
    """Register the sandbox tools on a pydantic_ai agent for one session."""

    @agent.tool
    async def sandbox_read_file(context: RunContext, path: str) -> ToolResult:
        """Read a text file from the workspace.

        Args:
            path: File path, relative to the workspace or under /mnt/workspace.
        """
        return await executor.execute("read", {"path": path}, session_id)

    @agent.tool
    async def sandbox_write_file(context: RunContext, path: str, content: str) -> ToolResult:
        """Create or overwrite a file in the workspace, creating parent directories.

        Args:
            path: File path, relative to the workspace or under /mnt/workspace.
            content: Full new file content.
        """
        return await executor.execute("write", {"path": path, "content": content}, session_id)

    @agent.tool
    async def sandbox_edit_file(
        context: RunContext, path: str, old_string: str, new_string: str
    ) -> ToolResult:
        """Replace the first occurrence of old_string with new_string in a file.

        Fails when old_string does not occur in the file.
        """
        return await executor.execute(
            "edit",
            {"path": path, "old_string": old_string, "new_string": new_string},
            session_id,
        )

    @agent.tool
    async def sandbox_list_directory(context: RunContext, path: str = ".") -> ToolResult:
        """List a workspace directory as [DIR]/[FILE] lines with file sizes."""
        return await executor.execute("list", {"path": path}, session_id)

    @agent.tool
    async def sandbox_run_command(
        context: RunContext, command: str, cwd: str | None = None, timeout: int = 60
    ) -> ToolResult:
        """Run a shell command inside the sandbox.

        Args:
            command: Shell command to run.
            cwd: Working directory inside the workspace. Defaults to the workspace root.
            timeout: Seconds before the command is killed. Defaults to 60.

        Returns:
            ToolResult with stdout on success, or stderr / exit code as the error.
        """
        return await executor.execute(
            "bash", {"command": command, "cwd": cwd, "timeout": timeout}, session_id
        )

    @agent.tool
    async def sandbox_glob(context: RunContext, pattern: str, path: str | None = None) -> ToolResult:
        """Find workspace files whose relative path matches a glob pattern (max 100)."""
        return await executor.execute("glob", {"pattern": pattern, "path": path}, session_id)

    @agent.tool
    async def sandbox_grep(context: RunContext, pattern: str, path: str | None = None) -> ToolResult:
        """Search text files for a case-insensitive regex (max 50 matching lines)."""
        return await executor.execute("grep", {"pattern": pattern, "path": path}, session_id)
