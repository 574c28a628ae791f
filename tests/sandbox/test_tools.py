"""Tests for the tool-facing sandbox operations."""

import os
import shutil
import tempfile
import unittest
from pathlib import Path

from cowork_sandbox.sandbox.adapter import SandboxAdapter
from cowork_sandbox.sandbox.base import SandboxSettings
from cowork_sandbox.sandbox.config import SandboxConfig
from cowork_sandbox.sandbox.path_resolver import DEFAULT_VIRTUAL_MOUNT, MountedPath, PathResolver
from cowork_sandbox.tools.sandbox_tools import SandboxToolExecutor, register_sandbox_tools


class FakeAgent:
    """Collects functions registered with @agent.tool."""

    def __init__(self):
        self.tools = {}

    def tool(self, fn):
        self.tools[fn.__name__] = fn
        return fn


@unittest.skipIf(shutil.which("bash") is None, "requires bash")
class TestSandboxToolExecutor(unittest.IsolatedAsyncioTestCase):
    """Runs the tools against the native backend."""

    async def asyncSetUp(self):
        self.temp_dir = os.path.realpath(tempfile.mkdtemp(prefix="cowork_tools_"))
        self.workspace = os.path.join(self.temp_dir, "project")
        os.makedirs(os.path.join(self.workspace, "src"))
        os.makedirs(os.path.join(self.workspace, "node_modules", "dep"))
        with open(os.path.join(self.workspace, "README.md"), "w") as f:
            f.write("hello")
        with open(os.path.join(self.workspace, "src", "app.py"), "w") as f:
            f.write("def main():\n    print('Hello world')\n")
        with open(os.path.join(self.workspace, "node_modules", "dep", "index.py"), "w") as f:
            f.write("print('hello from dep')\n")

        config = SandboxConfig(config_dir=Path(self.temp_dir) / "config")
        self.adapter = SandboxAdapter(config, platform="linux")
        await self.adapter.initialize(SandboxSettings(workspace_path=self.workspace))

        self.resolver = PathResolver(case_insensitive=False)
        self.resolver.set_mounts("s1", [MountedPath(DEFAULT_VIRTUAL_MOUNT, self.workspace)])
        self.executor = SandboxToolExecutor(self.adapter, self.resolver)

    async def asyncTearDown(self):
        await self.adapter.shutdown()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    async def test_resolve_workspace_path(self):
        self.assertEqual(
            self.executor.resolve_workspace_path("s1", "/mnt/workspace/src/app.py"),
            os.path.join(self.workspace, "src", "app.py"),
        )
        self.assertEqual(
            self.executor.resolve_workspace_path("s1", "src/app.py"),
            os.path.join(self.workspace, "src", "app.py"),
        )
        self.assertEqual(self.executor.resolve_workspace_path("s1", "  "), self.workspace)
        self.assertEqual(
            self.executor.resolve_workspace_path("s1", os.path.join(self.workspace, "README.md")),
            os.path.join(self.workspace, "README.md"),
        )

    async def test_read_and_write_through_virtual_mount(self):
        result = await self.executor.execute(
            "write", {"path": "/mnt/workspace/docs/notes.md", "content": "# Notes"}, "s1"
        )
        self.assertTrue(result.success, result.error)
        self.assertTrue(os.path.isfile(os.path.join(self.workspace, "docs", "notes.md")))

        result = await self.executor.execute("read", {"path": "docs/notes.md"}, "s1")
        self.assertEqual(result.output, "# Notes")

    async def test_path_outside_mount(self):
        result = await self.executor.execute("read", {"path": "/etc/passwd"}, "s1")

        self.assertFalse(result.success)
        self.assertIn("outside the mounted workspace", result.error)

        result = await self.executor.execute("read", {"path": "../outside.txt"}, "s1")
        self.assertFalse(result.success)

    async def test_session_without_mounts(self):
        result = await self.executor.execute("read", {"path": "README.md"}, "unknown")

        self.assertFalse(result.success)
        self.assertIn("No mounted workspace", result.error)

    async def test_edit(self):
        result = await self.executor.execute(
            "edit",
            {"path": "src/app.py", "old_string": "Hello world", "new_string": "Hi"},
            "s1",
        )
        self.assertTrue(result.success, result.error)
        with open(os.path.join(self.workspace, "src", "app.py")) as f:
            self.assertIn("print('Hi')", f.read())

        result = await self.executor.execute(
            "edit", {"path": "src/app.py", "old_string": "absent", "new_string": "x"}, "s1"
        )
        self.assertFalse(result.success)
        self.assertIn("String not found", result.error)

        result = await self.executor.execute(
            "edit", {"path": "src/missing.py", "old_string": "a", "new_string": "b"}, "s1"
        )
        self.assertIn("File not found", result.error)

    async def test_list(self):
        result = await self.executor.execute("list", {"path": "."}, "s1")

        lines = result.output.splitlines()
        self.assertIn("[DIR] src", lines)
        self.assertIn("[FILE] README.md (5 B)", lines)

        os.makedirs(os.path.join(self.workspace, "empty"))
        result = await self.executor.execute("list", {"path": "empty"}, "s1")
        self.assertEqual(result.output, "Directory is empty")

    async def test_glob(self):
        result = await self.executor.execute("glob", {"pattern": "**/*.py"}, "s1")
        self.assertEqual(result.output, "src/app.py")

        result = await self.executor.execute("glob", {"pattern": "*.md"}, "s1")
        self.assertEqual(result.output, "README.md")

        result = await self.executor.execute("glob", {"pattern": "*.rs"}, "s1")
        self.assertEqual(result.output, "No files found")

    async def test_grep(self):
        result = await self.executor.execute("grep", {"pattern": "hello"}, "s1")

        self.assertEqual(
            result.output.splitlines(),
            ["/mnt/workspace/README.md:1: hello", "/mnt/workspace/src/app.py:2: print('Hello world')"],
        )

        result = await self.executor.execute("grep", {"pattern": "zzz"}, "s1")
        self.assertEqual(result.output, "No matches found")

        result = await self.executor.execute("grep", {"pattern": "("}, "s1")
        self.assertFalse(result.success)
        self.assertIn("Invalid pattern", result.error)

    async def test_bash(self):
        result = await self.executor.execute("bash", {"command": "echo hi"}, "s1")
        self.assertEqual(result.output, "hi\n")

        result = await self.executor.execute("bash", {"command": "true"}, "s1")
        self.assertEqual(result.output, "Command completed successfully")

        result = await self.executor.execute("bash", {"command": "exit 3"}, "s1")
        self.assertFalse(result.success)
        self.assertIn("code 3", result.error)

        result = await self.executor.execute("bash", {"command": "sudo ls"}, "s1")
        self.assertFalse(result.success)
        self.assertIn("dangerous", result.error)

    async def test_bash_cwd_is_resolved(self):
        result = await self.executor.execute("bash", {"command": "pwd"}, "s1", cwd="/mnt/workspace/src")

        self.assertEqual(os.path.realpath(result.output.strip()), os.path.join(self.workspace, "src"))

    async def test_bad_input(self):
        result = await self.executor.execute("teleport", {}, "s1")
        self.assertEqual(result.error, "Unknown tool: teleport")

        result = await self.executor.execute("read", {}, "s1")
        self.assertFalse(result.success)
        self.assertIn("missing input", result.error)

    async def test_register_sandbox_tools(self):
        agent = FakeAgent()
        register_sandbox_tools(agent, self.executor, "s1")

        self.assertEqual(
            set(agent.tools),
            {
                "sandbox_read_file",
                "sandbox_write_file",
                "sandbox_edit_file",
                "sandbox_list_directory",
                "sandbox_run_command",
                "sandbox_glob",
                "sandbox_grep",
            },
        )
        result = await agent.tools["sandbox_read_file"](None, "README.md")
        self.assertEqual(result.output, "hello")


if __name__ == "__main__":
    unittest.main()
