"""Tests for the VM bridges, using a locally spawned agent in place of a VM."""

import os
import shutil
import sys
import tempfile
import unittest
from unittest.mock import patch

from cowork_sandbox.errors import RemoteUnavailable, SecurityViolation, UpstreamFailure
from cowork_sandbox.sandbox.base import SandboxSettings
from cowork_sandbox.sandbox.lima_bridge import LimaBridge
from cowork_sandbox.sandbox.rpc_client import AgentState
from cowork_sandbox.sandbox.vm_bridge import VMBridge, build_agent_command
from cowork_sandbox.sandbox.wsl_bridge import WSLBridge, wsl_command

REPO_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


class LocalAgentBridge(VMBridge):
    """Runs the agent as a local subprocess."""

    name = "local"

    def agent_argv(self):
        return [sys.executable, "-m", "cowork_sandbox.agent"]

    async def check_available(self):
        return True


class TestAgentLaunchCommands(unittest.TestCase):
    def test_build_agent_command(self):
        command = build_agent_command(["/mnt/", "/media/x y"], claude_bin="claude")

        self.assertTrue(command.startswith('cd ~ && PYTHONPATH="$HOME/.cowork-sandbox/agent" exec '))
        self.assertIn("python3 -m cowork_sandbox.agent --claude-bin claude", command)
        self.assertIn("--mount-prefix /mnt/", command)
        self.assertIn("--mount-prefix '/media/x y'", command)

    def test_wsl_argv(self):
        self.assertEqual(wsl_command(), ["wsl.exe"])

        argv = WSLBridge(distro="Ubuntu").agent_argv()
        self.assertEqual(argv[:6], ["wsl.exe", "-d", "Ubuntu", "--", "bash", "-c"])
        self.assertIn("cowork_sandbox.agent", argv[6])

    def test_lima_argv(self):
        argv = LimaBridge(instance="dev").agent_argv()

        self.assertEqual(argv[:5], ["limactl", "shell", "dev", "bash", "-c"])
        self.assertIn("cowork_sandbox.agent", argv[5])


class TestBridgeAvailability(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.workspace = tempfile.mkdtemp(prefix="cowork_bridge_avail_")

    async def asyncTearDown(self):
        shutil.rmtree(self.workspace, ignore_errors=True)

    async def test_lima_missing(self):
        bridge = LimaBridge()
        with patch("cowork_sandbox.sandbox.lima_bridge.shutil.which", return_value=None):
            with self.assertRaises(RemoteUnavailable):
                await bridge.initialize(SandboxSettings(workspace_path=self.workspace))
        self.assertFalse(bridge.is_initialized)
        self.assertEqual(bridge.agent_state, AgentState.NOT_STARTED)

    async def test_wsl_requires_windows(self):
        with patch("cowork_sandbox.sandbox.wsl_bridge.sys.platform", "linux"):
            self.assertFalse(await WSLBridge().check_available())


@unittest.skipIf(shutil.which("bash") is None, "requires bash")
class TestBridgeAgainstLocalAgent(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.workspace = os.path.realpath(tempfile.mkdtemp(prefix="cowork_bridge_"))
        pythonpath = os.pathsep.join(p for p in (REPO_ROOT, os.environ.get("PYTHONPATH")) if p)
        self.env_patch = patch.dict(os.environ, {"PYTHONPATH": pythonpath})
        self.env_patch.start()
        self.bridge = LocalAgentBridge()
        await self.bridge.initialize(SandboxSettings(workspace_path=self.workspace, rpc_timeout=10.0))

    async def asyncTearDown(self):
        await self.bridge.shutdown()
        self.env_patch.stop()
        shutil.rmtree(self.workspace, ignore_errors=True)

    async def test_file_operations(self):
        path = os.path.join(self.workspace, "notes", "a.txt")
        await self.bridge.create_directory(os.path.dirname(path))
        await self.bridge.write_file(path, "hello")

        self.assertEqual(await self.bridge.read_file(path), "hello")
        self.assertTrue(await self.bridge.file_exists(path))
        entries = await self.bridge.list_directory(os.path.dirname(path))
        self.assertEqual([(e.name, e.is_directory) for e in entries], [("a.txt", False)])

        copy = os.path.join(self.workspace, "b.txt")
        await self.bridge.copy_file(path, copy)
        await self.bridge.delete_file(path)
        self.assertFalse(await self.bridge.file_exists(path))
        self.assertEqual(await self.bridge.read_file(copy), "hello")

    async def test_execute_command(self):
        result = await self.bridge.execute_command('echo "$WORKSPACE"')

        self.assertTrue(result.success)
        self.assertEqual(result.stdout.strip(), self.workspace)
        self.assertEqual(self.bridge.vm_workspace_path, self.workspace)

    async def test_host_guard_rejects_before_sending(self):
        with self.assertRaises(SecurityViolation):
            await self.bridge.read_file("/etc/passwd")
        with self.assertRaises(SecurityViolation):
            await self.bridge.execute_command("sudo ls")
        self.assertTrue(await self.bridge.ping())

    async def test_restart(self):
        first = self.bridge.client
        await self.bridge.restart()

        self.assertIsNot(self.bridge.client, first)
        self.assertEqual(self.bridge.agent_state, AgentState.READY)
        self.assertTrue(await self.bridge.ping())


@unittest.skipIf(shutil.which("bash") is None, "requires bash")
class TestBridgeWorkspaces(unittest.IsolatedAsyncioTestCase):
    """Mirrored and additional workspaces served by one agent."""

    async def asyncSetUp(self):
        self.root = os.path.realpath(tempfile.mkdtemp(prefix="cowork_bridge_ws_"))
        self.workspace = os.path.join(self.root, "host")
        self.mirror = os.path.join(self.root, "vm-copy")
        self.other = os.path.join(self.root, "other")
        for path in (self.workspace, self.mirror, self.other):
            os.makedirs(path)
        pythonpath = os.pathsep.join(p for p in (REPO_ROOT, os.environ.get("PYTHONPATH")) if p)
        self.env_patch = patch.dict(os.environ, {"PYTHONPATH": pythonpath})
        self.env_patch.start()
        self.bridge = LocalAgentBridge()
        await self.bridge.initialize(
            SandboxSettings(workspace_path=self.workspace, sandbox_workspace_path=self.mirror, rpc_timeout=10.0)
        )

    async def asyncTearDown(self):
        await self.bridge.shutdown()
        self.env_patch.stop()
        shutil.rmtree(self.root, ignore_errors=True)

    async def test_errors_name_host_paths(self):
        missing = os.path.join(self.workspace, "src", "missing.txt")

        with self.assertRaises(UpstreamFailure) as raised:
            await self.bridge.read_file(missing)

        self.assertIn(missing, str(raised.exception))
        self.assertNotIn(self.mirror, str(raised.exception))
        self.assertEqual(self.bridge.to_host(os.path.join(self.mirror, "a.txt")), os.path.join(self.workspace, "a.txt"))

    async def test_mirrored_workspace_is_used_in_the_vm(self):
        await self.bridge.write_file(os.path.join(self.workspace, "a.txt"), "hello")

        self.assertTrue(os.path.isfile(os.path.join(self.mirror, "a.txt")))
        self.assertFalse(os.path.exists(os.path.join(self.workspace, "a.txt")))
        self.assertEqual(self.bridge.vm_workspace_path, self.mirror)

    async def test_added_workspace_survives_restart(self):
        await self.bridge.add_workspace(self.other)
        target = os.path.join(self.other, "b.txt")
        await self.bridge.write_file(target, "two", workspace=self.other)

        await self.bridge.restart()

        self.assertEqual(await self.bridge.read_file(target), "two")
        result = await self.bridge.execute_command('echo "$WORKSPACE"', workspace=self.other)
        self.assertEqual(result.stdout.strip(), self.other)
        with self.assertRaises(SecurityViolation):
            await self.bridge.read_file(target, workspace=self.workspace)

        await self.bridge.remove_workspace(self.other)
        with self.assertRaises(SecurityViolation):
            await self.bridge.read_file(target)



if __name__ == "__main__":
    unittest.main()
