"""Tests for the in-VM sandbox agent."""

import asyncio
import json
import os
import shutil
import sys
import tempfile
import unittest

from cowork_sandbox import __version__
from cowork_sandbox.agent.server import SandboxAgent, parse_message_lines
from cowork_sandbox.errors import (
    JSONRPC_CONFIGURATION_ERROR,
    JSONRPC_INVALID_REQUEST,
    JSONRPC_METHOD_NOT_FOUND,
    JSONRPC_SECURITY_VIOLATION,
    SecurityViolation,
)
from cowork_sandbox.sandbox.rpc_client import AgentRpcClient, AgentState

REPO_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _request(method, params=None, request_id="req-1"):
    return json.dumps({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}})


class TestAgentProtocol(unittest.IsolatedAsyncioTestCase):
    """Test cases for SandboxAgent.process_line."""

    async def asyncSetUp(self):
        self.workspace = os.path.realpath(tempfile.mkdtemp(prefix="cowork_agent_"))
        self.agent = SandboxAgent()

    async def asyncTearDown(self):
        shutil.rmtree(self.workspace, ignore_errors=True)

    async def _call(self, method, params=None):
        return await self.agent.process_line(_request(method, params))

    async def test_unparsable_line(self):
        response = await self.agent.process_line("{not json")

        self.assertEqual(response["id"], "unknown")
        self.assertEqual(response["error"]["code"], JSONRPC_INVALID_REQUEST)

    async def test_invalid_request_without_id(self):
        response = await self.agent.process_line(json.dumps({"jsonrpc": "2.0", "method": "ping"}))

        self.assertEqual(response["id"], "unknown")
        self.assertEqual(response["error"]["code"], JSONRPC_INVALID_REQUEST)

    async def test_invalid_request_keeps_id(self):
        response = await self.agent.process_line(json.dumps({"jsonrpc": "1.0", "id": "x-1", "method": "ping"}))

        self.assertEqual(response["id"], "x-1")
        self.assertEqual(response["error"]["code"], JSONRPC_INVALID_REQUEST)

    async def test_blank_line_is_ignored(self):
        self.assertIsNone(await self.agent.process_line("   "))

    async def test_unknown_method(self):
        response = await self._call("launchMissiles")

        self.assertEqual(response["error"]["code"], JSONRPC_METHOD_NOT_FOUND)

    async def test_ping(self):
        response = await self._call("ping")

        self.assertEqual(response["result"], {"pong": True, "version": __version__})

    async def test_operations_before_set_workspace(self):
        response = await self._call("readFile", {"path": "/etc/hostname"})

        self.assertEqual(response["error"]["code"], JSONRPC_CONFIGURATION_ERROR)

    async def test_set_workspace_missing_directory(self):
        response = await self._call("setWorkspace", {"path": os.path.join(self.workspace, "nope")})

        self.assertEqual(response["error"]["code"], JSONRPC_CONFIGURATION_ERROR)

    async def test_file_operations(self):
        response = await self._call("setWorkspace", {"path": self.workspace, "hostPath": "C:\\proj"})
        self.assertEqual(response["result"], {"success": True, "workspace": self.workspace})

        target = os.path.join(self.workspace, "dir", "a.txt")
        response = await self._call("writeFile", {"path": target, "content": "hello"})
        self.assertEqual(response["result"], {"success": True})

        response = await self._call("readFile", {"path": target})
        self.assertEqual(response["result"], {"content": "hello"})

        response = await self._call("copyFile", {"src": target, "dest": os.path.join(self.workspace, "b.txt")})
        self.assertEqual(response["result"], {"success": True})

        response = await self._call("listDirectory", {"path": self.workspace})
        entries = {e["name"]: e for e in response["result"]["entries"]}
        self.assertTrue(entries["dir"]["isDirectory"])
        self.assertEqual(entries["b.txt"]["size"], 5)

        response = await self._call("deleteFile", {"path": target})
        self.assertEqual(response["result"], {"success": True})
        response = await self._call("fileExists", {"path": target})
        self.assertEqual(response["result"], {"exists": False})

    async def test_path_outside_workspace(self):
        await self.agent.set_workspace({"path": self.workspace})

        response = await self._call("readFile", {"path": "/etc/passwd"})
        self.assertEqual(response["error"]["code"], JSONRPC_SECURITY_VIOLATION)

        response = await self._call("fileExists", {"path": "/etc/passwd"})
        self.assertEqual(response["result"], {"exists": False})

    async def test_guard_applies_directly(self):
        await self.agent.set_workspace({"path": self.workspace})

        with self.assertRaises(SecurityViolation):
            await self.agent.write_file({"path": "/tmp/../etc/x", "content": ""})

    @unittest.skipUnless(os.path.exists("/bin/bash"), "requires /bin/bash")
    async def test_execute_command(self):
        await self.agent.set_workspace({"path": self.workspace, "hostPath": "/host/proj"})

        response = await self._call("executeCommand", {"command": 'echo "$HOST_WORKSPACE"; exit 2'})
        result = response["result"]

        self.assertEqual(result["exitCode"], 2)
        self.assertEqual(result["stdout"], "/host/proj\n")
        self.assertFalse(result["timedOut"])

    @unittest.skipUnless(os.path.exists("/bin/bash"), "requires /bin/bash")
    async def test_execute_command_timeout(self):
        await self.agent.set_workspace({"path": self.workspace})

        response = await self._call("executeCommand", {"command": "sleep 5", "timeout": 0.3})
        result = response["result"]

        self.assertEqual(result["exitCode"], -9)
        self.assertTrue(result["timedOut"])

    @unittest.skipUnless(os.path.exists("/bin/bash"), "requires /bin/bash")
    async def test_execute_command_background_child(self):
        await self.agent.set_workspace({"path": self.workspace})
        loop = asyncio.get_running_loop()
        started = loop.time()

        response = await self._call("executeCommand", {"command": "echo hi; sleep 6 &", "timeout": 1})
        result = response["result"]

        self.assertLess(loop.time() - started, 5)
        self.assertEqual(result["stdout"], "hi\n")
        self.assertEqual(result["exitCode"], 0)
        self.assertFalse(result["timedOut"])

    async def test_several_workspaces(self):
        other = os.path.realpath(tempfile.mkdtemp(prefix="cowork_agent_other_"))
        self.addCleanup(shutil.rmtree, other, True)
        await self.agent.set_workspace({"path": self.workspace})

        response = await self._call("addWorkspace", {"path": other, "hostPath": "/host/other"})
        self.assertEqual(response["result"], {"success": True, "workspace": other})

        first = os.path.join(self.workspace, "a.txt")
        second = os.path.join(other, "b.txt")
        await self._call("writeFile", {"path": first, "content": "one"})
        await self._call("writeFile", {"path": second, "content": "two", "workspace": other})
        response = await self._call("readFile", {"path": first})
        self.assertEqual(response["result"]["content"], "one")
        response = await self._call("readFile", {"path": "b.txt", "workspace": other})
        self.assertEqual(response["result"]["content"], "two")

        response = await self._call("readFile", {"path": second, "workspace": self.workspace})
        self.assertEqual(response["error"]["code"], JSONRPC_SECURITY_VIOLATION)

        response = await self._call("removeWorkspace", {"path": other})
        self.assertEqual(response["result"], {"success": True, "removed": True})
        response = await self._call("readFile", {"path": "b.txt", "workspace": other})
        self.assertEqual(response["error"]["code"], JSONRPC_CONFIGURATION_ERROR)
        response = await self._call("readFile", {"path": first})
        self.assertEqual(response["result"]["content"], "one")

    async def test_dangerous_command(self):
        await self.agent.set_workspace({"path": self.workspace})

        response = await self._call("executeCommand", {"command": "sudo reboot"})
        self.assertEqual(response["error"]["code"], JSONRPC_SECURITY_VIOLATION)

    async def test_serve_stops_on_shutdown(self):
        reader = asyncio.StreamReader()
        written = []
        reader.feed_data((_request("ping", request_id="a") + "\n").encode())
        reader.feed_data((_request("shutdown", request_id="b") + "\n").encode())

        await asyncio.wait_for(self.agent.serve(reader, written.append), timeout=2.0)

        responses = {json.loads(line)["id"]: json.loads(line) for line in written}
        self.assertTrue(responses["a"]["result"]["pong"])
        self.assertEqual(responses["b"]["result"], {"success": True})
        self.assertTrue(self.agent.shutting_down)

    async def test_serve_stops_on_eof(self):
        reader = asyncio.StreamReader()
        reader.feed_eof()

        await asyncio.wait_for(self.agent.serve(reader, lambda line: None), timeout=2.0)


class TestParseMessageLines(unittest.TestCase):
    def test_mixed_output(self):
        output = '{"type": "assistant", "text": "hi"}\nplain text\n\n[1, 2]\n'

        self.assertEqual(
            parse_message_lines(output),
            [
                {"type": "assistant", "text": "hi"},
                {"type": "text", "content": "plain text"},
                {"type": "text", "content": "[1, 2]"},
            ],
        )


class TestAgentSubprocess(unittest.IsolatedAsyncioTestCase):
    """Runs the real agent module behind the RPC client."""

    async def asyncSetUp(self):
        self.workspace = os.path.realpath(tempfile.mkdtemp(prefix="cowork_agent_e2e_"))
        pythonpath = os.pathsep.join(p for p in (REPO_ROOT, os.environ.get("PYTHONPATH")) if p)
        self.client = AgentRpcClient(
            [sys.executable, "-m", "cowork_sandbox.agent"],
            env={"PYTHONPATH": pythonpath},
            rpc_timeout=10.0,
        )

    async def asyncTearDown(self):
        await self.client.stop()
        shutil.rmtree(self.workspace, ignore_errors=True)

    async def test_round_trip_through_real_agent(self):
        await self.client.start()
        self.assertEqual(self.client.state, AgentState.READY)

        await self.client.request("setWorkspace", {"path": self.workspace})
        target = os.path.join(self.workspace, "notes.txt")
        await self.client.request("writeFile", {"path": target, "content": "line one\n"})

        results = await asyncio.gather(
            self.client.request("readFile", {"path": target}),
            self.client.request("fileExists", {"path": target}),
            self.client.request("ping", {}),
        )
        self.assertEqual(results[0], {"content": "line one\n"})
        self.assertEqual(results[1], {"exists": True})
        self.assertEqual(results[2]["version"], __version__)

        with self.assertRaises(SecurityViolation):
            await self.client.request("readFile", {"path": "/etc/passwd"})

        await self.client.stop()
        self.assertEqual(self.client.state, AgentState.STOPPED)


if __name__ == "__main__":
    unittest.main()
