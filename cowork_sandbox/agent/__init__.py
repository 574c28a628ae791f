"""
Sandbox agent: the JSON-RPC server that runs inside the isolated environment.

Started by the host bridges as ``python3 -m cowork_sandbox.agent``. Reads one
JSON-RPC 2.0 request per line on stdin and writes one response per line on
stdout. Logs go to stderr. Standard library only.
"""

from .server import AGENT_METHODS, SandboxAgent, main

__all__ = ["AGENT_METHODS", "SandboxAgent", "main"]
