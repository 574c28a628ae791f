"""
cowork-sandbox: sandboxed command and file execution for coding agents.

Runs agent-issued shell commands and file operations against a user's
workspace, either on the host behind path/command guards or inside an
isolated Linux environment:
- Windows: a WSL2 distribution running the sandbox agent
- macOS: a Lima VM running the sandbox agent
- Everywhere: a guarded native executor as the fallback

This top-level package stays free of third-party imports so the agent
modules can be copied into the VM and run with a bare python3.
"""

__version__ = "0.3.0"
