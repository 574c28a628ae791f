"""Command handler for sandbox management.

Handles the `/sandbox` slash command: status, backend setup with phase
retries, mode and fallback preferences, and availability checks.
"""

from typing import Optional

from rich.console import Console
from rich.markdown import Markdown

from cowork_sandbox.config import get_sandbox_debug, set_sandbox_debug
from cowork_sandbox.errors import SandboxError
from cowork_sandbox.sandbox.bootstrap import (
    BootstrapPhase,
    BootstrapProgress,
    BootstrapResult,
    PhaseStatus,
)
from cowork_sandbox.sandbox.config import SANDBOX_MODES
from cowork_sandbox.sandbox.context import SandboxContext, apply_debug_logging

HELP_TEXT = """
# 🔒 Sandbox Management

Commands and file operations run inside an isolated Linux environment
(WSL2 on Windows, a Lima VM on macOS) or, as a fallback, directly on the
host with path and command checks.

## Commands

- `/sandbox status` - Show the active backend and settings
- `/sandbox setup [--force]` - Prepare the backend (cached after success)
- `/sandbox retry <phase>` - Re-run one setup phase
- `/sandbox mode <auto|wsl|lima|native>` - Choose the backend
- `/sandbox fallback <on|off>` - Allow falling back to native execution
- `/sandbox enable` - Run sessions in the isolated environment (default)
- `/sandbox disable` - Run sessions natively, with path checks only
- `/sandbox debug <on|off>` - Log sandbox traffic at debug level
- `/sandbox test` - Check which backends are available

## Example Usage

```bash
/sandbox mode auto
/sandbox setup
/sandbox retry install_dependencies
/sandbox status
```
"""

STATUS_ICONS = {
    PhaseStatus.SUCCEEDED: "✅",
    PhaseStatus.FAILED: "❌",
    PhaseStatus.SKIPPED: "⏭️",
    PhaseStatus.CANCELLED: "⏹️",
    PhaseStatus.PENDING: "…",
    PhaseStatus.RUNNING: "…",
}


def _yes_no(value: bool) -> str:
    return "✅ Yes" if value else "❌ No"


def format_bootstrap_result(result: BootstrapResult) -> str:
    lines = [f"# Sandbox Setup ({result.backend})", ""]
    if result.from_cache:
        lines.append("_Using cached result, run `/sandbox setup --force` to redo it._\n")
    for phase in result.phases:
        icon = STATUS_ICONS.get(phase.status, "")
        line = f"- {icon} **{phase.phase.value}**: {phase.message}"
        if phase.error:
            line += f"  \n  `{phase.error}`"
        lines.append(line)
    failed = result.failed_phases()
    if failed:
        lines.append("")
        lines.append("Retry with " + ", ".join(f"`/sandbox retry {p.value}`" for p in failed))
    return "\n".join(lines)


def format_status(context: SandboxContext) -> str:
    status = context.adapter.get_status()
    settings = context.config.get_status()
    text = f"""
# Sandbox Status

**Enabled:** {_yes_no(settings['enabled'])}
**Mode:** {status['mode']} (preferred: {status['preferred_mode']}, configured: {settings['mode']})
**Platform:** {status['platform']}
**Initialized:** {_yes_no(status['initialized'])}
**Agent:** {status['agent_state'] or 'n/a'}
**Native Fallback:** {_yes_no(settings['allow_native_fallback'])}
**Debug Logging:** {_yes_no(get_sandbox_debug())}
**Workspace Mirror:** {_yes_no(settings['use_sync'])}

**Command Timeout:** {settings['command_timeout']}s
**RPC Timeout:** {settings['rpc_timeout']}s
"""
    if len(status["workspaces"]) > 1:
        text += "**Workspaces:**\n"
        for workspace in status["workspaces"]:
            text += f"  - `{workspace}`\n"
    elif status["workspace"]:
        text += f"**Workspace:** `{status['workspace']}`\n"
    if status["warnings"]:
        text += "\n**Warnings:**\n"
        for warning in status["warnings"]:
            text += f"  - {warning}\n"
    return text


async def handle_sandbox_command(
    command: str,
    context: SandboxContext,
    console: Optional[Console] = None,
) -> bool:
    """Manage sandbox settings. Returns True when the command was handled."""
    console = console or Console()
    tokens = command.split()
    if not tokens or tokens[0].lstrip("/") != "sandbox":
        return False

    if len(tokens) == 1:
        console.print(Markdown(HELP_TEXT))
        return True

    subcommand = tokens[1].lower()
    args = tokens[2:]

    if subcommand == "enable":
        context.config.enabled = True
        console.print(
            "[green]✅ Sandbox enabled! Sessions started from now on run in the isolated environment.[/green]"
        )

    elif subcommand == "disable":
        context.config.enabled = False
        console.print(
            "[yellow]⚠️  Sandbox disabled. Sessions started from now on run natively, "
            "with path checks only.[/yellow]"
        )

    elif subcommand == "debug":
        if len(args) != 1 or args[0] not in ("on", "off"):
            console.print("[red]Usage: /sandbox debug <on|off>[/red]")
            return True
        set_sandbox_debug(args[0] == "on")
        apply_debug_logging()
        console.print(f"[green]Sandbox debug logging {args[0]}.[/green]")

    elif subcommand == "status":
        console.print(Markdown(format_status(context)))

    elif subcommand == "mode":
        if len(args) != 1 or args[0] not in SANDBOX_MODES:
            console.print(f"[red]Usage: /sandbox mode <{'|'.join(SANDBOX_MODES)}>[/red]")
            return True
        context.config.mode = args[0]
        console.print(
            f"[green]Sandbox mode set to {args[0]}.[/green] "
            "It applies to the next session."
        )

    elif subcommand == "fallback":
        if len(args) != 1 or args[0] not in ("on", "off"):
            console.print("[red]Usage: /sandbox fallback <on|off>[/red]")
            return True
        context.config.allow_native_fallback = args[0] == "on"
        console.print(f"[green]Native fallback {'allowed' if args[0] == 'on' else 'disabled'}.[/green]")

    elif subcommand == "setup":
        force = "--force" in args

        def show_progress(progress: BootstrapProgress) -> None:
            percent = f"{progress.percent:3d}% " if progress.percent is not None else ""
            console.print(f"[dim]{percent}{progress.phase.value}[/dim] {progress.message}")

        try:
            bootstrap = context.create_bootstrap(on_progress=show_progress)
            result = await bootstrap.run(force=force)
        except SandboxError as e:
            console.print(f"[red]Sandbox setup failed: {e}[/red]")
            return True
        console.print(Markdown(format_bootstrap_result(result)))

    elif subcommand == "retry":
        if len(args) != 1:
            console.print("[red]Usage: /sandbox retry <phase>[/red]")
            return True
        try:
            phase = BootstrapPhase(args[0])
        except ValueError:
            names = ", ".join(p.value for p in BootstrapPhase)
            console.print(f"[red]Unknown phase: {args[0]}. Phases: {names}[/red]")
            return True
        try:
            bootstrap = context.bootstrap or context.create_bootstrap()
            result = await bootstrap.retry_phase(phase)
        except SandboxError as e:
            console.print(f"[red]Retry failed: {e}[/red]")
            return True
        console.print(Markdown(format_bootstrap_result(result)))

    elif subcommand == "test":
        wsl = await context.adapter.check_wsl()
        lima = await context.adapter.check_lima()
        text = f"""
# Sandbox Availability

- **WSL2:** {_yes_no(wsl['available'])}
- **Lima:** {_yes_no(lima['available'])} (instance `{lima['instance']}`)
- **Native:** ✅ Yes
- **Preferred on this host:** {context.adapter.preferred_mode().value}
"""
        console.print(Markdown(text))

    else:
        console.print(f"[red]Unknown sandbox subcommand: {subcommand}[/red]")
        console.print(Markdown(HELP_TEXT))

    return True
