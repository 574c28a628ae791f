"""
Phased, cached, retryable preparation of a sandbox backend.

Each backend declares an ordered list of phases with dependencies. A phase
whose dependency did not succeed is skipped; unrelated phases still run.
The result of every run is cached on disk, so later session starts skip
phases that already succeeded and a retry re-runs only what is needed.
"""

import asyncio
import io
import json
import logging
import os
import shutil
import sys
import tarfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field, ValidationError

from .. import __version__
from .. import config as global_config
from ..errors import ConfigurationError, SandboxError, SandboxTimeout, UpstreamFailure
from .native_executor import shell_argv
from .process import ProcessOutput, run_process
from .vm_bridge import AGENT_HOME
from .vm_shell import LimaShell, LocalShell, WslShell

logger = logging.getLogger(__name__)

INSTALL_TIMEOUT = 900.0
VM_START_TIMEOUT = 600.0
PROBE_TIMEOUT = 30.0

AGENT_PACKAGE_FILES = (
    "__init__.py",
    "errors.py",
    "path_guard.py",
    "agent/__init__.py",
    "agent/__main__.py",
    "agent/server.py",
)

INSTALL_DEPENDENCIES_SCRIPT = (
    "if command -v python3 >/dev/null && command -v rsync >/dev/null; then "
    "echo 'python3 and rsync present'; "
    "elif command -v apt-get >/dev/null; then "
    "sudo -n apt-get update -q && sudo -n apt-get install -y -q python3 rsync; "
    "elif command -v dnf >/dev/null; then sudo -n dnf install -y python3 rsync; "
    "elif command -v apk >/dev/null; then sudo -n apk add python3 rsync; "
    "else echo 'no supported package manager' >&2; exit 1; fi"
)


class BootstrapPhase(str, Enum):
    DETECT_RUNTIME = "detect_runtime"
    ENUMERATE_DISTROS = "enumerate_distros"
    CREATE_INSTANCE = "create_instance"
    START_INSTANCE = "start_instance"
    INSTALL_DEPENDENCIES = "install_dependencies"
    DEPLOY_AGENT = "deploy_agent"
    READY = "ready"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class BootstrapProgress(BaseModel):
    phase: BootstrapPhase
    message: str
    percent: int | None = None
    status: PhaseStatus = PhaseStatus.RUNNING


class PhaseResult(BaseModel):
    phase: BootstrapPhase
    status: PhaseStatus = PhaseStatus.PENDING
    message: str = ""
    error: str | None = None


class BootstrapResult(BaseModel):
    backend: str
    phases: list[PhaseResult] = Field(default_factory=list)
    # facts discovered by phases (chosen distro, ...), restored with the cache
    state: dict[str, Any] = Field(default_factory=dict)
    from_cache: bool = False

    @property
    def success(self) -> bool:
        return bool(self.phases) and all(p.status == PhaseStatus.SUCCEEDED for p in self.phases)

    def get(self, phase: BootstrapPhase) -> Optional[PhaseResult]:
        for result in self.phases:
            if result.phase == phase:
                return result
        return None

    def failed_phases(self) -> list[BootstrapPhase]:
        return [p.phase for p in self.phases if p.status == PhaseStatus.FAILED]


@dataclass
class PhaseSpec:
    phase: BootstrapPhase
    description: str
    run: Callable[[], Awaitable[str]]
    depends_on: tuple[BootstrapPhase, ...] = ()
    timeout: Optional[float] = None


ProgressCallback = Callable[[BootstrapProgress], None]


def build_agent_archive() -> bytes:
    """Gzipped tarball of the stdlib-only agent package, laid out for PYTHONPATH."""
    package_root = Path(__file__).resolve().parent.parent
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for relative in AGENT_PACKAGE_FILES:
            tar.add(package_root / relative, arcname=f"cowork_sandbox/{relative}")
    return buffer.getvalue()


class SandboxBootstrap(ABC):
    """Runs a backend's phases and keeps the last result."""

    backend = "base"

    def __init__(
        self,
        cache_file: Optional[Path] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.cache_file = Path(cache_file or global_config.BOOTSTRAP_CACHE_FILE)
        self.on_progress = on_progress
        self.state: dict[str, Any] = {}
        self.last_result: Optional[BootstrapResult] = None
        self._cancelled = False
        self._current_task: Optional[asyncio.Task] = None

    @abstractmethod
    def phases(self) -> list[PhaseSpec]:
        """Ordered phase list; dependencies refer to earlier phases."""
        pass

    # ---- cache ----

    def _read_cache(self) -> dict[str, Any]:
        if not self.cache_file.exists():
            return {}
        try:
            with open(self.cache_file) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load bootstrap cache: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def load_cached(self) -> Optional[BootstrapResult]:
        entry = self._read_cache().get(self.backend)
        if entry is None:
            return None
        try:
            return BootstrapResult.model_validate(entry)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid bootstrap cache for {self.backend}: {e}")
            return None

    def _save(self, result: BootstrapResult) -> None:
        data = self._read_cache()
        data[self.backend] = result.model_dump(mode="json", exclude={"from_cache"})
        try:
            self.cache_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.cache_file, "w") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save bootstrap cache: {e}")

    def invalidate(self) -> None:
        """Forget the cached result so the next run starts from scratch."""
        data = self._read_cache()
        if data.pop(self.backend, None) is not None:
            try:
                with open(self.cache_file, "w") as f:
                    json.dump(data, f, indent=2)
            except OSError as e:
                logger.error(f"Failed to update bootstrap cache: {e}")
        self.last_result = None
        self.state = {}

    # ---- running ----

    def _emit(self, progress: BootstrapProgress) -> None:
        logger.info(f"[{self.backend}] {progress.phase.value}: {progress.message}")
        if self.on_progress is not None:
            self.on_progress(progress)

    def cancel(self) -> None:
        """Cancel the running phase and mark the remaining ones cancelled."""
        self._cancelled = True
        if self._current_task is not None and not self._current_task.done():
            self._current_task.cancel()

    async def run(self, force: bool = False) -> BootstrapResult:
        """
        Bring the backend to ready.

        Args:
            force: Ignore the cache and run every phase

        Returns:
            Per-phase outcome; a cached full success is returned as-is
        """
        self._cancelled = False
        cached = None if force else self.load_cached()
        if cached is not None and cached.success:
            self.state = dict(cached.state)
            cached.from_cache = True
            self.last_result = cached
            self._emit(
                BootstrapProgress(
                    phase=BootstrapPhase.READY,
                    message="Using cached setup",
                    percent=100,
                    status=PhaseStatus.SUCCEEDED,
                )
            )
            return cached
        return await self._execute(cached, rerun=())

    async def retry_phase(self, phase: BootstrapPhase) -> BootstrapResult:
        """
        Re-run one phase plus whatever did not succeed last time.

        Phases that already succeeded are kept from the previous result.
        """
        if phase not in {spec.phase for spec in self.phases()}:
            raise ConfigurationError(f"{self.backend} has no phase {phase.value}")
        self._cancelled = False
        previous = self.last_result or self.load_cached()
        return await self._execute(previous, rerun=(phase,))

    async def _execute(
        self,
        previous: Optional[BootstrapResult],
        rerun: tuple[BootstrapPhase, ...],
    ) -> BootstrapResult:
        specs = self.phases()
        kept: dict[BootstrapPhase, PhaseResult] = {}
        if previous is not None:
            self.state = dict(previous.state)
            for result in previous.phases:
                if result.status == PhaseStatus.SUCCEEDED and result.phase not in rerun:
                    kept[result.phase] = result

        results: dict[BootstrapPhase, PhaseResult] = {}
        for index, spec in enumerate(specs):
            if spec.phase in kept:
                results[spec.phase] = kept[spec.phase]
                continue

            if self._cancelled:
                results[spec.phase] = PhaseResult(
                    phase=spec.phase, status=PhaseStatus.CANCELLED, message="Cancelled"
                )
                continue

            blocked = [
                d.value for d in spec.depends_on
                if results.get(d) is None or results[d].status != PhaseStatus.SUCCEEDED
            ]
            if blocked:
                message = f"Skipped, needs: {', '.join(blocked)}"
                results[spec.phase] = PhaseResult(
                    phase=spec.phase, status=PhaseStatus.SKIPPED, message=message
                )
                self._emit(BootstrapProgress(phase=spec.phase, message=message, status=PhaseStatus.SKIPPED))
                continue

            percent = int(index * 100 / len(specs))
            self._emit(BootstrapProgress(phase=spec.phase, message=spec.description, percent=percent))
            results[spec.phase] = await self._run_phase(spec)

        result = BootstrapResult(
            backend=self.backend,
            phases=[results[spec.phase] for spec in specs],
            state=dict(self.state),
        )
        self.last_result = result
        self._save(result)
        if result.success:
            self._emit(
                BootstrapProgress(
                    phase=BootstrapPhase.READY,
                    message="Sandbox ready",
                    percent=100,
                    status=PhaseStatus.SUCCEEDED,
                )
            )
        return result

    async def _run_phase(self, spec: PhaseSpec) -> PhaseResult:
        self._current_task = asyncio.ensure_future(spec.run())
        try:
            if spec.timeout is not None:
                message = await asyncio.wait_for(self._current_task, timeout=spec.timeout)
            else:
                message = await self._current_task
        except asyncio.TimeoutError:
            error = f"Timed out after {spec.timeout:g}s"
        except asyncio.CancelledError:
            if not self._cancelled:
                raise
            self._emit(BootstrapProgress(phase=spec.phase, message="Cancelled", status=PhaseStatus.CANCELLED))
            return PhaseResult(phase=spec.phase, status=PhaseStatus.CANCELLED, message="Cancelled")
        except SandboxError as e:
            error = str(e)
        else:
            self._emit(BootstrapProgress(phase=spec.phase, message=message, status=PhaseStatus.SUCCEEDED))
            return PhaseResult(phase=spec.phase, status=PhaseStatus.SUCCEEDED, message=message)
        finally:
            self._current_task = None

        logger.error(f"[{self.backend}] {spec.phase.value} failed: {error}")
        self._emit(BootstrapProgress(phase=spec.phase, message=error, status=PhaseStatus.FAILED))
        return PhaseResult(phase=spec.phase, status=PhaseStatus.FAILED, message=spec.description, error=error)


async def _checked(
    argv: list[str],
    failure: str,
    timeout: float = PROBE_TIMEOUT,
    encoding: str = "utf-8",
    input_data: Optional[bytes] = None,
) -> ProcessOutput:
    """Run a host command, turning a spawn error or nonzero exit into UpstreamFailure."""
    try:
        output = await run_process(argv, timeout=timeout, encoding=encoding, input_data=input_data)
    except OSError as e:
        raise UpstreamFailure(failure, detail=str(e)) from e
    if output.timed_out:
        raise SandboxTimeout(failure, detail=f"timed out after {timeout:g}s")
    if output.exit_code != 0:
        raise UpstreamFailure(failure, detail=(output.stderr or output.stdout).strip())
    return output


class VMBootstrap(SandboxBootstrap):
    """Phases shared by the VM backends once the environment is reachable."""

    @abstractmethod
    def shell(self) -> LocalShell:
        pass

    async def _shell_checked(
        self,
        script: str,
        failure: str,
        timeout: float = PROBE_TIMEOUT,
        input_data: Optional[bytes] = None,
    ) -> ProcessOutput:
        return await _checked(self.shell().argv(script), failure, timeout=timeout, input_data=input_data)

    async def install_dependencies(self) -> str:
        await self._shell_checked(
            INSTALL_DEPENDENCIES_SCRIPT,
            "Failed to install python3 and rsync",
            timeout=INSTALL_TIMEOUT,
        )
        return "python3 and rsync available"

    async def deploy_agent(self) -> str:
        target = f"$HOME/{AGENT_HOME}"
        script = f'rm -rf "{target}" && mkdir -p "{target}" && tar -xzf - -C "{target}"'
        try:
            archive = build_agent_archive()
        except OSError as e:
            raise UpstreamFailure("Failed to package sandbox agent", detail=str(e)) from e
        await self._shell_checked(script, "Failed to deploy sandbox agent", input_data=archive)
        return f"Agent {__version__} deployed to ~/{AGENT_HOME}"

    async def verify_agent(self) -> str:
        script = f'PYTHONPATH="$HOME/{AGENT_HOME}" python3 -m cowork_sandbox.agent --version'
        output = await self._shell_checked(script, "Sandbox agent does not start")
        version = output.stdout.strip()
        if version != __version__:
            raise UpstreamFailure(f"Agent version mismatch: {version or 'none'} != {__version__}")
        return f"Agent {version} ready"


class WSLBootstrap(VMBootstrap):
    backend = "wsl"

    def __init__(self, distro: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.preferred_distro = distro

    def shell(self) -> WslShell:
        return WslShell(self.state.get("distro") or self.preferred_distro)

    def phases(self) -> list[PhaseSpec]:
        return [
            PhaseSpec(BootstrapPhase.DETECT_RUNTIME, "Checking for WSL", self.detect_runtime),
            PhaseSpec(
                BootstrapPhase.ENUMERATE_DISTROS,
                "Finding Linux distributions",
                self.enumerate_distros,
                depends_on=(BootstrapPhase.DETECT_RUNTIME,),
            ),
            PhaseSpec(
                BootstrapPhase.INSTALL_DEPENDENCIES,
                "Installing python3 and rsync",
                self.install_dependencies,
                depends_on=(BootstrapPhase.ENUMERATE_DISTROS,),
            ),
            PhaseSpec(
                BootstrapPhase.DEPLOY_AGENT,
                "Deploying sandbox agent",
                self.deploy_agent,
                depends_on=(BootstrapPhase.ENUMERATE_DISTROS,),
            ),
            PhaseSpec(
                BootstrapPhase.READY,
                "Starting sandbox agent",
                self.verify_agent,
                depends_on=(BootstrapPhase.INSTALL_DEPENDENCIES, BootstrapPhase.DEPLOY_AGENT),
            ),
        ]

    async def detect_runtime(self) -> str:
        if not sys.platform.startswith("win"):
            raise UpstreamFailure("WSL is only available on Windows")
        if shutil.which("wsl.exe") is None:
            raise UpstreamFailure("wsl.exe not found; install WSL with `wsl --install`")
        await _checked(["wsl.exe", "--status"], "WSL is not enabled", encoding="utf-16-le")
        return "WSL detected"

    async def enumerate_distros(self) -> str:
        output = await _checked(
            ["wsl.exe", "-l", "-q"], "Failed to list WSL distributions", encoding="utf-16-le"
        )
        distros = parse_wsl_distro_list(output.stdout)
        if not distros:
            raise UpstreamFailure("No WSL distribution installed; run `wsl --install -d Ubuntu`")

        if self.preferred_distro:
            if self.preferred_distro not in distros:
                raise UpstreamFailure(f"WSL distribution not found: {self.preferred_distro}")
            chosen = self.preferred_distro
        else:
            chosen = distros[0]

        # `wsl -l -q` lists the default distribution first
        self.state["distro"] = chosen
        self.state["distros"] = distros
        return f"Using {chosen} ({len(distros)} installed)"


def parse_wsl_distro_list(text: str) -> list[str]:
    """Parse `wsl -l -q` output, which may carry a BOM and stray NULs."""
    distros = []
    for line in text.replace("\ufeff", "").replace("\x00", "").splitlines():
        name = line.strip()
        if name:
            distros.append(name)
    return distros


class LimaBootstrap(VMBootstrap):
    backend = "lima"

    def __init__(self, instance: str = "cowork-sandbox", template: str = "template://default", **kwargs):
        super().__init__(**kwargs)
        self.instance = instance
        self.template = template

    def shell(self) -> LimaShell:
        return LimaShell(self.instance)

    def phases(self) -> list[PhaseSpec]:
        return [
            PhaseSpec(BootstrapPhase.DETECT_RUNTIME, "Checking for Lima", self.detect_runtime),
            PhaseSpec(
                BootstrapPhase.CREATE_INSTANCE,
                f"Creating VM {self.instance}",
                self.create_instance,
                depends_on=(BootstrapPhase.DETECT_RUNTIME,),
                timeout=VM_START_TIMEOUT,
            ),
            PhaseSpec(
                BootstrapPhase.START_INSTANCE,
                f"Starting VM {self.instance}",
                self.start_instance,
                depends_on=(BootstrapPhase.CREATE_INSTANCE,),
                timeout=VM_START_TIMEOUT,
            ),
            PhaseSpec(
                BootstrapPhase.INSTALL_DEPENDENCIES,
                "Installing python3 and rsync",
                self.install_dependencies,
                depends_on=(BootstrapPhase.START_INSTANCE,),
            ),
            PhaseSpec(
                BootstrapPhase.DEPLOY_AGENT,
                "Deploying sandbox agent",
                self.deploy_agent,
                depends_on=(BootstrapPhase.START_INSTANCE,),
            ),
            PhaseSpec(
                BootstrapPhase.READY,
                "Starting sandbox agent",
                self.verify_agent,
                depends_on=(BootstrapPhase.INSTALL_DEPENDENCIES, BootstrapPhase.DEPLOY_AGENT),
            ),
        ]

    async def detect_runtime(self) -> str:
        if shutil.which("limactl") is None:
            raise UpstreamFailure("limactl not found; install Lima with `brew install lima`")
        output = await _checked(["limactl", "--version"], "limactl does not run")
        return output.stdout.strip() or "Lima detected"

    async def _instance_status(self) -> Optional[str]:
        output = await _checked(["limactl", "list", "--json"], "Failed to list Lima instances")
        for instance in parse_lima_instances(output.stdout):
            if instance.get("name") == self.instance:
                return instance.get("status") or "Unknown"
        return None

    async def create_instance(self) -> str:
        if await self._instance_status() is not None:
            return f"VM {self.instance} exists"
        await _checked(
            [
                "limactl",
                "create",
                f"--name={self.instance}",
                "--mount-writable",
                "--tty=false",
                self.template,
            ],
            f"Failed to create VM {self.instance}",
            timeout=VM_START_TIMEOUT,
        )
        return f"VM {self.instance} created"

    async def start_instance(self) -> str:
        status = await self._instance_status()
        if status is None:
            raise UpstreamFailure(f"VM {self.instance} does not exist")
        if status == "Running":
            return f"VM {self.instance} running"
        await _checked(
            ["limactl", "start", "--tty=false", self.instance],
            f"Failed to start VM {self.instance}",
            timeout=VM_START_TIMEOUT,
        )
        return f"VM {self.instance} started"


def parse_lima_instances(text: str) -> list[dict[str, Any]]:
    """Parse `limactl list --json`: one JSON object per line, or one array."""
    text = text.strip()
    if not text:
        return []
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            return []
        return [i for i in parsed if isinstance(i, dict)]

    instances = []
    for line in text.splitlines():
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"Skipping unparsable limactl line: {line[:200]}")
            continue
        if isinstance(parsed, dict):
            instances.append(parsed)
    return instances


class NativeBootstrap(SandboxBootstrap):
    backend = "native"

    def phases(self) -> list[PhaseSpec]:
        return [
            PhaseSpec(BootstrapPhase.DETECT_RUNTIME, "Checking for a shell", self.detect_runtime),
            PhaseSpec(
                BootstrapPhase.READY,
                "Native execution",
                self.ready,
                depends_on=(BootstrapPhase.DETECT_RUNTIME,),
            ),
        ]

    async def detect_runtime(self) -> str:
        argv = shell_argv("echo ok")
        output = await _checked(argv, f"{os.path.basename(argv[0])} does not run")
        if output.stdout.strip() != "ok":
            raise UpstreamFailure("Shell produced unexpected output", detail=output.stdout.strip())
        self.state["shell"] = argv[0]
        return f"Using {argv[0]}"

    async def ready(self) -> str:
        return "Commands run on the host with path checks"


def create_bootstrap(mode: str, config, **kwargs) -> SandboxBootstrap:
    """Bootstrap for a resolved sandbox mode."""
    if mode == "wsl":
        return WSLBootstrap(distro=config.wsl_distro, **kwargs)
    if mode == "lima":
        return LimaBootstrap(instance=config.lima_instance, **kwargs)
    if mode == "native":
        return NativeBootstrap(**kwargs)
    raise ConfigurationError(f"No bootstrap for mode: {mode}")
