# pool.py
from __future__ import annotations

import os
import re
import shutil
import signal
import subprocess
import tempfile
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from .cache import pack_path, unpack_into
from .errors import RunnerAcquisitionTimeout
from .model import Environment, Step

TERMINATED_EXIT_CODE = 143


@dataclass(frozen=True)
class StepOutcome:
    exit_code: int
    output: bytes = b""


# ----------------------------------------------------------------------
# Execution contexts
# ----------------------------------------------------------------------

class ExecutionContext:
    """
    One leased runner slot. Steps run one at a time; `terminate()` may be
    called from another thread to stop the step in flight and refuse new ones.
    """

    def __init__(self, environment: Environment, workspace: str | Path):
        self.environment = environment
        self.workspace = Path(workspace).resolve()
        self.terminated = False
        self._proc: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()

    @property
    def env_class(self) -> str:
        return self.environment.env_class

    # -- steps ---------------------------------------------------------

    def command(self, step: Step, env: Mapping[str, str]) -> tuple[list[str] | str, dict]:
        raise NotImplementedError

    def run(self, step: Step, env: Mapping[str, str] | None = None) -> StepOutcome:
        cmd, popen_kwargs = self.command(step, env or {})
        with self._lock:
            if self.terminated:
                return StepOutcome(TERMINATED_EXIT_CODE, b"terminated before start\n")
            self._proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                **popen_kwargs,
            )
        try:
            out, _ = self._proc.communicate()
            return StepOutcome(self._proc.returncode, out or b"")
        finally:
            with self._lock:
                self._proc = None

    def terminate(self) -> None:
        with self._lock:
            self.terminated = True
            if self._proc is not None and self._proc.poll() is None:
                self._kill(self._proc)

    def _kill(self, proc: subprocess.Popen) -> None:
        proc.terminate()

    # -- cache mounts --------------------------------------------------

    def mount(self, path: str) -> Path:
        """Host directory backing the declared mount path."""
        raise NotImplementedError

    def restore(self, path: str, blob: bytes) -> None:
        unpack_into(self.mount(path), blob)

    def snapshot(self, path: str) -> Optional[bytes]:
        host = self.mount(path)
        if not host.exists():
            return None
        return pack_path(host)

    def close(self) -> None:
        pass


class LocalContext(ExecutionContext):
    """Bare runner: shell commands straight on this host, in the workspace."""

    def command(self, step: Step, env: Mapping[str, str]):
        full_env = os.environ.copy()
        full_env.update(env)
        popen_kwargs = {
            "cwd": str(self.workspace),
            "env": full_env,
            # own process group so terminate() also reaches the shell's children
            "start_new_session": os.name == "posix",
        }
        if step.shell:
            return [step.shell, "-c", step.run], popen_kwargs
        return step.run, {"shell": True, **popen_kwargs}

    def _kill(self, proc: subprocess.Popen) -> None:
        if os.name != "posix":
            proc.terminate()
            return
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass

    def mount(self, path: str) -> Path:
        p = Path(path).expanduser()
        if p.is_absolute():
            return p
        return self.workspace / p


class DockerContext(ExecutionContext):
    """Containerized runner: each step is a `docker run --rm` of the job image."""

    container_workdir = "/workspace"

    def __init__(self, environment: Environment, workspace: str | Path, *, docker: str = "docker"):
        super().__init__(environment, workspace)
        if not environment.image:
            raise ValueError("DockerContext needs an environment with an image")
        self.docker = docker
        self.scratch = Path(tempfile.mkdtemp(prefix="dagci-mounts-"))
        self._volumes: Dict[str, Path] = {}
        self._container: str | None = None

    def mount(self, path: str) -> Path:
        if not (path.startswith("/") or path.startswith("~")):
            return self.workspace / path
        host = self._volumes.get(path)
        if host is None:
            host = self.scratch / re.sub(r"[^A-Za-z0-9_.-]", "_", path.strip("/~") or "root")
            host.mkdir(parents=True, exist_ok=True)
            self._volumes[path] = host
        return host

    def _container_path(self, path: str) -> str:
        if path.startswith("~"):
            return "/root" + path[1:]
        return path

    def command(self, step: Step, env: Mapping[str, str]):
        self._container = f"dagci-{uuid.uuid4().hex[:12]}"
        cmd: List[str] = [self.docker, "run", "--rm", "--name", self._container]
        cmd.extend(["-v", f"{self.workspace}:{self.container_workdir}"])
        for path, host in self._volumes.items():
            cmd.extend(["-v", f"{host}:{self._container_path(path)}"])
        cmd.extend(["-w", self.container_workdir])
        for key, value in env.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.append(self.environment.image)
        cmd.extend([step.shell or "sh", "-c", step.run])
        return cmd, {}

    def terminate(self) -> None:
        super().terminate()
        if self._container:
            subprocess.run(
                [self.docker, "kill", self._container],
                capture_output=True,
                check=False,
            )

    def close(self) -> None:
        shutil.rmtree(self.scratch, ignore_errors=True)


ContextFactory = Callable[[Environment, Path], ExecutionContext]


def default_factory(environment: Environment, workspace: Path) -> ExecutionContext:
    if environment.image:
        return DockerContext(environment, workspace)
    return LocalContext(environment, workspace)


# ----------------------------------------------------------------------
# Pool
# ----------------------------------------------------------------------

class RunnerPool:
    """
    Bounded slots per environment class.

    `limits` maps an environment class (runs-on tag or `container:<image>`)
    to its slot count; classes not listed get `default_limit`.
    """

    def __init__(
        self,
        limits: Mapping[str, int] | None = None,
        *,
        default_limit: int = 2,
        factory: ContextFactory = default_factory,
        acquire_timeout: float = 600.0,
    ):
        if default_limit < 1:
            raise ValueError("default_limit must be >= 1")
        self.limits = dict(limits or {})
        self.default_limit = default_limit
        self.factory = factory
        self.acquire_timeout = acquire_timeout
        self._slots: Dict[str, threading.BoundedSemaphore] = {}
        self._leased: Dict[int, ExecutionContext] = {}
        self._guard = threading.Lock()

    def limit_for(self, environment: Environment) -> int:
        return max(1, int(self.limits.get(environment.env_class, self.default_limit)))

    def _semaphore(self, environment: Environment) -> threading.BoundedSemaphore:
        with self._guard:
            sem = self._slots.get(environment.env_class)
            if sem is None:
                sem = threading.BoundedSemaphore(self.limit_for(environment))
                self._slots[environment.env_class] = sem
            return sem

    def acquire(
        self,
        environment: Environment,
        workspace: str | Path = ".",
        timeout: float | None = None,
    ) -> ExecutionContext:
        wait = self.acquire_timeout if timeout is None else timeout
        sem = self._semaphore(environment)
        if not sem.acquire(timeout=wait):
            raise RunnerAcquisitionTimeout(environment=environment.env_class, timeout=wait)
        try:
            ctx = self.factory(environment, Path(workspace))
        except BaseException:
            sem.release()
            raise
        with self._guard:
            self._leased[id(ctx)] = ctx
        return ctx

    def release(self, ctx: ExecutionContext) -> None:
        with self._guard:
            if self._leased.pop(id(ctx), None) is None:
                return
        try:
            ctx.close()
        finally:
            self._semaphore(ctx.environment).release()

    @property
    def in_use(self) -> int:
        with self._guard:
            return len(self._leased)
