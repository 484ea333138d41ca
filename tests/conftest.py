"""Shared fixtures: an in-process execution context driven by step commands."""

from __future__ import annotations

import io
import threading
import time
from pathlib import Path

import pytest

from dagci.cache import CacheStore, MemoryCacheBackend
from dagci.model import Environment, Step
from dagci.pool import TERMINATED_EXIT_CODE, ExecutionContext, RunnerPool, StepOutcome
from dagci.ui.console import Console


class ScriptedContext(ExecutionContext):
    """
    Interprets `step.run` instead of spawning a shell:

      ok               exit 0
      fail / exit:N    exit 1 / N
      sleep:S          wait S seconds, exit 0
      block            wait until terminate(), exit 143
      write:PATH:TEXT  put TEXT into the mount PATH, exit 0
      read:PATH        exit 0 if the mount PATH was restored, else 1
    """

    def __init__(self, environment: Environment, workspace: Path, journal: list, journal_lock):
        super().__init__(environment, workspace)
        self.journal = journal
        self.journal_lock = journal_lock
        self.mounts: dict[str, bytes] = {}
        self.restored: dict[str, bytes] = {}
        self._stop = threading.Event()

    def run(self, step: Step, env=None) -> StepOutcome:
        env = dict(env or {})
        job = env.get("DAGCI_JOB", "?")
        with self.journal_lock:
            self.journal.append(("start", job, step.name, time.monotonic()))
        try:
            return self._interpret(step.run)
        finally:
            with self.journal_lock:
                self.journal.append(("end", job, step.name, time.monotonic()))

    def _interpret(self, cmd: str) -> StepOutcome:
        if self.terminated:
            return StepOutcome(TERMINATED_EXIT_CODE)
        if cmd == "ok":
            return StepOutcome(0, b"ok\n")
        if cmd == "fail":
            return StepOutcome(1, b"boom\n")
        if cmd.startswith("exit:"):
            return StepOutcome(int(cmd.split(":", 1)[1]))
        if cmd.startswith("sleep:"):
            time.sleep(float(cmd.split(":", 1)[1]))
            return StepOutcome(0)
        if cmd == "block":
            self._stop.wait(timeout=10)
            return StepOutcome(TERMINATED_EXIT_CODE if self.terminated else 0)
        if cmd.startswith("write:"):
            _, path, text = cmd.split(":", 2)
            self.mounts[path] = text.encode()
            return StepOutcome(0)
        if cmd.startswith("read:"):
            path = cmd.split(":", 1)[1]
            return StepOutcome(0 if path in self.restored else 1)
        raise ValueError(f"unknown scripted command {cmd!r}")

    def terminate(self) -> None:
        super().terminate()
        self._stop.set()

    def mount(self, path: str) -> Path:
        return self.workspace / path.strip("/")

    def restore(self, path: str, blob: bytes) -> None:
        self.restored[path] = blob

    def snapshot(self, path: str):
        return self.mounts.get(path)


class Harness:
    """Builds pools of ScriptedContexts and records what ran when."""

    def __init__(self):
        self.journal: list = []
        self.lock = threading.Lock()
        self.contexts: list[ScriptedContext] = []

    def factory(self, environment: Environment, workspace: Path) -> ScriptedContext:
        ctx = ScriptedContext(environment, workspace, self.journal, self.lock)
        with self.lock:
            self.contexts.append(ctx)
        return ctx

    def pool(self, limits=None, default_limit: int = 4, acquire_timeout: float = 5.0) -> RunnerPool:
        return RunnerPool(limits, default_limit=default_limit, factory=self.factory, acquire_timeout=acquire_timeout)

    def first(self, kind: str, job: str) -> float:
        return min(t for k, j, _s, t in self.journal if k == kind and j == job)

    def last(self, kind: str, job: str) -> float:
        return max(t for k, j, _s, t in self.journal if k == kind and j == job)

    def ran(self, job: str) -> bool:
        return any(j == job for _k, j, _s, _t in self.journal)


@pytest.fixture
def harness() -> Harness:
    return Harness()


@pytest.fixture
def store() -> CacheStore:
    return CacheStore(MemoryCacheBackend())


@pytest.fixture
def console() -> Console:
    return Console(stream=io.StringIO())
