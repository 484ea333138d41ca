# model.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple


@dataclass(frozen=True)
class Environment:
    """Where a job runs: a bare OS runner, optionally inside a container image."""
    runs_on: str = "ubuntu-latest"
    image: str | None = None

    @property
    def env_class(self) -> str:
        """Bucket used by the runner pool for slot accounting."""
        if self.image:
            return f"container:{self.image}"
        return self.runs_on

    @property
    def runner_os(self) -> str:
        return runner_os(self.runs_on)


def _frozen(obj, **mappings) -> None:
    # read-only copies, so a shared template cannot be edited in place
    for name, value in mappings.items():
        object.__setattr__(obj, name, MappingProxyType(dict(value)))


def runner_os(runs_on: str) -> str:
    tag = runs_on.lower()
    if tag.startswith("windows"):
        return "Windows"
    if tag.startswith("macos"):
        return "macOS"
    return "Linux"


@dataclass(frozen=True)
class Step:
    """A single shell command inside a job. `shell` overrides the runner's default shell."""
    name: str
    run: str
    env: Mapping[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    shell: Optional[str] = None

    def __post_init__(self):
        _frozen(self, env=self.env)


@dataclass(frozen=True)
class CacheMount:
    path: str
    key: str


@dataclass(frozen=True)
class JobTemplate:
    """
    A job as declared, before matrix expansion.

    `needs` holds template names. `matrix` maps axis name -> ordered values.
    `caches` maps mount path -> cache key template.
    `always` lets the job run once its dependencies are terminal, whatever
    their outcome.
    """
    name: str
    steps: Tuple[Step, ...]
    environment: Environment = field(default_factory=Environment)
    needs: Tuple[str, ...] = ()
    matrix: Mapping[str, Tuple] = field(default_factory=dict)
    continue_on_error: bool = False
    caches: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    triggers: Tuple[str, ...] = ()
    always: bool = False
    display_name: Optional[str] = None

    def __post_init__(self):
        _frozen(self, matrix=self.matrix, caches=self.caches, env=self.env)


@dataclass(frozen=True)
class JobInstance:
    """
    One schedulable unit produced by matrix expansion.

    `needs` is filled in by the DAG builder with instance ids (fan-out of the
    template dependencies); everything else is fixed at expansion time.
    """
    id: str
    template: str
    assignment: Mapping[str, str]
    environment: Environment
    steps: Tuple[Step, ...]
    caches: Tuple[CacheMount, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    always: bool = False
    needs: Tuple[str, ...] = ()

    def __post_init__(self):
        _frozen(self, assignment=self.assignment, env=self.env)


class JobState(str, enum.Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED)


class PipelineStatus(str, enum.Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass
class InstanceResult:
    """Status row for one instance; only the scheduler loop writes to it."""
    instance: str
    state: JobState = JobState.PENDING
    tolerated_failure: bool = False
    started_at: float | None = None
    finished_at: float | None = None
    exit_code: int | None = None
    error: str | None = None
    log_ref: str | None = None
    cache: Dict[str, str] = field(default_factory=dict)

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def to_dict(self) -> dict:
        return {
            "instance": self.instance,
            "state": self.state.value,
            "tolerated_failure": self.tolerated_failure,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration": self.duration,
            "exit_code": self.exit_code,
            "error": self.error,
            "log_ref": self.log_ref,
            "cache": dict(self.cache),
        }


@dataclass(frozen=True)
class Pipeline:
    """A loaded pipeline document: its templates plus pipeline-level triggers."""
    name: str
    templates: Tuple[JobTemplate, ...]
    triggers: Tuple[str, ...] = ()

    def triggered_by(self, event: str | None) -> Tuple[JobTemplate, ...]:
        if event is None:
            return self.templates
        selected = []
        for t in self.templates:
            triggers = t.triggers or self.triggers
            if not triggers or event in triggers:
                selected.append(t)
        return tuple(selected)
