# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


class DagCIError(Exception):
    """Base class for every error raised by dagci."""


# ----------------------------------------------------------------------
# Graph construction (fatal: the pipeline never starts)
# ----------------------------------------------------------------------

@dataclass
class EmptyMatrixAxis(DagCIError):
    job: str
    axis: str

    def __str__(self) -> str:
        return f"Job '{self.job}' declares matrix axis '{self.axis}' with no values"


@dataclass
class CyclicDependency(DagCIError):
    cycle: List[str]

    def __str__(self) -> str:
        return "Dependency cycle detected: " + " -> ".join(self.cycle)


@dataclass
class UnknownDependency(DagCIError):
    job: str
    dependency: str
    known: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"Job '{self.job}' needs missing job '{self.dependency}'. "
            f"Known jobs: {sorted(self.known)}"
        )


@dataclass
class DuplicateJob(DagCIError):
    names: List[str]

    def __str__(self) -> str:
        return f"Duplicate job names found: {sorted(self.names)}"


class WorkflowLoadError(DagCIError):
    """The pipeline document could not be read or is structurally invalid."""


class UnknownPlaceholder(DagCIError, ValueError):
    """A `${{ matrix.x }}` style reference names something that is not defined."""


# ----------------------------------------------------------------------
# Execution time (isolated to one instance)
# ----------------------------------------------------------------------

@dataclass
class StepExecutionFailed(DagCIError):
    job: str
    step: str
    cmd: str
    exit_code: int

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class RunnerAcquisitionTimeout(DagCIError):
    environment: str
    timeout: float

    def __str__(self) -> str:
        return f"No runner available for '{self.environment}' after {self.timeout:g}s"


class CacheStoreUnavailable(DagCIError):
    """The cache backend could not be reached; callers treat this as a miss."""
