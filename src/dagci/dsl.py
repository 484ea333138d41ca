# dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .model import Environment, JobTemplate, Pipeline, Step


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    shell: Optional[str] = None,
) -> Step:
    """Create a shell step. `shell` picks the interpreter, e.g. "bash"."""
    return Step(
        name=name,
        run=cmd,
        env={k: str(v) for k, v in (env or {}).items()},
        continue_on_error=continue_on_error,
        shell=shell,
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Ordered matrix axes for a job.

    Example:
        job("test", sh("t", "pytest"), matrix=matrix("py", ["3.10", "3.11"]).axis("os", ["ubuntu", "macos"]))
    """
    def __init__(self, key: str | None = None, values: Iterable[Any] = ()):
        self.axes: Dict[str, Tuple] = {}
        if key is not None:
            self.axis(key, values)

    def axis(self, key: str, values: Iterable[Any]) -> "Matrix":
        self.axes[key] = tuple(values)
        return self


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


def _axes(m: Union[Matrix, Mapping[str, Iterable[Any]], None]) -> Dict[str, Tuple]:
    if m is None:
        return {}
    if isinstance(m, Matrix):
        return dict(m.axes)
    return {k: tuple(v) for k, v in m.items()}


# ---------------------------------------------------------------------
# Functional job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,
    needs: Optional[List[str]] = None,
    runs_on: str = "ubuntu-latest",
    image: str | None = None,
    matrix: Union[Matrix, Mapping[str, Iterable[Any]], None] = None,
    continue_on_error: bool = False,
    caches: Optional[Dict[str, str]] = None,
    env: Optional[Dict[str, str]] = None,
    on: Optional[List[str]] = None,
    always: bool = False,
    display_name: str | None = None,
) -> JobTemplate:
    steps_final: List[Step] = list(steps_list or []) + list(steps)
    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    return JobTemplate(
        name=name,
        steps=tuple(steps_final),
        environment=Environment(runs_on=runs_on, image=image),
        needs=tuple(needs or ()),
        matrix=_axes(matrix),
        continue_on_error=continue_on_error,
        caches=dict(caches or {}),
        env={k: str(v) for k, v in (env or {}).items()},
        triggers=tuple(on or ()),
        always=always,
        display_name=display_name,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._runs_on = "ubuntu-latest"
        self._image: str | None = None
        self._matrix = Matrix()
        self._caches: dict[str, str] = {}
        self._continue_on_error = False
        self._always = False
        self._on: list[str] = []

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, *, continue_on_error: bool = False, **env):
        self._steps.append(sh(name, run, env=env, continue_on_error=continue_on_error))
        return self

    def with_env(self, **env):
        # force values to str for stable substitution + env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def runs_on(self, tag: str, *, image: str | None = None):
        self._runs_on = tag
        self._image = image
        return self

    def with_matrix(self, axis: str, values: Iterable[Any]):
        self._matrix.axis(axis, values)
        return self

    def cache(self, path: str, key: str):
        self._caches[path] = key
        return self

    def continue_on_error(self, enabled: bool = True):
        self._continue_on_error = enabled
        return self

    def always(self, enabled: bool = True):
        self._always = enabled
        return self

    def on(self, *events: str):
        self._on.extend(events)
        return self

    def build(self) -> JobTemplate:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            steps_list=self._steps,
            needs=self._needs,
            runs_on=self._runs_on,
            image=self._image,
            matrix=self._matrix,
            continue_on_error=self._continue_on_error,
            caches=self._caches,
            env=self._env,
            on=self._on,
            always=self._always,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helpers (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: JobTemplate) -> List[JobTemplate]:
    """
    Workflow definition helper for Python workflow files:

        from dagci import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    return list(jobs)


def pipeline(name: str, *jobs: JobTemplate, on: Optional[List[str]] = None) -> Pipeline:
    return Pipeline(name=name, templates=tuple(jobs), triggers=tuple(on or ()))
