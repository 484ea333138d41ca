# loader.py
"""
Pipeline document loading.

Two input shapes are accepted:

- a YAML (or JSON) document in the shape of a hosted CI workflow file:
  `name`, `on`, and a `jobs` mapping whose entries carry `runs-on`,
  `container`, `needs`, `strategy.matrix`, `continue-on-error`, `if`,
  `env`, `cache` and `steps`;
- a Python workflow module defining `workflow()` or `JOBS`, built with
  the helpers in `dagci.dsl`.

Both produce a `Pipeline` of immutable `JobTemplate`s. Structural problems
raise `WorkflowLoadError`; graph problems (unknown needs, cycles, empty
axes) are left to the expander and the DAG builder.
"""
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import WorkflowLoadError
from .model import Environment, JobTemplate, Pipeline, Step
from .ui.console import get_console

CACHE_ACTION = "actions/cache"


def _as_list(v: Any) -> Any:
    if v is None:
        return []
    if isinstance(v, str):
        return [v]
    return v


# ----------------------------------------------------------------------
# Document schema
# ----------------------------------------------------------------------

class StepModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    env: Dict[str, Any] = Field(default_factory=dict)
    continue_on_error: bool = Field(False, alias="continue-on-error")
    shell: Optional[str] = None


class ContainerModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    image: str


class StrategyModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    matrix: Dict[str, List[Any]] = Field(default_factory=dict)

    @field_validator("matrix")
    @classmethod
    def _plain_axes_only(cls, v: Dict[str, List[Any]]) -> Dict[str, List[Any]]:
        for reserved in ("include", "exclude"):
            if reserved in v:
                raise ValueError(f"matrix '{reserved}' is not supported")
        return v


class JobModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    runs_on: str = Field("ubuntu-latest", alias="runs-on")
    container: Union[str, ContainerModel, None] = None
    needs: List[str] = Field(default_factory=list)
    if_: Optional[str] = Field(None, alias="if")
    continue_on_error: bool = Field(False, alias="continue-on-error")
    on: List[str] = Field(default_factory=list)
    env: Dict[str, Any] = Field(default_factory=dict)
    strategy: Optional[StrategyModel] = None
    cache: Dict[str, str] = Field(default_factory=dict)
    steps: List[StepModel] = Field(min_length=1)

    @field_validator("needs", "on", mode="before")
    @classmethod
    def _listify(cls, v: Any) -> Any:
        return _as_list(v)


class PipelineModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    on: List[str] = Field(default_factory=list)
    jobs: Dict[str, JobModel] = Field(min_length=1)

    @field_validator("on", mode="before")
    @classmethod
    def _event_names(cls, v: Any) -> Any:
        # `on: {push: {branches: [main]}}` -> ["push"]
        if isinstance(v, dict):
            return list(v)
        return _as_list(v)


# ----------------------------------------------------------------------
# Schema -> templates
# ----------------------------------------------------------------------

def _split_paths(raw: Any) -> List[str]:
    if isinstance(raw, list):
        return [str(p).strip() for p in raw if str(p).strip()]
    return [line.strip() for line in str(raw or "").splitlines() if line.strip()]


def _to_template(job_id: str, m: JobModel) -> JobTemplate:
    steps: List[Step] = []
    caches: Dict[str, str] = dict(m.cache)

    for idx, s in enumerate(m.steps, start=1):
        if s.uses:
            if s.uses.split("@", 1)[0] == CACHE_ACTION:
                key = s.with_.get("key")
                paths = _split_paths(s.with_.get("path"))
                if not key or not paths:
                    raise WorkflowLoadError(f"Job '{job_id}' step {idx}: {s.uses} needs 'path' and 'key'")
                for p in paths:
                    caches[p] = str(key)
            else:
                get_console().print_debug(f"[{job_id}] ignoring action step '{s.uses}'")
            continue

        if not s.run:
            raise WorkflowLoadError(f"Job '{job_id}' step {idx} has neither 'run' nor 'uses'")
        name = s.name or f"Run {s.run.strip().splitlines()[0]}"
        steps.append(
            Step(
                name=name,
                run=s.run,
                env={k: str(v) for k, v in s.env.items()},
                continue_on_error=s.continue_on_error,
                shell=s.shell,
            )
        )

    if not steps:
        raise WorkflowLoadError(f"Job '{job_id}' has no runnable steps")

    image = m.container.image if isinstance(m.container, ContainerModel) else m.container
    axes: Dict[str, Tuple] = {}
    if m.strategy is not None:
        axes = {k: tuple(v) for k, v in m.strategy.matrix.items()}

    return JobTemplate(
        name=job_id,
        steps=tuple(steps),
        environment=Environment(runs_on=m.runs_on, image=image or None),
        needs=tuple(m.needs),
        matrix=axes,
        continue_on_error=m.continue_on_error,
        caches=caches,
        env={k: str(v) for k, v in m.env.items()},
        triggers=tuple(m.on),
        always=(m.if_ or "").replace(" ", "") in ("always()", "${{always()}}"),
        display_name=m.name,
    )


def _fix_on_key(d: Dict[Any, Any]) -> Dict[Any, Any]:
    # YAML 1.1 reads a bare `on:` key as boolean True
    d = dict(d)
    if True in d and "on" not in d:
        d["on"] = d.pop(True)
    return d


def parse_pipeline(data: Any, *, default_name: str = "pipeline") -> Pipeline:
    """Validate an already-parsed document and turn it into a Pipeline."""
    if not isinstance(data, dict):
        raise WorkflowLoadError(f"Pipeline root must be a mapping, got {type(data).__name__}")

    data = _fix_on_key(data)
    if isinstance(data.get("jobs"), dict):
        data["jobs"] = {k: _fix_on_key(v) if isinstance(v, dict) else v for k, v in data["jobs"].items()}

    try:
        model = PipelineModel.model_validate(data)
    except ValidationError as e:
        raise WorkflowLoadError(f"Invalid pipeline document:\n{e}") from e

    templates = tuple(_to_template(job_id, jm) for job_id, jm in model.jobs.items())
    return Pipeline(name=model.name or default_name, templates=templates, triggers=tuple(model.on))


def load_yaml(path: str | Path) -> Pipeline:
    p = Path(path)
    try:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise WorkflowLoadError(f"Pipeline file not found: {p}") from e
    except yaml.YAMLError as e:
        raise WorkflowLoadError(f"Could not parse {p}: {e}") from e
    return parse_pipeline(data if data is not None else {}, default_name=p.stem)


# ----------------------------------------------------------------------
# Python workflow files
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Pipeline:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> List[JobTemplate] | Pipeline
      - JOBS = [JobTemplate, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise WorkflowLoadError(f"Workflow file not found: {wf_path}")

    module_name = f"dagci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    jobs: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        jobs = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if isinstance(jobs, Pipeline):
        return jobs
    if not isinstance(jobs, list) or not all(isinstance(j, JobTemplate) for j in jobs):
        raise WorkflowLoadError(
            "Workflow must return/define a List[JobTemplate]. "
            "Define workflow() -> List[JobTemplate] or JOBS = [JobTemplate, ...]."
        )
    return Pipeline(name=wf_path.stem, templates=tuple(jobs))


def load_pipeline(path: str | Path) -> Pipeline:
    p = Path(path)
    suffix = p.suffix.lower()
    if suffix == ".py":
        return load_workflow(p)
    if suffix in {".yml", ".yaml", ".json"}:
        return load_yaml(p)
    raise WorkflowLoadError(f"Unsupported pipeline format: {p.name} (expected .yml, .yaml, .json or .py)")
