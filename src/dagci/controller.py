# controller.py
from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Sequence

from .cache import CacheStore
from .dag import Dag, build_dag
from .logs import LogStore
from .expand import expand_all
from .model import InstanceResult, JobState, JobTemplate, Pipeline, PipelineStatus
from .pool import RunnerPool
from .scheduler import Scheduler
from .ui.console import Console, get_console


@dataclass
class PipelineRun:
    """Everything one trigger event produced: instances, graph, statuses."""
    run_id: str
    pipeline: str
    event: str | None
    dag: Dag
    results: Dict[str, InstanceResult]
    status: PipelineStatus
    warnings: List[str] = field(default_factory=list)
    cancelled: bool = False
    started_at: float | None = None
    finished_at: float | None = None

    def table(self) -> List[dict]:
        """Per-instance rows in DAG order."""
        return [self.results[i].to_dict() for i in self.dag.ids]

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "event": self.event,
            "status": self.status.value,
            "cancelled": self.cancelled,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "warnings": list(self.warnings),
            "instances": self.table(),
        }


def aggregate_status(results: Iterable[InstanceResult]) -> PipelineStatus:
    """
    success: every instance succeeded outright.
    degraded: every instance succeeded, at least one only by continue-on-error.
    failed: anything else (a failed or skipped instance).
    """
    degraded = False
    for r in results:
        if r.state != JobState.SUCCEEDED:
            return PipelineStatus.FAILED
        degraded = degraded or r.tolerated_failure
    return PipelineStatus.DEGRADED if degraded else PipelineStatus.SUCCESS


def _as_pipeline(pipeline: Pipeline | Sequence[JobTemplate]) -> Pipeline:
    if isinstance(pipeline, Pipeline):
        return pipeline
    return Pipeline(name="pipeline", templates=tuple(pipeline))


class PipelineController:
    """Top-level driver: expand, link, schedule, aggregate, report."""

    def __init__(
        self,
        pool: RunnerPool | None = None,
        cache: CacheStore | None = None,
        *,
        workspace: str | Path = ".",
        log_store: LogStore | None = None,
        max_parallel: int | None = None,
        reporters: Sequence = (),
        console: Console | None = None,
    ):
        self.pool = pool or RunnerPool()
        self.cache = cache or CacheStore()
        self.workspace = workspace
        self.log_store = log_store
        self.max_parallel = max_parallel
        self.reporters = list(reporters)
        self.console = console or get_console()

        self._lock = threading.Lock()
        self._scheduler: Scheduler | None = None
        self._cancel_requested = False

    def plan(self, pipeline: Pipeline | Sequence[JobTemplate], event: str | None = None) -> Dag:
        """Expand and link without running. Graph errors are raised here."""
        p = _as_pipeline(pipeline)
        templates = p.triggered_by(event)
        instances = expand_all(templates)
        return build_dag(templates, instances)

    def cancel(self) -> None:
        with self._lock:
            self._cancel_requested = True
            scheduler = self._scheduler
        if scheduler is not None:
            scheduler.cancel()

    def run(
        self,
        pipeline: Pipeline | Sequence[JobTemplate],
        event: str | None = None,
        *,
        run_id: str | None = None,
    ) -> PipelineRun:
        p = _as_pipeline(pipeline)
        dag = self.plan(p, event)
        run_id = run_id or time.strftime("%Y%m%d-%H%M%S-") + uuid.uuid4().hex[:6]

        scheduler = Scheduler(
            dag,
            self.pool,
            self.cache,
            run_id=run_id,
            workspace=self.workspace,
            log_store=self.log_store,
            max_parallel=self.max_parallel,
            console=self.console,
        )
        with self._lock:
            self._scheduler = scheduler
            cancel_now = self._cancel_requested
        if cancel_now:
            scheduler.cancel()

        self.console.print_run_started(p.name, event, len(dag))
        started = time.time()
        try:
            results = scheduler.run()
        finally:
            with self._lock:
                self._scheduler = None
                self._cancel_requested = False

        run =PipelineRun(
            run_id=run_id,
            pipeline=p.name,
            event=event,
            dag=dag,
            results=results,
            status=aggregate_status(results.values()),
            warnings=list(scheduler.warnings),
            cancelled=scheduler.cancelled,
            started_at=started,
            finished_at=time.time(),
        )

        for reporter in self.reporters:
            try:
                reporter.report(run)
            except Exception as e:
                msg = f"reporter {type(reporter).__name__} failed: {e}"
                run.warnings.append(msg)
                self.console.print_warning(msg)
        return run
