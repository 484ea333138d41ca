# scheduler.py
from __future__ import annotations

import os
import queue
import tarfile
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .cache import CacheStore, resolve_key
from .dag import Dag
from .errors import CacheStoreUnavailable, RunnerAcquisitionTimeout, StepExecutionFailed
from .logs import LogStore
from .model import InstanceResult, JobInstance, JobState
from .pool import ExecutionContext, RunnerPool
from .ui.console import Console, get_console

_CANCEL = object()


@dataclass
class _Finished:
    """Completion message posted by a worker thread to the scheduling loop."""
    index: int
    state: JobState
    tolerated: bool = False
    started_at: float | None = None
    finished_at: float | None = None
    exit_code: int | None = None
    error: str | None = None
    log_ref: str | None = None
    cache: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


class Scheduler:
    """
    Drives one DAG to quiescence.

    Scheduling state (states, ready-set, per-class slot counts) is owned by
    the loop in `run()`. Workers only execute an instance and post a
    `_Finished` message on the event queue.
    """

    def __init__(
        self,
        dag: Dag,
        pool: RunnerPool,
        cache: CacheStore,
        *,
        run_id: str = "local",
        workspace: str | Path = ".",
        log_store: LogStore | None = None,
        max_parallel: int | None = None,
        console: Console | None = None,
    ):
        self.dag = dag
        self.pool = pool
        self.cache = cache
        self.run_id = run_id
        self.workspace = Path(workspace).resolve()
        self.log_store = log_store
        if max_parallel is None:
            c = os.cpu_count() or 2
            max_parallel = max(1, c - 1)
        self.max_parallel = max(1, max_parallel)
        self.console = console or get_console()

        self.results: Dict[str, InstanceResult] = {i.id: InstanceResult(instance=i.id) for i in dag.instances}
        self.warnings: List[str] = []
        self.start_order: List[str] = []
        self.cancelled = False

        self._events: "queue.Queue[object]" = queue.Queue()
        self._cancel = threading.Event()
        self._contexts: Dict[int, ExecutionContext] = {}
        self._contexts_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Stop dispatching, skip waiting instances and terminate running steps."""
        self._cancel.set()
        self._events.put(_CANCEL)
        with self._contexts_lock:
            contexts = list(self._contexts.values())
        for ctx in contexts:
            ctx.terminate()

    def state_of(self, instance_id: str) -> JobState:
        return self.results[instance_id].state

    def run(self) -> Dict[str, InstanceResult]:
        n = len(self.dag)
        ready: List[int] = []
        for i in range(n):
            self._evaluate(i, ready)

        running = 0
        in_flight: Counter = Counter()

        with ThreadPoolExecutor(max_workers=self.max_parallel) as executor:
            while True:
                if self._cancel.is_set():
                    self._skip_waiting("pipeline cancelled")
                    ready.clear()

                # dispatch as many ready instances as the budgets allow
                ready.sort(key=lambda i: self.dag.instances[i].id)
                deferred: List[int] = []
                for i in ready:
                    inst = self.dag.instances[i]
                    cls = inst.environment.env_class
                    if running >= self.max_parallel or in_flight[cls] >= self.pool.limit_for(inst.environment):
                        deferred.append(i)
                        continue
                    self._set_state(i, JobState.RUNNING)
                    self.start_order.append(inst.id)
                    in_flight[cls] += 1
                    running += 1
                    executor.submit(self._worker, i)
                ready = deferred

                if running == 0:
                    break

                event = self._events.get()
                if event is _CANCEL:
                    continue

                assert isinstance(event, _Finished)
                running -= 1
                in_flight[self.dag.instances[event.index].environment.env_class] -= 1
                self._apply(event)

                for child in self.dag.dependents_of(event.index):
                    self._evaluate(child, ready)

        return self.results

    # ------------------------------------------------------------------
    # State machine (loop thread only)
    # ------------------------------------------------------------------

    def _set_state(self, i: int, state: JobState) -> None:
        self.results[self.dag.instances[i].id].state = state

    def _state(self, i: int) -> JobState:
        return self.results[self.dag.instances[i].id].state

    def _evaluate(self, i: int, ready: List[int]) -> None:
        """Promote a pending instance to ready, or skip it, once its deps allow."""
        work = [i]
        while work:
            j = work.pop()
            if self._state(j) != JobState.PENDING:
                continue
            inst = self.dag.instances[j]
            dep_states = [(d, self._state(d)) for d in self.dag.deps_of(j)]
            if any(not s.terminal for _, s in dep_states):
                continue

            blocked = [d for d, s in dep_states if s != JobState.SUCCEEDED]
            if blocked and not inst.always:
                culprit = self.dag.instances[blocked[0]].id
                reason = f"dependency '{culprit}' {self._state(blocked[0]).value}"
                self._skip(j, reason)
                work.extend(self.dag.dependents_of(j))
                continue

            self._set_state(j, JobState.READY)
            ready.append(j)

    def _skip(self, i: int, reason: str) -> None:
        inst = self.dag.instances[i]
        res = self.results[inst.id]
        res.state = JobState.SKIPPED
        res.error = reason
        self.console.print_job_skipped(inst.id, reason)

    def _skip_waiting(self, reason: str) -> None:
        if not self.cancelled:
            self.cancelled = True
            self.warnings.append(reason)
        for i in range(len(self.dag)):
            if self._state(i) in (JobState.PENDING, JobState.READY):
                self._skip(i, reason)

    def _apply(self, ev: _Finished) -> None:
        inst = self.dag.instances[ev.index]
        res = self.results[inst.id]
        res.state = ev.state
        res.tolerated_failure = ev.tolerated
        res.started_at = ev.started_at
        res.finished_at = ev.finished_at
        res.exit_code = ev.exit_code
        res.error = ev.error
        res.log_ref = ev.log_ref
        res.cache = dict(ev.cache)
        self.warnings.extend(ev.warnings)
        self.console.print_job_finished(inst.id, ev.state.value, ev.tolerated, res.duration)

    # ------------------------------------------------------------------
    # Execution (worker threads)
    # ------------------------------------------------------------------

    def _worker(self, i: int) -> None:
        started = time.time()
        try:
            finished = self._execute(i, started)
        except Exception as e:
            finished = _Finished(
                index=i,
                state=JobState.FAILED,
                started_at=started,
                error=f"{type(e).__name__}: {e}",
            )
        finished.finished_at = finished.finished_at or time.time()
        self._events.put(finished)

    def _warn(self, finished: _Finished, message: str) -> None:
        finished.warnings.append(message)
        self.console.print_warning(message)

    def _execute(self, i: int, started: float) -> _Finished:
        inst = self.dag.instances[i]
        finished = _Finished(index=i, state=JobState.FAILED, started_at=started)

        try:
            ctx = self.pool.acquire(inst.environment, self.workspace)
        except RunnerAcquisitionTimeout as e:
            finished.error = str(e)
            return finished

        with self._contexts_lock:
            self._contexts[i] = ctx
        if self._cancel.is_set():
            ctx.terminate()

        log: List[str] = []
        try:
            self.console.print_job_start(inst.id, inst.environment.env_class)
            keys = self._restore_caches(inst, ctx, finished)
            failure = self._run_steps(inst, ctx, finished, log)

            if failure is None:
                finished.state = JobState.SUCCEEDED
                self._save_caches(inst, ctx, keys, finished)
            else:
                finished.error = str(failure)
                if isinstance(failure, StepExecutionFailed):
                    finished.exit_code = failure.exit_code
                if inst.continue_on_error and not (ctx.terminated or self._cancel.is_set()):
                    finished.state = JobState.SUCCEEDED
                    finished.tolerated = True
        finally:
            with self._contexts_lock:
                self._contexts.pop(i, None)
            self.pool.release(ctx)

        if self.log_store is not None:
            try:
                finished.log_ref = self.log_store.write(self.run_id, inst.id, "".join(log))
            except OSError as e:
                self._warn(finished, f"[{inst.id}] could not write log: {e}")
        return finished

    def _restore_caches(self, inst: JobInstance, ctx: ExecutionContext, finished: _Finished) -> Dict[str, str]:
        """Restore hits; return mount path -> resolved key for the misses."""
        misses: Dict[str, str] = {}
        for mount in inst.caches:
            key = resolve_key(mount.key, self.workspace)
            ctx.mount(mount.path)
            try:
                entry = self.cache.lookup(key)
            except CacheStoreUnavailable as e:
                finished.cache[mount.path] = "unavailable"
                self._warn(finished, f"[{inst.id}] cache unavailable for {mount.path}, treating as miss: {e}")
                misses[mount.path] = key
                continue

            if entry is None:
                finished.cache[mount.path] = "miss"
                misses[mount.path] = key
                self.console.print_cache_miss(inst.id, mount.path)
                continue

            try:
                ctx.restore(mount.path, entry.blob)
            except (tarfile.TarError, OSError) as e:
                finished.cache[mount.path] = "unavailable"
                self._warn(finished, f"[{inst.id}] could not restore cache for {mount.path}, treating as miss: {e}")
                misses[mount.path] = key
                continue
            finished.cache[mount.path] = "hit"
            self.console.print_cache_hit(inst.id, mount.path, entry.origin)
        return misses

    def _run_steps(
        self,
        inst: JobInstance,
        ctx: ExecutionContext,
        finished: _Finished,
        log: List[str],
    ) -> Optional[Exception]:
        """Run steps in order; return the first job-failing error, if any."""
        base_env = {
            "CI": "true",
            "RUNNER_OS": inst.environment.runner_os,
            "DAGCI_JOB": inst.id,
            "DAGCI_RUN_ID": self.run_id,
            **inst.env,
        }
        failure: Optional[Exception] = None

        for step in inst.steps:
            if self._cancel.is_set() or ctx.terminated:
                return failure or RuntimeError("cancelled before step " + repr(step.name))

            self.console.print_step(inst.id, step.name)
            outcome = ctx.run(step, {**base_env, **step.env})
            log.append(f"##[step] {step.name}\n")
            log.append(outcome.output.decode("utf-8", errors="replace"))

            if outcome.exit_code == 0:
                continue
            if ctx.terminated:
                return RuntimeError(f"step {step.name!r} terminated (exit={outcome.exit_code})")
            if step.continue_on_error:
                self.console.print_step_failed(inst.id, step.name, outcome.exit_code, tolerated=True)
                self._warn(finished, f"[{inst.id}] step '{step.name}' failed (exit={outcome.exit_code}), continuing")
                continue

            self.console.print_step_failed(inst.id, step.name, outcome.exit_code)
            if failure is None:
                failure = StepExecutionFailed(
                    job=inst.id, step=step.name, cmd=step.run, exit_code=outcome.exit_code
                )
            if not inst.continue_on_error:
                break
        return failure

    def _save_caches(self, inst: JobInstance, ctx: ExecutionContext, misses: Dict[str, str], finished: _Finished) -> None:
        for path, key in misses.items():
            blob = ctx.snapshot(path)
            if blob is None:
                self.console.print_debug(f"[{inst.id}] nothing to cache at {path}")
                continue
            try:
                if self.cache.persist(key, blob, origin=inst.id):
                    finished.cache[path] = "saved"
                    self.console.print_cache_saved(inst.id, path, key)
            except CacheStoreUnavailable as e:
                self._warn(finished, f"[{inst.id}] could not save cache for {path}: {e}")
