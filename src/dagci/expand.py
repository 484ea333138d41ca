# expand.py
from __future__ import annotations

import itertools
import re
from typing import Dict, Iterable, List, Mapping

from .errors import DuplicateJob, EmptyMatrixAxis, UnknownPlaceholder
from .model import CacheMount, Environment, JobInstance, JobTemplate, Step, runner_os

# ${{ matrix.os }}, ${{ runner.os }}; anything else is left untouched
_EXPR = re.compile(r"\$\{\{\s*(.+?)\s*\}\}")


def substitute(text: str, context: Mapping[str, Mapping[str, str]]) -> str:
    """
    Replace `${{ scope.name }}` placeholders using `context[scope][name]`.

    Only scopes present in `context` are substituted. A known scope with an
    unknown name is an error, so typos in matrix references fail loudly.
    """
    def repl(m: re.Match) -> str:
        expr = m.group(1)
        scope, dot, name = expr.partition(".")
        if not dot or scope not in context or not name.isidentifier():
            return m.group(0)
        values = context[scope]
        if name not in values:
            raise UnknownPlaceholder(f"Unknown placeholder '{expr}' (known: {sorted(values)})")
        return str(values[name])

    return _EXPR.sub(repl, text)


def assignments(template: JobTemplate) -> List[Dict[str, str]]:
    """Cartesian product of the matrix axes, in declaration then value order."""
    axes = list(template.matrix.items())
    for axis, values in axes:
        if not values:
            raise EmptyMatrixAxis(job=template.name, axis=axis)
    if not axes:
        return [{}]
    names = [a for a, _ in axes]
    combos = itertools.product(*[[str(v) for v in values] for _, values in axes])
    return [dict(zip(names, combo)) for combo in combos]


def instance_id(template: JobTemplate, assignment: Mapping[str, str]) -> str:
    if not assignment:
        return template.name
    return "-".join([template.name, *assignment.values()])


def expand_template(template: JobTemplate) -> List[JobInstance]:
    instances: List[JobInstance] = []
    for assignment in assignments(template):
        ctx: Dict[str, Dict[str, str]] = {"matrix": dict(assignment)}

        runs_on = substitute(template.environment.runs_on, ctx)
        ctx["runner"] = {"os": runner_os(runs_on)}
        image = template.environment.image
        environment = Environment(
            runs_on=runs_on,
            image=substitute(image, ctx) if image else None,
        )

        steps = tuple(
            Step(
                name=substitute(s.name, ctx),
                run=substitute(s.run, ctx),
                env={k: substitute(v, ctx) for k, v in s.env.items()},
                continue_on_error=s.continue_on_error,
                shell=s.shell,
            )
            for s in template.steps
        )
        caches = tuple(
            CacheMount(path=substitute(path, ctx), key=substitute(key, ctx))
            for path, key in template.caches.items()
        )

        instances.append(
            JobInstance(
                id=instance_id(template, assignment),
                template=template.name,
                assignment=dict(assignment),
                environment=environment,
                steps=steps,
                caches=caches,
                env={k: substitute(v, ctx) for k, v in template.env.items()},
                continue_on_error=template.continue_on_error,
                always=template.always,
            )
        )
    return instances


def expand_all(templates: Iterable[JobTemplate]) -> List[JobInstance]:
    out: List[JobInstance] = []
    for t in templates:
        out.extend(expand_template(t))

    ids = [i.id for i in out]
    if len(set(ids)) != len(ids):
        dupes = sorted({n for n in ids if ids.count(n) > 1})
        raise DuplicateJob(names=dupes)
    return out
