from __future__ import annotations

import pytest

from dagci.dag import build_dag, topo_levels
from dagci.dsl import job, sh
from dagci.errors import CyclicDependency, DuplicateJob, UnknownDependency
from dagci.expand import expand_all


def _dag(*templates):
    return build_dag(templates, expand_all(templates))


def test_fan_out_dependency_waits_on_every_matrix_instance():
    dag = _dag(
        job("test", sh("t", "ok"), matrix={"a": [1, 2], "b": ["x", "y"]}),
        job("report", sh("r", "ok"), needs=["test"]),
    )
    report = dag.index("report")
    assert sorted(dag.instances[d].id for d in dag.deps_of(report)) == [
        "test-1-x", "test-1-y", "test-2-x", "test-2-y",
    ]
    assert dag.instances[report].needs == ("test-1-x", "test-1-y", "test-2-x", "test-2-y")
    for d in dag.deps_of(report):
        assert dag.dependents_of(d) == (report,)


def test_matrix_depending_on_single_job():
    dag = _dag(
        job("build", sh("b", "ok")),
        job("test", sh("t", "ok"), needs=["build"], matrix={"os": ["linux", "mac"]}),
    )
    build = dag.index("build")
    assert dag.roots() == [build]
    assert len(dag.dependents_of(build)) == 2


def test_unknown_dependency():
    with pytest.raises(UnknownDependency) as exc:
        _dag(job("test", sh("t", "ok"), needs=["bulid"]))
    assert exc.value.dependency == "bulid"
    assert exc.value.job == "test"


def test_self_dependency_is_a_cycle():
    with pytest.raises(CyclicDependency) as exc:
        _dag(job("a", sh("s", "ok"), needs=["a"]))
    assert exc.value.cycle == ["a", "a"]


@pytest.mark.parametrize("length", [2, 3, 7])
def test_cycles_of_any_length_are_rejected(length):
    names = [f"j{i}" for i in range(length)]
    templates = [
        job(n, sh("s", "ok"), needs=[names[(i + 1) % length]])
        for i, n in enumerate(names)
    ]
    with pytest.raises(CyclicDependency) as exc:
        _dag(*templates)
    cycle = exc.value.cycle
    assert cycle[0] == cycle[-1]
    assert sorted(set(cycle)) == sorted(names)


def test_cycle_behind_a_valid_prefix_is_found():
    with pytest.raises(CyclicDependency) as exc:
        _dag(
            job("root", sh("s", "ok")),
            job("a", sh("s", "ok"), needs=["root", "c"]),
            job("b", sh("s", "ok"), needs=["a"]),
            job("c", sh("s", "ok"), needs=["b"]),
        )
    assert "root" not in exc.value.cycle


def test_duplicate_template_names():
    t = job("a", sh("s", "ok"))
    with pytest.raises(DuplicateJob):
        build_dag([t, t], expand_all([t]))


def test_diamond_levels():
    dag = _dag(
        job("build", sh("s", "ok")),
        job("test", sh("s", "ok"), needs=["build"]),
        job("clippy", sh("s", "ok"), needs=["build"]),
        job("release", sh("s", "ok"), needs=["test", "clippy"]),
        job("miri", sh("s", "ok")),
    )
    assert topo_levels(dag) == [["build", "miri"], ["clippy", "test"], ["release"]]


def test_dag_is_immutable():
    dag = _dag(job("a", sh("s", "ok")))
    with pytest.raises(AttributeError):
        dag.deps = ()
    assert isinstance(dag.deps, tuple)
