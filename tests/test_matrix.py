from __future__ import annotations

import pytest

from dagci.dsl import job, sh
from dagci.errors import DuplicateJob, EmptyMatrixAxis
from dagci.expand import expand_all, expand_template, substitute


def test_cartesian_product_in_declaration_order():
    t = job("job", sh("s", "echo ${{ matrix.a }} ${{ matrix.b }}"), matrix={"a": [1, 2], "b": ["x", "y"]})
    instances = expand_template(t)

    assert [i.id for i in instances] == ["job-1-x", "job-1-y", "job-2-x", "job-2-y"]
    assert instances[2].assignment == {"a": "2", "b": "x"}
    assert instances[2].steps[0].run == "echo 2 x"


def test_no_axes_yields_single_instance_named_after_template():
    instances = expand_template(job("build", sh("b", "make")))
    assert len(instances) == 1
    assert instances[0].id == "build"
    assert instances[0].assignment == {}


def test_empty_axis_is_an_error():
    t = job("test", sh("t", "pytest"), matrix={"os": []})
    with pytest.raises(EmptyMatrixAxis) as exc:
        expand_template(t)
    assert exc.value.axis == "os"
    assert exc.value.job == "test"


def test_values_substituted_into_environment_and_cache_keys():
    t = job(
        "test",
        sh("Test on ${{ matrix.os }}", "cargo test"),
        runs_on="${{ matrix.os }}",
        matrix={"os": ["windows-latest", "macos-latest"]},
        caches={"target": "${{ runner.os }}-target-${{ matrix.os }}"},
        env={"TARGET_OS": "${{ matrix.os }}"},
    )
    win, mac = expand_template(t)

    assert win.environment.runs_on == "windows-latest"
    assert win.environment.runner_os == "Windows"
    assert win.steps[0].name == "Test on windows-latest"
    assert win.caches[0].key == "Windows-target-windows-latest"
    assert mac.caches[0].key == "macOS-target-macos-latest"
    assert mac.env == {"TARGET_OS": "macos-latest"}


def test_image_is_substituted():
    t = job("b", sh("b", "make"), image="rust:${{ matrix.v }}", matrix={"v": ["1.70"]})
    (inst,) = expand_template(t)
    assert inst.environment.image == "rust:1.70"
    assert inst.environment.env_class == "container:rust:1.70"


def test_unknown_matrix_placeholder_fails():
    t = job("b", sh("b", "echo ${{ matrix.nope }}"), matrix={"v": ["1"]})
    with pytest.raises(ValueError, match="matrix.nope"):
        expand_template(t)


def test_other_expressions_are_left_alone():
    text = "key-${{ hashFiles('**/Cargo.lock') }}-${{ secrets.TOKEN }}"
    assert substitute(text, {"matrix": {}}) == text


def test_expand_all_rejects_colliding_ids():
    a = job("lint", sh("l", "ruff"))
    b = job("lint", sh("l", "ruff ."))
    with pytest.raises(DuplicateJob):
        expand_all([a, b])


def test_expand_all_keeps_template_order():
    ids = [i.id for i in expand_all([
        job("b", sh("s", "ok")),
        job("a", sh("s", "ok"), matrix={"n": [1, 2]}),
    ])]
    assert ids == ["b", "a-1", "a-2"]
