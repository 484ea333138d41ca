from __future__ import annotations

import json
import shutil

import click
import pytest
from click.testing import CliRunner

from dagci.cli import cli, find_pipeline_files, parse_limits

PIPELINE = """\
name: smoke
on: [push]
jobs:
  write:
    steps:
      - run: echo hello > out.txt
  check:
    needs: write
    steps:
      - name: Check file
        run: grep -q hello out.txt
"""

FAILING = """\
jobs:
  broken:
    steps:
      - run: exit 4
  after:
    needs: broken
    steps:
      - run: echo never
"""

CYCLE = """\
jobs:
  a:
    needs: b
    steps: [{run: "true"}]
  b:
    needs: a
    steps: [{run: "true"}]
"""

needs_sh = pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX shell")


@pytest.fixture
def runner():
    return CliRunner()


def _file(tmp_path, text, name="dagci.yml"):
    p = tmp_path / name
    p.write_text(text, encoding="utf-8")
    return p


def _run_args(tmp_path, pipeline, *extra):
    return [
        "run", str(pipeline),
        "--workspace", str(tmp_path),
        "--cache-dir", str(tmp_path / ".cache"),
        "--log-dir", str(tmp_path / ".logs"),
        *extra,
    ]


def test_validate_ok(runner, tmp_path):
    p = _file(tmp_path, PIPELINE)
    result = runner.invoke(cli, ["validate", str(p)])
    assert result.exit_code == 0, result.output
    assert "OK:" in result.output
    assert "(2 job(s), 2 instance(s))" in result.output


def test_validate_reports_cycles(runner, tmp_path):
    result = runner.invoke(cli, ["validate", str(_file(tmp_path, CYCLE))])
    assert result.exit_code == 1
    assert "Dependency cycle detected" in result.output


def test_validate_missing_file(runner, tmp_path):
    result = runner.invoke(cli, ["validate", str(tmp_path / "nope.yml")])
    assert result.exit_code == 1
    assert "Pipeline file not found" in result.output


def test_plan_prints_stages(runner, tmp_path):
    result = runner.invoke(cli, ["plan", str(_file(tmp_path, PIPELINE))])
    assert result.exit_code == 0, result.output
    assert "Stage 1: write" in result.output
    assert "Stage 2: check" in result.output


@needs_sh
def test_run_succeeds_and_writes_report(runner, tmp_path):
    report = tmp_path / "report.json"
    result = runner.invoke(cli, _run_args(tmp_path, _file(tmp_path, PIPELINE), "--report-json", str(report)))

    assert result.exit_code == 0, result.output
    assert "PIPELINE: SUCCESS" in result.output
    doc = json.loads(report.read_text())
    assert doc["status"] == "success"
    assert [row["state"] for row in doc["instances"]] == ["succeeded", "succeeded"]
    assert (tmp_path / ".logs" / doc["run_id"] / "write.log").exists()


@needs_sh
def test_run_failure_exits_non_zero(runner, tmp_path):
    report = tmp_path / "report.json"
    result = runner.invoke(cli, _run_args(tmp_path, _file(tmp_path, FAILING), "--report-json", str(report)))

    assert result.exit_code == 1
    doc = json.loads(report.read_text())
    rows = {row["instance"]: row for row in doc["instances"]}
    assert rows["broken"]["state"] == "failed"
    assert rows["broken"]["exit_code"] == 4
    assert rows["after"]["state"] == "skipped"


def test_run_rejects_bad_limit(runner, tmp_path):
    result = runner.invoke(cli, _run_args(tmp_path, _file(tmp_path, PIPELINE), "--limit", "oops"))
    assert result.exit_code == 2
    assert "CLASS=N" in result.output


def test_discovers_single_pipeline_file(runner, tmp_path, monkeypatch):
    _file(tmp_path, PIPELINE)
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(cli, ["validate"])
    assert result.exit_code == 0, result.output
    assert "dagci.yml" in result.output


def test_discovery_refuses_ambiguity(runner, tmp_path, monkeypatch):
    _file(tmp_path, PIPELINE)
    (tmp_path / ".github" / "workflows").mkdir(parents=True)
    _file(tmp_path / ".github" / "workflows", PIPELINE, name="test.yml")
    monkeypatch.chdir(tmp_path)

    assert len(find_pipeline_files(tmp_path)) == 2
    result = runner.invoke(cli, ["validate"])
    assert result.exit_code == 1
    assert "Multiple pipeline files found" in result.output


def test_parse_limits():
    assert parse_limits(("ubuntu-latest=3", "container:amd64/rust=1")) == {
        "ubuntu-latest": 3,
        "container:amd64/rust": 1,
    }
    with pytest.raises(click.BadParameter):
        parse_limits(("ubuntu-latest=many",))
