from __future__ import annotations

import shutil
import threading
import time

import pytest

from dagci.errors import RunnerAcquisitionTimeout
from dagci.model import Environment, Step
from dagci.pool import DockerContext, LocalContext, RunnerPool, default_factory

LINUX = Environment("ubuntu-latest")
RUST = Environment("ubuntu-latest", image="amd64/rust")


def test_slots_are_bounded_per_environment_class(harness):
    pool = harness.pool(limits={"ubuntu-latest": 1}, default_limit=3)
    a = pool.acquire(LINUX)
    with pytest.raises(RunnerAcquisitionTimeout) as exc:
        pool.acquire(LINUX, timeout=0.05)
    assert exc.value.environment == "ubuntu-latest"

    # other classes have their own budget
    b = pool.acquire(RUST, timeout=0.05)
    assert pool.in_use == 2

    pool.release(a)
    c = pool.acquire(LINUX, timeout=0.05)
    pool.release(b)
    pool.release(c)
    assert pool.in_use == 0


def test_blocked_acquire_wakes_on_release(harness):
    pool = harness.pool(default_limit=1)
    held = pool.acquire(LINUX)
    got = []

    def waiter():
        got.append(pool.acquire(LINUX, timeout=2))

    t = threading.Thread(target=waiter)
    t.start()
    time.sleep(0.05)
    assert not got
    pool.release(held)
    t.join()
    assert len(got) == 1


def test_release_is_idempotent(harness):
    pool = harness.pool(default_limit=1)
    ctx = pool.acquire(LINUX)
    pool.release(ctx)
    pool.release(ctx)  # must not free a second slot
    pool.acquire(LINUX, timeout=0.05)
    with pytest.raises(RunnerAcquisitionTimeout):
        pool.acquire(LINUX, timeout=0.05)


def test_limit_for_uses_class_then_default(harness):
    pool = harness.pool(limits={"container:amd64/rust": 5}, default_limit=2)
    assert pool.limit_for(RUST) == 5
    assert pool.limit_for(LINUX) == 2


def test_default_factory_picks_docker_for_images(tmp_path):
    assert isinstance(default_factory(LINUX, tmp_path), LocalContext)
    ctx = default_factory(RUST, tmp_path)
    try:
        assert isinstance(ctx, DockerContext)
    finally:
        ctx.close()


def test_docker_command_mounts_workspace_and_caches(tmp_path):
    ctx = DockerContext(RUST, tmp_path)
    try:
        host = ctx.mount("/github/home/.cargo")
        assert host.is_dir()
        cmd, _ = ctx.command(Step("b", "cargo build"), {"CARGO_HOME": "/github/home/.cargo"})
        assert cmd[:3] == ["docker", "run", "--rm"]
        assert f"{tmp_path.resolve()}:/workspace" in cmd
        assert f"{host}:/github/home/.cargo" in cmd
        assert "CARGO_HOME=/github/home/.cargo" in cmd
        assert cmd[-4:] == ["amd64/rust", "sh", "-c", "cargo build"]
    finally:
        ctx.close()
    assert not ctx.scratch.exists()


def test_step_shell_replaces_the_default_shell(tmp_path):
    local = LocalContext(LINUX, tmp_path)
    cmd, kwargs = local.command(Step("s", "echo hi"), {})
    assert cmd == "echo hi"
    assert kwargs["shell"] is True

    cmd, kwargs = local.command(Step("s", "echo hi", shell="bash"), {})
    assert cmd == ["bash", "-c", "echo hi"]
    assert "shell" not in kwargs
    assert kwargs["cwd"] == str(tmp_path.resolve())

    docker = DockerContext(RUST, tmp_path)
    try:
        cmd, _ = docker.command(Step("b", "cargo build", shell="bash"), {})
        assert cmd[-4:] == ["amd64/rust", "bash", "-c", "cargo build"]
    finally:
        docker.close()


@pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX shell")
class TestLocalContext:
    def test_runs_in_workspace_with_env(self, tmp_path):
        ctx = LocalContext(LINUX, tmp_path)
        out = ctx.run(Step("s", 'echo "$GREETING" > out.txt; cat out.txt'), {"GREETING": "hi"})
        assert out.exit_code == 0
        assert out.output == b"hi\n"
        assert (tmp_path / "out.txt").read_text() == "hi\n"

    def test_runs_under_the_step_shell(self, tmp_path):
        ctx = LocalContext(LINUX, tmp_path)
        out = ctx.run(Step("s", 'echo "$0"', shell="sh"))
        assert out.exit_code == 0
        assert out.output == b"sh\n"

    def test_non_zero_exit(self, tmp_path):
        ctx = LocalContext(LINUX, tmp_path)
        out = ctx.run(Step("s", "echo nope >&2; exit 3"))
        assert out.exit_code == 3
        assert b"nope" in out.output

    def test_terminate_stops_running_step(self, tmp_path):
        ctx = LocalContext(LINUX, tmp_path)
        result = []
        t = threading.Thread(target=lambda: result.append(ctx.run(Step("s", "sleep 5"))))
        start = time.monotonic()
        t.start()
        time.sleep(0.2)
        ctx.terminate()
        t.join(timeout=5)
        assert time.monotonic() - start < 4
        assert result[0].exit_code != 0
        # no further steps after termination
        assert ctx.run(Step("s", "true")).exit_code != 0

    def test_snapshot_and_restore_round_trip(self, tmp_path):
        ctx = LocalContext(LINUX, tmp_path)
        assert ctx.snapshot("target") is None
        (tmp_path / "target").mkdir()
        (tmp_path / "target" / "lib.rlib").write_text("compiled")
        blob = ctx.snapshot("target")

        other = LocalContext(LINUX, tmp_path / "fresh")
        other.restore("target", blob)
        assert (tmp_path / "fresh" / "target" / "lib.rlib").read_text() == "compiled"
