"""Tests for the command runner seam."""
from __future__ import annotations

import subprocess
from pathlib import Path

from conftest import FakeRunner

from deployctl.runner import (
    RC_NOT_FOUND,
    RC_TIMEOUT,
    AsUserRunner,
    SubprocessRunner,
    describe_result,
    runner_for_user,
)


def test_subprocess_runner_captures_output(tmp_path: Path) -> None:
    """Output and exit codes are returned rather than raised."""
    runner = SubprocessRunner()

    result = runner.run(
        ["sh", "-c", 'echo "$GREETING from $(pwd)"; exit 3'],
        cwd=tmp_path,
        env={"GREETING": "hello"},
    )

    assert result.returncode == 3
    assert result.stdout.strip() == f"hello from {tmp_path}"


def test_subprocess_runner_maps_missing_binary(tmp_path: Path) -> None:
    """A missing executable yields exit 127 instead of an exception."""
    result = SubprocessRunner().run([str(tmp_path / "no-such-tool"), "--version"])

    assert result.returncode == RC_NOT_FOUND


def test_subprocess_runner_maps_timeout() -> None:
    """Commands exceeding their timeout yield exit 124."""
    result = SubprocessRunner().run(["sleep", "5"], timeout=0.2)

    assert result.returncode == RC_TIMEOUT
    assert "timed out after 0.2s" in result.stderr


def test_as_user_runner_prefixes_sudo_and_env() -> None:
    """Commands are wrapped with sudo and env(1) for the deploy user."""
    inner = FakeRunner()
    runner = AsUserRunner(inner, "deploy")

    runner.run(["npm", "run", "build"], cwd=Path("/tmp"), env={"NODE_ENV": "production"})

    (call,) = inner.calls
    assert call.argv == [
        "sudo",
        "-u",
        "deploy",
        "-H",
        "env",
        "NODE_ENV=production",
        "npm",
        "run",
        "build",
    ]
    assert call.cwd == Path("/tmp")
    assert call.env is None


def test_runner_for_user_only_wraps_when_root() -> None:
    """Non-root invocations and root targets use the runner unchanged."""
    inner = FakeRunner()

    assert runner_for_user(inner, "deploy", is_root=False) is inner
    assert runner_for_user(inner, "root", is_root=True) is inner
    assert runner_for_user(inner, None, is_root=True) is inner
    wrapped = runner_for_user(inner, "deploy", is_root=True)
    assert isinstance(wrapped, AsUserRunner)
    assert wrapped.user == "deploy"


def test_describe_result_prefers_stderr_tail() -> None:
    """The last lines of stderr (or stdout) summarise a failure."""
    lines = "\n".join(f"line {n}" for n in range(10))
    result = subprocess.CompletedProcess(["x"], 1, "ignored", lines)

    assert describe_result(result) == "\n".join(f"line {n}" for n in range(5, 10))
    assert describe_result(subprocess.CompletedProcess(["x"], 1, "only out", "")) == "only out"
    assert describe_result(subprocess.CompletedProcess(["x"], 1, "", "")) == "no output"
