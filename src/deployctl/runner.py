"""Command execution seam shared by every external collaborator.

Providers, the release builder and the environment preparer never call
:mod:`subprocess` directly. They receive a :class:`CommandRunner` so tests can
substitute a recording fake and production code gets uniform timeout and
missing-binary handling.
"""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Protocol

LOGGER = logging.getLogger(__name__)

RC_TIMEOUT = 124
RC_NOT_FOUND = 127


class CommandRunner(Protocol):
    """Callable interface used to run external commands."""

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Execute *argv* and return the completed process (never raises on failure)."""
        ...


class SubprocessRunner:
    """Run commands with :func:`subprocess.run`."""

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Execute *argv*, mapping a missing binary to 127 and a timeout to 124."""
        command = [str(part) for part in argv]
        merged_env = None
        if env:
            merged_env = dict(os.environ)
            merged_env.update(env)
        LOGGER.debug("run: %s (cwd=%s, timeout=%s)", " ".join(command), cwd, timeout)
        try:
            return subprocess.run(  # noqa: S603
                command,
                cwd=str(cwd) if cwd is not None else None,
                env=merged_env,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            return subprocess.CompletedProcess(command, RC_NOT_FOUND, "", str(exc))
        except subprocess.TimeoutExpired as exc:
            stdout = _decode(exc.stdout)
            stderr = _decode(exc.stderr)
            message = f"timed out after {timeout:g}s" if timeout else "timed out"
            return subprocess.CompletedProcess(
                command, RC_TIMEOUT, stdout, (stderr + "\n" + message).strip()
            )


class AsUserRunner:
    """Wrap another runner so commands execute as *user* through ``sudo``."""

    def __init__(self, inner: CommandRunner, user: str, *, sudo_bin: str = "sudo") -> None:
        self.inner = inner
        self.user = user
        self.sudo_bin = sudo_bin

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Execute *argv* as the configured user."""
        command = [self.sudo_bin, "-u", self.user, "-H"]
        if env:
            # sudo resets the environment, so pass variables through env(1).
            command.append("env")
            command.extend(f"{key}={value}" for key, value in env.items())
        command.extend(argv)
        return self.inner.run(command, cwd=cwd, timeout=timeout)


def runner_for_user(
    runner: CommandRunner,
    user: str | None,
    *,
    is_root: bool | None = None,
) -> CommandRunner:
    """Return *runner* wrapped to run as *user* when running as root."""
    if not user or user == "root":
        return runner
    if is_root is None:
        is_root = os.geteuid() == 0
    if not is_root:
        return runner
    return AsUserRunner(runner, user)


def describe_result(result: subprocess.CompletedProcess[str]) -> str:
    """Return a short human-readable message for a completed process."""
    message = (result.stderr or "").strip() or (result.stdout or "").strip()
    if not message:
        return "no output"
    lines = message.splitlines()
    return "\n".join(lines[-5:])


def _decode(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


__all__ = [
    "AsUserRunner",
    "CommandRunner",
    "RC_NOT_FOUND",
    "RC_TIMEOUT",
    "SubprocessRunner",
    "describe_result",
    "runner_for_user",
]
