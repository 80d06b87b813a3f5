"""System package installation through ``apt-get``."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Iterable
from dataclasses import dataclass

from ..runner import CommandRunner, describe_result

LOGGER = logging.getLogger(__name__)

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


@dataclass(slots=True)
class PackageStepResult:
    """Outcome of a single apt invocation."""

    name: str
    ok: bool
    detail: str
    result: subprocess.CompletedProcess[str] | None = None


@dataclass(slots=True)
class AptInstaller:
    """Install Debian packages idempotently (``apt-get install`` is a no-op when present)."""

    runner: CommandRunner
    apt_bin: str = "apt-get"
    timeout: float | None = None

    def update(self) -> PackageStepResult:
        """Refresh the package index."""
        result = self.runner.run([self.apt_bin, "update", "-qq"], env=APT_ENV, timeout=self.timeout)
        return self._outcome("apt.update", result)

    def install(self, packages: Iterable[str]) -> PackageStepResult:
        """Install *packages* (duplicates removed, order preserved)."""
        names = list(dict.fromkeys(name for name in packages if name))
        if not names:
            return PackageStepResult("apt.install", True, "no packages requested")
        result = self.runner.run(
            [self.apt_bin, "install", "-y", *names], env=APT_ENV, timeout=self.timeout
        )
        return self._outcome("apt.install", result, names=names)

    def _outcome(
        self,
        name: str,
        result: subprocess.CompletedProcess[str],
        *,
        names: list[str] | None = None,
    ) -> PackageStepResult:
        if result.returncode == 0:
            detail = f"installed {' '.join(names)}" if names else "ok"
            return PackageStepResult(name, True, detail, result)
        detail = f"{self.apt_bin} failed (exit {result.returncode}): {describe_result(result)}"
        LOGGER.debug("%s: %s", name, detail)
        return PackageStepResult(name, False, detail, result)


__all__ = ["APT_ENV", "AptInstaller", "PackageStepResult"]
