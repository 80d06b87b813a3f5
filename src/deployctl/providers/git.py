"""Git provider used to fetch release sources."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

from ..runner import RC_TIMEOUT, CommandRunner, describe_result


class GitError(RuntimeError):
    """Raised when a git command fails."""


@dataclass(slots=True)
class GitProvider:
    """Shallow-clone repositories and inspect checkouts."""

    runner: CommandRunner
    git_bin: str = "git"

    def clone(
        self,
        repository: str,
        ref: str,
        destination: Path,
        *,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Clone *ref* of *repository* into *destination* (depth 1)."""
        command = [
            self.git_bin,
            "clone",
            "--quiet",
            "--depth",
            "1",
            "--single-branch",
            "--branch",
            ref,
            repository,
            str(destination),
        ]
        result = self.runner.run(command, timeout=timeout)
        if result.returncode == RC_TIMEOUT:
            raise GitError(f"git clone of {repository}@{ref} timed out after {timeout}s.")
        if result.returncode != 0:
            raise GitError(
                f"git clone failed (exit {result.returncode}): {describe_result(result)}"
            )
        return result

    def rev_parse(self, checkout: Path, rev: str = "HEAD") -> str | None:
        """Return the commit id for *rev* inside *checkout*, or None when unknown."""
        result = self.runner.run([self.git_bin, "-C", str(checkout), "rev-parse", rev])
        if result.returncode != 0:
            return None
        commit = (result.stdout or "").strip()
        return commit or None


__all__ = ["GitError", "GitProvider"]
