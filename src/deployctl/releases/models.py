"""Value objects describing releases and deployment outcomes."""
from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Literal

from .errors import ReloadWarning

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
_TIMESTAMP_RE = re.compile(r"^\d{8}_\d{6}$")


def is_release_name(name: str) -> bool:
    """Return True when *name* is a valid ``YYYYMMDD_HHMMSS`` release timestamp."""
    if not _TIMESTAMP_RE.match(name):
        return False
    try:
        datetime.strptime(name, TIMESTAMP_FORMAT)
    except ValueError:
        return False
    return True


class StepPolicy(str, Enum):
    """How a failing build step affects the deployment."""

    FATAL = "fatal"
    BEST_EFFORT = "best_effort"


TimeoutKind = Literal["install", "command"]


@dataclass(frozen=True)
class BuildStep:
    """Declared row of a stack's step table.

    A step either runs ``argv`` inside the release or calls ``action`` with the
    release path. ``condition`` describes why the step was selected.
    """

    name: str
    policy: StepPolicy
    argv: tuple[str, ...] = ()
    action: Callable[[Path], None] | None = None
    condition: str = "always"
    timeout_kind: TimeoutKind = "command"
    env: Mapping[str, str] | None = None
    cwd: str | None = None


@dataclass(slots=True)
class StepResult:
    """Outcome of an executed (or skipped) build step."""

    name: str
    status: Literal["success", "failed", "skipped", "warning"]
    detail: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "status": self.status, "detail": self.detail}


@dataclass(frozen=True)
class Release:
    """A fully built, immutable release directory."""

    timestamp: str
    path: Path
    built_output: Path
    stack: str
    branch: str | None = None
    commit: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timestamp": self.timestamp,
            "path": str(self.path),
            "built_output": str(self.built_output),
            "stack": self.stack,
            "branch": self.branch,
            "commit": self.commit,
        }


@dataclass(slots=True)
class ActivationResult:
    """Result of repointing ``current``."""

    release: Release
    target: Path
    previous_target: Path | None
    warnings: list[ReloadWarning] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """Return True when ``current`` now points somewhere new."""
        return self.previous_target != self.target


@dataclass(slots=True)
class PruneResult:
    """Releases kept and removed by a retention pass."""

    kept: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DeployOutcome:
    """Summary returned by ``deploy`` and ``rollback``."""

    domain: str
    release: Release
    active_path: Path
    release_count: int
    steps: list[StepResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)

    @property
    def status(self) -> Literal["success", "degraded"]:
        """Return ``degraded`` when any non-fatal problem was recorded."""
        return "degraded" if self.warnings else "success"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "domain": self.domain,
            "status": self.status,
            "release": self.release.to_dict(),
            "active_path": str(self.active_path),
            "release_count": self.release_count,
            "steps": [step.to_dict() for step in self.steps],
            "warnings": list(self.warnings),
            "pruned": list(self.pruned),
        }


__all__ = [
    "ActivationResult",
    "BuildStep",
    "DeployOutcome",
    "PruneResult",
    "Release",
    "StepPolicy",
    "StepResult",
    "TIMESTAMP_FORMAT",
    "is_release_name",
]
