"""Plan and apply directory layout changes for a deployment domain."""
from __future__ import annotations

import grp
import os
import pwd
import shutil
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal


@dataclass(slots=True)
class DirectorySpec:
    """Desired state of a single directory."""

    path: Path
    mode: int = 0o755
    owner: str | None = None
    group: str | None = None


@dataclass(slots=True)
class DirectoryAction:
    """Single filesystem change required to satisfy a :class:`DirectorySpec`."""

    kind: Literal["mkdir", "chmod", "chown"]
    spec: DirectorySpec
    description: str


@dataclass(slots=True)
class DirectoryPlan:
    """Aggregated actions and warnings for a set of directories."""

    actions: list[DirectoryAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """Return True when applying the plan would touch the filesystem."""
        return bool(self.actions)


def plan_directories(specs: Iterable[DirectorySpec]) -> DirectoryPlan:
    """Return the actions needed to bring every spec into its desired state."""
    plan = DirectoryPlan()
    for spec in specs:
        path = spec.path
        if path.exists() and not path.is_dir():
            plan.warnings.append(f"{path} exists but is not a directory; leaving it untouched.")
            continue

        if not path.exists():
            plan.actions.append(
                DirectoryAction("mkdir", spec, f"Create {path} (mode {spec.mode:04o}).")
            )
            if (spec.owner or spec.group) and _ownership_differs(spec, -1, -1, plan):
                plan.actions.append(
                    DirectoryAction("chown", spec, f"Set owner of {path} to {_owner_label(spec)}.")
                )
            continue

        stat = path.stat()
        if stat.st_mode & 0o777 != spec.mode:
            plan.actions.append(
                DirectoryAction(
                    "chmod",
                    spec,
                    f"Change mode of {path} from {stat.st_mode & 0o777:04o} to {spec.mode:04o}.",
                )
            )
        if _ownership_differs(spec, stat.st_uid, stat.st_gid, plan):
            plan.actions.append(
                DirectoryAction("chown", spec, f"Set owner of {path} to {_owner_label(spec)}.")
            )
    return plan


def apply_directory_plan(plan: DirectoryPlan) -> None:
    """Execute the actions in *plan* in order."""
    for action in plan.actions:
        spec = action.spec
        if action.kind == "mkdir":
            spec.path.mkdir(parents=True, exist_ok=True)
            # mkdir honours the umask, so set the mode explicitly.
            os.chmod(spec.path, spec.mode)
        elif action.kind == "chmod":
            os.chmod(spec.path, spec.mode)
        elif action.kind == "chown":
            shutil.chown(spec.path, user=spec.owner, group=spec.group)


def _owner_label(spec: DirectorySpec) -> str:
    return f"{spec.owner or '-'}:{spec.group or '-'}"


def _ownership_differs(spec: DirectorySpec, uid: int, gid: int, plan: DirectoryPlan) -> bool:
    differs = False
    if spec.owner:
        try:
            differs |= pwd.getpwnam(spec.owner).pw_uid != uid
        except KeyError:
            plan.warnings.append(f"User '{spec.owner}' does not exist; cannot chown {spec.path}.")
            return False
    if spec.group:
        try:
            differs |= grp.getgrnam(spec.group).gr_gid != gid
        except KeyError:
            plan.warnings.append(f"Group '{spec.group}' does not exist; cannot chown {spec.path}.")
            return False
    return differs


__all__ = ["DirectoryAction", "DirectoryPlan", "DirectorySpec", "apply_directory_plan", "plan_directories"]
