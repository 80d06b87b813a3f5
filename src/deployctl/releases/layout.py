"""Per-domain directory layout and the ``current`` pointer."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .models import is_release_name

SKELETON = ("releases", "shared", "backups", "logs")


@dataclass(frozen=True)
class DomainLayout:
    """Paths owned by a single deployed domain.

    ``<base_dir>/<name>/`` holds ``releases/<timestamp>/``, ``shared/``,
    ``backups/``, ``logs/`` and the ``current`` symlink.
    """

    name: str
    base_dir: Path

    @property
    def root(self) -> Path:
        """Return the domain root directory."""
        return self.base_dir / self.name

    @property
    def releases_dir(self) -> Path:
        """Return the directory holding timestamped releases."""
        return self.root / "releases"

    @property
    def shared_dir(self) -> Path:
        """Return the directory holding persistent shared state."""
        return self.root / "shared"

    @property
    def backups_dir(self) -> Path:
        """Return the directory holding shared-state backups."""
        return self.root / "backups"

    @property
    def logs_dir(self) -> Path:
        """Return the per-domain log directory (nginx access/error logs)."""
        return self.root / "logs"

    @property
    def current(self) -> Path:
        """Return the path of the ``current`` symlink."""
        return self.root / "current"

    def skeleton(self) -> list[Path]:
        """Return the directories every domain needs."""
        return [self.root / name for name in SKELETON]

    def release_path(self, timestamp: str) -> Path:
        """Return the directory for release *timestamp*."""
        return self.releases_dir / timestamp

    def list_releases(self) -> list[str]:
        """Return release timestamps present on disk, oldest first.

        Entries that are not timestamp-named directories are ignored.
        """
        if not self.releases_dir.is_dir():
            return []
        names = [
            entry.name
            for entry in self.releases_dir.iterdir()
            if is_release_name(entry.name) and entry.is_dir() and not entry.is_symlink()
        ]
        return sorted(names)

    def current_target(self) -> Path | None:
        """Return the raw target of ``current`` or None when it is not a symlink."""
        if not self.current.is_symlink():
            return None
        target = Path(os.readlink(self.current))
        if not target.is_absolute():
            target = self.current.parent / target
        return target

    def active_release(self) -> str | None:
        """Return the timestamp of the release ``current`` resolves into."""
        target = self.current_target()
        if target is None:
            return None
        try:
            relative = target.resolve().relative_to(self.releases_dir.resolve())
        except (ValueError, OSError):
            return None
        if not relative.parts:
            return None
        name = relative.parts[0]
        return name if is_release_name(name) else None


__all__ = ["DomainLayout", "SKELETON"]
