"""Retention pruning of old release directories."""
from __future__ import annotations

import logging
import shutil

from ..state import StateRegistry
from .layout import DomainLayout
from .models import PruneResult

LOGGER = logging.getLogger(__name__)


class RetentionPruner:
    """Keep the active release plus the newest ``keep - 1`` others."""

    def __init__(self, layout: DomainLayout, *, registry: StateRegistry | None = None) -> None:
        self.layout = layout
        self.registry = registry

    def select(self, keep: int) -> tuple[list[str], list[str]]:
        """Return ``(kept, doomed)`` timestamps, both newest first."""
        if keep < 1:
            raise ValueError("keep must be at least 1")
        releases = sorted(self.layout.list_releases(), reverse=True)
        active = self.layout.active_release()
        kept: list[str] = []
        if active in releases:
            kept.append(active)
        for name in releases:
            if len(kept) >= keep:
                break
            if name not in kept:
                kept.append(name)
        doomed = [name for name in releases if name not in kept]
        kept.sort(reverse=True)
        return kept, doomed

    def prune(self, keep: int) -> PruneResult:
        """Delete releases outside the retention window."""
        kept, doomed = self.select(keep)
        result = PruneResult(kept=kept)
        for name in doomed:
            path = self.layout.release_path(name)
            try:
                shutil.rmtree(path)
            except OSError as exc:
                result.warnings.append(f"Failed to remove release {name}: {exc}")
                continue
            LOGGER.debug("Pruned release %s", path)
            result.removed.append(name)
        if self.registry is not None and result.removed:
            self.registry.remove_releases(self.layout.name, result.removed)
        return result


__all__ = ["RetentionPruner"]
