"""Atomic activation of a release through the ``current`` symlink."""
from __future__ import annotations

import logging
import os
from collections.abc import Callable, Sequence
from pathlib import Path

from .errors import ActivationError, ReloadWarning
from .layout import DomainLayout
from .models import ActivationResult, Release

LOGGER = logging.getLogger(__name__)

ReloadHook = tuple[str, Callable[[Release], None]]


class Activator:
    """Repoint ``current`` at a release and run the stack's reload hooks."""

    def __init__(self, layout: DomainLayout, *, hooks: Sequence[ReloadHook] = ()) -> None:
        self.layout = layout
        self.hooks = list(hooks)

    def activate(self, release: Release) -> ActivationResult:
        """Swap ``current`` to *release* then run reload hooks.

        Hook failures are reported as :class:`ReloadWarning` entries; the new
        pointer is kept because the release itself is healthy.
        """
        previous = self.swap(release.built_output)
        result = ActivationResult(
            release=release,
            target=release.built_output,
            previous_target=previous,
        )
        for name, hook in self.hooks:
            try:
                hook(release)
            except (RuntimeError, OSError) as exc:
                LOGGER.debug("Reload hook %s failed: %s", name, exc)
                result.warnings.append(ReloadWarning(name, str(exc)))
        return result

    def swap(self, target: Path) -> Path | None:
        """Atomically point ``current`` at *target* and return the previous target.

        A temporary symlink is created next to ``current`` and renamed over it,
        so readers always see either the old or the new release.
        """
        current = self.layout.current
        if (current.exists() or current.is_symlink()) and not current.is_symlink():
            kind = "directory" if current.is_dir() else "file"
            raise ActivationError(
                f"{current} is a real {kind}, not a symlink; move it aside before deploying."
            )
        if not target.is_dir():
            raise ActivationError(f"Cannot activate {target}: directory does not exist.")

        previous = self.layout.current_target()
        temp_link = current.with_name(f".current.tmp-{os.getpid()}")
        try:
            if temp_link.exists() or temp_link.is_symlink():
                temp_link.unlink()
            temp_link.symlink_to(target, target_is_directory=True)
            os.replace(temp_link, current)
        except OSError as exc:
            temp_link.unlink(missing_ok=True)
            raise ActivationError(f"Failed to repoint {current} at {target}: {exc}") from exc
        LOGGER.debug("current -> %s (was %s)", target, previous)
        return previous


__all__ = ["Activator", "ReloadHook"]
