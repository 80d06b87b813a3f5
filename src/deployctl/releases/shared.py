"""Shared-state linking: persistent paths that survive every release."""
from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Iterable, Sequence
from pathlib import Path

from ..bootstrap.filesystem import DirectorySpec, apply_directory_plan, plan_directories
from ..config import SharedItem, parse_shared_items
from .errors import SharedLinkError
from .layout import DomainLayout

LOGGER = logging.getLogger(__name__)

SHARED_DIR_MODE = 0o775
SHARED_FILE_MODE = 0o660
EXAMPLE_SUFFIX = ".example"


class SharedStateLinker:
    """Create shared items under ``shared/`` and link them into releases.

    When ``owner``/``group`` are given (the tool runs as root) everything the
    linker creates is handed to the deploy account so build steps and the
    application can write to it.
    """

    def __init__(
        self,
        layout: DomainLayout,
        items: Sequence[SharedItem],
        *,
        seed_dirs: Iterable[str] = (),
        owner: str | None = None,
        group: str | None = None,
    ) -> None:
        self.layout = layout
        self.items = tuple(items)
        self.seed_dirs = tuple(seed_dirs)
        self.owner = owner
        self.group = group

    def ensure_shared(self) -> list[str]:
        """Create missing shared items; existing content is never touched.

        Returns warnings for items whose on-disk kind contradicts the
        declaration and for ownership that could not be applied.
        """
        warnings: list[str] = []
        shared = self.layout.shared_dir
        shared.mkdir(parents=True, exist_ok=True)
        for item in self.items:
            path = shared / item.path
            if path.is_symlink() or path.exists():
                mismatch = _kind_mismatch(path, item)
                if mismatch:
                    warnings.append(mismatch)
                continue
            if item.kind == "dir":
                warnings.extend(self._create_dir(path))
                LOGGER.debug("Created shared directory %s", path)
            else:
                warnings.extend(self._create_dir(path.parent))
                warnings.extend(self._create_file(path))
                LOGGER.debug("Created shared file %s", path)
        for relative in self.seed_dirs:
            warnings.extend(self._create_dir(shared / relative))
        return warnings

    def link_into(self, release_path: Path) -> list[str]:
        """Replace each shared path inside *release_path* with a symlink into ``shared/``.

        Raises :class:`SharedLinkError` when a target would be reached through
        another shared link, since replacing it would delete persistent data.
        """
        shared_root = self.layout.shared_dir.resolve()
        warnings: list[str] = []
        for item in self.items:
            source = self.layout.shared_dir / item.path
            target = release_path / item.path
            if target.is_symlink() and Path(os.readlink(target)) == source:
                continue
            parent = target.parent.resolve()
            if parent == shared_root or parent.is_relative_to(shared_root):
                raise SharedLinkError(
                    f"Refusing to link shared item '{item.path}': {target.parent} "
                    f"resolves into {shared_root}."
                )
            if item.kind == "file":
                self._seed_from_example(source, release_path / (item.path + EXAMPLE_SUFFIX))
            if target.is_symlink() or target.is_file():
                target.unlink()
            elif target.is_dir():
                LOGGER.debug("Replacing shipped directory %s with shared link", target)
                shutil.rmtree(target)
            elif target.exists():
                warnings.append(f"Cannot replace special file {target} with a shared link.")
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.symlink_to(source, target_is_directory=item.kind == "dir")
        return warnings

    def verify(self, release_path: Path) -> list[str]:
        """Return the shared items that do not resolve into ``shared/`` inside *release_path*."""
        shared_root = self.layout.shared_dir.resolve()
        broken: list[str] = []
        for item in self.items:
            target = release_path / item.path
            try:
                resolved = target.resolve(strict=True)
            except (OSError, RuntimeError):
                broken.append(item.path)
                continue
            if not resolved.is_relative_to(shared_root):
                broken.append(item.path)
        return broken

    # ------------------------------------------------------------------
    def _create_dir(self, path: Path) -> list[str]:
        missing: list[Path] = []
        current = path
        while not (current.exists() or current.is_symlink()):
            missing.append(current)
            current = current.parent
        specs = [
            DirectorySpec(path=entry, mode=SHARED_DIR_MODE, owner=self.owner, group=self.group)
            for entry in reversed(missing)
        ]
        plan = plan_directories(specs)
        apply_directory_plan(plan)
        return plan.warnings

    def _create_file(self, path: Path) -> list[str]:
        path.touch()
        os.chmod(path, SHARED_FILE_MODE)
        if not (self.owner or self.group):
            return []
        try:
            shutil.chown(path, user=self.owner, group=self.group)
        except LookupError as exc:
            return [f"Cannot set owner of {path}: {exc}"]
        return []

    @staticmethod
    def _seed_from_example(source: Path, example: Path) -> None:
        # Only an empty shared file is seeded; edited content always wins.
        if not source.is_file() or source.stat().st_size > 0 or not example.is_file():
            return
        shutil.copyfile(example, source)
        LOGGER.debug("Seeded %s from %s", source, example)


def _kind_mismatch(path: Path, item: SharedItem) -> str | None:
    if item.kind == "dir" and not path.is_dir():
        return f"Shared item '{item.path}' is declared as a directory but {path} is not one."
    if item.kind == "file" and path.is_dir():
        return f"Shared item '{item.path}' is declared as a file but {path} is a directory."
    return None


__all__ = ["SHARED_DIR_MODE", "SHARED_FILE_MODE", "SharedStateLinker", "parse_shared_items"]
