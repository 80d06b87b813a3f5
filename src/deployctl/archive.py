"""Archive helpers for shared-state backups taken before migrations."""
from __future__ import annotations

import hashlib
import os
from pathlib import Path

from .runner import CommandRunner, SubprocessRunner, describe_result


class ArchiveError(RuntimeError):
    """Raised when a backup archive cannot be produced."""


def create_archive(
    source_dir: Path,
    archive_path: Path,
    *,
    runner: CommandRunner | None = None,
    timeout: float | None = None,
    tar_bin: str = "tar",
) -> None:
    """Create a gzip-compressed tarball of *source_dir* at *archive_path*."""
    if not source_dir.is_dir():
        raise ArchiveError(f"Cannot archive missing directory {source_dir}.")
    runner = runner or SubprocessRunner()
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    cmd = [tar_bin, "-czf", str(archive_path), "-C", str(source_dir.parent), source_dir.name]
    result = runner.run(cmd, timeout=timeout)
    if result.returncode != 0:
        archive_path.unlink(missing_ok=True)
        raise ArchiveError(f"tar failed (exit {result.returncode}): {describe_result(result)}")

    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = archive_path.with_name(f"{archive_path.name}.sha256")
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o640)
    except OSError:
        pass
    return checksum_path


def backup_shared_state(
    shared_dir: Path,
    backups_dir: Path,
    label: str,
    *,
    runner: CommandRunner | None = None,
    timeout: float | None = None,
) -> Path:
    """Archive *shared_dir* into ``<backups_dir>/<label>-shared.tar.gz`` with a checksum."""
    archive_path = backups_dir / f"{label}-shared.tar.gz"
    create_archive(shared_dir, archive_path, runner=runner, timeout=timeout)
    if not archive_path.exists():
        raise ArchiveError(f"tar reported success but {archive_path} is missing.")
    write_checksum_file(archive_path, compute_checksum(archive_path))
    return archive_path


__all__ = [
    "ArchiveError",
    "backup_shared_state",
    "compute_checksum",
    "create_archive",
    "write_checksum_file",
]
