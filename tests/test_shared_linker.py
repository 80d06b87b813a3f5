"""Tests for shared-state linking into releases."""
from __future__ import annotations

import os
from pathlib import Path

import pytest
from conftest import current_group, current_user

from deployctl.config import SharedItem
from deployctl.releases.errors import SharedLinkError
from deployctl.releases.layout import DomainLayout
from deployctl.releases import shared
from deployctl.releases.shared import SHARED_DIR_MODE, SHARED_FILE_MODE, SharedStateLinker

ITEMS = (
    SharedItem(".env", "file"),
    SharedItem("storage", "dir"),
    SharedItem("public/uploads", "dir"),
)


@pytest.fixture
def layout(tmp_path: Path) -> DomainLayout:
    """Return a layout rooted in a temporary base directory."""
    return DomainLayout("shop.example.com", tmp_path / "www")


def test_ensure_shared_creates_missing_items(layout: DomainLayout) -> None:
    """Files are touched and directories created under ``shared/``."""
    linker = SharedStateLinker(layout, ITEMS, seed_dirs=("storage/logs",))

    assert linker.ensure_shared() == []

    assert (layout.shared_dir / ".env").is_file()
    assert (layout.shared_dir / "storage" / "logs").is_dir()
    assert (layout.shared_dir / "public" / "uploads").is_dir()


def test_ensure_shared_never_overwrites(layout: DomainLayout) -> None:
    """Existing shared content survives repeated preparation."""
    linker = SharedStateLinker(layout, ITEMS)
    linker.ensure_shared()
    (layout.shared_dir / ".env").write_text("APP_KEY=secret\n", encoding="utf-8")

    linker.ensure_shared()

    assert (layout.shared_dir / ".env").read_text(encoding="utf-8") == "APP_KEY=secret\n"


def test_ensure_shared_warns_on_kind_mismatch(layout: DomainLayout) -> None:
    """A declared directory that exists as a file is reported."""
    layout.shared_dir.mkdir(parents=True)
    (layout.shared_dir / "storage").write_text("oops", encoding="utf-8")
    linker = SharedStateLinker(layout, (SharedItem("storage", "dir"),))

    warnings = linker.ensure_shared()

    assert warnings == [
        f"Shared item 'storage' is declared as a directory but "
        f"{layout.shared_dir / 'storage'} is not one."
    ]


def test_link_into_replaces_shipped_paths(layout: DomainLayout) -> None:
    """Files and directories shipped in the checkout become absolute symlinks."""
    linker = SharedStateLinker(layout, ITEMS)
    linker.ensure_shared()
    release = layout.release_path("20240301_120000")
    (release / "storage" / "logs").mkdir(parents=True)
    (release / ".env").write_text("APP_ENV=local\n", encoding="utf-8")

    assert linker.link_into(release) == []

    for item in ITEMS:
        target = release / item.path
        assert target.is_symlink()
        assert Path(os.readlink(target)) == layout.shared_dir / item.path
    assert linker.verify(release) == []


def test_link_into_is_idempotent(layout: DomainLayout) -> None:
    """Links already pointing at ``shared/`` are left alone."""
    linker = SharedStateLinker(layout, ITEMS)
    linker.ensure_shared()
    release = layout.release_path("20240301_120000")
    release.mkdir(parents=True)
    linker.link_into(release)
    before = (release / "storage").lstat().st_mtime_ns

    linker.link_into(release)

    assert (release / "storage").lstat().st_mtime_ns == before


def test_verify_reports_broken_links(layout: DomainLayout) -> None:
    """Items missing from the release or pointing elsewhere are reported."""
    linker = SharedStateLinker(layout, ITEMS)
    linker.ensure_shared()
    release = layout.release_path("20240301_120000")
    release.mkdir(parents=True)
    linker.link_into(release)
    (release / ".env").unlink()
    (release / ".env").write_text("local copy", encoding="utf-8")

    assert linker.verify(release) == [".env"]


def test_ensure_shared_hands_items_to_deploy_account(
    layout: DomainLayout, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Created items are group-writable and chowned to the deploy account."""
    calls: list[tuple[Path, str | None, str | None]] = []
    monkeypatch.setattr(
        shared.shutil,
        "chown",
        lambda path, user=None, group=None: calls.append((Path(path), user, group)),
    )
    owner, group = current_user(), current_group()
    linker = SharedStateLinker(
        layout, ITEMS, seed_dirs=("storage/logs",), owner=owner, group=group
    )

    assert linker.ensure_shared() == []

    root = layout.shared_dir
    chowned = {path: (user, grp) for path, user, grp in calls}
    for relative in (".env", "storage", "storage/logs", "public", "public/uploads"):
        assert chowned[root / relative] == (owner, group)
    assert (root / ".env").stat().st_mode & 0o777 == SHARED_FILE_MODE
    assert (root / "storage" / "logs").stat().st_mode & 0o777 == SHARED_DIR_MODE


def test_ensure_shared_without_owner_never_chowns(
    layout: DomainLayout, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Unprivileged runs keep the invoking user's ownership."""
    calls: list[Path] = []
    monkeypatch.setattr(
        shared.shutil, "chown", lambda path, user=None, group=None: calls.append(path)
    )

    SharedStateLinker(layout, ITEMS).ensure_shared()

    assert calls == []


def test_link_into_refuses_targets_inside_shared(layout: DomainLayout) -> None:
    """A nested item reached through another shared link is never replaced."""
    items = (SharedItem("storage", "dir"), SharedItem("storage/logs", "dir"))
    linker = SharedStateLinker(layout, items)
    linker.ensure_shared()
    log = layout.shared_dir / "storage" / "logs" / "app.log"
    log.write_text("persistent\n", encoding="utf-8")
    release = layout.release_path("20240301_120000")
    release.mkdir(parents=True)

    with pytest.raises(SharedLinkError, match="resolves into"):
        linker.link_into(release)

    assert log.read_text(encoding="utf-8") == "persistent\n"
    assert not (layout.shared_dir / "storage" / "logs").is_symlink()


def test_link_into_seeds_empty_file_from_example(layout: DomainLayout) -> None:
    """An empty shared file is filled from the release's ``.example`` copy."""
    linker = SharedStateLinker(layout, (SharedItem(".env", "file"),))
    linker.ensure_shared()
    release = layout.release_path("20240301_120000")
    release.mkdir(parents=True)
    (release / ".env.example").write_text("APP_NAME=Shop\nAPP_KEY=\n", encoding="utf-8")

    linker.link_into(release)

    assert (layout.shared_dir / ".env").read_text(encoding="utf-8") == "APP_NAME=Shop\nAPP_KEY=\n"
    assert (release / ".env").is_symlink()


def test_link_into_keeps_existing_shared_content(layout: DomainLayout) -> None:
    """Seeding never overwrites a shared file that already has content."""
    linker = SharedStateLinker(layout, (SharedItem(".env", "file"),))
    linker.ensure_shared()
    (layout.shared_dir / ".env").write_text("APP_KEY=base64:live\n", encoding="utf-8")
    release = layout.release_path("20240301_120000")
    release.mkdir(parents=True)
    (release / ".env.example").write_text("APP_KEY=\n", encoding="utf-8")

    linker.link_into(release)

    assert (layout.shared_dir / ".env").read_text(encoding="utf-8") == "APP_KEY=base64:live\n"
