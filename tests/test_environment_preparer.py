"""Tests for host preparation ahead of a release build."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
from conftest import FakeRunner

from deployctl.bootstrap import environment
from deployctl.bootstrap.environment import EnvironmentPrepareError, EnvironmentPreparer
from deployctl.bootstrap.packages import APT_ENV, AptInstaller
from deployctl.config import AppConfig
from deployctl.providers.systemd import SystemdProvider
from deployctl.releases import stacks
from deployctl.releases.layout import DomainLayout
from deployctl.releases.shared import SharedStateLinker
from deployctl.templates import TemplateEngine


def _preparer(config: AppConfig, runner: FakeRunner) -> EnvironmentPreparer:
    layout = DomainLayout(config.domain, config.base_dir)
    linker = SharedStateLinker(
        layout, config.shared_items, seed_dirs=stacks.shared_seed_dirs(config)
    )
    systemd = SystemdProvider(
        templates=TemplateEngine.with_overrides(None),
        runner=runner,
        systemd_dir=config.systemd.unit_dir,
    )
    return EnvironmentPreparer(
        config, layout, runner=runner, linker=linker, systemd=systemd, is_root=False
    )


def test_prepare_creates_skeleton_and_shared_items(
    make_config: Callable[..., AppConfig],
) -> None:
    """The domain skeleton and shared items exist after preparation."""
    config = make_config("laravel")
    runner = FakeRunner()

    report = _preparer(config, runner).prepare()

    root = config.domain_root
    for name in ("releases", "shared", "backups", "logs"):
        assert (root / name).is_dir()
        assert (root / name).stat().st_mode & 0o777 == 0o775
    assert (root / "shared" / ".env").is_file()
    assert (root / "shared" / "public" / "uploads").is_dir()
    assert (root / "shared" / "storage" / "framework" / "sessions").is_dir()
    assert report.warnings == []
    names = [step.name for step in report.steps]
    assert names == [
        "packages",
        "accounts",
        "directories",
        "shared",
        "service.nginx",
        "service.php8.1-fpm",
        "toolchain.php",
        "toolchain.node",
    ]
    assert ["systemctl", "enable", "--now", "php8.1-fpm.service"] in runner.commands()


def test_prepare_is_idempotent(make_config: Callable[..., AppConfig]) -> None:
    """Running twice changes nothing and keeps existing shared content."""
    config = make_config("flask")
    preparer = _preparer(config, FakeRunner())
    preparer.prepare()
    db = config.domain_root / "shared" / "db.sqlite3"
    db.write_text("data", encoding="utf-8")

    report = preparer.prepare()

    directories = next(step for step in report.steps if step.name == "directories")
    assert directories.detail == "up to date"
    assert db.read_text(encoding="utf-8") == "data"


def test_prepare_partial_skips_host_steps(make_config: Callable[..., AppConfig]) -> None:
    """``full=False`` only ensures directories and shared items."""
    config = make_config("react")
    runner = FakeRunner()

    report = _preparer(config, runner).prepare(full=False)

    assert [step.name for step in report.steps] == ["directories", "shared"]
    assert runner.calls == []


def test_prepare_installs_packages(make_config: Callable[..., AppConfig]) -> None:
    """Stack packages are installed non-interactively when enabled."""
    config = make_config("react", packages={"install": True, "update": True, "extra": ["htop"]})
    runner = FakeRunner()

    _preparer(config, runner).prepare()

    update, install = runner.calls[:2]
    assert update.argv == ["apt-get", "update", "-qq"]
    assert install.argv[:3] == ["apt-get", "install", "-y"]
    assert {"git", "nginx", "nodejs", "npm", "htop"} <= set(install.argv[3:])
    assert install.env == APT_ENV


def test_package_failure_is_a_warning(make_config: Callable[..., AppConfig]) -> None:
    """apt failures degrade the run instead of aborting it."""
    config = make_config("php", packages={"install": True})
    runner = FakeRunner()
    runner.fail("apt-get", "install", returncode=100, stderr="E: Unable to locate package")

    report = _preparer(config, runner).prepare()

    assert report.warnings == [
        "apt.install: apt-get failed (exit 100): E: Unable to locate package"
    ]
    assert (config.domain_root / "releases").is_dir()


def test_service_and_toolchain_problems_are_warnings(
    make_config: Callable[..., AppConfig],
) -> None:
    """Service enablement and runtime mismatches are reported, not raised."""
    config = make_config("php", php={"version": "8.2"})
    runner = FakeRunner()
    runner.fail("systemctl", "enable", stderr="Unit php8.2-fpm.service not found.")

    report = _preparer(config, runner).prepare()

    assert any(w.startswith("service.php8.2-fpm:") for w in report.warnings)
    assert any(
        w == "toolchain.php: php 8.1.2 does not match configured version 8.2."
        for w in report.warnings
    )


def test_missing_accounts_are_reported(
    make_config: Callable[..., AppConfig],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Without ``accounts.create`` missing accounts only produce warnings."""
    config = make_config("php", deploy_user="ghost-deployer")
    runner = FakeRunner()
    monkeypatch.setattr(
        environment,
        "plan_service_account",
        lambda spec: _missing_user_plan(spec),
    )

    report = _preparer(config, runner).prepare()

    assert "accounts: Create deploy user 'ghost-deployer'. (skipped; accounts.create is false)" in (
        report.warnings
    )
    assert not runner.ran("useradd")


def test_accounts_created_when_enabled(
    make_config: Callable[..., AppConfig],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """``accounts.create`` applies the provisioning plan."""
    config = make_config("php", deploy_user="ghost-deployer", accounts={"create": True})
    runner = FakeRunner()
    monkeypatch.setattr(environment, "plan_service_account", _missing_user_plan)

    report = _preparer(config, runner).prepare()

    assert runner.ran("useradd")
    accounts = next(step for step in report.steps if step.name == "accounts")
    assert accounts.status == "success"


def test_directory_failure_is_fatal(
    make_config: Callable[..., AppConfig],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """The skeleton is mandatory, so failing to create it aborts."""
    config = make_config("php")

    def explode(plan: object) -> None:
        raise PermissionError("read-only file system")

    monkeypatch.setattr(environment, "apply_directory_plan", explode)

    with pytest.raises(EnvironmentPrepareError, match="read-only file system"):
        _preparer(config, FakeRunner()).prepare()


def test_apt_installer_dedupes_packages() -> None:
    """Duplicate package names are collapsed while preserving order."""
    runner = FakeRunner()

    result = AptInstaller(runner).install(["git", "nginx", "git", ""])

    assert result.ok is True
    assert runner.commands() == [["apt-get", "install", "-y", "git", "nginx"]]


def _missing_user_plan(spec: environment.ServiceAccountSpec) -> object:
    from deployctl.bootstrap.service_accounts import (
        ServiceAccountAction,
        ServiceAccountPlan,
        ServiceAccountStatus,
    )

    return ServiceAccountPlan(
        spec=spec,
        status=ServiceAccountStatus(user_exists=False, group_exists=True),
        actions=[
            ServiceAccountAction(
                kind="create-user",
                description=f"Create deploy user '{spec.name}'.",
                command=["useradd", "--no-create-home", spec.name],
            )
        ],
    )
