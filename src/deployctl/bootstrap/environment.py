"""Idempotent host preparation before a release is built."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from ..config import AppConfig
from ..providers.systemd import SystemdError, SystemdProvider
from ..releases import stacks
from ..releases.layout import DomainLayout
from ..releases.models import StepResult
from ..releases.shared import SharedStateLinker
from ..runner import CommandRunner
from ..toolchain import check_stack_toolchain
from .filesystem import DirectorySpec, apply_directory_plan, plan_directories
from .packages import AptInstaller
from .service_accounts import (
    ServiceAccountSpec,
    apply_service_account_plan,
    describe_missing,
    plan_service_account,
)

LOGGER = logging.getLogger(__name__)

SKELETON_MODE = 0o775


class EnvironmentPrepareError(RuntimeError):
    """Raised when the domain skeleton cannot be created."""


@dataclass(slots=True)
class PrepareReport:
    """Steps performed and warnings collected while preparing the host."""

    steps: list[StepResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def warn(self, step: str, message: str) -> None:
        """Record a non-fatal problem for *step*."""
        self.steps.append(StepResult(step, "warning", message))
        self.warnings.append(f"{step}: {message}")


class EnvironmentPreparer:
    """Ensure packages, accounts, directories, shared items and services exist."""

    def __init__(
        self,
        config: AppConfig,
        layout: DomainLayout,
        *,
        runner: CommandRunner,
        linker: SharedStateLinker,
        systemd: SystemdProvider,
        is_root: bool | None = None,
    ) -> None:
        self.config = config
        self.layout = layout
        self.runner = runner
        self.linker = linker
        self.systemd = systemd
        self.is_root = os.geteuid() == 0 if is_root is None else is_root

    def prepare(self, *, full: bool = True) -> PrepareReport:
        """Run the preparation steps; only directory failures are fatal.

        With ``full=False`` only the domain skeleton and shared items are
        ensured, skipping packages, accounts, services and toolchain checks.
        """
        report = PrepareReport()
        if full:
            self._packages(report)
            self._accounts(report)
        self._directories(report)
        self._shared(report)
        if full:
            self._services(report)
            self._toolchain(report)
        return report

    # ------------------------------------------------------------------
    def _packages(self, report: PrepareReport) -> None:
        settings = self.config.packages
        if not settings.install:
            report.steps.append(StepResult("packages", "skipped", "packages.install is false"))
            return
        apt = AptInstaller(self.runner, timeout=self.config.timeouts.install)
        if settings.update:
            outcome = apt.update()
            if not outcome.ok:
                report.warn(outcome.name, outcome.detail)
        outcome = apt.install(stacks.required_packages(self.config))
        if outcome.ok:
            report.steps.append(StepResult(outcome.name, "success", outcome.detail))
        else:
            report.warn(outcome.name, outcome.detail)

    def _accounts(self, report: PrepareReport) -> None:
        spec = ServiceAccountSpec(name=self.config.deploy_user, group=self.config.deploy_group)
        plan = plan_service_account(spec)
        for warning in plan.warnings:
            report.warn("accounts", warning)
        if not plan.actions:
            report.steps.append(StepResult("accounts", "success", "deploy account present"))
            return
        if not self.config.accounts.create:
            for message in describe_missing(plan):
                report.warn("accounts", message)
            return
        failures = apply_service_account_plan(plan, runner=self.runner)
        for failure in failures:
            report.warn("accounts", failure)
        if not failures:
            report.steps.append(
                StepResult("accounts", "success", "; ".join(a.description for a in plan.actions))
            )

    def _directories(self, report: PrepareReport) -> None:
        owner = self.config.deploy_user if self.is_root else None
        group = self.config.deploy_group if self.is_root else None
        specs = [
            DirectorySpec(path=path, mode=SKELETON_MODE, owner=owner, group=group)
            for path in [self.layout.root, *self.layout.skeleton()]
        ]
        plan = plan_directories(specs)
        for warning in plan.warnings:
            report.warn("directories", warning)
        try:
            apply_directory_plan(plan)
        except (OSError, LookupError) as exc:
            raise EnvironmentPrepareError(
                f"Cannot prepare {self.layout.root}: {exc}"
            ) from exc
        detail = f"{len(plan.actions)} change(s)" if plan.changed else "up to date"
        report.steps.append(StepResult("directories", "success", detail))

    def _shared(self, report: PrepareReport) -> None:
        try:
            warnings = self.linker.ensure_shared()
        except OSError as exc:
            raise EnvironmentPrepareError(f"Cannot create shared items: {exc}") from exc
        for warning in warnings:
            report.warn("shared", warning)
        report.steps.append(
            StepResult("shared", "success", f"{len(self.linker.items)} item(s) ensured")
        )

    def _services(self, report: PrepareReport) -> None:
        for service in stacks.services_to_enable(self.config):
            try:
                self.systemd.enable_now(service)
            except SystemdError as exc:
                report.warn(f"service.{service}", str(exc))
            else:
                report.steps.append(StepResult(f"service.{service}", "success", "enabled"))

    def _toolchain(self, report: PrepareReport) -> None:
        checks = check_stack_toolchain(
            self.config, self.runner, timeout=self.config.timeouts.command
        )
        for check in checks:
            if check.ok:
                report.steps.append(StepResult(f"toolchain.{check.tool}", "success", check.message))
            else:
                report.warn(f"toolchain.{check.tool}", check.message)


__all__ = ["EnvironmentPrepareError", "EnvironmentPreparer", "PrepareReport"]
