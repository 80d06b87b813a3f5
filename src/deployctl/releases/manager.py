"""Release Manager: the deploy and rollback protocol for a single domain.

``deploy`` runs four ordered stages:

1. environment preparation (packages, accounts, directories, shared items),
2. release creation (fetch, link shared state, install/build, verify),
3. externally-facing configuration (nginx site, systemd unit),
4. atomic activation followed by reload hooks, TLS issuance and pruning.

Callers are expected to hold :meth:`ReleaseManager.lock` around mutating
calls so two deployments of the same domain never interleave.
"""
from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from ..bootstrap.environment import EnvironmentPreparer
from ..config import AppConfig
from ..locking import LockHandle, LockManager
from ..providers.certbot import CertbotError, CertbotProvider
from ..providers.nginx import NginxProvider, server_names
from ..providers.systemd import SystemdError, SystemdProvider
from ..runner import CommandRunner, SubprocessRunner, runner_for_user
from ..state import StateRegistry
from ..templates import TemplateEngine
from ..tls import TLSInspector
from . import stacks
from .activator import Activator, ReloadHook
from .builder import Clock, ReleaseBuilder, utc_now
from .errors import ProxyConfigError, ReloadWarning, RollbackTargetNotFound
from .layout import DomainLayout
from .models import DeployOutcome, PruneResult, Release, StepResult, is_release_name
from .pruner import RetentionPruner
from .shared import SharedStateLinker

LOGGER = logging.getLogger(__name__)


class ReleaseManager:
    """Own a domain's directory tree and expose deploy/rollback/prune/status."""

    def __init__(
        self,
        config: AppConfig,
        *,
        runner: CommandRunner | None = None,
        registry: StateRegistry | None = None,
        templates: TemplateEngine | None = None,
        locks: LockManager | None = None,
        clock: Clock = utc_now,
        is_root: bool | None = None,
    ) -> None:
        self.config = config
        self.runner = runner or SubprocessRunner()
        self.registry = registry or StateRegistry(config.state_dir)
        self.templates = templates or TemplateEngine.with_overrides(config.templates_dir)
        self.locks = locks or LockManager(config.runtime_dir, config.lock_timeout)
        self.clock = clock
        self.is_root = os.geteuid() == 0 if is_root is None else is_root

        self.layout = DomainLayout(config.domain, config.base_dir)
        self.step_runner = runner_for_user(self.runner, config.deploy_user, is_root=self.is_root)
        command_timeout = config.timeouts.command
        self.nginx = NginxProvider(
            templates=self.templates,
            runner=self.runner,
            sites_available=config.nginx.sites_available,
            sites_enabled=config.nginx.sites_enabled,
            nginx_bin=config.nginx.nginx_bin,
            systemctl_bin=config.systemd.systemctl_bin,
            timeout=command_timeout,
        )
        self.systemd = SystemdProvider(
            templates=self.templates,
            runner=self.runner,
            systemd_dir=config.systemd.unit_dir,
            systemctl_bin=config.systemd.systemctl_bin,
            timeout=command_timeout,
        )
        self.certbot = CertbotProvider(
            runner=self.runner,
            certbot_bin=config.tls.certbot_bin,
            timeout=config.timeouts.fetch,
        )
        self.linker = SharedStateLinker(
            self.layout,
            config.shared_items,
            seed_dirs=stacks.shared_seed_dirs(config),
            owner=config.deploy_user if self.is_root else None,
            group=config.deploy_group if self.is_root else None,
        )
        self.preparer = EnvironmentPreparer(
            config,
            self.layout,
            runner=self.runner,
            linker=self.linker,
            systemd=self.systemd,
            is_root=self.is_root,
        )
        self.builder = ReleaseBuilder(
            config,
            self.layout,
            runner=self.runner,
            step_runner=self.step_runner,
            linker=self.linker,
            registry=self.registry,
            clock=clock,
        )
        self.activator = Activator(self.layout, hooks=self._reload_hooks())
        self.pruner = RetentionPruner(self.layout, registry=self.registry)

    @contextmanager
    def lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the exclusive lock for this domain."""
        with self.locks.domain_lock(self.config.domain, timeout=timeout) as handle:
            yield handle

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def deploy(self, *, branch: str | None = None, skip_prepare: bool = False) -> DeployOutcome:
        """Build and activate a new release, then prune old ones."""
        steps: list[StepResult] = []
        warnings: list[str] = []

        report = self.preparer.prepare(full=not skip_prepare)
        steps.extend(report.steps)
        warnings.extend(report.warnings)

        build = self.builder.build(branch)
        release = build.release
        steps.extend(build.steps)
        warnings.extend(build.warnings)

        steps.extend(self._configure_site(release))
        steps.extend(self._configure_service(release, warnings))

        activation = self.activator.activate(release)
        steps.append(StepResult("activate", "success", str(activation.target)))
        warnings.extend(str(warning) for warning in activation.warnings)
        self.registry.mark_active(
            self.layout.name, release.timestamp, activated_at=self._now_iso()
        )

        tls_warning = self._ensure_certificate()
        if tls_warning is not None:
            warnings.append(str(tls_warning))
            steps.append(StepResult("tls.certbot", "warning", tls_warning.message))
        elif self.config.tls.enabled and self.config.nginx.enabled:
            steps.append(StepResult("tls.certbot", "success"))

        pruned = self.pruner.prune(self.config.keep_releases)
        warnings.extend(pruned.warnings)
        steps.append(
            StepResult("prune", "success", f"removed {len(pruned.removed)}, kept {len(pruned.kept)}")
        )

        return DeployOutcome(
            domain=self.config.domain,
            release=release,
            active_path=self.layout.current,
            release_count=len(self.layout.list_releases()),
            steps=steps,
            warnings=warnings,
            pruned=pruned.removed,
        )

    def rollback(self, timestamp: str) -> DeployOutcome:
        """Repoint ``current`` at an existing release without rebuilding it."""
        available = self.available_releases()
        if not is_release_name(timestamp) or timestamp not in available:
            raise RollbackTargetNotFound(timestamp, available)

        release = self._load_release(timestamp)
        stacks.verify_build(self.config, release.path)
        activation = self.activator.activate(release)
        self.registry.mark_active(self.layout.name, timestamp, activated_at=self._now_iso())

        previous = activation.previous_target
        steps = [
            StepResult(
                "activate",
                "success",
                f"{previous or 'none'} -> {activation.target}",
            )
        ]
        return DeployOutcome(
            domain=self.config.domain,
            release=release,
            active_path=self.layout.current,
            release_count=len(self.layout.list_releases()),
            steps=steps,
            warnings=[str(warning) for warning in activation.warnings],
        )

    def prune(self, keep: int | None = None) -> PruneResult:
        """Apply the retention window (``keep_releases`` unless *keep* is given)."""
        return self.pruner.prune(keep if keep is not None else self.config.keep_releases)

    def available_releases(self) -> list[str]:
        """Return on-disk releases that can be activated, oldest first.

        A release qualifies when its build completed or when the registry has
        no record of it (a directory created before the registry existed).
        """
        statuses = {
            entry["timestamp"]: entry.get("status")
            for entry in self.registry.read_releases(self.layout.name)
        }
        return [
            name
            for name in self.layout.list_releases()
            if name not in statuses or statuses[name] in (None, "built")
        ]

    def releases(self) -> list[dict[str, object]]:
        """Return release details for display, newest first."""
        entries = {
            entry["timestamp"]: entry for entry in self.registry.read_releases(self.layout.name)
        }
        active = self.layout.active_release()
        rows: list[dict[str, object]] = []
        for name in sorted(self.layout.list_releases(), reverse=True):
            entry = entries.get(name, {})
            rows.append(
                {
                    "timestamp": name,
                    "path": str(self.layout.release_path(name)),
                    "active": name == active,
                    "status": entry.get("status", "unknown"),
                    "branch": entry.get("branch"),
                    "commit": entry.get("commit"),
                    "created_at": entry.get("created_at"),
                }
            )
        return rows

    def status(self) -> dict[str, object]:
        """Return a read-only summary of the domain's deployment state."""
        target = self.layout.current_target()
        payload: dict[str, object] = {
            "domain": self.config.domain,
            "stack": self.config.stack,
            "root": str(self.layout.root),
            "current": str(target) if target is not None else None,
            "active_release": self.layout.active_release(),
            "release_count": len(self.layout.list_releases()),
            "keep_releases": self.config.keep_releases,
        }
        if self.config.nginx.enabled:
            payload["nginx"] = self.nginx.diagnostics(self.config.domain)
        if stacks.uses_app_service(self.config):
            try:
                payload["service"] = {
                    "unit": self.systemd.unit_name(self.config.project_name),
                    "active": self.systemd.is_active(self.config.project_name),
                }
            except SystemdError as exc:
                payload["service"] = {"error": str(exc)}
        if self.config.tls.enabled:
            payload["tls"] = TLSInspector(self.config.tls).inspect(self.config.domain).to_dict()
        return payload

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _configure_site(self, release: Release) -> list[StepResult]:
        if not self.config.nginx.enabled:
            return [StepResult("nginx.site", "skipped", "nginx.enabled is false")]
        domain = self.config.domain
        names = server_names(domain, include_www=self.config.nginx.include_www)
        context = stacks.nginx_context(self.config, self.layout, release.path, names)
        try:
            result = self.nginx.render_site(domain, stacks.nginx_template(self.config), context)
        except OSError as exc:
            raise ProxyConfigError(
                f"Cannot write nginx site for {domain}: {exc}", release=release.timestamp
            ) from exc
        if result.validation_error:
            raise ProxyConfigError(
                f"nginx rejected the site for {domain}: {result.validation_error}",
                release=release.timestamp,
            )
        try:
            enabled = self.nginx.enable(domain)
        except OSError as exc:
            raise ProxyConfigError(
                f"Cannot enable nginx site for {domain}: {exc}", release=release.timestamp
            ) from exc
        detail = "rendered" if result.changed else "unchanged"
        if enabled:
            detail += ", enabled"
        return [StepResult("nginx.site", "success", detail)]

    def _configure_service(self, release: Release, warnings: list[str]) -> list[StepResult]:
        if not stacks.uses_app_service(self.config):
            return []
        name = self.config.project_name
        context = stacks.systemd_context(self.config, self.layout)
        try:
            changed = self.systemd.render_unit(name, context)
            self.systemd.enable(name)
        except SystemdError as exc:
            warnings.append(f"systemd.unit: {exc}")
            return [StepResult("systemd.unit", "warning", str(exc))]
        return [StepResult("systemd.unit", "success", "rendered" if changed else "unchanged")]

    def _reload_hooks(self) -> list[ReloadHook]:
        available: dict[str, ReloadHook] = {
            "nginx.reload": ("nginx.reload", lambda _release: self._reload_nginx()),
            "php-fpm.reload": (
                "php-fpm.reload",
                lambda _release: self._reload_service(self.config.php.fpm_service),
            ),
            "app.restart": (
                "app.restart",
                lambda _release: self._restart_service(self.config.project_name),
            ),
            "tomcat.deploy": ("tomcat.deploy", self._deploy_war),
        }
        return [available[name] for name in stacks.reload_hooks(self.config)]

    def _reload_nginx(self) -> None:
        self.nginx.reload()

    def _reload_service(self, name: str) -> None:
        self.systemd.reload(name)

    def _restart_service(self, name: str) -> None:
        self.systemd.restart(name)

    def _deploy_war(self, release: Release) -> None:
        jsp = self.config.jsp
        source = release.path / jsp.war_path
        destination = jsp.webapps_dir / f"{jsp.app_name}.war"
        destination.parent.mkdir(parents=True, exist_ok=True)
        temp = destination.with_name(f".{destination.name}.tmp-{os.getpid()}")
        try:
            shutil.copy2(source, temp)
            os.replace(temp, destination)
        finally:
            temp.unlink(missing_ok=True)
        self.systemd.restart(jsp.tomcat_service)

    def _ensure_certificate(self) -> ReloadWarning | None:
        if not (self.config.tls.enabled and self.config.nginx.enabled):
            return None
        names = server_names(self.config.domain, include_www=self.config.nginx.include_www)
        try:
            self.certbot.ensure_certificate(names, self.config.tls_email)
        except CertbotError as exc:
            return ReloadWarning("tls.certbot", str(exc))
        return None

    def _load_release(self, timestamp: str) -> Release:
        path = self.layout.release_path(timestamp)
        entry = self.registry.get_release(self.layout.name, timestamp) or {}
        recorded = entry.get("built_output")
        built_output = Path(recorded) if recorded else None
        if built_output is None or not built_output.is_dir():
            built_output = stacks.detect_built_output(self.config, path)
        return Release(
            timestamp=timestamp,
            path=path,
            built_output=built_output,
            stack=str(entry.get("stack") or self.config.stack),
            branch=entry.get("branch"),
            commit=entry.get("commit"),
        )

    def _now_iso(self) -> str:
        moment: datetime = self.clock()
        return moment.isoformat()


__all__ = ["ReleaseManager"]
