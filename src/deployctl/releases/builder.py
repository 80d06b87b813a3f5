"""Release creation: fetch, link shared state, install/build and verify."""
from __future__ import annotations

import logging
import secrets
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from ..archive import ArchiveError, backup_shared_state
from ..config import AppConfig
from ..providers.git import GitError, GitProvider
from ..providers.mysql import MySQLError, MySQLProvider, write_credentials
from ..runner import RC_TIMEOUT, CommandRunner, describe_result
from ..state import StateRegistry
from . import stacks
from .errors import (
    BuildVerificationError,
    DependencyInstallError,
    FetchError,
    ReleaseCollisionError,
    SharedLinkError,
)
from .layout import DomainLayout
from .models import TIMESTAMP_FORMAT, BuildStep, Release, StepPolicy, StepResult
from .shared import SharedStateLinker

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current time in UTC."""
    return datetime.now(tz=UTC)


@dataclass(slots=True)
class BuildResult:
    """A built release plus what happened while building it."""

    release: Release
    steps: list[StepResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class ReleaseBuilder:
    """Create a new timestamped release for a domain."""

    def __init__(
        self,
        config: AppConfig,
        layout: DomainLayout,
        *,
        runner: CommandRunner,
        step_runner: CommandRunner | None = None,
        linker: SharedStateLinker,
        registry: StateRegistry | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self.layout = layout
        self.runner = runner
        self.step_runner = step_runner or runner
        self.linker = linker
        self.registry = registry
        self.clock = clock
        self.git = GitProvider(self.step_runner, git_bin=config.git.git_bin)

    def build(self, branch: str | None = None) -> BuildResult:
        """Fetch and build *branch* (defaults to the configured branch)."""
        ref = branch or self.config.branch
        now = self.clock()
        timestamp = now.strftime(TIMESTAMP_FORMAT)
        release_path = self.layout.release_path(timestamp)
        if release_path.exists() or release_path.is_symlink():
            raise ReleaseCollisionError(
                f"Release directory {release_path} already exists; retry in a second.",
                release=timestamp,
            )

        steps: list[StepResult] = []
        warnings: list[str] = []

        self.layout.releases_dir.mkdir(parents=True, exist_ok=True)
        self._record(
            timestamp,
            {
                "path": str(release_path),
                "stack": self.config.stack,
                "branch": ref,
                "status": "building",
                "created_at": now.isoformat(),
            },
        )

        commit = self._fetch(ref, release_path, timestamp)
        steps.append(StepResult("git.clone", "success", f"{self.config.repository}@{ref}"))

        try:
            warnings.extend(self._link_shared(release_path, timestamp))
            steps.append(
                StepResult("shared.link", "success", f"{len(self.linker.items)} item(s)")
            )
            plan = stacks.plan_steps(
                self.config,
                release_path,
                backup=self._backup(timestamp),
                provision_database=self._provision_database(),
            )
            for step in plan:
                steps.append(self._run_step(step, release_path, timestamp, warnings))
            built_output = stacks.verify_build(self.config, release_path)
        except (SharedLinkError, DependencyInstallError, BuildVerificationError) as exc:
            exc.release = timestamp
            self._record(timestamp, {"status": "failed", "warnings": [*warnings, str(exc)]})
            raise

        steps.append(StepResult("build.verify", "success", str(built_output)))
        release = Release(
            timestamp=timestamp,
            path=release_path,
            built_output=built_output,
            stack=self.config.stack,
            branch=ref,
            commit=commit,
        )
        self._record(
            timestamp,
            {
                "status": "built",
                "built_output": str(built_output),
                "commit": commit,
                "warnings": warnings,
            },
        )
        LOGGER.debug("Built release %s at %s", timestamp, release_path)
        return BuildResult(release=release, steps=steps, warnings=warnings)

    # ------------------------------------------------------------------
    def _fetch(self, ref: str, release_path: Path, timestamp: str) -> str | None:
        try:
            self.git.clone(
                self.config.repository,
                ref,
                release_path,
                timeout=self.config.timeouts.fetch,
            )
            if not release_path.is_dir():
                raise GitError(f"git clone reported success but {release_path} is missing.")
        except GitError as exc:
            shutil.rmtree(release_path, ignore_errors=True)
            if self.registry is not None:
                self.registry.remove_releases(self.layout.name, [timestamp])
            raise FetchError(str(exc), release=timestamp) from exc
        return self.git.rev_parse(release_path)

    def _link_shared(self, release_path: Path, timestamp: str) -> list[str]:
        try:
            warnings = self.linker.link_into(release_path)
        except OSError as exc:
            raise SharedLinkError(
                f"Cannot link shared state into {release_path}: {exc}", release=timestamp
            ) from exc
        broken = self.linker.verify(release_path)
        if broken:
            raise SharedLinkError(
                f"Shared items do not resolve into {self.layout.shared_dir}: {', '.join(broken)}",
                release=timestamp,
            )
        return warnings

    def _run_step(
        self,
        step: BuildStep,
        release_path: Path,
        timestamp: str,
        warnings: list[str],
    ) -> StepResult:
        failure = self._execute(step, release_path)
        if failure is None:
            return StepResult(step.name, "success", step.condition)
        if step.policy is StepPolicy.FATAL:
            raise DependencyInstallError(
                f"{step.name} failed: {failure}", step=step.name, release=timestamp
            )
        message = f"{step.name} failed (best effort): {failure}"
        LOGGER.debug(message)
        warnings.append(message)
        return StepResult(step.name, "warning", failure)

    def _execute(self, step: BuildStep, release_path: Path) -> str | None:
        """Run *step*, returning a failure description or None on success."""
        if step.action is not None:
            try:
                step.action(release_path)
            except (ArchiveError, MySQLError, OSError) as exc:
                return str(exc)
            return None

        timeout = (
            self.config.timeouts.install
            if step.timeout_kind == "install"
            else self.config.timeouts.command
        )
        cwd = release_path / step.cwd if step.cwd else release_path
        result = self.step_runner.run(list(step.argv), cwd=cwd, env=step.env, timeout=timeout)
        if result.returncode == 0:
            return None
        if result.returncode == RC_TIMEOUT:
            return f"timed out after {timeout:g}s"
        return f"exit {result.returncode}: {describe_result(result)}"

    def _backup(self, timestamp: str) -> Callable[[Path], None]:
        def action(_release_path: Path) -> None:
            backup_shared_state(
                self.layout.shared_dir,
                self.layout.backups_dir,
                timestamp,
                runner=self.runner,
                timeout=self.config.timeouts.command,
            )

        return action

    def _provision_database(self) -> Callable[[Path], None]:
        settings = self.config.database
        mysql = MySQLProvider(
            self.runner, mysql_bin=settings.mysql_bin, timeout=self.config.timeouts.command
        )

        def action(release_path: Path) -> None:
            env_file = release_path / ".env"
            current = stacks.read_env_values(env_file)
            password = settings.password
            if not password and current.get("DB_USERNAME") == settings.user:
                password = current.get("DB_PASSWORD")
            password = password or secrets.token_urlsafe(24)
            mysql.provision(settings.name, settings.user, password, host=settings.host)
            values = stacks.database_env(self.config, password)
            stacks.update_env_values(env_file, values)
            write_credentials(
                settings.credentials_file,
                {"APP_DIR": str(self.layout.root), **values},
                header=f"Database credentials for {self.config.domain}",
            )

        return action

    def _record(self, timestamp: str, values: dict[str, object]) -> None:
        if self.registry is None:
            return
        self.registry.upsert_release(self.layout.name, {"timestamp": timestamp, **values})


__all__ = ["BuildResult", "Clock", "ReleaseBuilder", "utc_now"]
