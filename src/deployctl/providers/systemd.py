"""Systemd provider for managing application service units."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..runner import RC_NOT_FOUND, CommandRunner, describe_result
from ..templates import TemplateEngine


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Render and manage systemd service units for deployed applications."""

    templates: TemplateEngine
    runner: CommandRunner
    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    timeout: float | None = None

    def unit_name(self, name: str) -> str:
        """Return the systemd unit name for *name*."""
        if name.endswith(".service"):
            return name
        safe = name.replace("/", "-")
        return f"{safe}.service"

    def unit_path(self, name: str) -> Path:
        """Return the full path for the unit file."""
        return self.systemd_dir / self.unit_name(name)

    def render_unit(
        self,
        name: str,
        context: Mapping[str, object],
        *,
        template_name: str = "systemd/gunicorn.service.j2",
    ) -> bool:
        """Render the unit file for *name*, reloading systemd when it changes."""
        path = self.unit_path(name)
        changed = self.templates.render_to_path(template_name, path, context, mode=0o644)
        if changed:
            self._reload_daemon()
        return changed

    def enable(self, name: str) -> subprocess.CompletedProcess[str]:
        """Enable the unit."""
        return self._systemctl("enable", self.unit_name(name))

    def enable_now(self, name: str) -> subprocess.CompletedProcess[str]:
        """Enable and start the unit in one step."""
        return self._systemctl("enable", "--now", self.unit_name(name))

    def restart(self, name: str) -> subprocess.CompletedProcess[str]:
        """Restart the unit."""
        return self._systemctl("restart", self.unit_name(name))

    def reload(self, name: str) -> subprocess.CompletedProcess[str]:
        """Reload the unit's configuration without a full restart."""
        return self._systemctl("reload", self.unit_name(name))

    def is_active(self, name: str) -> bool:
        """Return True when ``systemctl is-active`` reports the unit running."""
        result = self._systemctl("is-active", self.unit_name(name), check=False)
        return result.returncode == 0 and (result.stdout or "").strip() == "active"

    def status(self, name: str) -> subprocess.CompletedProcess[str]:
        """Return the status output for the unit."""
        return self._systemctl("status", self.unit_name(name), check=False)

    # ------------------------------------------------------------------
    def _reload_daemon(self) -> None:
        try:
            self._systemctl("daemon-reload")
        except SystemdError as exc:
            if "not found" in str(exc).lower():
                # Allow tests and non-systemd environments to proceed without error.
                return
            raise

    def _systemctl(
        self,
        command: str,
        *args: str,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        argv: list[str] = [self.systemctl_bin, command, *args]
        return self._run_command(
            argv,
            check=check,
            error_prefix=" ".join(argv[:2]),
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        result = self.runner.run(list(args), timeout=self.timeout)
        if result.returncode == RC_NOT_FOUND:
            raise SystemdError(f"{args[0]} not found: {describe_result(result)}")
        if check and result.returncode != 0:
            raise SystemdError(
                f"{error_prefix} failed (exit {result.returncode}): {describe_result(result)}"
            )
        return result


__all__ = ["SystemdError", "SystemdProvider"]
