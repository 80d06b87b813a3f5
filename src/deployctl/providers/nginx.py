"""Nginx provider for managing per-domain site configurations."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from ..runner import RC_NOT_FOUND, CommandRunner, describe_result
from ..templates import TemplateEngine


class NginxError(RuntimeError):
    """Raised when nginx operations fail."""


@dataclass(slots=True)
class NginxRenderResult:
    """Outcome of rendering an nginx site configuration."""

    changed: bool
    path: Path
    validation: subprocess.CompletedProcess[str] | None = None
    validation_error: str | None = None


@dataclass(slots=True)
class NginxProvider:
    """Render and manage nginx site configurations for deployed domains."""

    templates: TemplateEngine
    runner: CommandRunner
    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    nginx_bin: str = "nginx"
    systemctl_bin: str = "systemctl"
    timeout: float | None = None

    def site_name(self, domain: str) -> str:
        """Return the canonical site file name for *domain*."""
        safe = domain.replace("/", "-")
        return f"{safe}.conf"

    def site_path(self, domain: str) -> Path:
        """Return the path to the nginx site configuration file."""
        return self.sites_available / self.site_name(domain)

    def enabled_path(self, domain: str) -> Path:
        """Return the path of the symlink in sites-enabled for *domain*."""
        return self.sites_enabled / self.site_name(domain)

    def render_site(
        self,
        domain: str,
        template_name: str,
        context: Mapping[str, object],
    ) -> NginxRenderResult:
        """Render the nginx site configuration for *domain*.

        When the on-disk configuration changes it is validated with
        ``nginx -t``. Validation failures restore the previous configuration
        (or remove a brand new one) so nginx keeps serving the old site, and
        the failure is reported through ``validation_error``.
        """
        destination = self.site_path(domain)
        destination.parent.mkdir(parents=True, exist_ok=True)

        previous: tuple[str, int] | None = None
        if destination.exists():
            previous = (
                destination.read_text(encoding="utf-8"),
                destination.stat().st_mode,
            )

        changed = self.templates.render_to_path(
            template_name,
            destination,
            context,
            mode=0o644,
        )
        if not changed:
            return NginxRenderResult(changed=False, path=destination)

        try:
            validation_result = self.test_config()
        except NginxError as exc:
            if previous is None:
                destination.unlink(missing_ok=True)
            else:
                content, mode = previous
                destination.write_text(content, encoding="utf-8")
                destination.chmod(mode)
            return NginxRenderResult(
                changed=False,
                path=destination,
                validation=None,
                validation_error=str(exc),
            )

        return NginxRenderResult(changed=True, path=destination, validation=validation_result)

    def enable(self, domain: str) -> bool:
        """Enable the site by creating a symlink in sites-enabled.

        Returns ``True`` when the symlink had to be created or replaced.
        """
        source = self.site_path(domain)
        target = self.enabled_path(domain)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists() or target.is_symlink():
            try:
                if target.resolve() == source.resolve():
                    return False
            except FileNotFoundError:
                # Broken symlink; replace it with a fresh one.
                pass
            target.unlink()
        target.symlink_to(source)
        return True

    def is_enabled(self, domain: str) -> bool:
        """Return True when the site is enabled via sites-enabled symlink."""
        target = self.enabled_path(domain)
        if not target.is_symlink():
            return False
        try:
            return target.resolve() == self.site_path(domain).resolve()
        except FileNotFoundError:
            return False

    def diagnostics(self, domain: str) -> dict[str, object]:
        """Return diagnostic metadata for *domain*."""
        site_path = self.site_path(domain)
        return {
            "site_path": str(site_path),
            "site_exists": site_path.exists(),
            "enabled_path": str(self.enabled_path(domain)),
            "enabled": self.is_enabled(domain),
        }

    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t`` to validate the configuration.

        A host without nginx installed is treated as valid so rendering can be
        exercised on build machines.
        """
        result = self.runner.run([self.nginx_bin, "-t"], timeout=self.timeout)
        if result.returncode == RC_NOT_FOUND:
            return result
        self._check(result, "-t")
        return result

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Reload nginx, preferring systemd and falling back to ``nginx -s reload``."""
        primary = self.runner.run(
            [self.systemctl_bin, "reload", "nginx"], timeout=self.timeout
        )
        if primary.returncode == 0:
            return primary
        fallback = self.runner.run([self.nginx_bin, "-s", "reload"], timeout=self.timeout)
        self._check(fallback, "-s reload")
        return fallback

    # ------------------------------------------------------------------
    def _check(self, result: subprocess.CompletedProcess[str], args: str) -> None:
        if result.returncode != 0:
            raise NginxError(
                f"{self.nginx_bin} {args} failed (exit {result.returncode}): "
                f"{describe_result(result)}"
            )


def server_names(domain: str, *, include_www: bool) -> list[str]:
    """Return the ``server_name`` entries for *domain*."""
    names = [domain]
    if include_www and not domain.startswith("www."):
        names.append(f"www.{domain}")
    return names


__all__ = ["NginxError", "NginxProvider", "NginxRenderResult", "server_names"]
