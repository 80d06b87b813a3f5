"""Certbot provider for issuing Let's Encrypt certificates via the nginx plugin."""
from __future__ import annotations

import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..runner import CommandRunner, describe_result


class CertbotError(RuntimeError):
    """Raised when certbot operations fail."""


@dataclass(slots=True)
class CertbotResult:
    """Outcome of :meth:`CertbotProvider.ensure_certificate`."""

    domains: list[str]
    issued: bool
    skipped: bool
    detail: str
    result: subprocess.CompletedProcess[str] | None = None


_DOMAINS_LINE = re.compile(r"^\s*Domains:\s*(?P<names>.+)$", re.MULTILINE)


@dataclass(slots=True)
class CertbotProvider:
    """Wrap the ``certbot`` CLI."""

    runner: CommandRunner
    certbot_bin: str = "certbot"
    timeout: float | None = None

    def certificate_domains(self) -> set[str]:
        """Return every domain covered by a certificate certbot already manages."""
        result = self.runner.run([self.certbot_bin, "certificates"], timeout=self.timeout)
        if result.returncode != 0:
            raise CertbotError(
                f"{self.certbot_bin} certificates failed (exit {result.returncode}): "
                f"{describe_result(result)}"
            )
        names: set[str] = set()
        for match in _DOMAINS_LINE.finditer(result.stdout or ""):
            names.update(match.group("names").split())
        return names

    def has_certificate(self, domain: str) -> bool:
        """Return True when certbot already lists *domain*."""
        return domain in self.certificate_domains()

    def ensure_certificate(self, domains: Sequence[str], email: str) -> CertbotResult:
        """Issue a certificate for *domains* unless the primary one is covered."""
        if not domains:
            raise CertbotError("At least one domain is required to request a certificate.")
        names = list(domains)
        primary = names[0]
        if self.has_certificate(primary):
            return CertbotResult(
                domains=names,
                issued=False,
                skipped=True,
                detail=f"Certificate for {primary} already present.",
            )

        command = [self.certbot_bin, "--nginx"]
        for name in names:
            command.extend(["-d", name])
        command.extend(["--non-interactive", "--agree-tos", "-m", email, "--redirect"])
        result = self.runner.run(command, timeout=self.timeout)
        if result.returncode != 0:
            raise CertbotError(
                f"{self.certbot_bin} --nginx failed (exit {result.returncode}): "
                f"{describe_result(result)}"
            )
        return CertbotResult(
            domains=names,
            issued=True,
            skipped=False,
            detail=f"Certificate issued for {', '.join(names)}.",
            result=result,
        )


__all__ = ["CertbotError", "CertbotProvider", "CertbotResult"]
