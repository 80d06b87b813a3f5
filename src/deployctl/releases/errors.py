"""Error taxonomy for release deployment and rollback."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from ..exit_codes import ExitCode


class DeployError(RuntimeError):
    """Base class for fatal deployment failures."""

    exit_code: ExitCode = ExitCode.PROVIDER

    def __init__(self, message: str, *, release: str | None = None) -> None:
        super().__init__(message)
        self.release = release


class FetchError(DeployError):
    """Raised when the source could not be cloned (the partial release is removed)."""


class SharedLinkError(DeployError):
    """Raised when shared state cannot be linked safely into a release."""


class DependencyInstallError(DeployError):
    """Raised when a fatal install/build step fails or its manifest is missing."""

    def __init__(self, message: str, *, step: str, release: str | None = None) -> None:
        super().__init__(message, release=release)
        self.step = step


class BuildVerificationError(DeployError):
    """Raised when the stack's build marker is missing after all steps ran."""


class ProxyConfigError(DeployError):
    """Raised when the nginx site could not be rendered or failed validation."""


class ActivationError(DeployError):
    """Raised when the ``current`` pointer could not be swapped."""

    exit_code = ExitCode.ENVIRONMENT


class ReleaseCollisionError(DeployError):
    """Raised when the allocated timestamp already names a release."""


class RollbackTargetNotFound(DeployError):
    """Raised when a rollback names a release that does not exist."""

    exit_code = ExitCode.VALIDATION

    def __init__(self, timestamp: str, available: Sequence[str]) -> None:
        self.timestamp = timestamp
        self.available = list(available)
        listing = ", ".join(self.available) if self.available else "none"
        super().__init__(
            f"Release '{timestamp}' not found. Available releases: {listing}.",
            release=timestamp,
        )


@dataclass(frozen=True)
class ReloadWarning:
    """Non-fatal post-activation failure (reload, restart or TLS)."""

    hook: str
    message: str

    def __str__(self) -> str:
        return f"{self.hook}: {self.message}"


__all__ = [
    "ActivationError",
    "BuildVerificationError",
    "DependencyInstallError",
    "DeployError",
    "FetchError",
    "ProxyConfigError",
    "ReleaseCollisionError",
    "ReloadWarning",
    "RollbackTargetNotFound",
    "SharedLinkError",
]
