"""Release lifecycle: build, activate, prune and roll back.

The orchestration entry point lives in :mod:`deployctl.releases.manager`.
"""
from __future__ import annotations

from .errors import (
    ActivationError,
    BuildVerificationError,
    DependencyInstallError,
    DeployError,
    FetchError,
    ProxyConfigError,
    ReleaseCollisionError,
    ReloadWarning,
    RollbackTargetNotFound,
    SharedLinkError,
)
from .layout import DomainLayout
from .models import (
    ActivationResult,
    BuildStep,
    DeployOutcome,
    PruneResult,
    Release,
    StepPolicy,
    StepResult,
)

__all__ = [
    "ActivationError",
    "ActivationResult",
    "BuildStep",
    "BuildVerificationError",
    "DependencyInstallError",
    "DeployError",
    "DeployOutcome",
    "DomainLayout",
    "FetchError",
    "ProxyConfigError",
    "PruneResult",
    "Release",
    "ReleaseCollisionError",
    "ReloadWarning",
    "RollbackTargetNotFound",
    "SharedLinkError",
    "StepPolicy",
    "StepResult",
]
