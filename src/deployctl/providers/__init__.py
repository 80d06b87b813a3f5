"""Provider interfaces for deployctl."""
from __future__ import annotations

from .certbot import CertbotError, CertbotProvider, CertbotResult
from .git import GitError, GitProvider
from .mysql import MySQLError, MySQLProvider
from .nginx import NginxError, NginxProvider, NginxRenderResult, server_names
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "CertbotError",
    "CertbotProvider",
    "CertbotResult",
    "GitError",
    "GitProvider",
    "MySQLError",
    "MySQLProvider",
    "NginxError",
    "NginxProvider",
    "NginxRenderResult",
    "SystemdError",
    "SystemdProvider",
    "server_names",
]
