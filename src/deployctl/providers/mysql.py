"""MySQL provider for creating an application's database and account."""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from ..runner import RC_NOT_FOUND, CommandRunner, describe_result

CREDENTIALS_MODE = 0o600


class MySQLError(RuntimeError):
    """Raised when the database or its account cannot be provisioned."""


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def provision_statements(database: str, user: str, password: str, host: str) -> str:
    """Return idempotent SQL creating *database* and granting *user* full access to it."""
    account = f"'{_quote(user)}'@'{_quote(host)}'"
    secret = _quote(password)
    return " ".join(
        [
            f"CREATE DATABASE IF NOT EXISTS `{database}` "
            "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci;",
            f"CREATE USER IF NOT EXISTS {account} IDENTIFIED BY '{secret}';",
            f"ALTER USER {account} IDENTIFIED BY '{secret}';",
            f"GRANT ALL PRIVILEGES ON `{database}`.* TO {account};",
            "FLUSH PRIVILEGES;",
        ]
    )


@dataclass(slots=True)
class MySQLProvider:
    """Wrap the ``mysql`` client running with the server's socket authentication."""

    runner: CommandRunner
    mysql_bin: str = "mysql"
    timeout: float | None = None

    def provision(
        self, database: str, user: str, password: str, *, host: str = "localhost"
    ) -> None:
        """Create *database* and *user* (or reset the user's password)."""
        sql = provision_statements(database, user, password, host)
        result = self.runner.run([self.mysql_bin, f"--execute={sql}"], timeout=self.timeout)
        if result.returncode == RC_NOT_FOUND:
            raise MySQLError(f"{self.mysql_bin} is not installed.")
        if result.returncode != 0:
            raise MySQLError(
                f"Provisioning database {database} failed (exit {result.returncode}): "
                f"{describe_result(result)}"
            )


def write_credentials(path: Path, values: Mapping[str, str], *, header: str) -> None:
    """Atomically write ``KEY=value`` lines to *path*, readable by its owner only."""
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [f"# {header}", *(f"{key}={value}" for key, value in values.items())]
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        os.fchmod(tmp_fd, CREDENTIALS_MODE)
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write("\n".join(lines) + "\n")
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = [
    "CREDENTIALS_MODE",
    "MySQLError",
    "MySQLProvider",
    "provision_statements",
    "write_credentials",
]
