"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import grp
import os
import pwd
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from deployctl.config import AppConfig, load_config

DOMAIN = "shop.example.com"
COMMIT = "3f2c1a9d8e7b6c5d4e3f2a1b0c9d8e7f6a5b4c3d"

VERSION_OUTPUT = {
    "php": "PHP 8.1.2-1ubuntu2.14 (cli) (built: Aug 18 2023 11:41:11) (NTS)",
    "node": "v20.11.0",
    "python3": "Python 3.11.4",
}

SOURCE_TREES: dict[str, dict[str, str]] = {
    "laravel": {
        "artisan": "#!/usr/bin/env php\n",
        "composer.json": '{"name": "acme/shop"}\n',
        ".env": "APP_KEY=base64:abc\n",
        "public/index.php": "<?php\n",
    },
    "php": {
        "index.php": "<?php echo 'hi';\n",
    },
    "flask": {
        "app.py": "from flask import Flask\napp = Flask(__name__)\n",
        "requirements.txt": "flask\n",
    },
    "react": {
        "package.json": '{"name": "shop", "scripts": {"build": "vite build"}}\n',
        "package-lock.json": "{}\n",
        "src/main.jsx": "export default null;\n",
    },
    "jsp": {
        "pom.xml": "<project/>\n",
        "src/main/webapp/index.jsp": "<html></html>\n",
    },
}


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@dataclass(slots=True)
class FakeCall:
    """A command recorded by :class:`FakeRunner`."""

    argv: list[str]
    cwd: Path | None
    env: dict[str, str] | None
    timeout: float | None


@dataclass
class FakeRunner:
    """Command runner double that records calls and simulates side effects.

    ``git clone`` materialises ``source`` at the destination, dependency
    installers create the artefacts their real counterparts would, and
    ``--version`` checks answer with plausible runtime versions. Commands can
    be forced to fail with :meth:`fail`.
    """

    source: Mapping[str, str] = field(default_factory=dict)
    calls: list[FakeCall] = field(default_factory=list)
    failures: list[tuple[tuple[str, ...], int, str]] = field(default_factory=list)
    responses: dict[tuple[str, ...], tuple[int, str]] = field(default_factory=dict)

    def fail(self, *prefix: str, returncode: int = 1, stderr: str = "boom") -> None:
        """Make every command starting with *prefix* fail."""
        self.failures.append((tuple(prefix), returncode, stderr))

    def respond(self, *prefix: str, stdout: str, returncode: int = 0) -> None:
        """Return *stdout* for commands starting with *prefix*."""
        self.responses[tuple(prefix)] = (returncode, stdout)

    def commands(self) -> list[list[str]]:
        """Return the argv of every recorded call."""
        return [call.argv for call in self.calls]

    def ran(self, *prefix: str) -> bool:
        """Return True when a command starting with *prefix* was executed."""
        return any(tuple(argv[: len(prefix)]) == prefix for argv in self.commands())

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [str(part) for part in argv]
        self.calls.append(FakeCall(command, cwd, dict(env) if env else None, timeout))

        for prefix, returncode, stderr in self.failures:
            if tuple(command[: len(prefix)]) == prefix:
                return subprocess.CompletedProcess(command, returncode, "", stderr)
        for prefix, (returncode, stdout) in self.responses.items():
            if tuple(command[: len(prefix)]) == prefix:
                return subprocess.CompletedProcess(command, returncode, stdout, "")

        stdout = self._simulate(command, cwd)
        return subprocess.CompletedProcess(command, 0, stdout, "")

    # ------------------------------------------------------------------
    def _simulate(self, command: list[str], cwd: Path | None) -> str:
        program = Path(command[0]).name
        if command[1:2] == ["--version"]:
            return VERSION_OUTPUT.get(program, f"{program} 1.0.0")
        if program == "git" and command[1:2] == ["clone"]:
            destination = Path(command[-1])
            destination.mkdir(parents=True)
            for relative, content in self.source.items():
                path = destination / relative
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(content, encoding="utf-8")
            return ""
        if program == "git" and "rev-parse" in command:
            return COMMIT + "\n"
        if program == "tar":
            archive = Path(command[2])
            archive.parent.mkdir(parents=True, exist_ok=True)
            archive.write_bytes(b"fake-archive")
            return ""
        if cwd is None:
            return ""
        if program == "composer" and command[1:2] == ["install"]:
            _touch(cwd / "vendor" / "autoload.php")
        elif program == "pip" and command[1:3] == ["install", "gunicorn"]:
            _touch(Path(command[0]).parent / "gunicorn")
        elif program == "python3" and command[1:3] == ["-m", "venv"]:
            (cwd / command[3] / "bin").mkdir(parents=True, exist_ok=True)
        elif program in {"npm", "yarn", "pnpm"} and command[1:2] == ["run"]:
            _touch(cwd / "dist" / "index.html")
        elif program == "mvn":
            _touch(cwd / "target" / "shop-example-com.war")
        return ""


def _touch(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("", encoding="utf-8")


class SteppingClock:
    """Clock that advances one minute every time it is read."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 3, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        value = self.current
        self.current = value + timedelta(minutes=1)
        return value


def current_user() -> str:
    """Return the name of the user running the tests."""
    return pwd.getpwuid(os.getuid()).pw_name


def current_group() -> str:
    """Return the primary group of the user running the tests."""
    return grp.getgrgid(os.getgid()).gr_name


def config_values(tmp_path: Path, stack: str) -> dict[str, object]:
    """Return configuration values confining every path to *tmp_path*."""
    return {
        "domain": DOMAIN,
        "repository": "https://git.example.com/acme/shop.git",
        "stack": stack,
        "base_dir": str(tmp_path / "www"),
        "deploy_user": current_user(),
        "deploy_group": current_group(),
        "state_dir": str(tmp_path / "state"),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "templates_dir": str(tmp_path / "templates"),
        "lock_timeout": 1,
        "packages": {"install": False},
        "nginx": {
            "sites_available": str(tmp_path / "nginx" / "sites-available"),
            "sites_enabled": str(tmp_path / "nginx" / "sites-enabled"),
        },
        "tls": {"live_dir": str(tmp_path / "letsencrypt" / "live")},
        "systemd": {"unit_dir": str(tmp_path / "systemd")},
        "jsp": {"webapps_dir": str(tmp_path / "tomcat" / "webapps")},
    }


def merge(base: dict[str, object], extra: Mapping[str, object]) -> dict[str, object]:
    """Return *base* with *extra* merged in (nested mappings merge one level deep)."""
    merged = dict(base)
    for key, value in extra.items():
        existing = merged.get(key)
        if isinstance(existing, dict) and isinstance(value, Mapping):
            merged[key] = {**existing, **value}
        else:
            merged[key] = value
    return merged


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., AppConfig]:
    """Return a factory building validated configs rooted in ``tmp_path``."""

    def factory(stack: str = "laravel", **extra: object) -> AppConfig:
        values = merge(config_values(tmp_path, stack), extra)
        return load_config(config_file=tmp_path / "absent.yml", env={}, overrides=values)

    return factory


@pytest.fixture
def clock() -> SteppingClock:
    """Return a deterministic clock."""
    return SteppingClock()


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Return a runner seeded with a Laravel checkout."""
    return FakeRunner(source=SOURCE_TREES["laravel"])
