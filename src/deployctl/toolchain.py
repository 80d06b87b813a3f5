"""Best-effort version checks of language runtimes required by a stack."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from packaging.version import InvalidVersion, Version

from .config import AppConfig
from .runner import CommandRunner

LOGGER = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"v?(\d+(?:\.\d+){0,2})")


@dataclass(slots=True)
class ToolVersionInfo:
    """Parsed ``--version`` output of a runtime binary."""

    tool: str
    raw: str
    version: Version


@dataclass(slots=True)
class ToolCheck:
    """Result of comparing a detected runtime with the configured one."""

    tool: str
    expected: str | None
    detected: ToolVersionInfo | None
    ok: bool
    message: str


def detect_version(
    runner: CommandRunner,
    tool: str,
    binary: str,
    *,
    timeout: float | None = None,
) -> ToolVersionInfo | None:
    """Run ``<binary> --version`` and parse the first version number found."""
    result = runner.run([binary, "--version"], timeout=timeout)
    if result.returncode != 0:
        LOGGER.debug("%s --version failed with exit %s", binary, result.returncode)
        return None
    output = (result.stdout or result.stderr or "").strip()
    match = _VERSION_RE.search(output)
    if not match:
        return None
    try:
        version = Version(match.group(1))
    except InvalidVersion:
        return None
    return ToolVersionInfo(tool=tool, raw=output.splitlines()[0], version=version)


def matches_series(detected: Version, expected: str) -> bool:
    """Return True when *detected* belongs to the *expected* release series.

    ``expected`` may be partial, so ``8.1`` accepts ``8.1.27`` and ``20``
    accepts ``20.11.0``.
    """
    try:
        wanted = Version(expected.strip().lstrip("v"))
    except InvalidVersion:
        return False
    return detected.release[: len(wanted.release)] == wanted.release


def check_tool(
    runner: CommandRunner,
    tool: str,
    binary: str,
    expected: str | None,
    *,
    timeout: float | None = None,
) -> ToolCheck:
    """Probe *binary* and compare it with the *expected* version series."""
    info = detect_version(runner, tool, binary, timeout=timeout)
    if info is None:
        return ToolCheck(tool, expected, None, False, f"{tool} ({binary}) not found or unreadable.")
    if expected is None:
        return ToolCheck(tool, expected, info, True, f"{tool} {info.version} detected.")
    if matches_series(info.version, expected):
        return ToolCheck(tool, expected, info, True, f"{tool} {info.version} matches {expected}.")
    return ToolCheck(
        tool,
        expected,
        info,
        False,
        f"{tool} {info.version} does not match configured version {expected}.",
    )


def check_stack_toolchain(
    config: AppConfig,
    runner: CommandRunner,
    *,
    timeout: float | None = None,
) -> list[ToolCheck]:
    """Return toolchain checks relevant to ``config.stack``."""
    checks: list[ToolCheck] = []
    stack = config.stack
    if stack in {"laravel", "php"}:
        checks.append(check_tool(runner, "php", config.php.php_bin, config.php.version, timeout=timeout))
    if stack == "flask":
        checks.append(check_tool(runner, "python", config.python.python_bin, None, timeout=timeout))
    if stack == "react" or (stack in {"laravel", "php"} and config.php.build_assets):
        checks.append(
            check_tool(runner, "node", config.node.node_bin, config.node.version, timeout=timeout)
        )
    return checks


__all__ = [
    "ToolCheck",
    "ToolVersionInfo",
    "check_tool",
    "detect_version",
    "matches_series",
    "check_stack_toolchain",
]
