"""Helpers for interacting with the deployctl state registry.

The registry directory (``/var/lib/deployctl`` by default) stores YAML
artifacts. Each deployed domain owns ``domains/<domain>/releases.yml`` which
records every release deployctl built: its timestamp, served output, the
commit it was cloned at and whether it is currently active. Writes are atomic
(temporary file plus ``os.replace``) so an interrupted deploy never leaves a
truncated registry behind.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage deployctl state. Install with `pip install deployctl`."
    ) from exc

RELEASE_STATUSES = ("building", "built", "failed")


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        path = self.path_for(name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StateRegistryError(f"Cannot create registry directory {path.parent}: {exc}") from exc

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Release helpers -------------------------------------------------
    @staticmethod
    def releases_file(domain: str) -> str:
        """Return the registry-relative name of *domain*'s release file."""
        return f"domains/{domain}/releases.yml"

    def read_releases(self, domain: str) -> list[dict[str, Any]]:
        """Return normalised release entries for *domain*, oldest first."""
        value = self.read(self.releases_file(domain), default={"releases": []})
        raw = value.get("releases", []) if isinstance(value, Mapping) else []
        entries: list[dict[str, Any]] = []
        if isinstance(raw, list):
            for item in raw:
                if isinstance(item, Mapping):
                    entries.append(_normalize_release_entry(item))
        entries.sort(key=lambda entry: entry["timestamp"])
        return entries

    def write_releases(self, domain: str, releases: Iterable[Mapping[str, object]]) -> None:
        """Persist release entries for *domain*."""
        self.write(self.releases_file(domain), {"releases": [dict(item) for item in releases]})

    def get_release(self, domain: str, timestamp: str) -> dict[str, Any] | None:
        """Return the registry entry for *timestamp* if present."""
        for entry in self.read_releases(domain):
            if entry["timestamp"] == timestamp:
                return deepcopy(entry)
        return None

    def upsert_release(self, domain: str, entry: Mapping[str, object]) -> None:
        """Add or update a release entry, merging with any existing values."""
        normalized = _normalize_release_entry(entry)
        releases = self.read_releases(domain)
        stored: list[dict[str, Any]] = []
        replaced = False
        for existing in releases:
            if existing["timestamp"] == normalized["timestamp"]:
                merged = dict(existing)
                merged.update(normalized)
                stored.append(merged)
                replaced = True
            else:
                stored.append(existing)
        if not replaced:
            stored.append(normalized)
        self.write_releases(domain, stored)

    def mark_active(self, domain: str, timestamp: str, *, activated_at: str) -> None:
        """Flag *timestamp* as the active release and clear the flag elsewhere."""
        releases = self.read_releases(domain)
        found = False
        for entry in releases:
            if entry["timestamp"] == timestamp:
                entry["active"] = True
                entry["activated_at"] = activated_at
                found = True
            else:
                entry["active"] = False
        if not found:
            releases.append(
                _normalize_release_entry(
                    {"timestamp": timestamp, "active": True, "activated_at": activated_at}
                )
            )
        self.write_releases(domain, releases)

    def remove_releases(self, domain: str, timestamps: Iterable[str]) -> None:
        """Drop the entries for *timestamps* (missing ones are ignored)."""
        doomed = set(timestamps)
        if not doomed:
            return
        releases = self.read_releases(domain)
        remaining = [entry for entry in releases if entry["timestamp"] not in doomed]
        if len(remaining) != len(releases):
            self.write_releases(domain, remaining)


def _normalize_release_entry(entry: Mapping[str, object]) -> dict[str, Any]:
    """Validate and normalise a release registry entry."""
    timestamp_raw = entry.get("timestamp")
    timestamp = str(timestamp_raw).strip() if timestamp_raw is not None else ""
    if not timestamp:
        raise StateRegistryError("Release entry missing 'timestamp'.")

    normalized: dict[str, Any] = {"timestamp": timestamp}
    for key in ("path", "built_output", "stack", "branch", "commit", "created_at", "activated_at"):
        if key in entry and entry[key] is not None:
            normalized[key] = str(entry[key])

    if "status" in entry and entry["status"] is not None:
        status = str(entry["status"])
        if status not in RELEASE_STATUSES:
            raise StateRegistryError(
                f"Release '{timestamp}' has unknown status '{status}'."
            )
        normalized["status"] = status

    if "active" in entry:
        normalized["active"] = bool(entry["active"])

    if "warnings" in entry and entry["warnings"] is not None:
        warnings = entry["warnings"]
        if not isinstance(warnings, list):
            raise StateRegistryError("Release entry 'warnings' must be a list.")
        normalized["warnings"] = [str(item) for item in warnings]

    return normalized


__all__ = ["RELEASE_STATUSES", "StateRegistry", "StateRegistryError"]
