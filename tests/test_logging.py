"""Tests for the structured operation logger."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from deployctl.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_operation_appends_jsonl_record(tmp_path: Path) -> None:
    """A completed operation writes one JSON line with steps and lock wait."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "deploy",
        args={"branch": "main", "config": Path("/etc/deployctl/config.yml")},
        target={"kind": "domain", "name": "shop.example.com"},
    ) as op:
        op.set_lock_wait_ms(12)
        op.add_step("git.clone", detail="repo@main")
        op.add_step("npm.build", status="warning", detail="exit 1")
        op.success("Deployed.", changed=1, context={"release": "20240301_120000"})

    (record,) = _records(logger)
    assert record["operation"] == "deploy"
    assert record["args"] == {"branch": "main", "config": "/etc/deployctl/config.yml"}
    assert record["target"] == {"kind": "domain", "name": "shop.example.com"}
    assert record["lock_wait_ms"] == 12
    assert record["steps"] == [
        {"name": "git.clone", "status": "success", "detail": "repo@main"},
        {"name": "npm.build", "status": "warning", "detail": "exit 1"},
    ]
    result = record["result"]
    assert result["status"] == "success"
    assert result["rc"] == 0
    assert result["context"] == {"release": "20240301_120000"}


def test_unhandled_exception_recorded_as_error(tmp_path: Path) -> None:
    """Exceptions escaping the block are logged as errors and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError):
        with logger.operation("prune"):
            raise ValueError("bad keep")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"
    assert record["result"]["errors"] == ["bad keep"]
    assert record["result"]["rc"] == 1


def test_operation_without_result_is_unknown(tmp_path: Path) -> None:
    """Blocks that never set a result are still recorded."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("status"):
        pass

    (record,) = _records(logger)
    assert record["result"]["status"] == "unknown"


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo", args={"foo": "bar"}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("demo") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo-2") as op:
        op.success("done", changed=0)


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("deploy", args={"path": Path("foo")}) as op:
        op.warning(
            "Deployed with warnings.",
            warnings=("nginx.reload: exit 1",),
            changed=1,
            context={"path": Path("/var/www"), "obj": Custom()},
        )

    (record,) = _records(logger)
    result = record["result"]
    assert result["status"] == "warning"
    assert result["rc"] == 0
    assert result["warnings"] == ["nginx.reload: exit 1"]
    assert result["context"] == {"path": "/var/www", "obj": "<custom>"}


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("rollback") as op:
        op.error("boom", rc=2)

    (record,) = _records(logger)
    result = record["result"]
    assert result["status"] == "error"
    assert result["errors"] == ["boom"]
    assert result["rc"] == 2
