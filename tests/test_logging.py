"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

import pytest

from xpmctl.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.operations_log_path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines if line.strip()]


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
    operations_path = logger.operations_log_path

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


def test_operation_records_steps_and_lock_wait(tmp_path: Path) -> None:
    """Steps, lock wait and target are persisted with the result."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "instance update",
        args={"instance": "acme", "target": "1.2.0"},
        target={"kind": "instance", "id": "acme"},
    ) as op:
        op.set_lock_wait_ms(12)
        op.add_step("history.append", status="success", detail="7")
        op.success("Updated from 1.1.0 to 1.2.0", changed=2)

    (record,) = _records(logger)
    assert record["command"] == "instance update"
    assert record["target"] == {"kind": "instance", "id": "acme"}
    assert record["lock_wait_ms"] == 12
    assert record["steps"][0]["name"] == "history.append"  # type: ignore[index]
    assert record["result"]["status"] == "success"  # type: ignore[index]
    assert record["result"]["changed"] == 2  # type: ignore[index]
    assert str(record["started_at"]).endswith("Z")
    assert str(record["finished_at"]) >= str(record["started_at"])
    assert datetime.fromisoformat(str(record["steps"][0]["at"]))  # type: ignore[index]


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("demo", args={"path": Path("foo")}) as op:
        op.warning(
            "warned",
            warnings=("note",),
            errors=("err",),
            changed=1,
            context={"path": Path("/var/lib"), "obj": Custom()},
        )

    (record,) = _records(logger)
    result = record["result"]
    assert record["args"] == {"path": "foo"}
    assert result["status"] == "warning"  # type: ignore[index]
    assert result["warnings"] == ["note"]  # type: ignore[index]
    assert result["errors"] == ["err"]  # type: ignore[index]
    assert result["context"] == {"path": "/var/lib", "obj": "<custom>"}  # type: ignore[index]


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("demo") as op:
        op.error("boom", errors=None, context={"value": {1, 2}})

    (record,) = _records(logger)
    result = record["result"]
    assert result["status"] == "error"  # type: ignore[index]
    assert result["errors"] == ["boom"]  # type: ignore[index]
    assert result["rc"] == 2  # type: ignore[index]
    assert result["context"] == {"value": "{1, 2}"}  # type: ignore[index]


def test_escaping_exception_is_recorded_and_reraised(tmp_path: Path) -> None:
    """An exception leaving the block becomes an error record."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError, match="bad input"):
        with logger.operation("demo"):
            raise ValueError("bad input")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert record["result"]["message"] == "bad input"  # type: ignore[index]
