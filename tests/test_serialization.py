from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from types import SimpleNamespace

from arc_sql_license.core.models import LicenseType, RecordStatus
from arc_sql_license.logging import JsonFormatter, LogConfig, PlainFormatter, add_run_log_file, setup_logging
from arc_sql_license.util.errors import ExitCode, InputError, as_exit_code, error_detail
from arc_sql_license.util.serialization import sanitize_for_json, stable_json_dumps


def _record(msg: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="unit",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_sanitize_for_json_handles_datetime_enum_and_bytes() -> None:
    ts = datetime(2024, 1, 1, tzinfo=timezone.utc)
    payload = {"when": ts, "blob": b"bytes", "status": RecordStatus.VALID, "types": (LicenseType.PAYG,)}

    sanitized = sanitize_for_json(payload)

    assert sanitized == {
        "when": "2024-01-01T00:00:00+00:00",
        "blob": "bytes",
        "status": "Valid",
        "types": ["PAYG"],
    }


def test_sanitize_uses_as_dict_and_keeps_secret_looking_keys() -> None:
    model = SimpleNamespace(as_dict=lambda: {"licenseType": "PAYG", "password": "kept"})

    assert sanitize_for_json(model) == {"licenseType": "PAYG", "password": "kept"}


def test_stable_json_dumps_sorts_keys() -> None:
    assert stable_json_dumps({"b": 1, "a": [RecordStatus.FAILED]}) == '{"a":["Failed"],"b":1}'


def test_json_formatter_skips_non_serializable_extras() -> None:
    record = _record(good={"a": 1, "b": [1, 2]}, bad={"obj": object()}, step="convert", phase="complete")

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "hello"
    assert payload["good"] == {"a": 1, "b": [1, 2]}
    assert payload["step"] == "convert"
    assert "bad" not in payload


def test_plain_formatter_prefixes_step_and_server() -> None:
    line = PlainFormatter().format(_record("Updated licenseType", step="convert", phase="complete", server="sql01"))

    assert "[convert:complete] sql01: Updated licenseType" in line
    assert " INFO unit: " in line


def test_add_run_log_file_writes(tmp_path) -> None:
    if getattr(setup_logging, "_configured", False):
        setattr(setup_logging, "_configured", False)
    setup_logging(LogConfig(level="INFO", json_logs=False))

    log_path = tmp_path / "run.log"
    add_run_log_file(log_path)

    logging.getLogger("unit.test").info("file log test")

    content = log_path.read_text(encoding="utf-8")
    assert "file log test" in content
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, logging.FileHandler):
            root.removeHandler(handler)
            handler.close()


def test_error_detail_includes_inner_errors() -> None:
    odata = SimpleNamespace(
        code="InvalidRequest",
        message="Request is invalid",
        details=[SimpleNamespace(code="PolicyViolation", message="tag 'owner' is required", details=None)],
        innererror={"message": "policy assignment blocks update"},
    )
    exc = RuntimeError("(InvalidRequest) Request is invalid")
    exc.error = odata

    detail = error_detail(exc)

    assert detail.startswith("(InvalidRequest) Request is invalid")
    assert "PolicyViolation: tag 'owner' is required" in detail
    assert "policy assignment blocks update" in detail


def test_error_detail_of_bare_exception() -> None:
    assert error_detail(KeyError()) == "KeyError"


def test_exit_codes() -> None:
    assert as_exit_code(InputError("x")) == ExitCode.CONFIG_ERROR
    assert as_exit_code(RuntimeError("x")) == 1
