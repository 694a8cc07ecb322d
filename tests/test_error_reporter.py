from __future__ import annotations

from heapwarden.core.error_reporter import ErrorReporter, ErrorReporterConfig, normalize_exception
from heapwarden.core.errors import CloseFailure, MonitorError


def test_write_and_tail(error_reporter):
    error_reporter.write_error(CloseFailure(session_id="s1", error="reset"), trace_id="t1", subsystem="leak_detector")
    error_reporter.report_exception(ValueError("bad value"), trace_id="t2", subsystem="heap_tuner")

    entries = error_reporter.tail(10)
    assert [e["trace_id"] for e in entries] == ["t1", "t2"]
    assert entries[0]["error_code"] == "close_failure"
    assert entries[0]["severity"] == "WARN"
    assert entries[1]["error_code"] == "unknown_error"
    assert entries[1]["safe_context"]["error_type"] == "ValueError"
    assert error_reporter.tail(1)[0]["trace_id"] == "t2"


def test_sensitive_context_is_redacted(error_reporter):
    err = MonitorError(code="x", user_message="x", context={"token": "abc", "nested": {"password": "p"}, "keep": 1})
    error_reporter.write_error(err, trace_id="t", subsystem="web")
    ctx = error_reporter.tail(1)[0]["safe_context"]
    assert ctx["token"] == "***REDACTED***"
    assert ctx["nested"]["password"] == "***REDACTED***"
    assert ctx["keep"] == 1


def test_tracebacks_only_when_enabled(tmp_path):
    path = str(tmp_path / "errors.jsonl")
    rep = ErrorReporter(path=path, cfg=ErrorReporterConfig(include_tracebacks=True))
    try:
        raise RuntimeError("boom")
    except RuntimeError as e:
        rep.report_exception(e, trace_id="t", subsystem="s")
    assert "RuntimeError" in rep.tail(1)[0]["internal_context"]["traceback"]

    plain = ErrorReporter(path=str(tmp_path / "plain.jsonl"))
    plain.report_exception(RuntimeError("boom"), trace_id="t", subsystem="s")
    assert "internal_context" not in plain.tail(1)[0]


def test_tail_of_missing_file_is_empty(tmp_path):
    assert ErrorReporter(path=str(tmp_path / "none" / "e.jsonl")).tail() == []


def test_normalize_keeps_monitor_errors():
    err = CloseFailure()
    assert normalize_exception(err, context={}) is err
    assert err.to_dict()["recoverable"] is True
