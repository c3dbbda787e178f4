import json
import logging
from pathlib import Path

import pytest

from branchsync_mcp import observability as obs

log_action = obs.log_action
log_debug = obs.log_debug
log_warning = obs.log_warning
log_error = obs.log_error
timeit = obs.timeit
track_git_event = obs.track_git_event
LOGGER_NAME = obs.LOGGER_NAME
_get_log_level = obs._get_log_level
_get_log_file_path = obs._get_log_file_path


@pytest.fixture(autouse=True)
def reset_logger(monkeypatch):
    """Reset logger state and analytics sink between tests."""
    monkeypatch.setenv("BRANCHSYNC_LOG_DISABLE_FILE", "1")
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    obs._logger_initialized = False
    yield
    logger.handlers.clear()
    obs._logger_initialized = False
    obs.set_analytics_sink(None)


def test_log_action_emits_json(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    log_action("git.pull", outcome="ok", duration_ms=123, lineage_id="app-1", branch="main")
    data = json.loads(caplog.records[-1].message)
    assert data["action"] == "git.pull"
    assert data["outcome"] == "ok"
    assert data["duration_ms"] == 123
    assert data["lineage_id"] == "app-1"
    assert data["branch"] == "main"


def test_log_action_with_tool_name(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    log_action("mcp.tool", tool_name="branchsync_commit", input_chars=40)
    data = json.loads(caplog.records[-1].message)
    assert data["tool"] == "branchsync_commit"
    assert data["input_chars"] == 40


def test_timeit_error_logs(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    with pytest.raises(RuntimeError):
        with timeit("test.err", branch="main"):
            raise RuntimeError("boom")
    data = json.loads(caplog.records[-1].message)
    assert data["action"] == "test.err"
    assert data["outcome"] == "error"


def test_log_debug_with_fields(caplog, monkeypatch):
    monkeypatch.setenv("BRANCHSYNC_LOG_LEVEL", "DEBUG")
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    log_debug("Git operation", repo="storefront", branch="main")
    msg = caplog.records[-1].message
    assert "Git operation" in msg
    assert '"branch":"main"' in msg
    assert '"repo":"storefront"' in msg


def test_log_debug_not_emitted_at_info(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    log_debug("should not appear")
    assert not [r for r in caplog.records if r.levelno == logging.DEBUG]


def test_log_warning_and_error_levels(caplog):
    caplog.set_level(logging.WARNING, logger=LOGGER_NAME)
    log_warning("test warning")
    assert caplog.records[-1].levelno == logging.WARNING
    log_error("test error", error_type="ValueError")
    assert caplog.records[-1].levelno == logging.ERROR
    assert '"error_type":"ValueError"' in caplog.records[-1].message


def test_log_level_from_env(monkeypatch):
    monkeypatch.setenv("BRANCHSYNC_LOG_LEVEL", "WARNING")
    assert _get_log_level() == logging.WARNING
    monkeypatch.setenv("BRANCHSYNC_LOG_LEVEL", "NOT_A_LEVEL")
    assert _get_log_level() == logging.INFO


def test_disable_file_logging():
    assert _get_log_file_path() is None


def test_custom_log_dir(monkeypatch, tmp_path: Path):
    monkeypatch.delenv("BRANCHSYNC_LOG_DISABLE_FILE", raising=False)
    custom_dir = tmp_path / "custom_logs"
    monkeypatch.setenv("BRANCHSYNC_LOG_DIR", str(custom_dir))
    path = _get_log_file_path()
    assert path is not None
    assert path.parent == custom_dir
    assert custom_dir.exists()


def test_track_git_event_success_reaches_sink():
    events = []
    obs.set_analytics_sink(events.append)
    with track_git_event("git_commit", application_id="app-1") as event:
        event["branch_application_id"] = "branch-1"
    assert len(events) == 1
    assert events[0]["event"] == "git_commit"
    assert events[0]["outcome"] == "ok"
    assert events[0]["branch_application_id"] == "branch-1"


def test_track_git_event_failure_is_recorded_and_reraised():
    events = []
    obs.set_analytics_sink(events.append)
    with pytest.raises(ValueError):
        with track_git_event("git_push", application_id="app-1"):
            raise ValueError("rejected")
    assert events[0]["outcome"] == "error"
    assert events[0]["error_type"] == "ValueError"
    assert events[0]["error_message"] == "rejected"


def test_failing_sink_never_breaks_the_operation(caplog):
    def broken_sink(payload):
        raise RuntimeError("analytics down")

    obs.set_analytics_sink(broken_sink)
    caplog.set_level(logging.WARNING, logger=LOGGER_NAME)
    with track_git_event("git_pull"):
        pass
    assert "Failed to record git_pull" in caplog.records[-1].message
