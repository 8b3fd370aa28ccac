import logging

import pytest

from oob.main import BufferHandler, app, configure_logging, log_buffer


@pytest.fixture
def target():
    """A detached logger so the app's root handlers are left alone."""
    log = logging.getLogger("oob-logging-test")
    log.propagate = False
    yield log
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()


def test_app_serves_the_configured_buffer():
    assert app.state.log_buffer is log_buffer
    assert any(isinstance(h, BufferHandler) for h in logging.getLogger().handlers)


def test_buffer_records_entries(target):
    buffer = configure_logging("warning", target=target)
    target.info("not kept")
    target.warning("disk %s", "full")
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        target.error("sweep failed", exc_info=True)

    assert [e["message"] for e in buffer] == ["disk full", "sweep failed"]
    assert buffer[0]["level"] == "WARNING"
    assert buffer[0]["name"] == "oob-logging-test"
    assert "| WARNING  |" in buffer[0]["formatted"]
    assert buffer[0]["exc_info"] is None
    assert "RuntimeError: boom" in buffer[1]["exc_info"]


def test_reconfiguring_replaces_handlers(target):
    first = configure_logging("INFO", target=target)
    second = configure_logging("INFO", target=target)
    assert len(target.handlers) == 2
    target.info("hello")
    assert len(first) == 0
    assert [e["message"] for e in second] == ["hello"]


def test_file_handler_outside_test_mode(target, tmp_path):
    log_file = tmp_path / "logs" / "oob.log"
    configure_logging("INFO", log_file=str(log_file), target=target)
    target.info("to disk")
    for handler in target.handlers:
        handler.flush()
    assert "to disk" in log_file.read_text()


def test_no_file_handler_in_test_mode(target, tmp_path):
    log_file = tmp_path / "oob.log"
    configure_logging("INFO", log_file=str(log_file), test_mode=True, target=target)
    assert len(target.handlers) == 2
    assert not log_file.exists()
