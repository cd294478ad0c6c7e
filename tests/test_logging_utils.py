import logging
import time

from patchmedic import logging_utils
from patchmedic.logging_utils import (
    SessionFormatter,
    SessionLoggerAdapter,
    new_error_id,
    session_label,
    setup_logging,
    warn_ratelimited,
)


def test_session_label() -> None:
    assert session_label(None) == "-"
    assert session_label("GGG") == "GGG"
    assert session_label("GGG", "POE1", 4242) == "GGG/POE1 pid=4242"


def test_adapter_injects_session_field(caplog) -> None:
    lg = SessionLoggerAdapter(logging.getLogger("log_watcher"), "Kakao Games", "POE2")
    with caplog.at_level(logging.INFO, logger="log_watcher"):
        lg.info("hello")
    assert caplog.records[-1].session == "Kakao Games/POE2"


def test_warn_ratelimited_downgrades_repeats(caplog) -> None:
    logger = logging.getLogger("test.ratelimit")
    with caplog.at_level(logging.DEBUG, logger="test.ratelimit"):
        warn_ratelimited(logger, key="test-repeat", message="first", every_seconds=3600)
        warn_ratelimited(logger, key="test-repeat", message="second", every_seconds=3600)
    levels = [(r.levelno, r.getMessage()) for r in caplog.records]
    assert levels == [(logging.WARNING, "first"), (logging.DEBUG, "second")]


def test_error_ids_are_short_and_distinct() -> None:
    a, b = new_error_id(), new_error_id()
    assert len(a) == 6
    assert a == a.upper()
    assert a != b


def test_repeats_are_counted_when_the_window_reopens(caplog) -> None:
    logger = logging.getLogger("test.ratelimit.count")
    with caplog.at_level(logging.DEBUG, logger="test.ratelimit.count"):
        for _ in range(3):
            warn_ratelimited(logger, key="test-count", message="log missing", every_seconds=3600)
        logging_utils._windows["test-count"].reopens_at = time.monotonic() - 1
        warn_ratelimited(logger, key="test-count", message="log missing", every_seconds=3600)

    warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
    assert warnings == ["log missing", "log missing (2 similar suppressed)"]


def test_formatter_fills_missing_session() -> None:
    record = logging.LogRecord("patch_manager", logging.INFO, __file__, 1, "Repair finished", None, None)
    line = SessionFormatter(logging_utils.LOG_FORMAT, logging_utils.LOG_DATEFMT).format(record)
    assert line.endswith("| patch_manager | - | Repair finished")
    assert "| INFO    |" in line


def test_setup_logging_is_idempotent_and_writes_log_file(tmp_path, monkeypatch) -> None:
    log_file = tmp_path / "patchmedic.log"
    monkeypatch.setenv("PATCHMEDIC_LOG_FILE", str(log_file))
    root = logging.getLogger()
    before_handlers, before_level = list(root.handlers), root.level
    try:
        setup_logging("INFO")
        setup_logging("DEBUG")
        own = [h for h in root.handlers if getattr(h, "_patchmedic", False)]
        assert len(own) == 2
        assert root.level == logging.DEBUG
        assert logging.getLogger("urllib3").level == logging.WARNING

        SessionLoggerAdapter(logging.getLogger("transfer"), "GGG", "POE1").warning("CDN slow")
        for h in own:
            h.flush()
        assert "| transfer      | GGG/POE1 | CDN slow" in log_file.read_text(encoding="utf-8")
    finally:
        for h in list(root.handlers):
            if h not in before_handlers:
                root.removeHandler(h)
                h.close()
        root.setLevel(before_level)
