from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timezone
import io
import logging
from pathlib import Path
import sys

import pytest

from prsettle import observability
from prsettle.observability import configure_logging, log_event, log_warning_event


@pytest.fixture(autouse=True)
def restore_prsettle_logger_state() -> Iterator[None]:
    logger = logging.getLogger("prsettle")
    original_handlers = list(logger.handlers)
    original_level = logger.level
    original_propagate = logger.propagate
    try:
        yield
    finally:
        for handler in logger.handlers:
            if handler not in original_handlers:
                handler.close()
        logger.handlers.clear()
        for handler in original_handlers:
            logger.addHandler(handler)
        logger.setLevel(original_level)
        logger.propagate = original_propagate


@pytest.mark.parametrize("verbose", [None, False])
def test_configure_logging_quiet_mode_is_idempotent(verbose: bool | None) -> None:
    configure_logging(verbose=verbose)
    configure_logging(verbose=verbose)

    logger = logging.getLogger("prsettle")
    assert logger.propagate is False
    assert logger.level == logging.WARNING
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)


def test_configure_logging_verbose_mode_is_idempotent() -> None:
    configure_logging(verbose=True)
    configure_logging(verbose=True)

    logger = logging.getLogger("prsettle")
    assert logger.level == logging.INFO
    assert len(logger.handlers) == 1
    handler = logger.handlers[0]
    assert isinstance(handler, logging.StreamHandler)
    assert handler.stream is sys.stderr
    assert handler.formatter is not None
    assert "%(threadName)s" in handler.formatter._fmt
    assert handler.filters == []


def test_configure_logging_low_mode_keeps_lifecycle_events_and_warnings(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose="low")
    logger = logging.getLogger("prsettle.tests.low")

    log_event(logger, "snapshot_recorded", sequence=1)
    log_event(logger, "poll_completed", candidate_count=1)
    logger.info("plain_message=ignored")
    logger.info("event=")
    log_warning_event(logger, "label_poll_failed", label="prsettle")

    stderr = capsys.readouterr().err
    assert "event=snapshot_recorded sequence=1" in stderr
    assert "event=poll_completed" not in stderr
    assert "plain_message=ignored" not in stderr
    assert all(not line.endswith("event=") for line in stderr.splitlines())
    assert "WARNING prsettle.tests.low" in stderr
    assert "event=label_poll_failed label=prsettle" in stderr


def test_configure_logging_writes_utc_daily_file(tmp_path: Path) -> None:
    configure_logging(verbose="high", state_dir=tmp_path)
    logger = logging.getLogger("prsettle.tests.file")
    log_event(logger, "pr_enqueued", pr_number=2)

    date_key = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    log_path = tmp_path / "logs" / f"{date_key}.log"
    assert log_path.exists()
    assert "event=pr_enqueued pr_number=2" in log_path.read_text(encoding="utf-8")


def test_configure_logging_rejects_unknown_mode() -> None:
    with pytest.raises(ValueError, match="Unsupported verbose mode"):
        configure_logging(verbose="noisy")


def test_utc_daily_file_handler_handles_emit_errors(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    handler = observability._UtcDailyFileHandler(base_dir=tmp_path)
    called: dict[str, object] = {}

    monkeypatch.setattr(
        handler,
        "_stream_for_current_date",
        lambda: (_ for _ in ()).throw(RuntimeError("boom")),
    )
    monkeypatch.setattr(handler, "handleError", lambda record: called.setdefault("record", record))

    record = logging.LogRecord(
        name="prsettle.tests.observability",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="event=pr_enqueued pr_number=1",
        args=(),
        exc_info=None,
    )
    handler.emit(record)
    assert "record" in called
    handler.close()


def test_log_event_formats_and_normalizes_fields() -> None:
    logger = logging.getLogger("prsettle.tests.observability")
    logger.handlers.clear()
    stream = io.StringIO()
    logger.addHandler(logging.StreamHandler(stream))
    logger.setLevel(logging.INFO)
    logger.propagate = False

    log_event(
        logger,
        "test_event",
        b=2,
        a="multi\nline value",
        none_value=None,
        bool_value=True,
        empty="   ",
        long_text="x" * 121,
        thread_ids=["T1", "T2"],
        no_ids=(),
        expr="a=b",
        complex_value={"k": "v"},
    )

    message = stream.getvalue().strip()
    assert message.startswith("event=test_event ")
    assert message.index("a=") < message.index("b=")
    assert 'a="multi line value"' in message
    assert "b=2" in message
    assert "none_value=null" in message
    assert "bool_value=true" in message
    assert "empty=<empty>" in message
    assert "thread_ids=T1,T2" in message
    assert "no_ids=<empty>" in message
    assert 'expr="a=b"' in message
    assert "complex_value=<dict>" in message
    assert f"long_text={'x' * 120}..." in message
    logger.handlers.clear()


def test_extract_event_name() -> None:
    assert observability._extract_event_name("event=pr_merged pr_number=7") == "pr_merged"
    assert observability._extract_event_name("event= x") is None
    assert observability._extract_event_name("pr_merged") is None
