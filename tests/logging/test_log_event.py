from __future__ import annotations

import logging
from unittest.mock import Mock

import pytest

from harvest.logging_events import log_event, monotonic_ms


def test_log_event_emits_expected_extra_fields() -> None:
    logger = Mock()

    log_event(
        logger,
        "harvest.fetch.succeeded",
        feed_id="f-a",
        status="success",
        bytes_written=42,
        meta={"headers": ["api_key"]},
    )

    logger.log.assert_called_once()
    args, kwargs = logger.log.call_args
    assert args == (logging.INFO, "harvest.fetch.succeeded")
    assert kwargs["extra"] == {
        "event": "harvest.fetch.succeeded",
        "feed_id": "f-a",
        "status": "success",
        "bytes_written": 42,
        "meta": {"headers": ["api_key"]},
    }


def test_log_event_uses_requested_level() -> None:
    logger = Mock()

    log_event(logger, "harvest.fetch.failed", level="warning", feed_id="f-a")

    assert logger.log.call_args.args[0] == logging.WARNING


def test_log_event_rejects_empty_event() -> None:
    logger = Mock()

    with pytest.raises(ValueError):
        log_event(logger, "")


def test_log_event_rejects_unknown_level() -> None:
    with pytest.raises(ValueError):
        log_event(Mock(), "sample", level="loud")


def test_log_event_rejects_nested_field_outside_meta() -> None:
    with pytest.raises(TypeError):
        log_event(Mock(), "sample", missing_ids={"a", "b"})


def test_log_event_rejects_invalid_meta_type() -> None:
    logger = Mock()

    with pytest.raises(TypeError):
        log_event(logger, "sample", feed_id="x", meta="oops")


def test_log_event_reaches_real_logger(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="harvest.test")

    log_event(logging.getLogger("harvest.test"), "harvest.loop.started", requested=3)

    record = caplog.records[-1]
    assert record.getMessage() == "harvest.loop.started"
    assert record.event == "harvest.loop.started"
    assert record.requested == 3


def test_monotonic_ms_never_goes_backwards() -> None:
    first = monotonic_ms()
    assert isinstance(first, int)
    assert monotonic_ms() >= first
