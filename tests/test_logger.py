# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_federation

"""
Tests for the logging configuration.
"""

import json
import logging
import os
from collections.abc import Generator
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from opentelemetry.sdk.trace import TracerProvider

from coreason_federation.utils.logger import InterceptHandler, anonymize, configure_logging, logger, trace_id_injector


@pytest.fixture
def clean_logger() -> Generator[None, None, None]:
    """Ensure logger is reset before and after tests."""
    logger.remove()
    yield
    configure_logging()


@pytest.mark.usefixtures("clean_logger")
def test_text_and_json_sinks(capsys: pytest.CaptureFixture[str]) -> None:
    with patch.dict(os.environ, {"COREASON_FED_LOG_JSON": "false"}):
        configure_logging()
        logger.info("Text Log")
        captured = capsys.readouterr()
        assert "Text Log" in captured.err
        assert "| INFO " in captured.err

    with patch.dict(os.environ, {"COREASON_FED_LOG_JSON": "true"}):
        configure_logging()
        logger.info("JSON Log")
        captured = capsys.readouterr()
        assert json.loads(captured.out.splitlines()[-1])["record"]["message"] == "JSON Log"
        assert not captured.err


@pytest.mark.usefixtures("clean_logger")
def test_level_from_environment(capsys: pytest.CaptureFixture[str]) -> None:
    with patch.dict(os.environ, {"COREASON_FED_LOG_LEVEL": "warning", "COREASON_FED_LOG_JSON": "false"}):
        configure_logging()
        logger.info("hidden")
        logger.warning("shown")
    err = capsys.readouterr().err
    assert "hidden" not in err
    assert "shown" in err


@pytest.mark.usefixtures("clean_logger")
def test_unknown_level_falls_back_to_info(capsys: pytest.CaptureFixture[str]) -> None:
    with patch.dict(os.environ, {"COREASON_FED_LOG_LEVEL": "VERBOSE", "COREASON_FED_LOG_JSON": "false"}):
        configure_logging()
        logger.debug("debug message")
        logger.info("info message")
    err = capsys.readouterr().err
    assert "debug message" not in err
    assert "info message" in err


@pytest.mark.usefixtures("clean_logger")
def test_repeated_configuration_does_not_duplicate_sinks() -> None:
    configure_logging()
    first = len(logger._core.handlers)  # type: ignore
    configure_logging()
    assert len(logger._core.handlers) == first  # type: ignore


@pytest.mark.usefixtures("clean_logger")
def test_file_sink(tmp_path: Path) -> None:
    log_file = tmp_path / "federation.log"
    with patch.dict(os.environ, {"COREASON_FED_LOG_FILE": str(log_file)}):
        configure_logging()
        logger.info("to file")
        logger.complete()
    logger.remove()
    record = json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])
    assert record["record"]["message"] == "to file"


@pytest.mark.usefixtures("clean_logger")
def test_unwritable_file_sink_is_reported(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("", encoding="utf-8")
    with patch.dict(
        os.environ, {"COREASON_FED_LOG_FILE": str(blocker / "federation.log"), "COREASON_FED_LOG_JSON": "false"}
    ):
        configure_logging()
    logger.info("still logging")
    err = capsys.readouterr().err
    assert "file logging disabled" in err
    assert "still logging" in err


def test_intercept_handler_routes_standard_logging() -> None:
    messages: list[str] = []
    handler_id = logger.add(lambda msg: messages.append(msg.record["message"]), level="DEBUG")
    std = logging.getLogger("intercept-test")
    std.handlers = [InterceptHandler()]
    std.propagate = False
    std.setLevel(logging.INFO)
    try:
        std.info("from stdlib")
        std.log(5, "custom level")
    finally:
        logger.remove(handler_id)
    assert "from stdlib" in messages


def test_trace_id_injector() -> None:
    record: dict[str, Any] = {"extra": {}}
    trace_id_injector(record)
    assert record["extra"] == {}

    tracer = TracerProvider().get_tracer("test")
    with tracer.start_as_current_span("span") as span:
        trace_id_injector(record)
        context = span.get_span_context()
    assert record["extra"]["trace_id"] == format(context.trace_id, "032x")
    assert record["extra"]["span_id"] == format(context.span_id, "016x")


def test_anonymize() -> None:
    assert anonymize("client", "salt") == anonymize("client", "salt")
    assert anonymize("client", "salt") != anonymize("client", "pepper")
    assert len(anonymize("client", "salt")) == 16
    assert "client" not in anonymize("client", "salt")
