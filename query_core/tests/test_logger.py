import io
import json
import logging

import pytest

from query_core.infrastructure.logging.logger import get_logger, parse_level, setup_logger


@pytest.fixture
def stream():
    buf = io.StringIO()
    yield buf
    setup_logger("info", "json")


def test_parse_level():
    assert parse_level("warn") == logging.WARNING
    assert parse_level("fatal") == logging.CRITICAL
    assert parse_level("DEBUG") == logging.DEBUG
    assert parse_level("unknown") == logging.INFO


def test_json_output_carries_context_fields(stream):
    setup_logger("debug", "json", stream=stream)
    log = get_logger().with_component("schema_validator").with_request_id("r-9")
    log.info("Schema compiled and cached", cache_size=3)

    record = json.loads(stream.getvalue().strip().splitlines()[-1])
    assert record["msg"] == "Schema compiled and cached"
    assert record["level"] == "INFO"
    assert record["component"] == "schema_validator"
    assert record["request_id"] == "r-9"
    assert record["cache_size"] == 3


def test_text_output(stream):
    setup_logger("info", "text", stream=stream)
    get_logger().with_operation("structured_query").warning("slow upstream", duration_ms=1200)

    line = stream.getvalue().strip().splitlines()[-1]
    assert "WARNING" in line
    assert "operation=structured_query" in line
    assert "duration_ms=1200" in line


def test_level_filtering(stream):
    setup_logger("error", "json", stream=stream)
    get_logger().info("hidden")
    assert stream.getvalue() == ""


def test_derived_logger_does_not_mutate_parent():
    base = get_logger(component="a")
    child = base.with_component("b")
    assert base.extra["component"] == "a"
    assert child.extra["component"] == "b"


def test_file_sink(tmp_path, stream):
    setup_logger("info", "json", stream=stream, log_dir=str(tmp_path / "logs"))
    get_logger().info("to file")
    for handler in logging.getLogger("query_core").handlers:
        handler.flush()

    content = (tmp_path / "logs" / "query_core.log").read_text(encoding="utf-8")
    assert "to file" in content
