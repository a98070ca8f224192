"""Tests for preservation/lib/observability.py - stage logging."""

import json
import logging
import sys

import pytest

from preservation.lib.observability import JSONFormatter, get_stage_logger, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def make_record(message="hello", **extra):
    record = logging.LogRecord("preservation.test", logging.INFO, __file__, 10, message, (), None)
    record.__dict__.update(extra)
    return record


class TestJSONFormatter:
    """Tests for JSONFormatter."""

    def test_basic_fields(self):
        payload = json.loads(JSONFormatter().format(make_record()))
        assert payload["level"] == "INFO"
        assert payload["logger"] == "preservation.test"
        assert payload["message"] == "hello"
        assert payload["timestamp"].endswith("Z")

    def test_extra_fields(self):
        payload = json.loads(JSONFormatter().format(make_record(stage="perform_transfer", pending_transfer_id=3)))
        assert payload["extra"] == {"stage": "perform_transfer", "pending_transfer_id": 3}

    def test_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("t", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
        payload = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in payload["exception"]


class TestStageLogger:
    """Tests for StageLogger context handling."""

    def test_context_is_attached(self, caplog):
        log = get_stage_logger("preservation.test", stage="verify_fixity", stored_object_id=9)
        with caplog.at_level(logging.INFO, logger="preservation.test"):
            log.info("Checking %s", "ldpd/file.txt")

        record = caplog.records[-1]
        assert record.getMessage() == "Checking ldpd/file.txt"
        assert record.stage == "verify_fixity"
        assert record.stored_object_id == 9

    def test_metric(self, caplog):
        log = get_stage_logger("preservation.test", stage="perform_transfer")
        with caplog.at_level(logging.INFO, logger="preservation.test"):
            log.metric("transfer_bytes", 1024, unit="bytes", provider="aws")

        record = caplog.records[-1]
        assert record.getMessage() == "METRIC transfer_bytes=1024"
        assert record.metric_unit == "bytes"
        assert record.provider == "aws"

    def test_call_extra_is_merged_with_context(self, caplog):
        log = get_stage_logger("preservation.test", stage="prepare_transfer", source_object_id=4)
        with caplog.at_level(logging.INFO, logger="preservation.test"):
            log.info("Prepared", extra={"providers": 2})

        record = caplog.records[-1]
        assert record.providers == 2
        assert record.source_object_id == 4


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_verbose_sets_debug(self, restore_root_logger):
        setup_logging(verbose=True)
        assert restore_root_logger.level == logging.DEBUG

    def test_level_from_configuration(self, restore_root_logger):
        setup_logging(level="warning")
        assert restore_root_logger.level == logging.WARNING

    def test_json_file_output(self, restore_root_logger, tmp_path):
        log_file = tmp_path / "preservation.log"
        setup_logging(json_format=True, log_file=str(log_file))

        logging.getLogger("preservation.test").info("written")
        for handler in restore_root_logger.handlers:
            handler.flush()

        payload = json.loads(log_file.read_text().splitlines()[-1])
        assert payload["message"] == "written"

    def test_noisy_loggers_are_quieted(self, restore_root_logger):
        setup_logging(verbose=True)
        assert logging.getLogger("botocore").level == logging.WARNING
