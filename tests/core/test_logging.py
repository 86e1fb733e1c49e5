"""Tests for vigil.core.logging."""

import json

import structlog

from vigil.core.logging import LogContext, bind_context, configure_logging, get_logger


class TestConfigureLogging:
    def test_json_output_goes_to_stderr(self, capsys):
        configure_logging("INFO", json_format=True)
        get_logger("vigil.test").info("step_completed", step_index=2)

        captured = capsys.readouterr()
        assert captured.out == ""
        record = json.loads(captured.err.strip().splitlines()[-1])
        assert record["event"] == "step_completed"
        assert record["step_index"] == 2
        assert record["log.level"] == "info"
        assert record["service.name"] == "vigil"
        assert record["logger"] == "vigil.test"

    def test_level_filters(self, capsys):
        configure_logging("ERROR", json_format=True)
        get_logger("vigil.test").warning("retry_scheduled")
        assert capsys.readouterr().err == ""

    def test_console_format(self, capsys):
        configure_logging("INFO", json_format=False)
        get_logger("vigil.test").info("task_started", task_id="T1")
        err = capsys.readouterr().err
        assert "task_started" in err
        assert "T1" in err


class TestContext:
    def test_log_context_binds_and_unbinds(self, capsys):
        configure_logging("INFO", json_format=True)
        logger = get_logger("vigil.test")
        with LogContext(task_id="T1"):
            logger.info("inside")
        logger.info("outside")

        lines = [json.loads(line) for line in capsys.readouterr().err.strip().splitlines()]
        assert lines[0]["task_id"] == "T1"
        assert "task_id" not in lines[1]

    def test_bind_context(self):
        bind_context(step_index=4)
        assert structlog.contextvars.get_contextvars()["step_index"] == 4

    def test_module_logger_created_before_configure(self, capsys):
        """Loggers fetched at import time pick up configuration made later."""
        logger = get_logger("vigil.orchestration.orchestrator")
        configure_logging("INFO", json_format=True)
        logger.info("task_started", task_id="T1")

        record = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
        assert record["event"] == "task_started"
        assert record["logger"] == "vigil.orchestration.orchestrator"

    def test_error_level_still_emits_errors(self, capsys):
        configure_logging("ERROR", json_format=True)
        get_logger("vigil.recovery").error("recovery_failed", checkpoint_id="c1")
        record = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
        assert record["log.level"] == "error"
