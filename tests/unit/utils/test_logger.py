# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd
import io
import json
import logging
import os

import pytest

from oqbridge.utils.logger import (
    BasicLogger,
    CompositeLogger,
    ConsoleLoggerHandler,
    LoggerLevel,
    configure_loggers,
    find_logger_settings,
    get_default_logger,
)


@pytest.fixture
def target(request):
    logger = logging.getLogger(f"tests.logger.{request.node.name}")
    logger.setLevel(logging.DEBUG)
    return logger


class TestCompositeLogger:
    def test_records_reach_every_logger(self, target, caplog):
        other = logging.getLogger(f"{target.name}.other")
        composite = CompositeLogger([target, other.name])
        with caplog.at_level(logging.DEBUG):
            composite.warning("gate %s renamed", "for")
        assert [record.name for record in caplog.records] == [target.name, other.name]
        assert {record.getMessage() for record in caplog.records} == {"gate for renamed"}

    def test_levels_are_applied_per_logger(self, target, caplog):
        quiet = logging.getLogger(f"{target.name}.quiet")
        quiet.setLevel(logging.ERROR)
        composite = CompositeLogger([target, quiet])
        with caplog.at_level(logging.DEBUG):
            composite.debug("unrolled loop")
        assert [record.name for record in caplog.records] == [target.name]
        assert composite.isEnabledFor(logging.DEBUG)
        assert not CompositeLogger([quiet]).isEnabledFor(logging.DEBUG)

    def test_records_point_at_the_caller(self, target, caplog):
        composite = CompositeLogger([target])
        with caplog.at_level(logging.DEBUG):
            composite.info("first")
            composite.log(LoggerLevel.INFO, "second")
        assert [record.funcName for record in caplog.records] == [
            "test_records_point_at_the_caller"
        ] * 2

    def test_exceptions_keep_their_traceback(self, target, caplog):
        composite = CompositeLogger([target])
        try:
            raise ValueError("bad layout")
        except ValueError:
            composite.exception("export failed")
        assert caplog.records[0].exc_info[0] is ValueError


class TestConfiguration:
    def test_inactive_loggers_are_skipped(self, request):
        prefix = f"tests.logger.{request.node.name}"
        settings = {
            "version": 1,
            "disable_existing_loggers": False,
            "loggers": {
                f"{prefix}.on": {"level": "DEBUG", "active": True},
                f"{prefix}.off": {"level": "DEBUG", "active": False},
            },
        }
        composite = configure_loggers(settings)
        assert [logger.name for logger in composite.loggers] == [f"{prefix}.on"]
        assert composite.loggers[0].level == logging.DEBUG

    def test_settings_file_lookup(self, tmp_path, monkeypatch):
        monkeypatch.delenv("OQBRIDGE_LOGGER_SETTINGS", raising=False)
        monkeypatch.chdir(tmp_path)
        packaged = find_logger_settings()
        assert os.path.dirname(packaged).endswith(os.path.join("oqbridge", "utils"))

        local = tmp_path / "logger_settings.json"
        local.write_text(json.dumps({"version": 1}))
        assert find_logger_settings() == "logger_settings.json"

        custom = tmp_path / "custom.json"
        custom.write_text(json.dumps({"version": 1}))
        monkeypatch.setenv("OQBRIDGE_LOGGER_SETTINGS", str(custom))
        assert find_logger_settings() == str(custom)
        assert find_logger_settings(str(local)) == str(local)

    def test_packaged_settings(self):
        with open(find_logger_settings("missing.json"), "r", encoding="utf-8") as f:
            settings = json.load(f)
        assert "oqbridge" in settings["loggers"]

    def test_default_logger_is_shared(self):
        log = get_default_logger()
        assert log is get_default_logger()
        assert isinstance(log, CompositeLogger)
        assert [logger.name for logger in log.loggers] == ["oqbridge"]


class TestHandlers:
    def test_console_format(self):
        stream = io.StringIO()
        logger = BasicLogger("tests.logger.console")
        logger.addHandler(ConsoleLoggerHandler(stream))
        logger.warning("Renamed 'for' to 'for_1'.")
        line = stream.getvalue()
        assert line.startswith("[WARNING] ")
        assert "(test_logger.test_console_format:" in line
        assert line.endswith("Renamed 'for' to 'for_1'.\n")

    def test_basic_logger_defaults_to_info(self):
        assert BasicLogger("tests.logger.level").level == logging.INFO
