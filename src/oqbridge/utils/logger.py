# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd
import json
import logging
import os
import sys
from enum import Enum
from logging.config import dictConfig
from typing import IO, Iterable, Optional, Union

# e.g. "[WARNING] 2025-03-01 10:02:11,003 - oqbridge - (builder.visit_Include:12) - ..."
default_logger_format = (
    "[%(levelname)s] %(asctime)s - %(name)s - "
    "(%(module)s.%(funcName)s:%(lineno)d) - %(message)s"
)

SETTINGS_FILE_NAME = "logger_settings.json"
SETTINGS_ENV_VAR = "OQBRIDGE_LOGGER_SETTINGS"


class LoggerLevel(Enum):
    CRITICAL = logging.CRITICAL
    ERROR = logging.ERROR
    WARNING = logging.WARNING
    INFO = logging.INFO
    DEBUG = logging.DEBUG
    NOTSET = logging.NOTSET

    def __repr__(self):
        return self.name


class BasicLogger(logging.Logger):
    """
    Logger class installed through ``logging.setLoggerClass``, so every logger obtained
    with ``logging.getLogger("oqbridge...")`` is one of these. Starts at ``INFO``.
    """

    def __init__(self, name: str):
        super().__init__(name)
        self.setLevel(logging.INFO)


class ConsoleLoggerHandler(logging.StreamHandler):
    """
    Console handler using :data:`default_logger_format`. Writes to stderr so log records
    never end up inside programs exported to stdout.
    """

    def __init__(self, stream: IO = sys.stderr):
        super().__init__(stream)
        self.setFormatter(logging.Formatter(default_logger_format))

    def __repr__(self):
        return "Console logger handler"


class CompositeLogger(BasicLogger):
    """
    Fans every record out to a list of configured loggers, so modules hold a single
    ``log`` object whatever the logging setup. Each target applies its own level and
    handlers.

    :param loggers_or_names: Loggers, or names passed to ``logging.getLogger``.
    """

    def __init__(self, loggers_or_names: Iterable[Union[str, logging.Logger]] = ()):
        super().__init__("oqbridge.composite")
        self.loggers: list[logging.Logger] = []
        self.add_loggers(loggers_or_names)

    def add_loggers(self, loggers_or_names: Iterable[Union[str, logging.Logger]]):
        for value in loggers_or_names:
            if isinstance(value, str):
                value = logging.getLogger(value)
            self.loggers.append(value)

    def isEnabledFor(self, level: int) -> bool:
        return any(logger.isEnabledFor(level) for logger in self.loggers)

    def log(self, level: Union[int, LoggerLevel], msg, *args, **kwargs):
        if isinstance(level, LoggerLevel):
            level = level.value
        kwargs["stacklevel"] = kwargs.get("stacklevel", 1) + 1
        super().log(level, msg, *args, **kwargs)

    def _log(self, level, msg, args, stacklevel=1, **kwargs):
        # One extra frame for this method, so records point at the caller.
        for logger in self.loggers:
            if logger.isEnabledFor(level):
                logger._log(level, msg, args, stacklevel=stacklevel + 1, **kwargs)


logging.setLoggerClass(BasicLogger)


def configure_loggers(settings: dict) -> CompositeLogger:
    """
    Applies a ``logging.config`` dictionary and returns a :class:`CompositeLogger` over
    the loggers it declares. A logger entry may carry ``"active": false`` to leave it
    out without deleting it from the file.
    """
    loggers = settings.setdefault("loggers", {})
    for name in [name for name, value in loggers.items() if not value.get("active", True)]:
        del loggers[name]
    for value in loggers.values():
        value.pop("active", None)

    dictConfig(settings)
    return CompositeLogger(loggers.keys())


def find_logger_settings(config_file: Optional[str] = None) -> str:
    """
    Resolves the logger settings file: ``config_file`` or the ``OQBRIDGE_LOGGER_SETTINGS``
    environment variable if either points at a file, then ``logger_settings.json`` in the
    working directory, and finally the default settings shipped with the package.
    """
    candidates = [config_file, os.environ.get(SETTINGS_ENV_VAR), SETTINGS_FILE_NAME]
    for candidate in candidates:
        if candidate and os.path.isfile(candidate):
            return candidate
    return os.path.join(os.path.dirname(__file__), SETTINGS_FILE_NAME)


def load_logger_settings(config_file: Optional[str] = None) -> CompositeLogger:
    with open(find_logger_settings(config_file), "r", encoding="utf-8") as f:
        return configure_loggers(json.load(f))


_default_logging_instance: Optional[CompositeLogger] = None


def get_default_logger() -> CompositeLogger:
    """Returns the shared logger, configuring it on first use."""
    global _default_logging_instance
    if _default_logging_instance is None:
        _default_logging_instance = load_logger_settings()
    return _default_logging_instance
