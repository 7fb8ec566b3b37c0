from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TextIO

import structlog
from structlog.typing import EventDict, Processor

from readtube.app.config import AppSettings

ROOT_LOGGER_NAME = "readtube"
TELEMETRY_LOGGER_NAME = "readtube.telemetry"
LOG_FILE_NAME = "readtube.log"
TELEMETRY_LOG_FILE_NAME = "readtube-telemetry.log"
# Third-party loggers that are chatty at INFO.
_NOISY_LOGGERS: tuple[str, ...] = ("yt_dlp", "urllib3", "multipart", "youtube_transcript_api")


def configure_application_logging(settings: AppSettings) -> Path:
    """Console at the configured level, JSON files for application and telemetry logs."""
    log_dir = settings.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME
    telemetry_log_file = log_dir / TELEMETRY_LOG_FILE_NAME

    _configure_structlog()
    _install_handlers(
        ROOT_LOGGER_NAME,
        logging.DEBUG,
        _console_handler(settings.log_level, sys.stdout),
        _json_file_handler(log_file, logging.DEBUG),
    )
    _install_handlers(
        TELEMETRY_LOGGER_NAME,
        logging.INFO,
        _json_file_handler(telemetry_log_file, logging.INFO),
    )
    _quiet_third_party_loggers()

    logging.getLogger(ROOT_LOGGER_NAME).info(
        "logging configured console_level=%s path=%s telemetry_path=%s",
        settings.log_level,
        log_file,
        telemetry_log_file,
    )
    return log_file


def configure_cli_logging(log_level: str) -> None:
    """Console-only logging on stderr, so script output on stdout stays clean."""
    level_name = log_level.strip().upper()
    _configure_structlog()
    _install_handlers(ROOT_LOGGER_NAME, level_name, _console_handler(level_name, sys.stderr))
    _quiet_third_party_loggers()


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _install_handlers(logger_name: str, level: int | str, *handlers: logging.Handler) -> None:
    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        logger.addHandler(handler)


def _console_handler(level_name: str, stream: TextIO) -> logging.Handler:
    handler = logging.StreamHandler(stream)
    handler.setLevel(level_name)
    isatty = getattr(stream, "isatty", None)
    colors = bool(callable(isatty) and isatty())
    handler.setFormatter(_formatter(structlog.dev.ConsoleRenderer(colors=colors)))
    return handler


def _json_file_handler(path: Path, level: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(
        _formatter(
            _add_record_metadata,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        )
    )
    return handler


def _formatter(*processors: Processor) -> structlog.stdlib.ProcessorFormatter:
    # remove_processors_meta must run after processors that read `_record`.
    *leading, renderer = processors
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        ],
        processors=[
            *leading,
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )


def _quiet_third_party_loggers() -> None:
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _add_record_metadata(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    record = event_dict.get("_record")
    if isinstance(record, logging.LogRecord):
        event_dict["module"] = record.module
        event_dict["lineno"] = record.lineno
        event_dict["thread_name"] = record.threadName
    return event_dict
