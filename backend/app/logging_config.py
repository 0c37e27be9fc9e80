from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TextIO

import structlog
from structlog.processors import CallsiteParameter
from structlog.typing import Processor

from backend.app.config import AppSettings

LOG_FILE_NAME = "video-digest.log"
TELEMETRY_LOG_FILE_NAME = "video-digest-telemetry.log"
ROOT_LOGGER_NAME = "video_digest"
TELEMETRY_LOGGER_NAME = "video_digest.telemetry"
# Provider SDKs log every HTTP round-trip at INFO.
_NOISY_LIBRARY_LOGGERS: tuple[str, ...] = ("anthropic", "httpx", "httpcore", "urllib3")

_PRE_CHAIN: tuple[Processor, ...] = (
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
)


def configure_application_logging(settings: AppSettings, *, console: TextIO | None = None) -> Path:
    """
    Send `video_digest.*` records to the console and to JSON lines under `log_dir`.

    Telemetry events go to their own file only. Generation and translation run
    on named worker threads, so file lines carry `thread_name` to tell a
    request thread from the worker doing the provider call.
    """
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = settings.log_dir / LOG_FILE_NAME
    telemetry_log_file = settings.log_dir / TELEMETRY_LOG_FILE_NAME
    console_stream = console if console is not None else sys.stdout
    console_level = logging.getLevelNamesMapping().get(settings.log_level.strip().upper(), logging.INFO)

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

    console_handler = logging.StreamHandler(stream=console_stream)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(
        _formatter(structlog.dev.ConsoleRenderer(colors=_is_terminal(console_stream)))
    )
    _attach(
        ROOT_LOGGER_NAME,
        logging.DEBUG,
        console_handler,
        _json_file_handler(log_file, logging.DEBUG),
    )
    _attach(TELEMETRY_LOGGER_NAME, logging.INFO, _json_file_handler(telemetry_log_file, logging.INFO))

    for name in _NOISY_LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(max(console_level, logging.WARNING))

    logging.getLogger(ROOT_LOGGER_NAME).info(
        "logging configured console_level=%s path=%s telemetry_path=%s",
        logging.getLevelName(console_level),
        log_file,
        telemetry_log_file,
    )
    return log_file


def _attach(logger_name: str, level: int, *handlers: logging.Handler) -> None:
    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        logger.addHandler(handler)


def _json_file_handler(path: Path, level: int) -> logging.FileHandler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(
        _formatter(
            structlog.processors.CallsiteParameterAdder(
                {
                    CallsiteParameter.MODULE,
                    CallsiteParameter.LINENO,
                    CallsiteParameter.THREAD_NAME,
                }
            ),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        )
    )
    return handler


def _formatter(*processors: Processor) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=list(_PRE_CHAIN),
        processors=[
            *processors[:-1],
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            processors[-1],
        ],
    )


def _is_terminal(stream: TextIO) -> bool:
    isatty = getattr(stream, "isatty", None)
    return bool(callable(isatty) and isatty())
