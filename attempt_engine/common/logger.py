"""
Application Logger

Logging setup for the attempt engine. Every module logs through a child of
the package logger; the attempt controller wraps its logger in a
``LoggerAdapter`` so each line carries the session key, assessment id and
kind of the attempt it belongs to. Both the text and the JSON formatter
render that context.
"""

import os
import sys
import json
import logging
import datetime
from typing import Any, Dict, Optional, Union

DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-40s | %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

APP_LOGGER_NAME = "attempt_engine"

__all__ = [
    'APP_LOGGER_NAME',
    'configure_logger',
    'LoggerAdapter',
    'ContextFormatter',
    'JsonFormatter',
    'app_logger',
]


def _record_context(record: logging.LogRecord) -> Dict[str, Any]:
    data = getattr(record, 'data', None)
    return data if isinstance(data, dict) else {}


class ContextFormatter(logging.Formatter):
    """Text formatter appending attempt context as ``key=value`` pairs"""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _record_context(record)
        if context:
            line += " [" + " ".join(f"{k}={v}" for k, v in context.items()) + "]"
        return line


class JsonFormatter(logging.Formatter):
    """
    Formatter that renders each log record as a single JSON object.

    Attempt context is merged into the top level of the object, so log
    aggregation can filter by ``session_key`` or ``assessment_id``.
    """

    def __init__(self, *, indent: Optional[int] = None):
        super().__init__()
        self.indent = indent

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.datetime.fromtimestamp(record.created).isoformat(),
            "name": record.name,
            "level": record.levelname,
            "message": record.getMessage(),
            "line": record.lineno,
        }
        entry.update(_record_context(record))

        if record.exc_info:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(entry, indent=self.indent, default=str, ensure_ascii=False)


def configure_logger(
    name: str = APP_LOGGER_NAME,
    level: Union[str, int] = logging.INFO,
    format_string: str = DEFAULT_LOG_FORMAT,
    date_format: str = DEFAULT_DATE_FORMAT,
    use_json: bool = False,
    log_file: Optional[str] = None,
    console_output: bool = True
) -> logging.Logger:
    """
    (Re)configure a logger, replacing any handlers it already has.

    Args:
        name: Logger name
        level: Log level name or number
        format_string: Text log format
        date_format: Text date format
        use_json: Emit one JSON object per line instead of text
        log_file: Also write to this file when given
        console_output: Write to stdout

    Returns:
        The configured logger
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.handlers = []

    if use_json:
        formatter = JsonFormatter()
    else:
        formatter = ContextFormatter(format_string, date_format)

    handlers = []
    if console_output:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file:
        try:
            directory = os.path.dirname(log_file)
            if directory:
                os.makedirs(directory, exist_ok=True)
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as e:
            logging.getLogger("fallback").warning(f"Could not open log file {log_file}: {e}")

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


class LoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that attaches attempt context to every record.

    The context lands in ``record.data``, next to any ``data`` passed in
    ``extra`` by the caller.
    """

    def __init__(self, logger: logging.Logger, context: Dict[str, Any] = None):
        super().__init__(logger, context or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        kwargs = dict(kwargs)
        extra = dict(kwargs.get('extra') or {})
        data = dict(extra.get('data') or {})
        data.update(self.extra)
        extra['data'] = data
        kwargs['extra'] = extra
        return msg, kwargs

    def with_context(self, **context) -> 'LoggerAdapter':
        """New adapter with ``context`` added to this one's"""
        return LoggerAdapter(self.logger, {**self.extra, **context})


def get_app_logger() -> logging.Logger:
    """
    Get the package logger, configuring it from ``ATTEMPT_LOG_*`` on first use.

    Returns:
        The package logger
    """
    logger = logging.getLogger(APP_LOGGER_NAME)
    if logger.handlers:
        return logger

    return configure_logger(
        name=APP_LOGGER_NAME,
        level=os.environ.get("ATTEMPT_LOG_LEVEL", "INFO"),
        use_json=os.environ.get("ATTEMPT_LOG_JSON", "false").lower() == "true",
        log_file=os.environ.get("ATTEMPT_LOG_FILE"),
    )


app_logger = get_app_logger()
