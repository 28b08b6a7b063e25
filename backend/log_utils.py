"""
Logging utilities for safe log output.

Media titles, user names and rule names come from external services and
operators; a title containing a newline could forge log lines (CWE-117).
The record factory installed here escapes CR/LF in log arguments.

Call configure_logging() once at startup.
"""

import logging

_ORIGINAL_FACTORY = logging.getLogRecordFactory()

VALID_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _sanitize_value(value):
    """Strip newlines and carriage returns from a value for safe logging."""
    if isinstance(value, str):
        return value.replace('\r\n', '\\r\\n').replace('\r', '\\r').replace('\n', '\\n')
    return value


def _safe_record_factory(*args, **kwargs):
    """LogRecord factory that sanitizes message and args."""
    record = _ORIGINAL_FACTORY(*args, **kwargs)
    if isinstance(record.msg, str):
        record.msg = _sanitize_value(record.msg)
    if record.args:
        if isinstance(record.args, dict):
            record.args = {k: _sanitize_value(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(_sanitize_value(a) for a in record.args)
    return record


def install_safe_logging():
    """Install the sanitizing LogRecord factory globally."""
    logging.setLogRecordFactory(_safe_record_factory)


def configure_logging(level: str = "INFO") -> str:
    """
    Configure root logging and install the safe record factory.

    Unknown levels fall back to INFO. Returns the level actually applied.
    """
    level_upper = (level or "INFO").upper()
    if level_upper not in VALID_LEVELS:
        logging.getLogger(__name__).warning(f"Invalid log level '{level}', using INFO")
        level_upper = "INFO"

    install_safe_logging()
    logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger().setLevel(getattr(logging, level_upper))
    return level_upper
