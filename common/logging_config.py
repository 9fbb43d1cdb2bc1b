"""Logging setup shared by the orchestrator and backend adapters."""

import logging
import os
import re
import sys
from typing import Any, Optional

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

_MASK = r'\1***MASKED***'


def _field_pattern(field: str) -> "re.Pattern[str]":
    return re.compile(rf'({field}["\']?\s*[:=]\s*["\']?)([^"\'}}\s,\]]+)', re.IGNORECASE)


class SensitiveDataFilter(logging.Filter):
    """Mask credentials and key material in log records."""

    PATTERNS = [
        (_field_pattern(r'password'), _MASK),
        (_field_pattern(r'api[_-]?key'), _MASK),
        (_field_pattern(r'(?:access_)?token'), _MASK),
        (_field_pattern(r'authorization'), _MASK),
        (_field_pattern(r'secret(?:_access_key)?'), _MASK),
        (_field_pattern(r'encryption[_-]?key'), _MASK),
        (_field_pattern(r'key_material'), _MASK),
        (_field_pattern(r'signature'), _MASK),
        (re.compile(r'(bearer\s+)([^\s,}\'\"]+)', re.IGNORECASE), _MASK),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._mask(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._mask_value(v) for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(self._mask_value(arg) for arg in record.args)

        return True

    def _mask(self, text: str) -> str:
        for pattern, replacement in self.PATTERNS:
            text = pattern.sub(replacement, text)
        return text

    def _mask_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self._mask(value)
        return value


def setup_logging(
    component_name: str,
    log_level: Optional[str] = None,
    correlation_id: Optional[str] = None
) -> logging.Logger:
    """
    Set up logging for a component and its child loggers.

    Args:
        component_name: Top-level logger name (e.g. 'orchestrator', 'backends')
        log_level: DEBUG, INFO, WARNING or ERROR. Defaults to the LOG_LEVEL env var or INFO
        correlation_id: Optional identifier embedded in every line

    Returns:
        Configured logger instance
    """
    if log_level is None:
        log_level = os.getenv('LOG_LEVEL', 'INFO').upper()

    level = getattr(logging, log_level, logging.INFO)

    logger = logging.getLogger(component_name)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    fmt = DEFAULT_FORMAT
    if correlation_id:
        fmt = f'%(asctime)s - %(name)s - %(levelname)s - [{correlation_id}] - %(message)s'
    handler.setFormatter(logging.Formatter(fmt, datefmt=DATE_FORMAT))
    handler.addFilter(SensitiveDataFilter())

    logger.addHandler(handler)
    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return the logger for a module, typically called with __name__."""
    return logging.getLogger(name)
