from __future__ import annotations
import json
import sys
import time
import traceback
from typing import Any, Dict, Optional, TextIO


LEVELS = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40}


class StructuredLogger:
    """Structured JSON logger used by every worker module."""

    def __init__(
        self,
        name: str = "mailer",
        level: str = "INFO",
        stream: Optional[TextIO] = None,
        bound: Optional[Dict[str, Any]] = None,
    ):
        self.name = name
        self.level = level.upper()
        self.stream = stream
        self._bound: Dict[str, Any] = dict(bound or {})

    def set_level(self, level: str) -> None:
        if level.upper() not in LEVELS:
            raise ValueError(f"Invalid log level: {level}")
        self.level = level.upper()

    # ----------------------------------------------------------------------
    # Core logging method
    # ----------------------------------------------------------------------
    def _log(self, level: str, msg: str, extra: Optional[Dict[str, Any]] = None):
        """Internal helper: format and print a JSON log line."""
        if LEVELS.get(level, 100) < LEVELS.get(self.level, 20):
            return

        try:
            record = {
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
                "level": level,
                "logger": self.name,
                "msg": str(msg),
            }

            fields = dict(self._bound)
            if extra and isinstance(extra, dict):
                fields.update(extra)
            for k, v in fields.items():
                # Avoid overwriting core keys
                if k not in record:
                    record[k] = v

            line = json.dumps(record, ensure_ascii=False, default=str)
            print(line, file=self.stream or sys.stdout, flush=True)

        except Exception as e:
            # Never crash the worker due to logging errors
            print(f"[logger-error] failed to log: {e}", file=sys.stderr, flush=True)

    # ----------------------------------------------------------------------
    # Public convenience methods
    # ----------------------------------------------------------------------
    def info(self, msg: str, extra: Optional[Dict[str, Any]] = None):
        self._log("INFO", msg, extra)

    def warning(self, msg: str, extra: Optional[Dict[str, Any]] = None):
        self._log("WARNING", msg, extra)

    def error(self, msg: Any, extra: Optional[Dict[str, Any]] = None):
        # Exception objects carry their own traceback
        if isinstance(msg, BaseException):
            err_str = f"{type(msg).__name__}: {msg}"
            tb = "".join(traceback.format_exception(type(msg), msg, msg.__traceback__))
            extra = dict(extra or {}, traceback=tb)
            self._log("ERROR", err_str, extra)
        else:
            self._log("ERROR", msg, extra)

    def debug(self, msg: str, extra: Optional[Dict[str, Any]] = None):
        self._log("DEBUG", msg, extra)

    # ----------------------------------------------------------------------
    # Context binding
    # ----------------------------------------------------------------------
    def bind(self, **context: Any) -> "StructuredLogger":
        """
        Return a copy of the logger with context permanently attached.
        Example:
            log = get_logger("runner").bind(job_id="abc123", message_id="m-1")
        """
        bound = dict(self._bound)
        bound.update(context)
        return StructuredLogger(name=self.name, level=self.level, stream=self.stream, bound=bound)


# ----------------------------------------------------------------------
# Module-level logger registry (one logger per name)
# ----------------------------------------------------------------------

_loggers: Dict[str, StructuredLogger] = {}


def get_logger(name: str = "mailer", level: Optional[str] = None) -> StructuredLogger:
    """Get or create a logger for the given name. A given level is applied to existing loggers too."""
    if name not in _loggers:
        _loggers[name] = StructuredLogger(name=name, level=level or "INFO")
    elif level:
        _loggers[name].set_level(level)
    return _loggers[name]


def set_global_level(level: str) -> None:
    """Apply one level to every logger created so far."""
    for logger in _loggers.values():
        logger.set_level(level)


__all__ = ["StructuredLogger", "get_logger", "set_global_level"]
