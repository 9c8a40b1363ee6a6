"""Logging setup for activity-ledger.

The library itself only logs through module-level loggers. Hosts call
``setup_logging`` once to get structured (optionally JSON) records and a
coloured console.
"""

import json
import logging
import sys
from datetime import UTC, datetime, timedelta

from termcolor import cprint

# Extra fields that modules attach to records via ``extra=``
STRUCTURED_FIELDS = ("watermark", "appended", "session_id", "fact_ts")


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs structured logs with all relevant context.
    Can output in JSON format for log analysis.
    """

    def __init__(self, use_json: bool = False, host_info: dict | None = None) -> None:
        super().__init__()
        self.use_json = use_json
        self.host_info = host_info or {}

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if self.host_info:
            log_data["host"] = self.host_info

        for key in STRUCTURED_FIELDS:
            if hasattr(record, key):
                val = getattr(record, key)
                if isinstance(val, datetime):
                    log_data[key] = val.isoformat()
                elif isinstance(val, timedelta):
                    log_data[key] = f"{val.total_seconds():.1f}s"
                elif val is None:
                    log_data[key] = None
                else:
                    log_data[key] = str(val)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if self.use_json:
            return json.dumps(log_data)
        return self._format_human(log_data)

    def _format_human(self, log_data: dict) -> str:
        now = datetime.now().strftime("%H:%M:%S")
        prefix = f"{now} {log_data['level']:<7} {log_data['module']}"

        msg = log_data["message"]
        context = [
            f"{key}={log_data[key]}"
            for key in STRUCTURED_FIELDS
            if key in log_data and log_data[key] is not None
        ]
        if context:
            msg = f"{msg} ({', '.join(context)})"
        if "exception" in log_data:
            msg = f"{msg}\n{log_data['exception']}"

        return f"{prefix}: {msg}"


class ColoredConsoleHandler(logging.StreamHandler):
    """
    Console handler that adds colors based on log level.
    Warnings are bold yellow, errors/criticals are bold and red.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            attrs = []
            color = None

            if record.levelno > logging.ERROR:
                attrs = ["bold", "blink"]
                color = "red"
            elif record.levelno > logging.WARNING:
                attrs = ["bold"]
                color = "red"
            elif record.levelno > logging.INFO:
                attrs = ["bold"]
                color = "yellow"
            elif record.levelno == logging.INFO:
                color = "cyan"

            if color or attrs:
                cprint(msg, color=color, attrs=attrs, file=self.stream)
            else:
                self.stream.write(msg + self.terminator)
            self.flush()
        except Exception:
            self.handleError(record)


def setup_logging(
    json_format: bool = False,
    log_level: int = logging.DEBUG,
    console_log_level: int = logging.WARNING,
    log_file: str | None = None,
    host_info: dict | None = None,
) -> None:
    """
    Set up the logging system.

    Args:
        json_format: If True, write the log file as JSON lines
        log_level: Root logging level (default: DEBUG)
        console_log_level: Console logging level (default: WARNING), 0 disables the console
        log_file: Optional file path to write logs to
        host_info: Optional dict identifying the host application, added to every record
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    root_logger.handlers.clear()

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(StructuredFormatter(use_json=json_format, host_info=host_info))
        root_logger.addHandler(file_handler)
    if console_log_level:
        console_handler = ColoredConsoleHandler(sys.stderr)
        console_handler.setLevel(console_log_level)
        console_handler.setFormatter(StructuredFormatter(host_info=host_info))
        root_logger.addHandler(console_handler)
