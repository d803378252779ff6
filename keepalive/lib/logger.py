"""
Logging for the launcher.

Worker output arrives on the keepalive.child.stdout / keepalive.child.stderr
loggers and goes through the same handlers as the launcher's own records.
The in-memory buffer behind GET /logs tags each entry with its source
(launcher or worker) and, for worker lines, the stream and pid they came from.
"""

import logging
import sys
from collections import deque
from datetime import datetime, timezone
from typing import Any, Optional

from keepalive.config import get_settings

CHILD_LOGGER = "keepalive.child"

SOURCE_LAUNCHER = "launcher"
SOURCE_WORKER = "worker"


class LogBuffer:
    """Ring buffer of recent launcher and worker log entries."""

    def __init__(self, maxlen: int = 1000):
        self._buffer: deque[dict[str, Any]] = deque(maxlen=maxlen)

    def append(self, entry: dict[str, Any]) -> None:
        self._buffer.append(entry)

    def get_recent(self, limit: int = 100, source: Optional[str] = None) -> list[dict[str, Any]]:
        """Most recent entries, oldest first, optionally from one source only."""
        entries = list(self._buffer)
        if source is not None:
            entries = [e for e in entries if e.get("source") == source]
        return entries[-limit:] if limit < len(entries) else entries

    def clear(self) -> None:
        self._buffer.clear()

    def __len__(self) -> int:
        return len(self._buffer)


def _child_stream(name: str) -> Optional[str]:
    """'stdout' for keepalive.child.stdout, None for launcher loggers."""
    prefix = f"{CHILD_LOGGER}."
    if name.startswith(prefix):
        return name[len(prefix):]
    return None


class BufferedHandler(logging.Handler):
    """Logging handler that stores tagged entries in a LogBuffer."""

    def __init__(self, buffer: LogBuffer, level: int = logging.NOTSET):
        super().__init__(level)
        self.buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            stream = _child_stream(record.name)
            self.buffer.append({
                "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
                "level": record.levelname,
                "source": SOURCE_WORKER if stream else SOURCE_LAUNCHER,
                "stream": stream,
                "pid": getattr(record, "child_pid", None),
                "logger": record.name,
                "message": self.format(record),
            })
        except Exception:
            self.handleError(record)


# Global log buffer
_log_buffer = LogBuffer()


def get_log_buffer() -> LogBuffer:
    return _log_buffer


def setup_logging(
    level: Optional[str] = None,
    format_string: Optional[str] = None,
) -> None:
    """Route launcher, worker and uvicorn records to stdout and the log buffer."""
    if level is None or format_string is None:
        settings = get_settings()
        level = level or settings.log_level
        format_string = format_string or settings.log_format

    log_level = getattr(logging, level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(format_string))
    root_logger.addHandler(console_handler)

    # Buffer keeps the bare message; level, source and time are separate fields
    buffer_handler = BufferedHandler(_log_buffer, log_level)
    buffer_handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(buffer_handler)

    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
