"""Agent-tagged, timestamped line logging."""

from __future__ import annotations

import re
import sys
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, TextIO

_VALUE_VERB = re.compile(r"%[+#]?v")


class Level(str, Enum):
    """Severity of a log line."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"

    def __str__(self) -> str:
        return self.value


def _render(fmt: str, args: tuple[Any, ...]) -> str:
    if not args:
        return fmt
    try:
        return _VALUE_VERB.sub("%s", fmt) % args
    except (TypeError, ValueError):
        return " ".join([fmt, *(str(arg) for arg in args)])


class Logger:
    """Writes lines of the form ``[timestamp] [agent] LEVEL: message``."""

    _write_lock = threading.Lock()

    def __init__(self, agent_id: str, stream: Optional[TextIO] = None) -> None:
        self.agent_id = agent_id
        self._stream = stream

    @property
    def stream(self) -> TextIO:
        """The stream lines are written to (standard error by default)."""
        return self._stream if self._stream is not None else sys.stderr

    def _log(self, level: Level, fmt: str, args: tuple[Any, ...]) -> None:
        now = datetime.now(timezone.utc)
        timestamp = now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"
        line = f"[{timestamp}] [{self.agent_id}] {level.value}: {_render(fmt, args)}\n"
        with self._write_lock:
            self.stream.write(line)

    def debug(self, fmt: str, *args: Any) -> None:
        self._log(Level.DEBUG, fmt, args)

    def info(self, fmt: str, *args: Any) -> None:
        self._log(Level.INFO, fmt, args)

    def warn(self, fmt: str, *args: Any) -> None:
        self._log(Level.WARN, fmt, args)

    def error(self, fmt: str, *args: Any) -> None:
        self._log(Level.ERROR, fmt, args)

    def with_agent_id(self, agent_id: str) -> "Logger":
        """Return a logger for another agent sharing this logger's stream."""
        return Logger(agent_id, self._stream)