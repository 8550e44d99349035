"""Append-only JSON-lines event log with daily file rotation."""

from __future__ import annotations

import json
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, TextIO, Union

PathLike = Union[str, "os.PathLike[str]"]


class EventLogError(Exception):
    """Raised when the event log cannot be written or read."""


def _log_name(date: str) -> str:
    return f"events-{date}.jsonl"


def _serialize(msg: Any) -> str:
    to_json = getattr(msg, "to_json", None)
    try:
        data = to_json() if callable(to_json) else json.dumps(msg)
    except (TypeError, ValueError) as exc:
        raise EventLogError(f"failed to serialize message: {exc}") from exc
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    return data


class EventLogWriter:
    """Writes one JSON record per line to ``events-YYYY-MM-DD.jsonl``."""

    def __init__(self, log_dir: PathLike, rotation_hours: int = 24) -> None:
        self.log_dir = Path(log_dir)
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise EventLogError(f"failed to create log directory: {exc}") from exc
        self.rotation_hours = rotation_hours if rotation_hours > 0 else 24
        self._lock = threading.RLock()
        self._file: Optional[TextIO] = None
        self._date = ""
        self._rotate_if_needed()

    def _rotate_if_needed(self) -> None:
        today = datetime.now().strftime("%Y-%m-%d")
        if self._file is None or self._date != today:
            self.rotate(today)

    def rotate(self, new_date: str) -> None:
        """Close the current file and continue in the file for ``new_date``."""
        with self._lock:
            if self._file is not None:
                try:
                    self._file.close()
                except OSError as exc:
                    raise EventLogError(f"failed to close current log file: {exc}") from exc
                self._file = None
            path = self.log_dir / _log_name(new_date)
            try:
                self._file = open(path, "a", encoding="utf-8")
            except OSError as exc:
                raise EventLogError(f"failed to open log file {path}: {exc}") from exc
            self._date = new_date

    def write_message(self, msg: Any) -> None:
        """Append ``msg`` (a mapping or an object with ``to_json``) and sync it."""
        line = _serialize(msg)
        with self._lock:
            self._rotate_if_needed()
            assert self._file is not None
            try:
                self._file.write(line + "\n")
                self._file.flush()
                os.fsync(self._file.fileno())
            except OSError as exc:
                raise EventLogError(f"failed to write message: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                try:
                    self._file.close()
                finally:
                    self._file = None

    def current_log_file(self) -> Optional[Path]:
        """Path of the open log file, or None once closed."""
        with self._lock:
            if self._file is None:
                return None
            return self.log_dir / _log_name(self._date)

    def __enter__(self) -> "EventLogWriter":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def read_messages(log_file_path: PathLike) -> list[dict[str, Any]]:
    """Parse every non-empty line of a log file as a JSON record."""
    try:
        text = Path(log_file_path).read_text(encoding="utf-8")
    except OSError as exc:
        raise EventLogError(f"failed to read log file: {exc}") from exc
    records = []
    for line in text.split("\n"):
        if not line:
            continue
        try:
            records.append(json.loads(line))
        except ValueError as exc:
            raise EventLogError(f"failed to parse message: {exc}") from exc
    return records


def list_log_files(log_dir: PathLike) -> list[Path]:
    """All ``events-*.jsonl`` files in ``log_dir``, sorted by name."""
    return sorted(Path(log_dir).glob("events-*.jsonl"))