from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
import logging
from logging.handlers import RotatingFileHandler
import os
from pathlib import Path
import threading
from typing import Any, Callable

from fluxwatch.utils import render_log_item

ROTATED_SUFFIX = ".old"
ROTATION_FAILED_MESSAGE = "[SYSTEM] Log rotation FAILED (File busy?). Logging continues in the same file."

Dispatcher = Callable[[str], None]


def _utc_stamp(created: float | None = None) -> str:
    moment = datetime.fromtimestamp(created, timezone.utc) if created else datetime.now(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SessionFileFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return f"[{_utc_stamp(record.created)}] {record.getMessage()}"


class SessionFileHandler(RotatingFileHandler):
    """Append-only session file with a single ``.old`` backup.

    Rolls over before a write once the file on disk is at or over ``max_bytes``.
    A failed rollover falls back to appending to the same file; if the file cannot
    be reopened at all the sink disables itself for the rest of the process.
    """

    def __init__(self, filename: Path | str, max_bytes: int, clear_on_start: bool = False) -> None:
        path = Path(filename)
        path.parent.mkdir(parents=True, exist_ok=True)
        if clear_on_start:
            # RotatingFileHandler always opens in append mode once maxBytes is set.
            path.write_text("", encoding="utf-8")
        super().__init__(path, mode="a", maxBytes=max_bytes, backupCount=1, encoding="utf-8")
        self.namer = self._backup_name
        self.setFormatter(SessionFileFormatter())
        self.sink_disabled = False
        self.rotations = 0

    @property
    def backup_path(self) -> Path:
        return Path(self.baseFilename + ROTATED_SUFFIX)

    def _backup_name(self, default_name: str) -> str:
        return self.baseFilename + ROTATED_SUFFIX

    def shouldRollover(self, record: logging.LogRecord) -> bool:
        if self.maxBytes <= 0:
            return False
        if self.stream is None:
            self.stream = self._open()
        try:
            size = os.path.getsize(self.baseFilename)
        except OSError:
            return False
        return size >= self.maxBytes

    def doRollover(self) -> None:
        try:
            super().doRollover()
            if self.stream is None:
                self.stream = self._open()
            self._write_system_line(
                "[SYSTEM] Log file reached maximum size and was rotated. "
                f"Previous logs saved to {Path(self.baseFilename).name}{ROTATED_SUFFIX}"
            )
            self.rotations += 1
        except OSError as exc:
            self._recover_from_failed_rollover(exc)

    def _recover_from_failed_rollover(self, exc: OSError) -> None:
        logging.getLogger("fluxwatch.session").warning(
            "session_log_rotation_failed", extra={"path": self.baseFilename, "error": str(exc)}
        )
        try:
            if self.stream is None:
                self.stream = self._open()
            self._write_system_line(ROTATION_FAILED_MESSAGE)
        except OSError as recovery_exc:
            self.stream = None
            self.sink_disabled = True
            logging.getLogger("fluxwatch.session").error(
                "session_log_disabled", extra={"path": self.baseFilename, "error": str(recovery_exc)}
            )

    def _write_system_line(self, message: str) -> None:
        self.stream.write(f"[{_utc_stamp()}] {message}{self.terminator}")
        self.stream.flush()

    def emit(self, record: logging.LogRecord) -> None:
        if self.sink_disabled:
            return
        try:
            if self.shouldRollover(record):
                self.doRollover()
            if self.sink_disabled:
                return
            logging.FileHandler.emit(self, record)
        except Exception:  # noqa: BLE001
            self.handleError(record)


class SessionLog:
    """Operator-facing log: bounded history, UI dispatch and the session file.

    Every line is redacted before it is stored anywhere. ``record`` calls are
    serialised so history, dispatch and file all see lines in call order.
    """

    def __init__(
        self,
        path: Path | str | None,
        *,
        capacity: int = 1000,
        max_file_bytes: int = 10 * 1024 * 1024,
        debug: bool = False,
        clear_on_start: bool = False,
        dispatcher: Dispatcher | None = None,
    ) -> None:
        self.debug_enabled = debug
        self._history: deque[str] = deque(maxlen=max(1, capacity))
        self._dispatcher = dispatcher
        self._lock = threading.Lock()
        self._logger = logging.getLogger("fluxwatch.session")

        self._handler: SessionFileHandler | None = None
        if path is not None:
            try:
                self._handler = SessionFileHandler(path, max_file_bytes, clear_on_start=clear_on_start)
            except OSError as exc:
                self._logger.warning("session_log_file_unavailable", extra={"path": str(path), "error": str(exc)})

    @property
    def file_handler(self) -> SessionFileHandler | None:
        return self._handler

    def record(self, prefix: str, *items: Any) -> str:
        return self._dispatch(self._format(prefix, items, indent=None))

    def record_debug(self, prefix: str, *items: Any) -> str | None:
        if not self.debug_enabled:
            return None
        return self._dispatch(self._format(prefix, items, indent=2))

    def history(self) -> list[str]:
        with self._lock:
            return list(self._history)

    def close(self) -> None:
        with self._lock:
            if self._handler is not None:
                self._handler.close()
                self._handler = None

    def _format(self, prefix: str, items: tuple[Any, ...], indent: int | None) -> str:
        timestamp = datetime.now().strftime("[%d.%m.%Y %H:%M]")
        body = " ".join(render_log_item(item, indent=indent) for item in items)
        return f"{timestamp}[{prefix}] {body}"

    def _dispatch(self, line: str) -> str:
        with self._lock:
            self._history.append(line)

            if self._dispatcher is not None:
                try:
                    self._dispatcher(line)
                except Exception as exc:  # noqa: BLE001
                    self._logger.warning("session_log_dispatch_failed", extra={"error": str(exc)})

            if self._handler is not None:
                self._handler.handle(
                    logging.LogRecord(
                        name="fluxwatch.session",
                        level=logging.INFO,
                        pathname=__file__,
                        lineno=0,
                        msg=line,
                        args=None,
                        exc_info=None,
                    )
                )
        return line
