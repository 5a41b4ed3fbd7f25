"""Structured JSON-lines output for events and diagnostics."""
from __future__ import annotations

import json
import logging
import sys
import threading
from typing import Any, Dict, Optional, TextIO

from .events import FileEvent

logger = logging.getLogger(__name__)


class Reporter:
    """Writes one JSON object per line.

    Filesystem events go to ``stdout``; errors, warnings and info records go
    to ``stderr``. Each stream has its own lock so records never interleave.
    """

    def __init__(
        self,
        stdout: Optional[TextIO] = None,
        stderr: Optional[TextIO] = None,
        *,
        quiet: bool = False,
    ):
        self._stdout = stdout
        self._stderr = stderr
        self._stdout_lock = threading.Lock()
        self._stderr_lock = threading.Lock()
        self.quiet = quiet

    def event(self, event: FileEvent) -> None:
        if self.quiet:
            return
        self._write(self._out(), self._stdout_lock, {"op": event.operation.value, "path": event.path})

    def error(self, error: Any) -> None:
        if isinstance(error, BaseException):
            error = str(error)
        logger.debug("error: %s", error)
        self._write(self._err(), self._stderr_lock, {"error": error})

    def action_error(self, action_name: str, error: BaseException) -> None:
        self.error({"message": str(error), "action": action_name})

    def path_error(self, op: str, path: str, error: BaseException) -> None:
        message = getattr(error, "strerror", None) or str(error)
        self.error({"op": op, "path": path, "message": message})

    def warning(self, message: str) -> None:
        logger.debug("warning: %s", message)
        self._write(self._err(), self._stderr_lock, {"warning": message})

    def info(self, message: str) -> None:
        logger.debug("info: %s", message)
        self._write(self._err(), self._stderr_lock, {"info": message})

    # Resolved lazily so pytest's capture and redirected streams are honoured.
    def _out(self) -> TextIO:
        return self._stdout if self._stdout is not None else sys.stdout

    def _err(self) -> TextIO:
        return self._stderr if self._stderr is not None else sys.stderr

    @staticmethod
    def _write(stream: TextIO, lock: threading.Lock, record: Dict[str, Any]) -> None:
        line = json.dumps(record, default=str)
        with lock:
            stream.write(line + "\n")
            stream.flush()
