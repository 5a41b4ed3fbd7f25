"""Configured actions and the per-action debounce-and-run pipeline."""
from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .backends import Backend, ProcessBackend
from .events import FileEvent
from .filters import Filter, action_gate
from .locks import LockRegistry
from .reporting import Reporter

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05


@dataclass
class Action:
    """A rule pairing an event filter with exactly one backend."""

    name: str
    backend: Backend
    filter: Filter = Filter()
    ignore: Optional[Filter] = None
    delay: float = 0.0
    locks: Tuple[str, ...] = ()
    run_on_start: bool = False

    def matches(self, event: FileEvent) -> bool:
        return action_gate(self.filter, self.ignore, event)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, self.backend.kind: self.backend.to_dict()}
        data.update(self.filter.to_dict())
        if self.ignore is not None:
            data["ignore"] = self.ignore.to_dict()
        if self.delay:
            data["delay"] = f"{int(round(self.delay * 1000))}ms"
        if isinstance(self.backend, ProcessBackend) and self.backend.signal is not None:
            data["signal"] = self.backend.signal.name
        if self.locks:
            data["locks"] = list(self.locks)
        if self.run_on_start:
            data["runOnStart"] = True
        return data


@dataclass
class PipelineStats:
    """Counters kept per pipeline for logging and tests."""

    events: int = 0
    triggers: int = 0
    runs: int = 0
    failures: int = 0
    signals: int = 0


class ActionPipeline:
    """Runtime state of one action for the lifetime of a session.

    The intake thread debounces events and turns them into triggers. A
    trigger notifies the backend, then sets a single-slot run request. The
    run thread executes the backend whenever that request is set, so at most
    one run is ever in flight and triggers arriving meanwhile coalesce into
    a single follow-up run.
    """

    def __init__(
        self,
        action: Action,
        *,
        locks: LockRegistry,
        reporter: Reporter,
        cancelled: threading.Event,
    ):
        self.action = action
        self._locks = locks
        self._reporter = reporter
        self._cancelled = cancelled
        self._events: "queue.Queue[FileEvent]" = queue.Queue(maxsize=1)
        self._run_requested = threading.Event()
        self._running = threading.Event()
        self._threads: List[threading.Thread] = []
        self.stats = PipelineStats()

    @property
    def running(self) -> bool:
        """Whether the backend is executing right now."""

        return self._running.is_set()

    def start(self) -> None:
        if self.action.run_on_start:
            self._run_requested.set()
        for target, role in ((self._intake_loop, "intake"), (self._run_loop, "run")):
            thread = threading.Thread(
                target=target,
                name=f"watchfs-{self.action.name}-{role}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def join(self, timeout: Optional[float] = None) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
            thread.join(remaining)
            if thread.is_alive():
                logger.warning("Thread %s did not stop in time", thread.name)

    def submit(self, event: FileEvent) -> None:
        """Hand a matching event to the pipeline without blocking.

        If an event is already waiting, the new one is forwarded to the
        backend as a notification instead of being queued.
        """

        self.stats.events += 1
        try:
            self._events.put_nowait(event)
        except queue.Full:
            self._notify(event)

    def _intake_loop(self) -> None:
        while not self._cancelled.is_set():
            event = self._next_event(_POLL_INTERVAL)
            if event is None:
                continue
            event = self._debounce(event)
            if event is None:
                return
            self._trigger(event)

    def _debounce(self, event: FileEvent) -> Optional[FileEvent]:
        """Wait for a quiet period of ``delay`` seconds; return the last event seen."""

        delay = self.action.delay
        if delay <= 0:
            return event
        deadline = time.monotonic() + delay
        while True:
            if self._cancelled.is_set():
                return None
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return event
            newer = self._next_event(min(remaining, _POLL_INTERVAL))
            if newer is not None:
                event = newer
                deadline = time.monotonic() + delay

    def _next_event(self, timeout: float) -> Optional[FileEvent]:
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def _trigger(self, event: FileEvent) -> None:
        self.stats.triggers += 1
        self._notify(event)
        self._run_requested.set()

    def _notify(self, event: FileEvent) -> None:
        try:
            signalled = self.action.backend.notify(event)
        except Exception as exc:
            logger.exception("Notifying action %s failed", self.action.name)
            self._reporter.action_error(self.action.name, exc)
            return
        if signalled:
            self.stats.signals += 1

    def _run_loop(self) -> None:
        while not self._cancelled.is_set():
            if not self._run_requested.wait(_POLL_INTERVAL):
                continue
            self._run_requested.clear()
            if self._cancelled.is_set():
                return
            self._execute()

    def _execute(self) -> None:
        with self._locks.hold(self.action.locks):
            if self._cancelled.is_set():
                return
            self._running.set()
            self.stats.runs += 1
            logger.debug("Running action %s", self.action.name)
            try:
                self.action.backend.run(self._cancelled)
            except Exception as exc:
                logger.debug("Action %s failed: %s", self.action.name, exc)
                self._reporter.action_error(self.action.name, exc)
                self.stats.failures += 1
            finally:
                self._running.clear()
