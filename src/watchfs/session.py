"""Watch session: owns the filesystem watcher and the action pipelines."""
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .actions import ActionPipeline
from .config import Configuration
from .events import FileEvent, Operation
from .filters import matches_glob
from .locks import LockRegistry
from .reporting import Reporter

logger = logging.getLogger(__name__)

_JOIN_TIMEOUT = 5.0


class SessionError(Exception):
    """Raised when the filesystem watcher cannot be created."""


class SessionOutcome(str, Enum):
    """Why a session ended."""

    STOPPED = "stopped"
    RELOAD = "reload"


@dataclass
class SessionStats:
    """Counters emitted by the session for observability."""

    events_seen: int = 0
    events_dispatched: int = 0
    directories_watched: int = 0


class _EventBridge(FileSystemEventHandler):
    """Converts watchdog notifications into ``FileEvent`` objects.

    watchdog reports attribute changes as modifications. The bridge keeps
    the last ``(mtime, size)`` seen per file; a modification that leaves
    both untouched, and whose inode change time differs from its
    modification time, is reported as ``chmod``.
    """

    def __init__(self, session: "WatchSession"):
        super().__init__()
        self._session = session
        self._content: Dict[str, Tuple[int, int]] = {}

    def on_created(self, event: FileSystemEvent) -> None:
        path = _decode(event.src_path)
        if not event.is_directory:
            self._remember(path)
        self._session.handle_event(FileEvent(path, Operation.CREATE))

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = _decode(event.src_path)
        self._session.handle_event(FileEvent(path, self._classify(path)))

    def on_deleted(self, event: FileSystemEvent) -> None:
        path = _decode(event.src_path)
        self._content.pop(path, None)
        self._session.handle_event(FileEvent(path, Operation.REMOVE))

    def on_moved(self, event: FileSystemEvent) -> None:
        source, destination = _decode(event.src_path), _decode(event.dest_path)
        self._content.pop(source, None)
        if not event.is_directory:
            self._remember(destination)
        self._session.handle_event(FileEvent(source, Operation.RENAME))
        self._session.handle_event(FileEvent(destination, Operation.CREATE))

    def _remember(self, path: str) -> Optional[os.stat_result]:
        try:
            stat = os.stat(path)
        except OSError:
            self._content.pop(path, None)
            return None
        self._content[path] = (stat.st_mtime_ns, stat.st_size)
        return stat

    def _classify(self, path: str) -> Operation:
        previous = self._content.get(path)
        stat = self._remember(path)
        if stat is None:
            return Operation.WRITE
        if previous is not None and previous != (stat.st_mtime_ns, stat.st_size):
            return Operation.WRITE
        # On Windows st_ctime is the creation time.
        if os.name != "nt" and stat.st_ctime_ns != stat.st_mtime_ns:
            return Operation.CHMOD
        return Operation.WRITE


class WatchSession:
    """One watcher plus one pipeline per action, until stopped or reloaded."""

    def __init__(
        self,
        config: Configuration,
        *,
        locks: LockRegistry,
        reporter: Reporter,
        observer_factory=Observer,
    ):
        self._config = config
        self._locks = locks
        self._reporter = reporter
        self._observer_factory = observer_factory
        self._observer = None
        self._handler = _EventBridge(self)
        self._cancelled = threading.Event()
        self._done = threading.Event()
        self._outcome = SessionOutcome.STOPPED
        self._watched: Dict[str, bool] = {}
        self._handles: Dict[str, Any] = {}
        self._watch_lock = threading.Lock()
        self._config_path: Optional[str] = None
        if config.source is not None:
            self._config_path = os.path.abspath(config.source)
        self.pipelines: List[ActionPipeline] = [
            ActionPipeline(action, locks=locks, reporter=reporter, cancelled=self._cancelled)
            for action in config.actions
        ]
        self.stats = SessionStats()

    @property
    def cancelled(self) -> threading.Event:
        return self._cancelled

    def start(self) -> None:
        """Create the watcher, register directories and start the pipelines.

        The observer runs before any directory is scheduled, so a directory
        that cannot be watched fails on its own instead of failing the session.
        """

        try:
            self._observer = self._observer_factory()
            self._observer.start()
        except OSError as exc:
            raise SessionError(f"unable to start filesystem watcher: {exc}") from exc

        paths = self._config.paths
        if not paths:
            self._reporter.warning("no paths to watch specified. watching the current directory.")
            paths = ["."]
        for root in paths:
            self.watch_tree(root)

        for pipeline in self.pipelines:
            pipeline.start()
        logger.info(
            "Session started: %s directories, %s actions",
            self.stats.directories_watched,
            len(self.pipelines),
        )

    def run(self) -> SessionOutcome:
        """Run the session until it is stopped or asks to be reloaded."""

        self.start()
        try:
            self._done.wait()
        finally:
            self.close()
        return self._outcome

    def stop(self, outcome: SessionOutcome = SessionOutcome.STOPPED) -> None:
        """End the session; ``run`` returns ``outcome``."""

        if self._done.is_set():
            return
        self._outcome = outcome
        self._cancelled.set()
        self._done.set()

    def close(self) -> None:
        self._cancelled.set()
        self._done.set()
        if self._observer is not None:
            try:
                self._observer.stop()
                self._observer.join(_JOIN_TIMEOUT)
            except RuntimeError:
                # Never started.
                pass
            self._observer = None
        for pipeline in self.pipelines:
            pipeline.join(_JOIN_TIMEOUT)
        logger.info(
            "Session ended (%s) after %s events, %s dispatched",
            self._outcome.value,
            self.stats.events_seen,
            self.stats.events_dispatched,
        )

    def watch_tree(self, root: str) -> None:
        """Register ``root`` and every non-excluded directory below it.

        Directories with an excluded descendant are watched on their own;
        every other subtree gets a single recursive watch at its top.
        """

        root = os.path.normpath(root)
        if not os.path.exists(root):
            self._reporter.path_error("stat", os.path.abspath(root), FileNotFoundError(2, "no such file or directory"))
            return
        if not os.path.isdir(root):
            self._watch_directory(os.path.dirname(root) or ".", recursive=False)
            return
        if self._covered(root) or self.excluded(root):
            return

        watched: List[str] = []
        partial: Set[str] = set()

        def on_error(exc: OSError) -> None:
            path = exc.filename or root
            self._reporter.path_error("walk", os.path.abspath(path), exc)
            if path != root:
                _mark_ancestors(path, root, partial)

        for directory, subdirs, _files in os.walk(root, onerror=on_error):
            watched.append(directory)
            kept = []
            for name in subdirs:
                child = os.path.join(directory, name)
                if self.excluded(child):
                    _mark_ancestors(child, root, partial)
                else:
                    kept.append(name)
            subdirs[:] = kept

        for directory in watched:
            if directory in partial:
                self._watch_directory(directory, recursive=False)
            elif directory == root or os.path.dirname(directory) in partial:
                self._watch_directory(directory, recursive=True)

    def _watch_directory(self, directory: str, *, recursive: bool) -> bool:
        key = os.path.abspath(directory)
        with self._watch_lock:
            if key in self._watched:
                return True
            self._watched[key] = recursive
        # Scheduling on a live observer takes its dispatch lock; never hold ours meanwhile.
        try:
            handle = self._observer.schedule(self._handler, directory, recursive=recursive)
        except OSError as exc:
            with self._watch_lock:
                self._watched.pop(key, None)
            self._reporter.path_error("watch", key, exc)
            return False
        with self._watch_lock:
            self._handles[key] = handle
            self.stats.directories_watched += 1
        logger.debug("Watching %s (recursive=%s)", directory, recursive)
        return True

    def forget_tree(self, path: str) -> None:
        """Drop the watches on ``path`` and below it once it has gone away.

        A directory recreated later under the same name is then registered
        again by the CREATE handling.
        """

        key = os.path.abspath(path)
        prefix = key.rstrip(os.sep) + os.sep
        with self._watch_lock:
            gone = [d for d in self._watched if d == key or d.startswith(prefix)]
            handles = [(d, self._handles.pop(d, None)) for d in gone]
            for directory in gone:
                del self._watched[directory]
        observer = self._observer
        if observer is None:
            return
        for directory, handle in handles:
            if handle is None:
                continue
            try:
                observer.unschedule(handle)
            except KeyError:
                # The observer already dropped it.
                pass
            logger.debug("Stopped watching %s", directory)

    def _covered(self, path: str) -> bool:
        """Whether a recursive watch already includes ``path``."""

        current = os.path.abspath(path)
        with self._watch_lock:
            while True:
                if self._watched.get(current):
                    return True
                parent = os.path.dirname(current)
                if not parent or parent == current:
                    return False
                current = parent

    def excluded(self, path: str) -> bool:
        """Whether a directory walk should skip ``path``."""

        if matches_glob(path, self._config.ignore_globs):
            return True
        return any(f.match_path(path)[1] for f in self._config.ignores)

    def _inside_excluded(self, path: str) -> bool:
        """Whether ``path`` sits below a directory the walk would have skipped.

        Recursive watches also report directories excluded after the walk.
        """

        with self._watch_lock:
            watched = set(self._watched)
        current = os.path.dirname(path)
        while current and os.path.abspath(current) not in watched:
            if self.excluded(current):
                return True
            parent = os.path.dirname(current)
            if parent == current:
                break
            current = parent
        return False

    def handle_event(self, event: FileEvent) -> None:
        """Route one raw filesystem event through the session."""

        if self._cancelled.is_set():
            return
        self.stats.events_seen += 1
        if event.operation in (Operation.REMOVE, Operation.RENAME):
            self.forget_tree(event.path)
        if self._inside_excluded(event.path):
            return

        if event.operation is Operation.CREATE and os.path.isdir(event.path):
            if not self.excluded(event.path):
                self.watch_tree(event.path)

        if self._is_config_write(event):
            self._reporter.info("reloading watchfs configuration")
            self.stop(SessionOutcome.RELOAD)

        if not self.should_notify(event):
            return
        self.stats.events_dispatched += 1
        for pipeline in self._matching(event):
            pipeline.submit(event)
        self._reporter.event(event)

    def should_notify(self, event: FileEvent) -> bool:
        """Session-wide gates evaluated before any action filter."""

        all_match, any_match = self._config.filter.match(event)
        if not (all_match or any_match):
            return False
        for ignore in self._config.ignores:
            all_match, any_match = ignore.match(event)
            if all_match and any_match:
                return False
        if matches_glob(event.path, self._config.ignore_globs):
            return False
        return True

    def _matching(self, event: FileEvent) -> Iterable[ActionPipeline]:
        return (pipeline for pipeline in self.pipelines if pipeline.action.matches(event))

    def _is_config_write(self, event: FileEvent) -> bool:
        if not self._config.watch_self or self._config_path is None:
            return False
        if event.operation is not Operation.WRITE:
            return False
        return os.path.abspath(event.path) == self._config_path


def _decode(path) -> str:
    if isinstance(path, bytes):
        return os.fsdecode(path)
    return path


def _mark_ancestors(path: str, root: str, marked: Set[str]) -> None:
    current = os.path.dirname(path)
    while current and current not in marked:
        marked.add(current)
        if current == root:
            break
        current = os.path.dirname(current)
