import io
import threading
import time
from types import SimpleNamespace

import pytest

from watchfs.actions import ActionPipeline
from watchfs.backends import ActionError, Backend
from watchfs.locks import LockRegistry
from watchfs.reporting import Reporter


class RecordingBackend(Backend):
    """Backend that records run windows instead of doing real work."""

    kind = "exec"

    def __init__(self, duration=0.0, fail=False):
        self.duration = duration
        self.fail = fail
        self.runs = []
        self.notified = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def run(self, cancelled):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        started = time.monotonic()
        try:
            if self.duration:
                cancelled.wait(self.duration)
            if self.fail:
                raise ActionError("boom")
        finally:
            with self._lock:
                self.active -= 1
                self.runs.append((started, time.monotonic()))

    def notify(self, event):
        self.notified.append(event)
        return True

    def to_dict(self):
        return {}


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def streams():
    return SimpleNamespace(out=io.StringIO(), err=io.StringIO())


@pytest.fixture
def reporter(streams):
    return Reporter(stdout=streams.out, stderr=streams.err)


@pytest.fixture
def recording_backend():
    return RecordingBackend


@pytest.fixture
def wait():
    return wait_until


@pytest.fixture
def make_pipeline(reporter):
    """Start pipelines sharing one cancellation event; stops them afterwards."""

    cancelled = threading.Event()
    started = []

    def factory(action, locks=None, start=True):
        pipeline = ActionPipeline(
            action,
            locks=locks or LockRegistry(),
            reporter=reporter,
            cancelled=cancelled,
        )
        if start:
            pipeline.start()
        started.append(pipeline)
        return pipeline

    factory.cancelled = cancelled
    yield factory
    cancelled.set()
    for pipeline in started:
        pipeline.join(2.0)
