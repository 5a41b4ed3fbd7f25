import io
import os
import signal
import sys
import threading
from unittest.mock import patch

import httpx
import pytest

from watchfs.backends import (
    ActionError,
    ContainerRunBackend,
    ExecBackend,
    HttpGetBackend,
    ShellBackend,
    Volume,
    normalize_url,
)
from watchfs.events import FileEvent, Operation
from watchfs.signals import DEFAULT_SIGNAL

PY = sys.executable
SLEEPER = [PY, "-c", "import time; time.sleep(30)"]
posix_only = pytest.mark.skipif(os.name == "nt", reason="POSIX signals and shells")


def _event():
    return FileEvent(path="main.go", operation=Operation.WRITE)


def _run_in_thread(backend, cancelled):
    errors = []

    def target():
        try:
            backend.run(cancelled)
        except ActionError as exc:
            errors.append(exc)

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread, errors


class TestExecBackend:
    def test_runs_with_merged_environment(self, tmp_path):
        out = tmp_path / "env.txt"
        script = "import os, sys; open(sys.argv[1], 'w').write(os.environ['A'] + ',' + os.environ['B'])"
        backend = ExecBackend(
            [PY, "-c", script, str(out)],
            env={"A": "action"},
            global_env={"A": "global", "B": "global"},
        )
        backend.run(threading.Event())
        assert out.read_text() == "action,global"

    def test_nonzero_exit_raises(self):
        with pytest.raises(ActionError, match="exit status 3"):
            ExecBackend([PY, "-c", "raise SystemExit(3)"]).run(threading.Event())

    def test_missing_binary_raises(self):
        with pytest.raises(ActionError):
            ExecBackend(["watchfs-no-such-binary-xyz"]).run(threading.Event())

    def test_empty_command_is_noop(self):
        ExecBackend([]).run(threading.Event())

    def test_cancel_kills_process(self, wait):
        backend = ExecBackend(SLEEPER)
        cancelled = threading.Event()
        thread, errors = _run_in_thread(backend, cancelled)
        assert wait(lambda: backend.process is not None)

        cancelled.set()
        thread.join(5)
        assert not thread.is_alive()
        assert backend.process.poll() is not None
        assert errors == []

    def test_notify_without_process(self):
        assert ExecBackend(SLEEPER).notify(_event()) is False

    def test_notify_with_ignore_signals_acknowledges(self):
        assert ExecBackend(SLEEPER, ignore_signals=True).notify(_event()) is True

    @posix_only
    def test_notify_delivers_resolved_signal(self, wait):
        backend = ExecBackend(SLEEPER, signal=signal.SIGTERM)
        thread, errors = _run_in_thread(backend, threading.Event())
        assert wait(lambda: backend.process is not None)

        assert backend.notify(_event()) is True
        thread.join(5)
        assert not thread.is_alive()
        assert len(errors) == 1
        assert "SIGTERM" in str(errors[0])

    def test_notify_after_exit(self):
        backend = ExecBackend([PY, "-c", "pass"])
        backend.run(threading.Event())
        assert backend.notify(_event()) is False

    def test_signal_resolution_order(self):
        assert ExecBackend(["x"]).resolved_signal() == DEFAULT_SIGNAL
        assert ExecBackend(["x"], global_signal=signal.SIGINT).resolved_signal() == signal.SIGINT
        backend = ExecBackend(["x"], signal=signal.SIGTERM, global_signal=signal.SIGINT)
        assert backend.resolved_signal() == signal.SIGTERM

    def test_to_dict(self):
        backend = ExecBackend(["make", "test"], env={"A": "1"}, ignore_signals=True)
        assert backend.to_dict() == {"command": ["make", "test"], "env": {"A": "1"}, "ignoreSignals": True}


@posix_only
class TestShellBackend:
    def test_default_shell_comes_from_environment(self, monkeypatch):
        monkeypatch.setenv("SHELL", "/bin/bash")
        assert ShellBackend("make test").argv() == ["/bin/bash", "-c", "make test"]

    def test_default_shell_fallback(self, monkeypatch):
        monkeypatch.delenv("SHELL", raising=False)
        assert ShellBackend("make").argv() == ["/bin/sh", "-c", "make"]

    def test_runs_through_shell(self, tmp_path):
        out = tmp_path / "out.txt"
        backend = ShellBackend(f"echo \"$GREETING\" > '{out}'", shell=["/bin/sh", "-c"], env={"GREETING": "hi"})
        backend.run(threading.Event())
        assert out.read_text() == "hi\n"

    def test_empty_command_is_noop(self):
        assert ShellBackend("").argv() == []


class TestContainerRunBackend:
    def test_argument_template(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        backend = ContainerRunBackend(
            "alpine:3",
            entrypoint="/bin/sh",
            command=["-c", "make"],
            extra_args=["--network", "host"],
            workdir="/src",
            volumes=[Volume(source="src", target="/src"), Volume(source="cache", target="/cache", type="volume")],
            env={"B": "2"},
            global_env={"A": "1"},
        )
        assert backend.argv() == [
            "docker", "run", "--init", "--rm", "-t", "-a", "stdout", "-a", "stderr",
            "--entrypoint", "/bin/sh",
            "-e", "A=1",
            "-e", "B=2",
            "--mount", f"type=bind,source={os.path.join(os.getcwd(), 'src')},target=/src",
            "--mount", "type=volume,source=cache,target=/cache",
            "--workdir", "/src",
            "--network", "host",
            "alpine:3",
            "-c", "make",
        ]

    def test_minimal_template(self):
        backend = ContainerRunBackend("alpine")
        assert backend.argv() == ["docker", "run", "--init", "--rm", "-t", "-a", "stdout", "-a", "stderr", "alpine"]

    def test_runtime_override(self):
        assert ContainerRunBackend("alpine", runtime="podman").argv()[0] == "podman"


class TestHttpGetBackend:
    def test_normalize_url_defaults_scheme(self):
        assert normalize_url("localhost:8080/reload") == "http://localhost:8080/reload"
        assert normalize_url("https://example.test/") == "https://example.test/"

    def test_writes_raw_response(self):
        stream = io.StringIO()
        response = httpx.Response(
            200,
            headers={"Content-Type": "text/plain"},
            text="ok",
            request=httpx.Request("GET", "http://example.test/hook"),
        )
        with patch("httpx.get", return_value=response) as mock_get:
            HttpGetBackend("example.test/hook", stream=stream).run(threading.Event())

        mock_get.assert_called_once_with("http://example.test/hook", timeout=30.0)
        output = stream.getvalue()
        assert output.startswith("HTTP/1.1 200 OK\r\n")
        assert "content-type: text/plain" in output.lower()
        assert output.endswith("\r\n\r\nok")

    def test_transport_error_raises(self):
        with patch("httpx.get", side_effect=httpx.ConnectError("connection refused")):
            with pytest.raises(ActionError, match="connection refused"):
                HttpGetBackend("example.test").run(threading.Event())

    def test_notify_is_noop(self):
        assert HttpGetBackend("example.test").notify(_event()) is False
