"""Side effects an action can perform: processes, containers and HTTP calls."""
from __future__ import annotations

import logging
import os
import signal as signal_module
import subprocess
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, TextIO

import httpx

from .events import FileEvent
from .signals import resolve_signal

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1

DEFAULT_HTTP_TIMEOUT = 30.0


class ActionError(Exception):
    """Raised when an action's side effect fails."""


class Backend(ABC):
    """Common interface of every action backend."""

    kind = ""

    @abstractmethod
    def run(self, cancelled: threading.Event) -> None:
        """Perform the side effect, blocking until it completes.

        Raises ``ActionError`` on failure. Implementations stop early once
        ``cancelled`` is set.
        """

    def notify(self, event: FileEvent) -> bool:
        """Tell the backend about ``event``; returns whether it was signalled."""

        return False

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        """Configuration-shaped representation of the backend."""


class ProcessBackend(Backend):
    """Backend that supervises a child process and forwards signals to it."""

    def __init__(
        self,
        *,
        env: Optional[Mapping[str, str]] = None,
        ignore_signals: bool = False,
        signal: Optional[signal_module.Signals] = None,
        global_env: Optional[Mapping[str, str]] = None,
        global_signal: Optional[signal_module.Signals] = None,
    ):
        self.env: Dict[str, str] = dict(env or {})
        self.ignore_signals = ignore_signals
        self.signal = signal
        self.global_env: Dict[str, str] = dict(global_env or {})
        self.global_signal = global_signal
        self._process: Optional[subprocess.Popen] = None
        self._process_lock = threading.Lock()

    @abstractmethod
    def argv(self) -> List[str]:
        """Command line of the child process."""

    def environment(self) -> Dict[str, str]:
        merged = dict(os.environ)
        merged.update(self.global_env)
        merged.update(self.env)
        return merged

    def resolved_signal(self) -> signal_module.Signals:
        return resolve_signal(self.signal, self.global_signal)

    @property
    def process(self) -> Optional[subprocess.Popen]:
        with self._process_lock:
            return self._process

    def run(self, cancelled: threading.Event) -> None:
        argv = self.argv()
        if not argv or cancelled.is_set():
            return
        logger.debug("Starting %s", argv)
        try:
            process = subprocess.Popen(argv, env=self.environment())
        except OSError as exc:
            raise ActionError(f"{argv[0]}: {exc.strerror or exc}") from exc
        with self._process_lock:
            self._process = process

        returncode = _supervise(process, cancelled)
        if cancelled.is_set():
            logger.debug("%s stopped by session shutdown", argv[0])
            return
        if returncode != 0:
            raise ActionError(_describe_exit(returncode))

    def notify(self, event: FileEvent) -> bool:
        if self.ignore_signals:
            return True
        with self._process_lock:
            process = self._process
            if process is None or process.poll() is not None:
                return False
            sig = self.resolved_signal()
            logger.debug("Sending %s to pid %s after %s", sig.name, process.pid, event.path)
            try:
                process.send_signal(sig)
            except ProcessLookupError:
                return False
        return True

    def _common_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.env:
            data["env"] = dict(self.env)
        if self.ignore_signals:
            data["ignoreSignals"] = True
        return data


class ExecBackend(ProcessBackend):
    """Runs ``command[0]`` with ``command[1:]`` as arguments."""

    kind = "exec"

    def __init__(self, command: Sequence[str], **kwargs: Any):
        super().__init__(**kwargs)
        self.command = list(command)

    def argv(self) -> List[str]:
        return list(self.command)

    def to_dict(self) -> Dict[str, Any]:
        return {"command": list(self.command), **self._common_dict()}


def default_shell() -> List[str]:
    if os.name == "nt":
        return [os.environ.get("COMSPEC") or "cmd", "/C"]
    return [os.environ.get("SHELL") or "/bin/sh", "-c"]


class ShellBackend(ProcessBackend):
    """Runs a single command string through a shell."""

    kind = "shell"

    def __init__(self, command: str, *, shell: Optional[Sequence[str]] = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.command = command
        self.explicit_shell = bool(shell)
        self.shell = list(shell) if shell else default_shell()

    def argv(self) -> List[str]:
        if not self.command:
            return []
        return [*self.shell, self.command]

    def to_dict(self) -> Dict[str, Any]:
        return {"command": self.command, **self._common_dict()}


@dataclass(frozen=True)
class Volume:
    source: str
    target: str
    type: str = "bind"

    def mount_arg(self) -> str:
        source = self.source
        if self.type == "bind":
            source = os.path.abspath(source)
        return f"type={self.type},source={source},target={self.target}"


class ContainerRunBackend(ProcessBackend):
    """Runs an image through the container runtime CLI.

    Signals are delivered to the runtime CLI process, which forwards them
    to the container thanks to ``--init``.
    """

    kind = "dockerRun"

    def __init__(
        self,
        image: str,
        *,
        entrypoint: Optional[str] = None,
        command: Optional[Sequence[str]] = None,
        extra_args: Sequence[str] = (),
        workdir: Optional[str] = None,
        volumes: Sequence[Volume] = (),
        runtime: str = "docker",
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.image = image
        self.entrypoint = entrypoint
        self.command = list(command) if command is not None else None
        self.extra_args = list(extra_args)
        self.workdir = workdir
        self.volumes = list(volumes)
        self.runtime = runtime

    def argv(self) -> List[str]:
        args = [self.runtime, "run", "--init", "--rm", "-t", "-a", "stdout", "-a", "stderr"]
        if self.entrypoint is not None:
            args += ["--entrypoint", self.entrypoint]
        for key, value in self.global_env.items():
            args += ["-e", f"{key}={value}"]
        for key, value in self.env.items():
            args += ["-e", f"{key}={value}"]
        for volume in self.volumes:
            args += ["--mount", volume.mount_arg()]
        if self.workdir is not None:
            args += ["--workdir", self.workdir]
        args += self.extra_args
        args.append(self.image)
        if self.command is not None:
            args += self.command
        return args

    def environment(self) -> Dict[str, str]:
        # Variables reach the container through -e flags, not the CLI's own env.
        return dict(os.environ)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"image": self.image}
        if self.entrypoint is not None:
            data["entrypoint"] = self.entrypoint
        if self.command is not None:
            data["command"] = list(self.command)
        if self.extra_args:
            data["extraArgs"] = list(self.extra_args)
        if self.workdir is not None:
            data["workdir"] = self.workdir
        if self.volumes:
            data["volumes"] = [
                {"source": v.source, "target": v.target, "type": v.type} for v in self.volumes
            ]
        if self.runtime != "docker":
            data["runtime"] = self.runtime
        data.update(self._common_dict())
        return data


def normalize_url(url: str) -> str:
    if "://" not in url:
        return "http://" + url
    return url


class HttpGetBackend(Backend):
    """Issues one GET per run and writes the raw response to stdout."""

    kind = "httpGet"

    def __init__(self, url: str, *, timeout: float = DEFAULT_HTTP_TIMEOUT, stream: Optional[TextIO] = None):
        self.url = url
        self.timeout = timeout
        self._stream = stream

    def run(self, cancelled: threading.Event) -> None:
        if cancelled.is_set():
            return
        url = normalize_url(self.url)
        try:
            response = httpx.get(url, timeout=self.timeout)
        except httpx.HTTPError as exc:
            raise ActionError(f"GET {url}: {exc}") from exc
        self._write_response(response)

    def _write_response(self, response: httpx.Response) -> None:
        stream = self._stream if self._stream is not None else sys.stdout
        lines = [f"{response.http_version} {response.status_code} {response.reason_phrase}"]
        lines += [f"{key}: {value}" for key, value in response.headers.multi_items()]
        stream.write("\r\n".join(lines) + "\r\n\r\n")
        stream.write(response.text)
        stream.flush()

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"url": self.url}
        if self.timeout != DEFAULT_HTTP_TIMEOUT:
            data["timeout"] = self.timeout
        return data


def _supervise(process: subprocess.Popen, cancelled: threading.Event) -> int:
    while True:
        try:
            return process.wait(timeout=_POLL_INTERVAL)
        except subprocess.TimeoutExpired:
            if cancelled.is_set():
                process.kill()
                return process.wait()


def _describe_exit(returncode: int) -> str:
    if returncode < 0:
        try:
            name = signal_module.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return f"signal: {name}"
    return f"exit status {returncode}"
