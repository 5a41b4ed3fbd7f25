"""Configuration loading utilities for the watcher."""
from __future__ import annotations

import json
import logging
import re
import shlex
import signal as signal_module
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml  # type: ignore

from .actions import Action
from .backends import (
    DEFAULT_HTTP_TIMEOUT,
    Backend,
    ContainerRunBackend,
    ExecBackend,
    HttpGetBackend,
    ProcessBackend,
    ShellBackend,
    Volume,
)
from .events import OPERATION_NAMES, Operation, parse_operation
from .filters import Filter
from .signals import parse_signal

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAMES = ("watchfs.yaml", "watchfs.json", "nodemon.json")

BACKEND_KINDS = ("exec", "shell", "dockerRun", "httpGet")

_FILTER_KEYS = {"ext", "exts", "op", "ops", "paths", "watch"}
_TOP_LEVEL_KEYS = {
    "paths", "watch", "ext", "exts", "op", "ops", "ignore", "ignores", "env",
    "execMap", "actions", "delay", "signal", "shell", "self", "runOnStart",
}
_ACTION_KEYS = _FILTER_KEYS | set(BACKEND_KINDS) | {
    "name", "ignore", "delay", "signal", "locks", "runOnStart",
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


class ConfigError(Exception):
    """Raised when the configuration file is missing or invalid."""


@dataclass
class Configuration:
    """Top-level configuration structure."""

    paths: List[str] = field(default_factory=list)
    filter: Filter = Filter()
    ignore_globs: List[str] = field(default_factory=list)
    ignores: List[Filter] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    delay: float = 0.0
    signal: Optional[signal_module.Signals] = None
    shell: Optional[List[str]] = None
    actions: List[Action] = field(default_factory=list)
    watch_self: bool = True
    run_on_start: bool = False
    source: Optional[Path] = None

    def bind_globals(self) -> None:
        """Push global env, signal and shell settings into every backend."""

        for action in self.actions:
            backend = action.backend
            if isinstance(backend, ProcessBackend):
                backend.global_env = dict(self.env)
                backend.global_signal = self.signal
            if isinstance(backend, ShellBackend) and self.shell and not backend.explicit_shell:
                backend.shell = list(self.shell)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.paths:
            data["paths"] = list(self.paths)
        data.update(self.filter.to_dict())
        if self.ignore_globs:
            data["ignore"] = list(self.ignore_globs)
        if self.ignores:
            data["ignores"] = [f.to_dict() for f in self.ignores]
        if self.env:
            data["env"] = dict(self.env)
        if self.delay:
            data["delay"] = f"{int(round(self.delay * 1000))}ms"
        if self.signal is not None:
            data["signal"] = self.signal.name
        if self.shell:
            data["shell"] = list(self.shell)
        if not self.watch_self:
            data["self"] = False
        if self.actions:
            data["actions"] = [action.to_dict() for action in self.actions]
        return data

    def dump(self, fmt: str) -> str:
        if fmt == "json":
            return json.dumps(self.to_dict(), indent=2) + "\n"
        return yaml.safe_dump(self.to_dict(), sort_keys=False, allow_unicode=True)


def locate_config(explicit: Optional[str], *, directory: Optional[Path] = None) -> Optional[Path]:
    """Return the configuration file to load, if any.

    An explicit path wins; otherwise the first existing default name in
    ``directory`` (the working directory by default) is used.
    """

    if explicit:
        return Path(explicit)
    base = directory or Path(".")
    for name in DEFAULT_CONFIG_NAMES:
        candidate = base / name
        if candidate.is_file():
            return candidate
    return None


def load_config(path: Optional[Path]) -> Configuration:
    """Load and validate a YAML or JSON configuration file."""

    config = parse_config(read_config_data(path))
    config.source = path
    return config


def read_config_data(path: Optional[Path]) -> Dict[str, Any]:
    """Raw mapping stored in ``path``; an absent file means an empty mapping."""

    if path is None:
        return {}
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse configuration {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read configuration {path}: {exc}") from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")
    return data


def parse_config(data: Mapping[str, Any]) -> Configuration:
    _check_keys(data, _TOP_LEVEL_KEYS, "configuration")

    paths = _ensure_str_list(data.get("paths"), "paths") + _ensure_str_list(data.get("watch"), "watch")
    global_filter = _parse_filter(data, field_name="configuration", with_paths=False)
    ignore_globs = _ensure_str_list(data.get("ignore"), "ignore")
    ignores = _parse_filter_list(data.get("ignores"), "ignores")
    env = _ensure_str_map(data.get("env"), "env")
    delay = parse_delay(data.get("delay"), field_name="delay")
    signal = parse_signal(_optional_str(data.get("signal"), "signal"))
    shell = _parse_shell(data.get("shell"))
    watch_self = _ensure_bool(data.get("self", True), "self")
    run_on_start = _ensure_bool(data.get("runOnStart", False), "runOnStart")

    actions = _parse_actions_config(data.get("actions"), delay=delay, run_on_start=run_on_start)
    actions += _parse_exec_map(data.get("execMap"), delay=delay, run_on_start=run_on_start)

    config = Configuration(
        paths=paths,
        filter=global_filter,
        ignore_globs=ignore_globs,
        ignores=ignores,
        env=env,
        delay=delay,
        signal=signal,
        shell=shell,
        actions=actions,
        watch_self=watch_self,
        run_on_start=run_on_start,
    )
    config.bind_globals()
    return config


def parse_delay(value: Any, *, field_name: str) -> float:
    """Delay in seconds from an integer of milliseconds or a duration string."""

    if value is None:
        return 0.0
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be milliseconds or a duration such as '500ms'")
    if isinstance(value, (int, float)):
        seconds = float(value) / 1000.0
    elif isinstance(value, str):
        seconds = _parse_duration(value.strip(), field_name=field_name)
    else:
        raise ConfigError(f"{field_name} must be milliseconds or a duration such as '500ms'")
    if seconds < 0:
        raise ConfigError(f"{field_name} must not be negative")
    return seconds


def _parse_duration(text: str, *, field_name: str) -> float:
    if not text or text == "0":
        return 0.0
    if text.isdigit():
        return int(text) / 1000.0
    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    position = 0
    total = 0.0
    while position < len(text):
        match = _DURATION_PART.match(text, position)
        if match is None:
            raise ConfigError(f"{field_name} has an invalid duration: {text!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    return sign * total


def _parse_actions_config(raw: Any, *, delay: float, run_on_start: bool) -> List[Action]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError("'actions' section must be a list")

    actions: List[Action] = []
    for index, item in enumerate(raw):
        field_name = f"actions[{index}]"
        if not isinstance(item, dict):
            raise ConfigError(f"{field_name} must be a mapping")
        _check_keys(item, _ACTION_KEYS, field_name)

        kinds = [kind for kind in BACKEND_KINDS if item.get(kind) is not None]
        if len(kinds) != 1:
            allowed = ", ".join(BACKEND_KINDS)
            raise ConfigError(f"{field_name} must define exactly one of: {allowed}")
        kind = kinds[0]

        signal = parse_signal(_optional_str(item.get("signal"), f"{field_name}.signal"))
        backend = _parse_backend(kind, item[kind], field_name=f"{field_name}.{kind}", signal=signal)

        ignore = None
        if item.get("ignore") is not None:
            ignore = _parse_filter(item["ignore"], field_name=f"{field_name}.ignore", strict=True)

        action_delay = delay
        if item.get("delay") is not None:
            action_delay = parse_delay(item["delay"], field_name=f"{field_name}.delay")

        action = Action(
            name=str(item.get("name") or f"action_{index}"),
            backend=backend,
            filter=_parse_filter(item, field_name=field_name),
            ignore=ignore,
            delay=action_delay,
            locks=tuple(_ensure_str_list(item.get("locks"), f"{field_name}.locks")),
            run_on_start=_ensure_bool(item.get("runOnStart", run_on_start), f"{field_name}.runOnStart"),
        )
        logger.info("Loaded action '%s' (%s) locks=%s", action.name, kind, list(action.locks))
        actions.append(action)

    return actions


def _parse_exec_map(raw: Any, *, delay: float, run_on_start: bool) -> List[Action]:
    mapping = _ensure_str_map(raw, "execMap")
    actions: List[Action] = []
    for ext, command in mapping.items():
        try:
            tokens = shlex.split(command)
        except ValueError:
            tokens = [command]
        actions.append(
            Action(
                name=f"execMap.{ext}",
                backend=ExecBackend(tokens),
                filter=Filter.build(extensions=[ext]),
                delay=delay,
                run_on_start=run_on_start,
            )
        )
    return actions

def _parse_backend(
    kind: str,
    raw: Any,
    *,
    field_name: str,
    signal: Optional[signal_module.Signals],
) -> Backend:
    if not isinstance(raw, dict):
        raise ConfigError(f"{field_name} must be a mapping")

    if kind == "httpGet":
        _check_keys(raw, {"url", "timeout"}, field_name)
        url = raw.get("url")
        if not isinstance(url, str) or not url:
            raise ConfigError(f"{field_name}.url must be a non-empty string")
        timeout = raw.get("timeout", DEFAULT_HTTP_TIMEOUT)
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ConfigError(f"{field_name}.timeout must be a positive number of seconds")
        return HttpGetBackend(url, timeout=float(timeout))

    common = dict(
        env=_ensure_str_map(raw.get("env"), f"{field_name}.env"),
        ignore_signals=_ensure_bool(raw.get("ignoreSignals", False), f"{field_name}.ignoreSignals"),
        signal=signal,
    )

    if kind == "exec":
        _check_keys(raw, {"command", "env", "ignoreSignals"}, field_name)
        return ExecBackend(_parse_command(raw.get("command"), f"{field_name}.command"), **common)

    if kind == "shell":
        _check_keys(raw, {"command", "env", "ignoreSignals", "shell"}, field_name)
        command = raw.get("command")
        if not isinstance(command, str):
            raise ConfigError(f"{field_name}.command must be a string")
        return ShellBackend(command, shell=_parse_shell(raw.get("shell")), **common)

    if kind == "dockerRun":
        _check_keys(
            raw,
            {"image", "entrypoint", "command", "env", "extraArgs", "workdir", "volumes",
             "ignoreSignals", "runtime"},
            field_name,
        )
        image = raw.get("image")
        if not isinstance(image, str) or not image:
            raise ConfigError(f"{field_name}.image must be a non-empty string")
        command = None
        if raw.get("command") is not None:
            command = _parse_command(raw["command"], f"{field_name}.command")
        return ContainerRunBackend(
            image,
            entrypoint=_optional_str(raw.get("entrypoint"), f"{field_name}.entrypoint"),
            command=command,
            extra_args=_ensure_str_list(raw.get("extraArgs"), f"{field_name}.extraArgs"),
            workdir=_optional_str(raw.get("workdir"), f"{field_name}.workdir"),
            volumes=_parse_volumes(raw.get("volumes"), f"{field_name}.volumes"),
            runtime=_optional_str(raw.get("runtime"), f"{field_name}.runtime") or "docker",
            **common,
        )

    raise ConfigError(f"Unknown action type: {kind}")


def _parse_volumes(raw: Any, field_name: str) -> List[Volume]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError(f"{field_name} must be a list")
    volumes: List[Volume] = []
    for index, item in enumerate(raw):
        item_name = f"{field_name}[{index}]"
        if not isinstance(item, dict):
            raise ConfigError(f"{item_name} must be a mapping")
        _check_keys(item, {"source", "target", "type"}, item_name)
        source = _optional_str(item.get("source"), f"{item_name}.source") or ""
        target = _optional_str(item.get("target"), f"{item_name}.target") or ""
        volume_type = _optional_str(item.get("type"), f"{item_name}.type") or "bind"
        volumes.append(Volume(source=source, target=target, type=volume_type))
    return volumes


def _parse_command(raw: Any, field_name: str) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        try:
            return shlex.split(raw)
        except ValueError as exc:
            raise ConfigError(f"{field_name} could not be split: {exc}") from exc
    return _ensure_str_list(raw, field_name)


def _parse_shell(raw: Any) -> Optional[List[str]]:
    if raw is None:
        return None
    if isinstance(raw, str):
        try:
            tokens = shlex.split(raw)
        except ValueError as exc:
            raise ConfigError(f"shell could not be split: {exc}") from exc
    else:
        tokens = _ensure_str_list(raw, "shell")
    return tokens or None


def _parse_filter_list(raw: Any, field_name: str) -> List[Filter]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError(f"{field_name} must be a list of filters")
    return [_parse_filter(item, field_name=f"{field_name}[{index}]", strict=True) for index, item in enumerate(raw)]


def _parse_filter(raw: Any, *, field_name: str, with_paths: bool = True, strict: bool = False) -> Filter:
    if not isinstance(raw, dict):
        raise ConfigError(f"{field_name} must be a mapping")
    if strict:
        _check_keys(raw, _FILTER_KEYS, field_name)

    extensions = _ensure_csv(raw.get("ext"), f"{field_name}.ext") + _ensure_str_list(
        raw.get("exts"), f"{field_name}.exts"
    )
    op_names = _ensure_csv(raw.get("op"), f"{field_name}.op") + _ensure_str_list(
        raw.get("ops"), f"{field_name}.ops"
    )
    operations = parse_operations(op_names, field_name=f"{field_name}.ops")
    paths: List[str] = []
    if with_paths:
        paths = _ensure_str_list(raw.get("paths"), f"{field_name}.paths") + _ensure_str_list(
            raw.get("watch"), f"{field_name}.watch"
        )
    return Filter.build(extensions=extensions, operations=operations, paths=paths)


def parse_operations(names: Iterable[str], *, field_name: str = "ops") -> List[Operation]:
    operations: List[Operation] = []
    for name in names:
        if not name.strip():
            continue
        try:
            operations.append(parse_operation(name))
        except ValueError as exc:
            allowed = ", ".join(OPERATION_NAMES)
            raise ConfigError(f"{field_name} entry {name!r} must be one of: {allowed}") from exc
    return operations


def _check_keys(raw: Mapping[str, Any], allowed: Iterable[str], field_name: str) -> None:
    unknown = sorted(str(key) for key in raw if key not in allowed)
    if unknown:
        raise ConfigError(f"{field_name} has unknown field(s): {', '.join(unknown)}")


def _ensure_bool(value: Any, field_name: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"{field_name} must be a boolean")
    return value


def _optional_str(value: Any, field_name: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{field_name} must be a string")
    return value


def _ensure_csv(value: Any, field_name: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, str):
        raise ConfigError(f"{field_name} must be a comma-separated string")
    return [part.strip() for part in value.split(",") if part.strip()]


def _ensure_str_map(value: Any, field_name: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{field_name} must be a mapping of strings")
    result: Dict[str, str] = {}
    for key, item in value.items():
        if isinstance(item, bool) or not isinstance(item, (str, int, float)):
            raise ConfigError(f"{field_name}.{key} must be a string")
        result[str(key)] = str(item)
    return result


def _ensure_str_list(value: Any, field_name: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ConfigError(f"{field_name} must be a list of strings")
    items: List[str] = []
    for elem in value:
        if not isinstance(elem, str):
            raise ConfigError(f"{field_name} must contain only strings")
        items.append(elem)
    return items
