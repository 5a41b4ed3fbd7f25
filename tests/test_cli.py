import json
import signal
from unittest.mock import patch

import pytest

from watchfs.backends import ContainerRunBackend, ExecBackend, HttpGetBackend, ShellBackend
from watchfs.cli import apply_arguments, build_parser, main
from watchfs.config import ConfigError, Configuration
from watchfs.events import Operation
from watchfs.session import SessionError, SessionOutcome


def _apply(argv, config=None):
    args = build_parser().parse_args(argv)
    return apply_arguments(config or Configuration(), args)


class TestApplyArguments:
    def test_flags_override_configuration(self):
        config = Configuration(paths=["old"], delay=0.5)
        config = _apply(
            [
                "--ext", "go",
                "-e", "mod,sum",
                "--watch", "lib",
                "-w", "src,cmd",
                "-i", "*.swp",
                "--ignore-ext", "tmp",
                "--ignore-ops", "chmod",
                "--op", "write",
                "-s", "sigint",
                "make", "build",
            ],
            config,
        )

        assert config.paths == ["lib", "src", "cmd"]
        assert config.filter.extensions == {"go", "mod", "sum"}
        assert config.filter.operations == {Operation.WRITE}
        assert config.ignore_globs == ["*.swp"]
        assert [f.extensions for f in config.ignores] == [{"tmp"}, frozenset()]
        assert config.ignores[1].operations == {Operation.CHMOD}
        assert config.signal == signal.SIGINT

        action = config.actions[0]
        assert action.name == "command"
        assert action.delay == 0.5
        assert isinstance(action.backend, ExecBackend)
        assert action.backend.command == ["make", "build"]
        assert action.backend.resolved_signal() == signal.SIGINT

    def test_no_flags_keep_configuration(self):
        config = _apply([], Configuration(paths=["src"]))
        assert config.paths == ["src"]
        assert config.actions == []

    def test_separator_before_command(self):
        config = _apply(["--ext", "go", "--", "make", "-j4"])
        assert config.actions[0].backend.command == ["make", "-j4"]

    def test_shell_command_is_quoted(self):
        config = _apply(["-a", "shell", "echo", "hello world"])
        backend = config.actions[0].backend
        assert isinstance(backend, ShellBackend)
        assert backend.command == "echo 'hello world'"

    def test_container_command(self):
        backend = _apply(["-a", "dockerRun", "alpine", "echo", "hi"]).actions[0].backend
        assert isinstance(backend, ContainerRunBackend)
        assert backend.image == "alpine"
        assert backend.command == ["echo", "hi"]

    def test_http_get_takes_one_url(self):
        backend = _apply(["-a", "httpGet", "localhost:8080/reload"]).actions[0].backend
        assert isinstance(backend, HttpGetBackend)
        assert backend.url == "localhost:8080/reload"

        with pytest.raises(ConfigError, match="too many arguments"):
            _apply(["-a", "httpGet", "localhost", "extra"])

    def test_unknown_operation_is_rejected(self):
        with pytest.raises(ConfigError):
            _apply(["--op", "explode"])

    def test_unknown_signal_is_a_usage_error(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["-s", "SIGBOGUS"])


class TestMain:
    def test_print_config_as_json(self, tmp_path, capsys):
        path = tmp_path / "watchfs.yaml"
        path.write_text("paths: [src]\nactions:\n  - exec:\n      command: [make]\n")

        code = main(["-c", str(path), "--print-config", "--print-config-format", "json", "-e", "go"])

        assert code == 0
        printed = json.loads(capsys.readouterr().out)
        assert printed["paths"] == ["src"]
        assert printed["exts"] == ["go"]
        assert printed["actions"][0]["exec"] == {"command": ["make"]}

    def test_default_config_is_found_in_working_directory(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "watchfs.yaml").write_text("paths: [here]\n")

        assert main(["--print-config"]) == 0
        assert "here" in capsys.readouterr().out

    def test_invalid_config_exits_with_usage_code(self, tmp_path):
        assert main(["-c", str(tmp_path / "missing.yaml")]) == 2

        broken = tmp_path / "broken.yaml"
        broken.write_text("paths: [oops\n")
        assert main(["-c", str(broken)]) == 2

    def test_session_error_exits_with_failure(self, tmp_path, capsys):
        path = tmp_path / "watchfs.yaml"
        path.write_text("paths: [.]\n")
        with patch("watchfs.cli.WatchSession") as session_cls:
            session_cls.return_value.run.side_effect = SessionError("unable to create filesystem watcher")
            code = main(["-c", str(path)])

        assert code == 1
        err = capsys.readouterr().err.splitlines()
        assert json.loads(err[-1]) == {"error": "unable to create filesystem watcher"}

    def test_reload_starts_a_new_session(self, tmp_path):
        path = tmp_path / "watchfs.yaml"
        path.write_text("paths: [first]\n")
        outcomes = iter([SessionOutcome.RELOAD, SessionOutcome.STOPPED])

        def run():
            path.write_text("paths: [second]\n")
            return next(outcomes)

        with patch("watchfs.cli.WatchSession") as session_cls:
            session_cls.return_value.run.side_effect = run
            code = main(["-c", str(path)])

        assert code == 0
        assert session_cls.call_count == 2
        configs = [call.args[0] for call in session_cls.call_args_list]
        assert [config.paths for config in configs] == [["first"], ["second"]]

    def test_broken_reload_keeps_last_good_config(self, tmp_path, capsys):
        path = tmp_path / "watchfs.yaml"
        path.write_text("paths: [good]\n")
        outcomes = iter([SessionOutcome.RELOAD, SessionOutcome.STOPPED])

        def run():
            path.write_text("paths: [broken\n")
            return next(outcomes)

        with patch("watchfs.cli.WatchSession") as session_cls:
            session_cls.return_value.run.side_effect = run
            code = main(["-c", str(path)])

        assert code == 0
        configs = [call.args[0] for call in session_cls.call_args_list]
        assert [config.paths for config in configs] == [["good"], ["good"]]
        assert "Failed to parse" in capsys.readouterr().err

    def test_keyboard_interrupt_exits_cleanly(self, tmp_path):
        path = tmp_path / "watchfs.yaml"
        path.write_text("{}\n")
        with patch("watchfs.cli.WatchSession") as session_cls:
            session_cls.return_value.run.side_effect = KeyboardInterrupt
            assert main(["-c", str(path)]) == 0
