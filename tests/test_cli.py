# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for scraperrun/cli.py -- the command-line entry point."""

import json
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from scraperrun import cli
from scraperrun.logging import SecretFilter
from scraperrun.sandbox import (
    Completed,
    ConfigError,
    FatalFailure,
    Image,
    ImageNotFoundError,
    LogStream,
    RetryableFailure,
    RunResult,
    TimingMetrics,
)


@pytest.fixture(autouse=True)
def no_logging_setup() -> Iterator[MagicMock]:
    """Leave the root logger alone."""
    with patch("scraperrun.cli.configure_logging") as mock:
        yield mock


@pytest.fixture(autouse=True)
def isolated_config_dir(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Point the default config location at an empty directory."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))


@pytest.fixture
def mock_runner() -> Iterator[MagicMock]:
    """Replace DockerRunner with a mock; yields the instance."""
    with patch("scraperrun.cli.DockerRunner") as mock_class:
        yield mock_class.return_value


class TestCmdRun:
    """Tests for the run subcommand."""

    def test_completed(
        self,
        mock_runner: MagicMock,
        scraper_repo: Path,
        tmp_path: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Result files are written and a summary printed."""
        mock_runner.compile_and_run.return_value = Completed(
            RunResult(
                status_code=0,
                files={"data.sqlite": b"DB", "out/log.txt": b"ok"},
                timing=TimingMetrics(wall_time=1.5),
            )
        )
        out_dir = tmp_path / "out"

        code = cli.cmd_run(
            [
                str(scraper_repo),
                "--name",
                "run-1",
                "--env",
                "MORPH_API_KEY=secret-key",
                "--label",
                "run_id=1",
                "--file",
                "data.sqlite",
                "--output-dir",
                str(out_dir),
            ]
        )

        assert code == 0
        assert (out_dir / "data.sqlite").read_bytes() == b"DB"
        assert (out_dir / "out" / "log.txt").read_bytes() == b"ok"
        summary = json.loads(capsys.readouterr().out)
        assert summary["status_code"] == 0
        assert summary["files"] == ["data.sqlite", "out/log.txt"]
        assert summary["timing"]["wall_time"] == 1.5

        args = mock_runner.compile_and_run.call_args
        assert args.args == (
            scraper_repo,
            {"MORPH_API_KEY": "secret-key"},
            "run-1",
            {"run_id": "1"},
            ["data.sqlite"],
        )

    def test_env_values_registered_as_secrets(
        self, mock_runner: MagicMock, scraper_repo: Path
    ) -> None:
        """Scraper environment values never reach the service log."""
        mock_runner.compile_and_run.return_value = RetryableFailure("x")

        cli.cmd_run(
            [str(scraper_repo), "--name", "r", "--env", "TOKEN=s3cr3t-val"]
        )

        record = MagicMock(msg="leaked s3cr3t-val", args=())
        SecretFilter().filter(record)
        assert record.msg == "leaked [REDACTED]"

    def test_scraper_failure_still_completes(
        self,
        mock_runner: MagicMock,
        scraper_repo: Path,
        tmp_path: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """A failing scraper is a completed run with its status."""
        mock_runner.compile_and_run.return_value = Completed(
            RunResult(status_code=255)
        )

        code = cli.cmd_run(
            [
                str(scraper_repo),
                "--name",
                "r",
                "--output-dir",
                str(tmp_path),
            ]
        )

        assert code == 0
        summary = json.loads(capsys.readouterr().out)
        assert summary == {"status_code": 255, "files": [], "timing": None}

    def test_retryable(
        self, mock_runner: MagicMock, scraper_repo: Path
    ) -> None:
        """Retryable failures exit with EX_TEMPFAIL."""
        mock_runner.compile_and_run.return_value = RetryableFailure("down")

        assert cli.cmd_run([str(scraper_repo), "--name", "r"]) == 75

    def test_fatal(self, mock_runner: MagicMock, scraper_repo: Path) -> None:
        """Fatal failures exit with 1."""
        mock_runner.compile_and_run.return_value = FatalFailure("taken")

        assert cli.cmd_run([str(scraper_repo), "--name", "r"]) == 1

    def test_not_a_directory(
        self, mock_runner: MagicMock, tmp_path: Path
    ) -> None:
        """A missing checkout is rejected before anything runs."""
        code = cli.cmd_run([str(tmp_path / "missing"), "--name", "r"])

        assert code == 1
        mock_runner.compile_and_run.assert_not_called()

    def test_bad_pair(
        self, mock_runner: MagicMock, scraper_repo: Path
    ) -> None:
        """Malformed KEY=VALUE options are usage errors."""
        with pytest.raises(SystemExit) as exc_info:
            cli.cmd_run([str(scraper_repo), "--name", "r", "--env", "NOEQ"])

        assert exc_info.value.code == 2

    def test_name_required(self, scraper_repo: Path) -> None:
        """--name is mandatory."""
        with pytest.raises(SystemExit):
            cli.cmd_run([str(scraper_repo)])

    def test_config_error(self, scraper_repo: Path, tmp_path: Path) -> None:
        """An unreadable config file exits with 1."""
        code = cli.cmd_run(
            [
                str(scraper_repo),
                "--name",
                "r",
                "--config",
                str(tmp_path / "missing.yaml"),
            ]
        )

        assert code == 1

    @patch("scraperrun.cli.sys.stderr")
    @patch("scraperrun.cli.sys.stdout")
    def test_print_log_routing(
        self, mock_stdout: MagicMock, mock_stderr: MagicMock
    ) -> None:
        """Error streams go to stderr, the rest to stdout."""
        cli._print_log(LogStream.STDOUT, "out\n")
        cli._print_log(LogStream.INTERNALOUT, "info\n")
        cli._print_log(LogStream.STDERR, "err\n")
        cli._print_log(LogStream.INTERNALERR, "internal\n")

        assert [c.args[0] for c in mock_stdout.write.call_args_list] == [
            "out\n",
            "info\n",
        ]
        assert [c.args[0] for c in mock_stderr.write.call_args_list] == [
            "err\n",
            "internal\n",
        ]


class TestCmdPullImage:
    """Tests for the pull-image subcommand."""

    def test_success(
        self,
        mock_runner: MagicMock,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """The new image ID is printed."""
        mock_runner.update_image.return_value = Image("sha256:new")

        assert cli.cmd_pull_image([]) == 0
        assert capsys.readouterr().out.strip() == "sha256:new"

    def test_runtime_error(self, mock_runner: MagicMock) -> None:
        """Runtime failures exit with 1."""
        mock_runner.update_image.side_effect = ImageNotFoundError("gone")

        assert cli.cmd_pull_image([]) == 1

    def test_config_error(self) -> None:
        """Configuration failures exit with 1."""
        with patch(
            "scraperrun.cli._load_config", side_effect=ConfigError("bad")
        ):
            assert cli.cmd_pull_image(["--config", "x.yaml"]) == 1


class TestCliDispatch:
    """Tests for the top-level cli() entry point."""

    @pytest.mark.parametrize("argv", [[], ["--help"], ["-h"]])
    def test_help(
        self, argv: list[str], capsys: pytest.CaptureFixture[str]
    ) -> None:
        """No command or --help prints usage and exits 0."""
        with patch("sys.argv", ["scraperrun", *argv]):
            with pytest.raises(SystemExit) as exc_info:
                cli.cli()

        assert exc_info.value.code == 0
        assert "usage: scraperrun" in capsys.readouterr().out

    def test_unknown_command(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Unknown commands exit 2 with a message."""
        with patch("sys.argv", ["scraperrun", "frobnicate"]):
            with pytest.raises(SystemExit) as exc_info:
                cli.cli()

        assert exc_info.value.code == 2
        assert "unknown command 'frobnicate'" in capsys.readouterr().err

    @pytest.mark.parametrize(
        ("command", "handler"),
        [("run", "cmd_run"), ("pull-image", "cmd_pull_image")],
    )
    def test_dispatch(self, command: str, handler: str) -> None:
        """Each command is routed to its handler with remaining args."""
        with (
            patch("sys.argv", ["scraperrun", command, "--x"]),
            patch(f"scraperrun.cli.{handler}", return_value=75) as mock,
        ):
            with pytest.raises(SystemExit) as exc_info:
                cli.cli()

        mock.assert_called_once_with(["--x"])
        assert exc_info.value.code == 75


class TestLoadConfig:
    """Tests for _load_config."""

    def test_explicit_path(self, tmp_path: Path) -> None:
        """An explicit --config file is loaded."""
        path = tmp_path / "c.yaml"
        path.write_text("container_command: podman\n")

        assert cli._load_config(str(path)).container_command == "podman"

    def test_defaults_without_file(self) -> None:
        """Defaults apply when no config file exists anywhere."""
        assert cli._load_config(None) == cli.RunnerConfig()
