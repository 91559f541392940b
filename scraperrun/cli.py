# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""scraperrun CLI: multi-command entry point.

Subcommands:

* ``run``: compile and run one scraper checkout
* ``pull-image``: refresh the base build image
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path

from scraperrun.logging import SecretFilter, configure_logging
from scraperrun.sandbox import (
    Completed,
    ConfigError,
    ContainerRuntimeError,
    DockerRunner,
    FatalFailure,
    LogStream,
    RetryableFailure,
    RunnerConfig,
)
from scraperrun.sandbox.config import get_config_path


logger = logging.getLogger(__name__)

#: Exit code for runs that should be retried later (EX_TEMPFAIL).
EXIT_RETRY = 75

_USAGE = """\
usage: scraperrun <command> [args]

commands:
  run          Compile and run a scraper checkout
  pull-image   Refresh the base build image

Run 'scraperrun <command> --help' for command-specific help.\
"""


def _parse_pairs(values: list[str], option: str) -> dict[str, str]:
    """Parse repeated ``KEY=VALUE`` options into a dict."""
    pairs: dict[str, str] = {}
    for value in values:
        key, sep, rest = value.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(
                f"{option} expects KEY=VALUE, got {value!r}"
            )
        pairs[key] = rest
    return pairs


def _load_config(path: str | None) -> RunnerConfig:
    """Load config from ``path``, the default location, or defaults."""
    if path is not None:
        return RunnerConfig.from_yaml(Path(path))
    if get_config_path().exists():
        return RunnerConfig.from_yaml()
    return RunnerConfig()


def _print_log(stream: LogStream, text: str) -> None:
    """Write a run log line to the matching terminal stream."""
    out = (
        sys.stderr
        if stream in (LogStream.STDERR, LogStream.INTERNALERR)
        else sys.stdout
    )
    out.write(text)
    out.flush()


# ── run subcommand ──────────────────────────────────────────────────


def cmd_run(argv: list[str]) -> int:
    """Compile and run a scraper, then save its result files.

    Args:
        argv: Command-line arguments after ``run``.

    Returns:
        0 if the run completed (whatever the scraper's own status),
        75 if it should be retried later, 1 on fatal failure.
    """
    parser = argparse.ArgumentParser(prog="scraperrun run")
    parser.add_argument("repo", type=Path, help="Scraper checkout")
    parser.add_argument("--name", required=True, help="Container name")
    parser.add_argument(
        "--env", action="append", default=[], metavar="KEY=VALUE"
    )
    parser.add_argument(
        "--label", action="append", default=[], metavar="KEY=VALUE"
    )
    parser.add_argument(
        "--file",
        action="append",
        default=[],
        metavar="PATH",
        help="Result file to copy back, relative to the app root",
    )
    parser.add_argument("--output-dir", type=Path, default=Path("."))
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args(argv)

    configure_logging(level=logging.DEBUG if args.debug else logging.INFO)

    try:
        env = _parse_pairs(args.env, "--env")
        labels = _parse_pairs(args.label, "--label")
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    SecretFilter.register_secrets(env.values())

    if not args.repo.is_dir():
        logger.error("Not a directory: %s", args.repo)
        return 1

    try:
        runner = DockerRunner(_load_config(args.config))
    except ConfigError as e:
        logger.error("%s", e)
        return 1

    outcome = runner.compile_and_run(
        args.repo,
        env,
        args.name,
        labels,
        args.file,
        on_log=_print_log,
        on_ip_address=lambda ip: logger.info("Container address: %s", ip),
    )

    match outcome:
        case Completed(result=result):
            for rel_path, content in result.files.items():
                target = args.output_dir / rel_path
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(content)
            summary = {
                "status_code": result.status_code,
                "files": sorted(result.files),
                "timing": (
                    dataclasses.asdict(result.timing)
                    if result.timing is not None
                    else None
                ),
            }
            print(json.dumps(summary, indent=2))
            return 0
        case RetryableFailure(reason=reason):
            logger.warning("Run should be retried: %s", reason)
            return EXIT_RETRY
        case FatalFailure(reason=reason):
            logger.error("Run failed: %s", reason)
            return 1


# ── pull-image subcommand ───────────────────────────────────────────


def cmd_pull_image(argv: list[str]) -> int:
    """Pull the newest base build image.

    Args:
        argv: Command-line arguments after ``pull-image``.

    Returns:
        Exit code (0 on success, 1 on error).
    """
    parser = argparse.ArgumentParser(prog="scraperrun pull-image")
    parser.add_argument("--config", help="YAML configuration file")
    args = parser.parse_args(argv)

    configure_logging(level=logging.INFO)

    try:
        runner = DockerRunner(_load_config(args.config))
        image = runner.update_image(on_log=_print_log)
    except (ConfigError, ContainerRuntimeError) as e:
        logger.error("%s", e)
        return 1

    print(image.id)
    return 0


# ── CLI plumbing ────────────────────────────────────────────────────


_DISPATCH: dict[str, str] = {
    "run": "cmd_run",
    "pull-image": "cmd_pull_image",
}


def cli() -> None:
    """Entry point for ``scraperrun``."""
    argv = sys.argv[1:]

    if not argv or argv[0] in ("-h", "--help"):
        print(_USAGE)
        sys.exit(0)

    if argv[0] not in _DISPATCH:
        print(f"scraperrun: unknown command '{argv[0]}'", file=sys.stderr)
        print(_USAGE, file=sys.stderr)
        sys.exit(2)

    # Look up handler by name so tests can mock individual commands.
    import scraperrun.cli as _self

    handler = getattr(_self, _DISPATCH[argv[0]])
    sys.exit(handler(argv[1:]))


if __name__ == "__main__":  # pragma: no cover
    cli()
