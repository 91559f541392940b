# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Configuration for the scraper pipeline.

All settings that describe the build recipe (base image, application
root, compile and start commands) live in :class:`RunnerConfig`, which is
passed to :class:`~scraperrun.sandbox.DockerRunner` at construction.

Configuration can be loaded from a YAML file with support for ``!env``
tags that resolve values from environment variables::

    container_command: podman
    base_image: openaustralia/buildstep
    app_root: /app
    build_timeout: !env SCRAPERRUN_BUILD_TIMEOUT

The default file is ``$XDG_CONFIG_HOME/scraperrun/scraperrun.yaml``
(typically ``~/.config/scraperrun/scraperrun.yaml``). Before the file is
read, ``.env`` files are loaded from that directory and then from the
working directory; variables already set are never overwritten.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from platformdirs import user_config_path

from scraperrun.sandbox._archive import FIXED_MTIME
from scraperrun.sandbox._staging import CONFIG_FILENAMES


logger = logging.getLogger(__name__)

#: Application name for XDG path resolution.
_APP_NAME = "scraperrun"

#: Four hours; dependency fetches and scraper runs may be slow.
_FOUR_HOURS = 4 * 60 * 60


class ConfigError(Exception):
    """Base exception for configuration errors."""


def get_config_path() -> Path:
    """Return the default config file path."""
    return user_config_path(_APP_NAME) / "scraperrun.yaml"


def get_dotenv_path() -> Path:
    """Return the ``.env`` file path inside the XDG config directory."""
    return user_config_path(_APP_NAME) / ".env"


def load_dotenv_files() -> None:
    """Load the XDG ``.env`` file, then the working directory's one."""
    for path in (get_dotenv_path(), Path.cwd() / ".env"):
        if path.exists():
            load_dotenv(path)
            logger.debug("Loaded .env from %s", path)


@dataclass(frozen=True)
class RunnerConfig:
    """Construction-time configuration for the pipeline.

    Attributes:
        container_command: Container runtime command (docker or podman).
        base_image: Build image every scraper starts from.
        app_root: Absolute directory inside images holding scraper files.
        scraper_user: Unprivileged account that owns the application files.
        compile_command: Command that installs a scraper's dependencies.
        compile_env: Environment variables set for the compile step.
        start_command: Command that starts the scraper.
        time_file: Name of the timing report, relative to ``app_root``.
        build_failure_status: Status reported when compilation fails.
        build_timeout: Seconds before a single image build is killed.
        attach_timeout: Seconds a scraper may run before it is killed.
        config_filenames: Files injected before the compile step.
        mtime: Modification time applied to staged build contexts.
        error_prefix: Prefix for internal error lines in the run log.
    """

    container_command: str = "docker"
    base_image: str = "openaustralia/buildstep"
    app_root: str = "/app"
    scraper_user: str = "scraper"
    compile_command: str = "/build/builder"
    compile_env: dict[str, str] = field(
        default_factory=lambda: {"CURL_TIMEOUT": "180"}
    )
    start_command: str = "/start scraper"
    time_file: str = "time.output"
    build_failure_status: int = 255
    build_timeout: float = _FOUR_HOURS
    attach_timeout: float = _FOUR_HOURS
    config_filenames: frozenset[str] = CONFIG_FILENAMES
    mtime: datetime = FIXED_MTIME
    error_prefix: str = "Internal error"

    def __post_init__(self) -> None:
        if not self.app_root.startswith("/"):
            raise ConfigError(f"app_root must be absolute: {self.app_root}")
        if self.build_timeout <= 0 or self.attach_timeout <= 0:
            raise ConfigError("Timeouts must be positive")

    @classmethod
    def from_yaml(cls, config_path: Path | None = None) -> "RunnerConfig":
        """Load configuration from a YAML file.

        Keys that are absent keep their defaults. Values tagged with
        ``!env VAR_NAME`` are read from the environment at load time;
        an unset variable also keeps the default.

        Args:
            config_path: Path to the YAML file. Defaults to
                :func:`get_config_path`.

        Returns:
            RunnerConfig instance.

        Raises:
            ConfigError: If the file is missing or a value is invalid.
        """
        load_dotenv_files()

        if config_path is None:
            config_path = get_config_path()

        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            try:
                raw = yaml.load(f, Loader=_make_loader())
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {config_path}: {e}")

        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ConfigError(
                f"Config file must be a YAML mapping: {config_path}"
            )

        config = cls._from_raw(raw)
        logger.info(
            "Config loaded from %s (runtime=%s, base_image=%s)",
            config_path,
            config.container_command,
            config.base_image,
        )
        return config

    @classmethod
    def _from_raw(cls, raw: dict[str, Any]) -> "RunnerConfig":
        """Build config from a parsed (but unresolved) YAML mapping."""
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(raw) - set(known))
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

        kwargs: dict[str, Any] = {}
        for key, value in raw.items():
            resolved = _resolve(value)
            if resolved is None:
                continue
            kwargs[key] = _coerce(key, resolved)
        return cls(**kwargs)


class _EnvVar:
    """Placeholder for a ``!env VAR_NAME`` value."""

    def __init__(self, var_name: str) -> None:
        self.var_name = var_name


def _env_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> _EnvVar:
    """Handle ``!env VAR_NAME`` in YAML."""
    value = loader.construct_scalar(node)  # type: ignore[arg-type]
    return _EnvVar(str(value))


def _make_loader() -> type[yaml.SafeLoader]:
    """Create a YAML loader that understands ``!env``."""

    class EnvLoader(yaml.SafeLoader):
        pass

    EnvLoader.add_constructor("!env", _env_constructor)
    return EnvLoader


def _resolve(value: object) -> object:
    """Replace ``_EnvVar`` placeholders with environment values."""
    if isinstance(value, _EnvVar):
        return os.environ.get(value.var_name) or None
    if isinstance(value, dict):
        return {k: _resolve(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve(v) for v in value]
    return value


def _coerce(key: str, value: object) -> object:
    """Convert a resolved YAML value to the type of field ``key``."""
    try:
        if key in ("build_timeout", "attach_timeout"):
            return float(value)  # type: ignore[arg-type]
        if key == "build_failure_status":
            return int(value)  # type: ignore[call-overload]
        if key == "compile_env":
            if not isinstance(value, dict):
                raise ConfigError("compile_env must be a YAML mapping")
            return {str(k): str(v) for k, v in value.items()}
        if key == "config_filenames":
            if not isinstance(value, list):
                raise ConfigError("config_filenames must be a YAML list")
            return frozenset(str(v) for v in value)
        if key == "mtime":
            if isinstance(value, datetime):
                return value
            return datetime.fromisoformat(str(value))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {key}: {value!r}") from e
    return str(value)
