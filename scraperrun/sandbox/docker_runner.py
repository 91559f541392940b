# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Compile and run a scraper in a fixed sequence of image layers.

For each run:

1. Get the base build image (pulled once, then served from the local
   image store).
2. Inject the scraper's configuration files (dependency manifests).
3. Compile: install dependencies on top of the configuration layer.
   Because only the configuration files are present, this layer is
   reused until the dependencies change.
4. Inject the rest of the scraper and hand it to the scraper account.
5. Run the scraper under the timing wrapper and copy out the requested
   result files.
6. Parse the timing report, make result paths relative to the
   application root and delete the final layer.
"""

from __future__ import annotations

import logging
import posixpath
import tempfile
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

from scraperrun.sandbox import time_command
from scraperrun.sandbox._container import ContainerRunner
from scraperrun.sandbox._image import ImageBuilder
from scraperrun.sandbox._runtime import (
    ContainerNameConflictError,
    ContainerRuntime,
    ImageBuildError,
    RequeueError,
    RuntimeConnectionError,
)
from scraperrun.sandbox._staging import copy_config_to_directory
from scraperrun.sandbox.config import RunnerConfig
from scraperrun.sandbox.types import (
    Completed,
    FatalFailure,
    Image,
    IpAddressCallback,
    LogCallback,
    LogStream,
    RetryableFailure,
    RunOutcome,
    RunResult,
)


logger = logging.getLogger(__name__)


class DockerRunner:
    """Runs untrusted scraper code through the layered build recipe.

    Thread Safety:
        Thread-safe. Concurrent calls to compile_and_run() share only the
        runtime adapter; each must use its own container name.
    """

    def __init__(
        self,
        config: RunnerConfig | None = None,
        *,
        runtime: ContainerRuntime | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            config: Pipeline configuration. Defaults to RunnerConfig().
            runtime: Runtime adapter override, mainly for tests.
        """
        self._config = config or RunnerConfig()
        self._runtime = runtime or ContainerRuntime(
            self._config.container_command
        )
        self._images = ImageBuilder(
            self._runtime,
            app_root=self._config.app_root,
            scraper_user=self._config.scraper_user,
            build_timeout=self._config.build_timeout,
            mtime=self._config.mtime,
        )
        self._containers = ContainerRunner(
            self._runtime,
            attach_timeout=self._config.attach_timeout,
            error_prefix=self._config.error_prefix,
        )

    @property
    def config(self) -> RunnerConfig:
        """The configuration this runner was built with."""
        return self._config

    def compile_and_run(
        self,
        repo_path: Path,
        env: Mapping[str, str],
        container_name: str,
        labels: Mapping[str, str],
        files: Sequence[str],
        *,
        on_log: LogCallback | None = None,
        on_ip_address: IpAddressCallback | None = None,
    ) -> RunOutcome:
        """Build and run the scraper checked out at ``repo_path``.

        Args:
            repo_path: Scraper repository checkout.
            env: Environment variables for the scraper.
            container_name: Unique name for the run's container.
            labels: Metadata attached to the container.
            files: Result files to copy back, relative to the app root.
                The timing report path is reserved and ignored here.
            on_log: Receives ``(stream, line)`` for build and run output.
            on_ip_address: Receives the container address once known.

        Returns:
            Completed with the RunResult (a failed compile is reported
            with the configured failure status), RetryableFailure when
            the infrastructure is having trouble, or FatalFailure when
            retrying would not help.

        Raises:
            Exception: Anything raised while the container is attached,
                including by the callbacks, is re-raised after the
                container has been killed.
        """
        try:
            result = self._compile_and_run(
                repo_path,
                env,
                container_name,
                labels,
                files,
                on_log=on_log,
                on_ip_address=on_ip_address,
            )
        except RequeueError as e:
            return RetryableFailure(e.reason)
        except (ContainerNameConflictError, ImageBuildError) as e:
            logger.error("Run %s failed: %s", container_name, e)
            return FatalFailure(str(e))
        return Completed(result)

    def update_image(self, on_log: LogCallback | None = None) -> Image:
        """Pull the newest version of the base build image."""
        logger.info("Updating base image %s", self._config.base_image)
        return self._images.pull_image(
            self._config.base_image, _stream_to(on_log, LogStream.INTERNALOUT)
        )

    def _compile_and_run(
        self,
        repo_path: Path,
        env: Mapping[str, str],
        container_name: str,
        labels: Mapping[str, str],
        files: Sequence[str],
        *,
        on_log: LogCallback | None,
        on_ip_address: IpAddressCallback | None,
    ) -> RunResult:
        config = self._config
        runnable = self._build_layers(
            repo_path, _stream_to(on_log, LogStream.INTERNALOUT)
        )
        if runnable is None:
            logger.info("Compile failed for %s", container_name)
            return RunResult(status_code=config.build_failure_status)

        time_file = posixpath.join(config.app_root, config.time_file)
        command = time_command.command(config.start_command, time_file)
        capture_paths = []
        for name in files:
            path = posixpath.normpath(posixpath.join(config.app_root, name))
            if path == posixpath.normpath(time_file):
                # The timing report is consumed here, never returned.
                logger.warning(
                    "Ignoring capture of %s: reserved for timing", name
                )
                continue
            capture_paths.append(path)
        capture_paths.append(time_file)

        try:
            status_code, data = self._containers.run(
                runnable,
                command,
                env,
                container_name,
                labels,
                capture_paths,
                on_log=on_log,
                on_ip_address=on_ip_address,
            )
        finally:
            # Another run may share this layer; removal is advisory.
            self._images.remove_image(runnable)

        time_data = data.pop(time_file, None)
        timing = None
        if time_data is not None:
            timing = time_command.parse(
                time_data.decode("utf-8", errors="replace")
            )

        results = {
            posixpath.relpath(path, config.app_root): content
            for path, content in data.items()
        }
        return RunResult(status_code=status_code, files=results, timing=timing)

    def _build_layers(
        self, repo_path: Path, internal: Callable[[str], None]
    ) -> Image | None:
        """Build the runnable image; None if the compile step failed.

        Raises:
            RequeueError: If the runtime cannot be reached.
            ImageBuildError: If an injection layer fails to build.
        """
        config = self._config
        try:
            base = self._images.get_or_pull_image(config.base_image, internal)

            with tempfile.TemporaryDirectory(prefix="scraperrun-") as tmpdir:
                copy_config_to_directory(
                    repo_path, Path(tmpdir), True, config.config_filenames
                )
                internal("Injecting configuration and compiling...\n")
                configured = self._images.inject_files(base, Path(tmpdir))

            compiled = self._images.compile(
                configured,
                config.compile_command,
                env=config.compile_env,
                on_output=internal,
            )
            if compiled is None:
                return None

            with tempfile.TemporaryDirectory(prefix="scraperrun-") as tmpdir:
                copy_config_to_directory(
                    repo_path, Path(tmpdir), False, config.config_filenames
                )
                internal("Injecting scraper and running...\n")
                return self._images.inject_files_with_ownership(
                    compiled, Path(tmpdir)
                )
        except RuntimeConnectionError as e:
            reason = f"Could not connect to container runtime: {e}"
            logger.error("%s", reason)
            raise RequeueError(reason) from e


def _stream_to(
    on_log: LogCallback | None, stream: LogStream
) -> Callable[[str], None]:
    """Adapt a log callback to a single-argument line sink."""

    def sink(text: str) -> None:
        if on_log is not None:
            on_log(stream, text)

    return sink
