# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Sandbox library for compiling and running untrusted scrapers.

The sandbox owns image layering, container lifecycle, output streaming
and result extraction. Callers decide what to run and what to do with
the result; the sandbox handles how it runs safely.
"""

from scraperrun.sandbox._archive import (
    FIXED_MTIME,
    copy_directory_contents,
    create_archive,
    extract_archive,
    normalize_mtimes,
)
from scraperrun.sandbox._container import (
    CPU_SHARES,
    MEMORY_LIMIT,
    AttachTimeoutError,
    ContainerRunner,
    LineSplitter,
)
from scraperrun.sandbox._extract import extract_files
from scraperrun.sandbox._image import ImageBuilder, dockerfile_contents
from scraperrun.sandbox._runtime import (
    ContainerNameConflictError,
    ContainerRuntime,
    ContainerRuntimeError,
    ImageBuildError,
    ImageInUseError,
    ImageNotFoundError,
    RequeueError,
    RuntimeConnectionError,
    SandboxError,
)
from scraperrun.sandbox._staging import (
    CONFIG_FILENAMES,
    copy_config_to_directory,
    copy_filtered,
)
from scraperrun.sandbox.config import ConfigError, RunnerConfig
from scraperrun.sandbox.docker_runner import DockerRunner
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
    TimingMetrics,
)


__all__ = [
    # runner
    "DockerRunner",
    "RunnerConfig",
    "ConfigError",
    # components
    "ContainerRunner",
    "ContainerRuntime",
    "ImageBuilder",
    "LineSplitter",
    "dockerfile_contents",
    "extract_files",
    # types
    "Completed",
    "FatalFailure",
    "Image",
    "IpAddressCallback",
    "LogCallback",
    "LogStream",
    "RetryableFailure",
    "RunOutcome",
    "RunResult",
    "TimingMetrics",
    # archives and staging
    "CONFIG_FILENAMES",
    "FIXED_MTIME",
    "copy_config_to_directory",
    "copy_directory_contents",
    "copy_filtered",
    "create_archive",
    "extract_archive",
    "normalize_mtimes",
    # limits
    "CPU_SHARES",
    "MEMORY_LIMIT",
    # errors
    "AttachTimeoutError",
    "ContainerNameConflictError",
    "ContainerRuntimeError",
    "ImageBuildError",
    "ImageInUseError",
    "ImageNotFoundError",
    "RequeueError",
    "RuntimeConnectionError",
    "SandboxError",
]
