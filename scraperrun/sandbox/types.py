# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Value types shared across the sandbox pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol


class LogStream(str, Enum):
    """Names of the caller-visible log streams.

    ``stdout`` and ``stderr`` carry output written by the scraper or the
    build. The ``internal*`` streams carry messages from the pipeline
    itself, so operators can tell infrastructure trouble apart from
    scraper-authored output.
    """

    STDOUT = "stdout"
    STDERR = "stderr"
    INTERNALOUT = "internalout"
    INTERNALERR = "internalerr"


class LogCallback(Protocol):
    """Receives one log chunk (normally a single line)."""

    def __call__(self, stream: LogStream, text: str) -> None: ...


class IpAddressCallback(Protocol):
    """Receives the container's network address, at most once per run."""

    def __call__(self, address: str) -> None: ...


@dataclass(frozen=True)
class Image:
    """A container image identified by its runtime-assigned ID."""

    id: str


@dataclass(frozen=True)
class TimingMetrics:
    """Resource usage reported by the timing wrapper.

    Attributes:
        wall_time: Elapsed wall clock time in seconds.
        utime: User CPU time in seconds.
        stime: System CPU time in seconds.
        maxrss: Peak resident set size in kilobytes.
        minflt: Minor page faults.
        majflt: Major page faults.
        inblock: File system inputs.
        oublock: File system outputs.
        nvcsw: Voluntary context switches.
        nivcsw: Involuntary context switches.
    """

    wall_time: float = 0.0
    utime: float = 0.0
    stime: float = 0.0
    maxrss: int = 0
    minflt: int = 0
    majflt: int = 0
    inblock: int = 0
    oublock: int = 0
    nvcsw: int = 0
    nivcsw: int = 0


@dataclass(frozen=True)
class RunResult:
    """Outcome of a single scraper run.

    Attributes:
        status_code: Exit status of the scraper, or the build failure
            sentinel when compilation did not produce an image.
        files: Captured file contents keyed by path relative to the
            application root.
        timing: Parsed timing metrics, or None if the timing file was
            never written.
    """

    status_code: int
    files: dict[str, bytes] = field(default_factory=dict)
    timing: TimingMetrics | None = None


@dataclass(frozen=True)
class Completed:
    """The pipeline ran to completion (the scraper may still have failed)."""

    result: RunResult


@dataclass(frozen=True)
class RetryableFailure:
    """Transient infrastructure trouble; the whole run should be requeued."""

    reason: str


@dataclass(frozen=True)
class FatalFailure:
    """The run cannot proceed and retrying will not help."""

    reason: str


RunOutcome = Completed | RetryableFailure | FatalFailure
