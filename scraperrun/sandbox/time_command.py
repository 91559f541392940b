# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Resource usage measurement for scraper runs.

The scraper's start command is wrapped in GNU ``time -v``, which writes a
verbose report to a file inside the container. The report is copied out
with the other result files and parsed into :class:`TimingMetrics`.
"""

from __future__ import annotations

import logging
import shlex

from scraperrun.sandbox.types import TimingMetrics


logger = logging.getLogger(__name__)

TIME_BINARY = "/usr/bin/time"

# Report label -> (TimingMetrics field, converter)
_FIELDS: dict[str, tuple[str, type]] = {
    "User time (seconds)": ("utime", float),
    "System time (seconds)": ("stime", float),
    "Maximum resident set size (kbytes)": ("maxrss", int),
    "Major (requiring I/O) page faults": ("majflt", int),
    "Minor (reclaiming a frame) page faults": ("minflt", int),
    "File system inputs": ("inblock", int),
    "File system outputs": ("oublock", int),
    "Voluntary context switches": ("nvcsw", int),
    "Involuntary context switches": ("nivcsw", int),
}
_WALL_TIME_LABEL = "Elapsed (wall clock) time (h:mm:ss or m:ss)"


def command(inner_command: str, output_file: str) -> str:
    """Wrap ``inner_command`` so its resource usage lands in a file."""
    return (
        f"{TIME_BINARY} -v -o {shlex.quote(output_file)} {inner_command}"
    )


def parse(text: str) -> TimingMetrics:
    """Parse a ``time -v`` report.

    Lines that are not ``label: value`` pairs, or whose label is not
    recognised, are ignored. Recognised fields that are missing or
    malformed are reported as zero.
    """
    values: dict[str, float | int] = {}
    for line in text.splitlines():
        label, sep, raw = line.strip().rpartition(": ")
        if not sep:
            continue
        raw = raw.strip()
        try:
            if label == _WALL_TIME_LABEL:
                values["wall_time"] = parse_wall_time(raw)
            elif label in _FIELDS:
                name, convert = _FIELDS[label]
                values[name] = convert(raw)
        except ValueError:
            logger.warning("Ignoring malformed timing line: %r", line)
    return TimingMetrics(**values)


def parse_wall_time(raw: str) -> float:
    """Convert ``h:mm:ss`` or ``m:ss.ss`` to seconds."""
    seconds = 0.0
    for part in raw.split(":"):
        seconds = seconds * 60 + float(part)
    return seconds
