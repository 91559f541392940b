# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Split a scraper repository into configuration and application files.

Configuration files (dependency manifests and process declarations) are
injected before the compile step so the compile layer only changes when
dependencies change. Everything else is injected afterwards.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from scraperrun.sandbox._archive import copy_entry


logger = logging.getLogger(__name__)

#: Files consumed at build time, for each supported language ecosystem.
CONFIG_FILENAMES: frozenset[str] = frozenset(
    {
        "Procfile",
        "Gemfile",
        "Gemfile.lock",
        "requirements.txt",
        "runtime.txt",
        "composer.json",
        "composer.lock",
        "app.psgi",
        "cpanfile",
    }
)


def copy_filtered(
    source: Path, dest: Path, predicate: Callable[[str], bool]
) -> list[str]:
    """Copy the top-level entries of ``source`` accepted by ``predicate``.

    Args:
        source: Directory to copy from.
        dest: Directory to copy into (created if missing).
        predicate: Called with each entry name; entries for which it
            returns True are copied recursively.

    Returns:
        Sorted names of the copied entries.
    """
    dest.mkdir(parents=True, exist_ok=True)
    copied: list[str] = []
    for entry in sorted(source.iterdir()):
        if predicate(entry.name):
            copy_entry(entry, dest / entry.name)
            copied.append(entry.name)
    logger.debug("Copied %d entries from %s to %s", len(copied), source, dest)
    return copied


def copy_config_to_directory(
    source: Path,
    dest: Path,
    copy_config: bool,
    config_filenames: frozenset[str] = CONFIG_FILENAMES,
) -> list[str]:
    """Copy either only the configuration files or only everything else.

    Args:
        source: Scraper repository checkout.
        dest: Staging directory.
        copy_config: True to copy configuration files, False to copy the
            remaining application files.
        config_filenames: The configuration file allow-list.

    Returns:
        Sorted names of the copied entries.
    """
    if copy_config:
        return copy_filtered(
            source, dest, lambda name: name in config_filenames
        )
    return copy_filtered(
        source, dest, lambda name: name not in config_filenames
    )
