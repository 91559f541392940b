# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Copy result files out of a stopped container."""

from __future__ import annotations

import logging
import posixpath
import tempfile
from collections.abc import Iterable
from pathlib import Path

from scraperrun.sandbox._archive import extract_archive
from scraperrun.sandbox._runtime import ContainerRuntime


logger = logging.getLogger(__name__)


def extract_files(
    runtime: ContainerRuntime, container_id: str, paths: Iterable[str]
) -> dict[str, bytes]:
    """Read files from a container's filesystem.

    Each path is fetched as a tar archive and unpacked into a private
    temporary directory. Paths that do not exist in the container, or
    that are not regular files, are left out of the result.

    Args:
        runtime: Container runtime adapter.
        container_id: Container to read from.
        paths: Absolute paths inside the container.

    Returns:
        Mapping from requested path to raw file content.
    """
    files: dict[str, bytes] = {}
    for path in paths:
        data = runtime.copy_from(container_id, path)
        if data is None:
            logger.debug("%s not present in container %s", path, container_id)
            continue
        with tempfile.TemporaryDirectory(prefix="scraperrun-") as tmpdir:
            extract_archive(data, Path(tmpdir))
            extracted = Path(tmpdir) / posixpath.basename(path)
            if extracted.is_file() and not extracted.is_symlink():
                files[path] = extracted.read_bytes()
            else:
                logger.debug("%s is not a regular file, skipping", path)
    return files
