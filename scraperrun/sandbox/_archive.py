# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Directory archives and reproducible build contexts.

Archives are plain POSIX tar streams. Symbolic links are stored as links
and file contents are treated as opaque bytes, so a directory survives
``extract_archive(create_archive(d), d2)`` byte for byte.

``normalize_mtimes`` pins every modification time in a tree to a single
instant. The image builder calls it on each staged build context so that
layer cache keys depend only on file contents.
"""

from __future__ import annotations

import io
import logging
import os
import shutil
import stat
import tarfile
from datetime import datetime
from pathlib import Path


logger = logging.getLogger(__name__)

#: Modification time applied to staged build contexts.
FIXED_MTIME = datetime(2000, 1, 1)


def create_archive(directory: Path) -> bytes:
    """Serialize a directory tree into a tar archive.

    Entry names are relative to ``directory``. Symlinks are archived as
    links and never followed.

    Args:
        directory: Root of the tree to archive.

    Returns:
        The archive as raw bytes.
    """
    buffer = io.BytesIO()
    with tarfile.open(
        fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT
    ) as tar:
        for path in sorted(_walk(directory)):
            arcname = path.relative_to(directory).as_posix()
            tar.add(path, arcname=arcname, recursive=False)
    data = buffer.getvalue()
    logger.debug("Archived %s (%d bytes)", directory, len(data))
    return data


def extract_archive(data: bytes, directory: Path) -> None:
    """Write the contents of a tar archive into ``directory``.

    Entries that would land outside ``directory`` are rejected. File
    permissions are restored as archived, except setuid and setgid.

    Args:
        data: Archive bytes, as produced by :func:`create_archive`.
        directory: Destination directory (created if missing).
    """
    directory.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
        tar.extractall(directory, filter=_keep_permissions_filter)


def _keep_permissions_filter(
    member: tarfile.TarInfo, dest_path: str
) -> tarfile.TarInfo:
    """Reject unsafe paths like the ``tar`` filter, but keep permissions.

    Group and other write bits survive; setuid and setgid bits do not.
    """
    filtered = tarfile.tar_filter(member, dest_path)
    if filtered.mode is None or member.mode is None:
        return filtered
    mode = member.mode & ~(stat.S_ISUID | stat.S_ISGID) & 0o7777
    return filtered.replace(mode=mode, deep=False)


def normalize_mtimes(
    directory: Path, timestamp: datetime = FIXED_MTIME
) -> None:
    """Set the mtime of ``directory`` and everything below it.

    Symlinks themselves are touched where the platform allows it; their
    targets are left alone.

    Args:
        directory: Root of the tree, itself included.
        timestamp: The instant to apply.
    """
    seconds = timestamp.timestamp()
    times = (seconds, seconds)
    for path in _walk(directory):
        if path.is_symlink():
            if os.utime in os.supports_follow_symlinks:
                os.utime(path, times, follow_symlinks=False)
            continue
        os.utime(path, times)
    os.utime(directory, times)


def copy_directory_contents(source: Path, dest: Path) -> None:
    """Copy every entry of ``source`` (dot-files included) into ``dest``.

    Directories are copied recursively and symlinks are recreated as
    links.
    """
    dest.mkdir(parents=True, exist_ok=True)
    for entry in source.iterdir():
        copy_entry(entry, dest / entry.name)


def copy_entry(source: Path, dest: Path) -> None:
    """Copy a single file, symlink or directory tree."""
    if source.is_symlink():
        os.symlink(os.readlink(source), dest)
    elif source.is_dir():
        shutil.copytree(source, dest, symlinks=True)
    else:
        shutil.copy2(source, dest)


def _walk(directory: Path) -> list[Path]:
    """List every path below ``directory`` without following symlinks."""
    paths: list[Path] = []
    for root, dirnames, filenames in os.walk(directory):
        root_path = Path(root)
        # os.walk reports symlinked directories in dirnames but does not
        # descend into them with followlinks=False.
        for name in dirnames + filenames:
            paths.append(root_path / name)
    return paths
