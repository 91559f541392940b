# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared pytest fixtures for sandbox tests."""

import io
import tarfile
import tempfile
from collections.abc import Iterable
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from scraperrun.sandbox import ContainerRuntime


class ChunkedPipe:
    """Pipe stand-in whose read1() returns pre-arranged chunks."""

    def __init__(self, chunks: Iterable[bytes]) -> None:
        self._chunks = list(chunks)

    def read1(self, size: int = -1) -> bytes:
        if not self._chunks:
            return b""
        return self._chunks.pop(0)


def create_mock_logs_process(
    stdout_chunks: Iterable[bytes] = (),
    stderr_chunks: Iterable[bytes] = (),
    returncode: int = 0,
) -> MagicMock:
    """Create a mock Popen for ``<runtime> logs --follow``.

    stdout and stderr deliver the given chunks and then EOF.
    """
    mock = MagicMock()
    mock.stdout = ChunkedPipe(stdout_chunks)
    mock.stderr = ChunkedPipe(stderr_chunks)
    mock.wait.return_value = returncode
    mock.poll.return_value = returncode
    mock.returncode = returncode
    return mock


def make_file_tar(name: str, content: bytes) -> bytes:
    """Build the tar stream ``<runtime> cp container:path -`` produces."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        info = tarfile.TarInfo(name)
        info.size = len(content)
        tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


@pytest.fixture
def runtime() -> MagicMock:
    """A ContainerRuntime double that succeeds at everything.

    Images exist, builds return sequential IDs, containers exit 0 and
    produce no output or files.
    """
    mock = MagicMock(spec=ContainerRuntime)
    mock.container_command = "docker"
    mock.image_id.return_value = "sha256:base"
    build_ids = iter(f"sha256:layer{i}" for i in range(1, 100))
    mock.build.side_effect = lambda *args, **kwargs: next(build_ids)
    mock.create_container.return_value = "c0ffee"
    mock.ip_address.return_value = "172.17.0.2"
    mock.logs.side_effect = lambda *args: create_mock_logs_process()
    mock.exit_code.return_value = 0
    mock.wait.return_value = 0
    mock.copy_from.return_value = None
    return mock


@pytest.fixture
def temp_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Redirect ``tempfile`` to a fresh directory for leak checks."""
    root = tmp_path / "tmp"
    root.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(root))
    return root
