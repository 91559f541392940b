# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Resource-limited execution of a single scraper container.

A run creates the container, starts it, reports its address, follows its
combined output until it exits, collects the requested files and removes
it. Output is delivered to the caller one line at a time from the thread
that called :meth:`ContainerRunner.run`.
"""

from __future__ import annotations

import codecs
import logging
import queue
import subprocess
import threading
import time
from collections.abc import Mapping, Sequence
from typing import IO, NoReturn

from scraperrun.sandbox._extract import extract_files
from scraperrun.sandbox._runtime import (
    ContainerNameConflictError,
    ContainerRuntime,
    ContainerRuntimeError,
    ImageNotFoundError,
    RequeueError,
    RuntimeConnectionError,
    SandboxError,
)
from scraperrun.sandbox.types import (
    Image,
    IpAddressCallback,
    LogCallback,
    LogStream,
)


logger = logging.getLogger(__name__)

#: Relative CPU weight. Kept low so many scrapers can share a host.
CPU_SHARES = 307

#: Memory ceiling in bytes. Allows ten concurrent runs per GB of RAM.
MEMORY_LIMIT = 100 * 1024 * 1024

CONTAINER_USER = "root"

#: Four hours, matching the build timeout.
DEFAULT_ATTACH_TIMEOUT = 4 * 60 * 60

_READ_SIZE = 64 * 1024


class AttachTimeoutError(SandboxError):
    """The container produced no end of output within the timeout."""


class LineSplitter:
    """Turns arbitrarily chunked bytes into UTF-8 lines.

    Invalid byte sequences are replaced rather than rejected. A line is
    emitted once its newline arrives; whatever is left when the stream
    ends comes out of :meth:`flush` as a final partial line.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(
            errors="replace"
        )
        self._pending = ""

    def feed(self, data: bytes) -> list[str]:
        """Add a chunk; return the lines it completed."""
        text = self._pending + self._decoder.decode(data)
        parts = text.split("\n")
        self._pending = parts.pop()
        return [part + "\n" for part in parts]

    def flush(self) -> list[str]:
        """Return any trailing text that has no newline."""
        text = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return [text] if text else []


class ContainerRunner:
    """Runs one container to completion under fixed resource limits.

    Thread Safety:
        Holds no per-run state; one instance may serve concurrent runs,
        each of which must use a distinct container name.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        *,
        attach_timeout: float = DEFAULT_ATTACH_TIMEOUT,
        error_prefix: str = "Internal error",
    ) -> None:
        self._runtime = runtime
        self._attach_timeout = attach_timeout
        self._error_prefix = error_prefix

    def run(
        self,
        image: Image,
        command: str,
        env: Mapping[str, str],
        name: str,
        labels: Mapping[str, str],
        capture_paths: Sequence[str],
        *,
        on_log: LogCallback | None = None,
        on_ip_address: IpAddressCallback | None = None,
    ) -> tuple[int, dict[str, bytes]]:
        """Run ``command`` in a fresh container built from ``image``.

        Args:
            image: Image to run.
            command: Shell command, run through a login shell.
            env: Environment variables for the container.
            name: Unique container name.
            labels: Opaque metadata attached to the container.
            capture_paths: Absolute paths to copy out after the run.
            on_log: Receives ``(stream, line)`` for every output line.
            on_ip_address: Receives the container address once known.

        Returns:
            Tuple of exit code and captured files (missing files omitted).

        Raises:
            RequeueError: If the runtime is unreachable or the image is
                gone; the run should be retried later.
            ContainerNameConflictError: If ``name`` is already in use.
        """
        container_id = self._create(image, command, env, name, labels, on_log)
        logger.info("Created container %s (%s)", name, container_id)

        try:
            self._start_and_attach(container_id, on_log, on_ip_address)
        except BaseException as e:
            self._abort(container_id, name, e, on_log)
            raise

        try:
            reported = self._runtime.exit_code(container_id)
            # Copying from a container that is still shutting down is
            # unreliable. inspect may predate the exit; wait() does not.
            exit_code = self._runtime.wait(container_id)
            if exit_code != reported:
                logger.warning(
                    "Container %s exit code changed from %d to %d on wait",
                    name,
                    reported,
                    exit_code,
                )
            files = extract_files(self._runtime, container_id, capture_paths)
        finally:
            self._remove(container_id)

        logger.info(
            "Container %s finished (exit_code=%d, files=%d)",
            name,
            exit_code,
            len(files),
        )
        return exit_code, files

    def _create(
        self,
        image: Image,
        command: str,
        env: Mapping[str, str],
        name: str,
        labels: Mapping[str, str],
        on_log: LogCallback | None,
    ) -> str:
        try:
            return self._runtime.create_container(
                image.id,
                ["/bin/bash", "-l", "-c", command],
                name=name,
                user=CONTAINER_USER,
                cpu_shares=CPU_SHARES,
                memory=MEMORY_LIMIT,
                env=env,
                labels=labels,
            )
        except RuntimeConnectionError as e:
            reason = f"Could not connect to container runtime: {e}"
            self._requeue(reason, on_log, e)
        except ImageNotFoundError as e:
            self._requeue(f"Could not find image {image.id}", on_log, e)
        except ContainerNameConflictError:
            logger.warning("Container name %s is already in use", name)
            raise

    def _requeue(
        self, reason: str, on_log: LogCallback | None, cause: Exception
    ) -> NoReturn:
        logger.error("%s", reason)
        _emit(
            on_log, LogStream.INTERNALERR, f"{self._error_prefix}: {reason}\n"
        )
        _emit(on_log, LogStream.INTERNALERR, "Requeueing...\n")
        raise RequeueError(reason) from cause

    def _start_and_attach(
        self,
        container_id: str,
        on_log: LogCallback | None,
        on_ip_address: IpAddressCallback | None,
    ) -> None:
        self._runtime.start(container_id)

        address = self._runtime.ip_address(container_id)
        if address and on_ip_address is not None:
            on_ip_address(address)

        process = self._runtime.logs(container_id)
        try:
            self._pump(process, on_log)
            returncode = process.wait()
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()
        if returncode != 0:
            logger.warning(
                "Log stream for %s ended with exit code %d",
                container_id,
                returncode,
            )

    def _pump(
        self, process: subprocess.Popen[bytes], on_log: LogCallback | None
    ) -> None:
        """Deliver output from both pipes until they are closed."""
        chunks: queue.Queue[tuple[LogStream, bytes | None]] = queue.Queue()
        readers = [
            (LogStream.STDOUT, process.stdout),
            (LogStream.STDERR, process.stderr),
        ]
        splitters: dict[LogStream, LineSplitter] = {}
        for stream, pipe in readers:
            if pipe is None:
                continue
            splitters[stream] = LineSplitter()
            threading.Thread(
                target=_read_pipe,
                args=(stream, pipe, chunks),
                name=f"container-{stream.value}",
                daemon=True,
            ).start()

        deadline = time.monotonic() + self._attach_timeout
        open_streams = len(splitters)
        while open_streams:
            remaining = deadline - time.monotonic()
            try:
                stream, data = chunks.get(timeout=max(remaining, 0))
            except queue.Empty:
                raise AttachTimeoutError(
                    f"No end of output after {self._attach_timeout}s"
                ) from None
            splitter = splitters[stream]
            if data is None:
                open_streams -= 1
                lines = splitter.flush()
            else:
                lines = splitter.feed(data)
            for line in lines:
                _emit(on_log, stream, line)

    def _abort(
        self,
        container_id: str,
        name: str,
        error: BaseException,
        on_log: LogCallback | None,
    ) -> None:
        """Kill and remove a container after a failed or cancelled run."""
        logger.error("Run of container %s aborted: %r", name, error)
        try:
            self._runtime.kill(container_id)
        except ContainerRuntimeError as e:
            logger.warning("Failed to kill container %s: %s", name, e)
        self._remove(container_id)
        try:
            _emit(
                on_log,
                LogStream.INTERNALERR,
                f"{self._error_prefix}: {error}\n",
            )
            _emit(
                on_log,
                LogStream.INTERNALERR,
                "Stopping current container and requeueing\n",
            )
        except Exception as e:
            # The callback may be what failed in the first place.
            logger.warning("Could not report aborted run: %s", e)

    def _remove(self, container_id: str) -> None:
        try:
            self._runtime.remove_container(container_id)
        except ContainerRuntimeError as e:
            logger.warning(
                "Failed to remove container %s: %s", container_id, e
            )


def _read_pipe(
    stream: LogStream,
    pipe: IO[bytes],
    chunks: queue.Queue[tuple[LogStream, bytes | None]],
) -> None:
    """Forward raw chunks from ``pipe``; a None chunk marks the end."""
    try:
        while True:
            data = pipe.read1(_READ_SIZE)  # type: ignore[attr-defined]
            if not data:
                break
            chunks.put((stream, data))
    finally:
        chunks.put((stream, None))


def _emit(on_log: LogCallback | None, stream: LogStream, text: str) -> None:
    if on_log is not None:
        on_log(stream, text)
