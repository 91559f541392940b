# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Synchronous adapter over the container runtime CLI.

Every call into ``docker`` (or ``podman``) goes through
:class:`ContainerRuntime`. Failures are classified from the CLI's stderr
into the narrow exception types below so that callers can decide what is
transient (connection trouble, missing image), what is the caller's
fault (container name already taken) and what is merely advisory
(removing an image that something else still uses).
"""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
import threading
from collections import deque
from collections.abc import Callable, Iterable, Mapping, Sequence
from pathlib import Path


logger = logging.getLogger(__name__)


class SandboxError(Exception):
    """Base exception for sandbox infrastructure failures."""


class ContainerRuntimeError(SandboxError):
    """A container runtime command failed unexpectedly."""


class RuntimeConnectionError(ContainerRuntimeError):
    """The container runtime could not be reached."""


class ImageNotFoundError(ContainerRuntimeError):
    """The requested image does not exist locally or upstream."""


class ImageInUseError(ContainerRuntimeError):
    """An image could not be removed because something still uses it."""


class ContainerNameConflictError(ContainerRuntimeError):
    """A container with the requested name already exists."""


class ImageBuildError(SandboxError):
    """Raised when a layer that must always build could not be built."""


class RequeueError(SandboxError):
    """Transient infrastructure failure; the whole run should be retried.

    Attributes:
        reason: Human-readable description of what went wrong.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


_CONNECTION_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "error during connect",
    "unable to connect to podman",
    "connection refused",
)
_IMAGE_NOT_FOUND_MARKERS = (
    "no such image",
    "unable to find image",
    "image not known",
    "manifest unknown",
    "pull access denied",
)
_NAME_CONFLICT_MARKERS = ("already in use",)
_IMAGE_IN_USE_MARKERS = (
    "conflict",
    "image is in use",
    "image used by",
    "being used by",
)
_PATH_NOT_FOUND_MARKERS = (
    "could not find the file",
    "no such file or directory",
    "no such container:path",
)


def classify_error(message: str) -> ContainerRuntimeError:
    """Map runtime CLI error output to an exception instance.

    Args:
        message: The command's stderr (or a description of the failure).

    Returns:
        The most specific ContainerRuntimeError subclass that matches.
    """
    lowered = message.lower()
    if any(marker in lowered for marker in _CONNECTION_MARKERS):
        return RuntimeConnectionError(message)
    # Name conflicts mention "conflict" too, so test them first.
    if any(marker in lowered for marker in _NAME_CONFLICT_MARKERS):
        return ContainerNameConflictError(message)
    if any(marker in lowered for marker in _IMAGE_NOT_FOUND_MARKERS):
        return ImageNotFoundError(message)
    if any(marker in lowered for marker in _IMAGE_IN_USE_MARKERS):
        return ImageInUseError(message)
    return ContainerRuntimeError(message)


def redact_command(cmd: Sequence[str]) -> list[str]:
    """Mask environment variable values in a runtime command line."""
    redacted: list[str] = []
    skip_next = False
    for i, arg in enumerate(cmd):
        if skip_next:
            skip_next = False
            continue
        if arg == "-e" and i + 1 < len(cmd) and "=" in cmd[i + 1]:
            var_name = cmd[i + 1].split("=")[0]
            redacted.extend(["-e", f"{var_name}=***"])
            skip_next = True
            continue
        redacted.append(arg)
    return redacted


class ContainerRuntime:
    """Runs container runtime commands.

    Thread Safety:
        Stateless apart from the command name; safe to share between
        concurrent runs.
    """

    def __init__(self, container_command: str = "docker") -> None:
        self._command = container_command

    @property
    def container_command(self) -> str:
        """Container runtime executable (docker or podman)."""
        return self._command

    # -- images -----------------------------------------------------------

    def image_id(self, name: str) -> str | None:
        """Return the ID of a local image, or None if it is not present."""
        try:
            result = self._run(
                ["image", "inspect", "--format", "{{.Id}}", name]
            )
        except ImageNotFoundError:
            return None
        return result.stdout.decode().strip() or None

    def pull(
        self, name: str, on_output: Callable[[str], None] | None = None
    ) -> None:
        """Pull an image, streaming progress lines to ``on_output``.

        Raises:
            ContainerRuntimeError: If the pull fails.
        """
        lines: list[str] = []

        def collect(line: str) -> None:
            lines.append(line)
            if on_output is not None:
                on_output(line)

        returncode = self._stream(["pull", name], collect)
        if returncode != 0:
            raise classify_error("".join(lines[-20:]).strip() or name)

    def build(
        self,
        context_dir: Path,
        on_output: Callable[[str], None] | None = None,
        timeout: float | None = None,
    ) -> str | None:
        """Build an image from ``context_dir/Dockerfile``.

        The legacy builder is requested so that progress is plain,
        line-oriented text. The ID file lives outside the context so it
        never becomes part of it.

        Args:
            context_dir: Build context containing a Dockerfile.
            on_output: Receives each line of build output.
            timeout: Seconds before the build is killed.

        Returns:
            The new image ID, or None if the build did not succeed.

        Raises:
            RuntimeConnectionError: If the build failed because the
                runtime went away.
        """
        tail: deque[str] = deque(maxlen=20)

        def collect(line: str) -> None:
            tail.append(line)
            if on_output is not None:
                on_output(line)

        with tempfile.TemporaryDirectory(prefix="scraperrun-iid-") as tmpdir:
            iidfile = Path(tmpdir) / "image.id"
            env = {**os.environ, "DOCKER_BUILDKIT": "0"}
            returncode = self._stream(
                ["build", "--iidfile", str(iidfile), str(context_dir)],
                collect,
                timeout=timeout,
                env=env,
            )
            if returncode != 0:
                _raise_if_disconnected(tail)
            if returncode != 0 or not iidfile.exists():
                logger.warning(
                    "Image build in %s failed (exit_code=%d)",
                    context_dir,
                    returncode,
                )
                return None
            return iidfile.read_text().strip()

    def remove_image(self, image_id: str) -> None:
        """Delete an image, keeping its parent layers.

        Raises:
            ContainerRuntimeError: If deletion fails.
        """
        self._run(["rmi", "--no-prune", image_id])

    # -- containers -------------------------------------------------------

    def create_container(
        self,
        image: str,
        argv: Sequence[str],
        *,
        name: str,
        user: str,
        cpu_shares: int,
        memory: int,
        env: Mapping[str, str],
        labels: Mapping[str, str],
    ) -> str:
        """Create (but do not start) a container.

        Returns:
            The container ID.

        Raises:
            RuntimeConnectionError: If the runtime is unreachable.
            ImageNotFoundError: If ``image`` does not exist locally.
            ContainerNameConflictError: If ``name`` is already taken.
        """
        args = [
            "create",
            "--pull",
            "never",
            "--name",
            name,
            "--user",
            user,
            "--cpu-shares",
            str(cpu_shares),
            "--memory",
            str(memory),
        ]
        for key, value in env.items():
            args.extend(["-e", f"{key}={value}"])
        for key, value in labels.items():
            args.extend(["--label", f"{key}={value}"])
        args.append(image)
        args.extend(argv)
        result = self._run(args)
        return result.stdout.decode().strip()

    def start(self, container_id: str) -> None:
        """Start a created container."""
        self._run(["start", container_id])

    def ip_address(self, container_id: str) -> str:
        """Return the container's address on the default network."""
        result = self._run(
            [
                "inspect",
                "--format",
                "{{.NetworkSettings.IPAddress}}",
                container_id,
            ]
        )
        return result.stdout.decode().strip()

    def logs(self, container_id: str) -> subprocess.Popen[bytes]:
        """Follow a container's output from the beginning.

        The returned process exits once the container stops. Container
        stdout and stderr arrive on the process's stdout and stderr.
        """
        cmd = [self._command, "logs", "--follow", container_id]
        logger.debug("Running: %s", " ".join(cmd))
        try:
            return subprocess.Popen(
                cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE
            )
        except FileNotFoundError as e:
            raise RuntimeConnectionError(
                f"Container runtime not found: {self._command}"
            ) from e

    def exit_code(self, container_id: str) -> int:
        """Return the exit code recorded for a container."""
        result = self._run(
            ["inspect", "--format", "{{.State.ExitCode}}", container_id]
        )
        return int(result.stdout.decode().strip())

    def wait(self, container_id: str) -> int:
        """Block until a container has stopped; return its exit code."""
        result = self._run(["wait", container_id])
        return int(result.stdout.decode().strip().splitlines()[-1])

    def kill(self, container_id: str) -> None:
        """Force-stop a container."""
        self._run(["kill", container_id])

    def remove_container(self, container_id: str) -> None:
        """Delete a container, stopping it first if needed."""
        self._run(["rm", "--force", container_id])

    def copy_from(self, container_id: str, path: str) -> bytes | None:
        """Fetch ``path`` out of a container as a tar archive.

        Returns:
            Archive bytes, or None if the path does not exist.
        """
        result = self._run(["cp", f"{container_id}:{path}", "-"], check=False)
        if result.returncode == 0:
            return result.stdout
        message = result.stderr.decode("utf-8", errors="replace").strip()
        if any(m in message.lower() for m in _PATH_NOT_FOUND_MARKERS):
            return None
        raise classify_error(message)

    # -- process plumbing -------------------------------------------------

    def _run(
        self, args: list[str], *, check: bool = True
    ) -> subprocess.CompletedProcess[bytes]:
        """Run a runtime command to completion, capturing its output."""
        cmd = [self._command, *args]
        logger.debug("Running: %s", " ".join(redact_command(cmd)))
        try:
            result = subprocess.run(cmd, capture_output=True)
        except FileNotFoundError as e:
            raise RuntimeConnectionError(
                f"Container runtime not found: {self._command}"
            ) from e
        if check and result.returncode != 0:
            message = result.stderr.decode("utf-8", errors="replace").strip()
            raise classify_error(message or f"{args[0]} failed")
        return result

    def _stream(
        self,
        args: list[str],
        on_output: Callable[[str], None] | None,
        *,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> int:
        """Run a command, passing each output line to ``on_output``.

        stderr is merged into stdout. If ``timeout`` elapses the process
        is killed and a non-zero return code results.
        """
        cmd = [self._command, *args]
        logger.debug("Streaming: %s", " ".join(cmd))
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=env,
            )
        except FileNotFoundError as e:
            raise RuntimeConnectionError(
                f"Container runtime not found: {self._command}"
            ) from e

        timer: threading.Timer | None = None
        if timeout:
            timer = threading.Timer(timeout, process.kill)
            timer.daemon = True
            timer.start()

        try:
            if process.stdout is not None:
                for raw in process.stdout:
                    line = raw.decode("utf-8", errors="replace")
                    if on_output is not None:
                        on_output(line)
            process.wait()
        except BaseException:
            process.kill()
            process.wait()
            raise
        finally:
            if timer is not None:
                timer.cancel()

        return process.returncode


def _raise_if_disconnected(lines: Iterable[str]) -> None:
    """Raise RuntimeConnectionError if a failed build lost the runtime.

    Only the last non-empty line is inspected: build scripts may print
    connection errors of their own, but the runtime's own failure is
    always reported last.
    """
    last = next(
        (line.strip() for line in reversed(list(lines)) if line.strip()), ""
    )
    error = classify_error(last)
    if isinstance(error, RuntimeConnectionError):
        raise error
