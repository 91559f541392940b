# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Layered image building for scraper runs.

Each layer is built from a fresh, throwaway build context containing a
generated Dockerfile whose first line references the parent image by ID.
Modification times in the context are pinned before building so that the
runtime's layer cache only misses when file contents change.
"""

from __future__ import annotations

import logging
import re
import tempfile
import time
from collections.abc import Callable, Sequence
from datetime import datetime
from pathlib import Path

from scraperrun.sandbox._archive import (
    FIXED_MTIME,
    copy_directory_contents,
    normalize_mtimes,
)
from scraperrun.sandbox._runtime import (
    ContainerRuntime,
    ContainerRuntimeError,
    ImageBuildError,
    ImageInUseError,
    ImageNotFoundError,
    RequeueError,
)
from scraperrun.sandbox.types import Image


logger = logging.getLogger(__name__)

#: Four hours; compiles may fetch large dependency sets.
DEFAULT_BUILD_TIMEOUT = 4 * 60 * 60

# Progress banners printed by the runtime itself (docker, then podman).
_BUILD_NOISE = re.compile(
    r"^(?:Step \d+(?:/\d+)? :"
    r"| ---> "
    r"|Removing intermediate container "
    r"|Successfully built "
    r"|Successfully tagged "
    r"|STEP \d+(?:/\d+)?:"
    r"|--> "
    r"|COMMIT)"
)


def is_build_noise(line: str) -> bool:
    """Return True for runtime progress lines hidden from callers."""
    return _BUILD_NOISE.match(line) is not None


def dockerfile_contents(image: Image, commands: str | Sequence[str]) -> str:
    """Render a Dockerfile that applies ``commands`` on top of ``image``."""
    if isinstance(commands, str):
        commands = [commands]
    return f"FROM {image.id}\n" + "".join(f"{c}\n" for c in commands)


class ImageBuilder:
    """Builds the layers of the scraper pipeline.

    Args:
        runtime: Container runtime adapter.
        app_root: Absolute in-image directory that holds scraper files.
        scraper_user: Account that owns the application files.
        build_timeout: Seconds before any single build is killed.
        mtime: Modification time applied to every staged context.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        *,
        app_root: str = "/app",
        scraper_user: str = "scraper",
        build_timeout: float = DEFAULT_BUILD_TIMEOUT,
        mtime: datetime = FIXED_MTIME,
    ) -> None:
        self._runtime = runtime
        self._app_root = app_root
        self._scraper_user = scraper_user
        self._build_timeout = build_timeout
        self._mtime = mtime

    def build(
        self,
        image: Image,
        commands: str | Sequence[str],
        build_dir: Path,
        on_output: Callable[[str], None] | None = None,
    ) -> Image | None:
        """Build a new layer on top of ``image``.

        ``build_dir`` is copied into a temporary context and left
        untouched.

        Args:
            image: Parent image.
            commands: One Dockerfile instruction or a list of them.
            build_dir: Files to make available to the instructions.
            on_output: Receives each line of build output.

        Returns:
            The new image, or None if the build failed.
        """
        start_time = time.time()
        with tempfile.TemporaryDirectory(prefix="scraperrun-") as tmpdir:
            context = Path(tmpdir)
            copy_directory_contents(build_dir, context)
            (context / "Dockerfile").write_text(
                dockerfile_contents(image, commands)
            )
            normalize_mtimes(context, self._mtime)
            image_id = self._runtime.build(
                context, on_output=on_output, timeout=self._build_timeout
            )

        if image_id is None:
            return None
        logger.info(
            "Built layer %s on %s in %.2fs",
            image_id,
            image.id,
            time.time() - start_time,
        )
        return Image(image_id)

    def inject_files(self, image: Image, source_dir: Path) -> Image:
        """Add everything in ``source_dir`` at the application root.

        Raises:
            ImageBuildError: If the layer could not be built.
        """
        return self._inject(image, source_dir, [f"ADD app {self._app_root}"])

    def inject_files_with_ownership(
        self, image: Image, source_dir: Path
    ) -> Image:
        """Add files at the application root, owned by the scraper account.

        Raises:
            ImageBuildError: If the layer could not be built.
        """
        user = self._scraper_user
        return self._inject(
            image,
            source_dir,
            [
                f"ADD app {self._app_root}",
                f"RUN chown -R {user}:{user} {self._app_root}",
            ],
        )

    def compile(
        self,
        image: Image,
        compile_command: str,
        env: dict[str, str] | None = None,
        on_output: Callable[[str], None] | None = None,
    ) -> Image | None:
        """Run the compile step, forwarding only meaningful output.

        Args:
            image: Image holding the configuration files.
            compile_command: Command that installs dependencies.
            env: Environment variables baked into the layer first.
            on_output: Receives build output minus runtime banners.

        Returns:
            The compiled image, or None if compilation failed.
        """
        commands = [f"ENV {key} {value}" for key, value in (env or {}).items()]
        commands.append(f"RUN {compile_command}")

        def forward(line: str) -> None:
            if on_output is not None and not is_build_noise(line):
                on_output(line)

        with tempfile.TemporaryDirectory(prefix="scraperrun-") as empty:
            return self.build(image, commands, Path(empty), on_output=forward)

    def get_or_pull_image(
        self, name: str, on_output: Callable[[str], None] | None = None
    ) -> Image:
        """Return a local image, pulling it first if it is missing.

        Raises:
            RequeueError: If the image could not be obtained.
        """
        image_id = self._runtime.image_id(name)
        if image_id is None:
            logger.info("Pulling image %s", name)
            try:
                self._runtime.pull(name, on_output)
            except ContainerRuntimeError as e:
                raise RequeueError(f"Could not pull image {name}: {e}") from e
            image_id = self._runtime.image_id(name)
            if image_id is None:
                raise RequeueError(f"Image {name} missing after pull")
        return Image(image_id)

    def pull_image(
        self, name: str, on_output: Callable[[str], None] | None = None
    ) -> Image:
        """Pull the latest version of an image even if one is present."""
        self._runtime.pull(name, on_output)
        image_id = self._runtime.image_id(name)
        if image_id is None:
            raise ImageNotFoundError(f"Image {name} missing after pull")
        return Image(image_id)

    def remove_image(self, image: Image) -> None:
        """Delete an image on a best-effort basis.

        Another run may still reference the image, so conflicts are
        expected and ignored; other failures are only logged.
        """
        try:
            self._runtime.remove_image(image.id)
        except ImageInUseError:
            logger.debug("Image %s still in use, not removed", image.id)
        except ContainerRuntimeError as e:
            logger.warning("Failed to remove image %s: %s", image.id, e)

    def _inject(
        self, image: Image, source_dir: Path, commands: list[str]
    ) -> Image:
        """Stage ``source_dir`` as ``app/`` in a context and build it."""
        with tempfile.TemporaryDirectory(prefix="scraperrun-") as tmpdir:
            app_dir = Path(tmpdir) / "app"
            copy_directory_contents(source_dir, app_dir)
            # Injection is quick and its output would only confuse
            # scraper authors, so it goes to the service log.
            result = self.build(
                image, commands, Path(tmpdir), on_output=_log_build_line
            )
        if result is None:
            raise ImageBuildError(f"Could not inject files into {image.id}")
        return result


def _log_build_line(line: str) -> None:
    logger.debug("build: %s", line.rstrip("\n"))
