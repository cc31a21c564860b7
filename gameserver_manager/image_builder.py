"""Builds a server's image from its assembled build context."""

import io
import logging
import tarfile
from pathlib import Path

from docker.errors import BuildError, DockerException

from gameserver_manager.build_context import BUILD_FILES, DOCKERFILE
from gameserver_manager.docker_client import RuntimeClient, format_build_log
from gameserver_manager.errors import ImageBuildError

logger = logging.getLogger(__name__)


def image_tag(image_prefix: str, server_id: str) -> str:
    """Deterministic image tag, so rebuilding a server overwrites its own image."""
    return f"{image_prefix}-{server_id}"


def pack_build_context(directory: Path) -> io.BytesIO:
    """Tar only the build files present in ``directory``.

    The server directory also holds the live game tree, which must not be
    sent to the daemon as build context.
    """
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for filename in BUILD_FILES.values():
            path = Path(directory) / filename
            if path.is_file():
                tar.add(str(path), arcname=filename)
    buffer.seek(0)
    return buffer


class ImageBuilder:
    """Runs the runtime's image build for a server. Never retries."""

    def __init__(self, runtime: RuntimeClient, image_prefix: str = "gameserver"):
        self.runtime = runtime
        self.image_prefix = image_prefix

    def tag_for(self, server_id: str) -> str:
        return image_tag(self.image_prefix, server_id)

    def build(self, server_id: str, directory: Path) -> str:
        """Build and tag the image for a server. Blocks until the build ends.

        Args:
            server_id: Server the image belongs to.
            directory: Assembled build-context directory.

        Returns:
            The image tag.

        Raises:
            ImageBuildError: If there is no Dockerfile or the build fails. The
                build log, when available, is attached as ``build_log``.
        """
        tag = self.tag_for(server_id)
        if not (Path(directory) / DOCKERFILE).is_file():
            raise ImageBuildError(
                f"No {DOCKERFILE} in build context for server '{server_id}'", server_id
            )

        try:
            context = pack_build_context(directory)
        except (OSError, tarfile.TarError) as e:
            raise ImageBuildError(f"Cannot pack build context: {e}", server_id) from e

        logger.info(f"Building image '{tag}' for server '{server_id}'")
        try:
            self.runtime.build_image(context, tag)
        except BuildError as e:
            build_log = format_build_log(e.build_log)
            raise ImageBuildError(
                f"Image build failed for server '{server_id}': {e.msg}",
                server_id,
                build_log=build_log,
            ) from e
        except DockerException as e:
            raise ImageBuildError(
                f"Image build failed for server '{server_id}': {e}", server_id
            ) from e

        logger.info(f"Image '{tag}' built for server '{server_id}'")
        return tag
