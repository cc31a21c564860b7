"""Docker client for game-server container management."""

import logging
from typing import IO, Any, Protocol

import docker
from docker.errors import BuildError, DockerException, NotFound

logger = logging.getLogger(__name__)


class RuntimeClient(Protocol):
    """Capability the controller and stats collector need from a container runtime.

    Implementations raise ``docker.errors.NotFound`` for unknown containers,
    ``docker.errors.BuildError`` for failed builds and other
    ``docker.errors.DockerException`` subclasses for everything else.
    """

    def build_image(self, context: IO[bytes], tag: str) -> str: ...

    def create_container(self, image: str, name: str, **options: Any) -> str: ...

    def start_container(self, container_ref: str) -> None: ...

    def stop_container(self, container_ref: str, timeout: int = 10) -> None: ...

    def remove_container(self, container_ref: str, force: bool = True) -> None: ...

    def get_container_stats(self, container_ref: str) -> dict: ...

    def get_container_logs(self, container_ref: str, tail: int = 100) -> str: ...

    def close(self) -> None: ...


def format_build_log(build_log: Any) -> str:
    """Join the ``stream``/``error`` chunks of a Docker build log into text."""
    lines = []
    for chunk in build_log or []:
        if isinstance(chunk, dict):
            text = chunk.get("stream") or chunk.get("error") or ""
        else:
            text = str(chunk)
        if text:
            lines.append(text.rstrip("\n"))
    return "\n".join(lines)


class DockerClient:
    """Client for interacting with Docker daemon via Docker socket."""

    def __init__(self, base_url: str = "unix://var/run/docker.sock"):
        """Initialize Docker client.

        Args:
            base_url: Docker daemon socket URL. Defaults to Unix socket.
        """
        try:
            self.client = docker.DockerClient(base_url=base_url)
            # Test connection
            self.client.ping()
            logger.info("Docker client initialized successfully")
        except DockerException as e:
            logger.error(f"Failed to initialize Docker client: {e}")
            raise

    def build_image(self, context: IO[bytes], tag: str) -> str:
        """Build an image from a tar build context.

        Args:
            context: Uncompressed tar archive holding the Dockerfile and its files.
            tag: Tag for the resulting image. Rebuilding reuses the tag.

        Returns:
            Build log text.

        Raises:
            BuildError: If the Dockerfile fails to build.
        """
        try:
            _image, build_logs = self.client.images.build(
                fileobj=context,
                custom_context=True,
                tag=tag,
                rm=True,
                forcerm=True,
            )
            log_text = format_build_log(build_logs)
            for line in log_text.splitlines():
                logger.debug(f"[Build {tag}] {line}")
            logger.info(f"Built image '{tag}'")
            return log_text
        except BuildError as e:
            logger.error(f"Failed to build image '{tag}': {e}")
            raise
        except DockerException as e:
            logger.error(f"Failed to build image '{tag}': {e}")
            raise

    def create_container(self, image: str, name: str, **options: Any) -> str:
        """Create (but do not start) a container.

        Args:
            image: Image tag to run.
            name: Container name.
            **options: Keyword arguments for ``containers.create``.

        Returns:
            Container ID.
        """
        try:
            container = self.client.containers.create(image, name=name, **options)
            logger.info(f"Created container '{name}' ({container.id[:12]})")
            return container.id
        except DockerException as e:
            logger.error(f"Failed to create container '{name}': {e}")
            raise

    def get_container(self, container_ref: str):
        """Get a container by name or ID.

        Args:
            container_ref: Container name or ID.

        Returns:
            Docker container object.

        Raises:
            NotFound: If container not found.
        """
        try:
            return self.client.containers.get(container_ref)
        except NotFound:
            logger.warning(f"Container '{container_ref}' not found")
            raise
        except DockerException as e:
            logger.error(f"Failed to get container '{container_ref}': {e}")
            raise

    def start_container(self, container_ref: str) -> None:
        """Start a container.

        Raises:
            NotFound: If container not found.
        """
        try:
            container = self.get_container(container_ref)
            container.start()
            logger.info(f"Started container '{container_ref}'")
        except NotFound:
            raise
        except DockerException as e:
            logger.error(f"Failed to start container '{container_ref}': {e}")
            raise

    def stop_container(self, container_ref: str, timeout: int = 10) -> None:
        """Stop a container.

        Args:
            container_ref: Container name or ID.
            timeout: Timeout in seconds before force killing.

        Raises:
            NotFound: If container not found.
        """
        try:
            container = self.get_container(container_ref)
            container.stop(timeout=timeout)
            logger.info(f"Stopped container '{container_ref}'")
        except NotFound:
            raise
        except DockerException as e:
            logger.error(f"Failed to stop container '{container_ref}': {e}")
            raise

    def remove_container(self, container_ref: str, force: bool = True) -> None:
        """Remove a container.

        Args:
            container_ref: Container name or ID.
            force: Kill the container first if it is still running.

        Raises:
            NotFound: If container not found.
        """
        try:
            container = self.get_container(container_ref)
            container.remove(force=force)
            logger.info(f"Removed container '{container_ref}'")
        except NotFound:
            raise
        except DockerException as e:
            logger.error(f"Failed to remove container '{container_ref}': {e}")
            raise

    def get_container_stats(self, container_ref: str) -> dict:
        """Get a single resource usage sample of a container.

        Returns:
            Raw Docker stats document (``cpu_stats``, ``precpu_stats``,
            ``memory_stats``, ``networks``).

        Raises:
            NotFound: If container not found.
        """
        try:
            container = self.get_container(container_ref)
            return container.stats(stream=False)
        except NotFound:
            raise
        except DockerException as e:
            logger.error(f"Failed to get stats for container '{container_ref}': {e}")
            raise

    def get_container_logs(self, container_ref: str, tail: int = 100) -> str:
        """Get container logs.

        Args:
            container_ref: Container name or ID.
            tail: Number of lines to return from the end.

        Returns:
            Container logs as string.

        Raises:
            NotFound: If container not found.
        """
        try:
            container = self.get_container(container_ref)
            logs = container.logs(tail=tail, timestamps=True)
            return logs.decode("utf-8", errors="replace") if isinstance(logs, bytes) else logs
        except NotFound:
            raise
        except DockerException as e:
            logger.error(f"Failed to get logs for container '{container_ref}': {e}")
            raise

    def close(self) -> None:
        """Close the Docker client connection."""
        if hasattr(self, "client"):
            self.client.close()

