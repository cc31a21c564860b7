"""Container controller: drives a server's container through its lifecycle.

Each public operation is split into a claim half (``begin_*``), which runs
the status check-and-set and raises conflicts immediately, and a work half
(``run_*``), which does the blocking runtime calls. The plain ``start``,
``stop``, ``restart`` and ``remove`` run both halves on the caller's thread;
the manager runs the work half on a worker thread instead.
"""

import logging
from pathlib import Path
from typing import Any, NoReturn, Optional

from docker.errors import DockerException, NotFound

from gameserver_manager.build_context import BuildContextAssembler
from gameserver_manager.docker_client import RuntimeClient
from gameserver_manager.errors import (
    ContainerOperationError,
    GameServerError,
    InvalidTransitionError,
    ServerNotRunningError,
)
from gameserver_manager.events import EventBus
from gameserver_manager.image_builder import ImageBuilder
from gameserver_manager.lifecycle import Claim, ServerStateMachine
from gameserver_manager.models import (
    EventType,
    ManagerConfig,
    ServerDescriptor,
    ServerStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

MB = 1024 * 1024
CPU_PERIOD = 100_000  # microseconds; cpu_quota is a share of this


class ContainerController:
    """Creates, starts, stops and removes the runtime container of each server."""

    def __init__(
        self,
        state: ServerStateMachine,
        assembler: BuildContextAssembler,
        builder: ImageBuilder,
        runtime: RuntimeClient,
        events: EventBus,
        config: ManagerConfig,
    ):
        self.state = state
        self.assembler = assembler
        self.builder = builder
        self.runtime = runtime
        self.events = events
        self.config = config

    # ============================================================================
    # Container configuration
    # ============================================================================

    def container_name(self, server_id: str) -> str:
        return f"{self.config.image_prefix}-{server_id}"

    def container_options(self, server: ServerDescriptor, directory: Path) -> dict[str, Any]:
        """Map a descriptor onto ``containers.create`` keyword arguments."""
        name = self.container_name(server.id)
        memory = server.memory_mb * MB
        return {
            "hostname": name,
            "ports": {f"{server.port}/tcp": server.port},
            "volumes": {
                str(Path(directory).resolve()): {
                    "bind": self.config.container_data_path,
                    "mode": "rw",
                }
            },
            "mem_limit": memory,
            "memswap_limit": memory * 2,
            "cpu_period": CPU_PERIOD,
            "cpu_quota": server.cpu_percent * CPU_PERIOD // 100,
            "restart_policy": {"Name": "unless-stopped" if server.auto_restart else "no"},
            "environment": {
                "SERVER_PORT": str(server.port),
                "SERVER_MEMORY": str(server.memory_mb),
                "SERVER_CPU": str(server.cpu_percent),
                "GAME_TYPE": server.game_type,
            },
            "labels": {
                "gameserver.id": server.id,
                "gameserver.game_type": server.game_type,
            },
            "tty": True,
        }

    # ============================================================================
    # Start
    # ============================================================================

    def begin_start(self, server_id: str) -> Claim:
        """Claim ``starting``. Raises InvalidTransitionError unless stopped or error."""
        return self.state.claim(server_id, "start", ServerStatus.STARTING)

    def run_start(self, server_id: str, token: Optional[str]) -> ServerDescriptor:
        """Assemble, build, create and run the container of a claimed server.

        Args:
            server_id: Server claimed by ``begin_start`` or ``begin_restart``.
            token: Ownership token of that claim.

        Returns:
            The descriptor in ``running`` with ``container_ref`` and ``last_started``.

        Raises:
            ScriptWriteError, ImageBuildError, ContainerOperationError: On failure,
                after ``error`` has been persisted. Failures that are not
                GameServerErrors arrive as ContainerOperationError.
            InvalidTransitionError: If another operation took the server over.
        """
        server = self.state.get(server_id)
        created_ref: Optional[str] = None
        try:
            directory = self.assembler.assemble(server_id)
            image = self.builder.build(server_id, directory)
            if not self.state.owns(server_id, token):
                raise InvalidTransitionError(server_id, self.state.current_status(server_id), "start")
            self._discard_containers(server_id, server.container_ref)

            created_ref = self._runtime_call(
                server_id,
                "create",
                self.runtime.create_container,
                image,
                self.container_name(server_id),
                **self.container_options(server, directory),
            )
            if self.state.commit(
                server_id,
                ServerStatus.STARTING,
                ServerStatus.STARTING,
                token,
                container_ref=created_ref,
            ) is None:
                self._abandon(server_id, token, created_ref)

            self._runtime_call(server_id, "start", self.runtime.start_container, created_ref)
            started = self.state.commit(
                server_id,
                ServerStatus.STARTING,
                ServerStatus.RUNNING,
                token,
                container_ref=created_ref,
                last_started=utcnow(),
            )
            if started is None:
                self._abandon(server_id, token, created_ref)
        except InvalidTransitionError:
            raise
        except Exception as e:
            self._fail_and_raise(
                server_id, token, ServerStatus.STARTING, "start", e,
                abandon_ref=created_ref, container_ref=created_ref,
            )

        logger.info(f"Server '{server_id}' started with container {created_ref[:12]}")
        self.events.emit(
            EventType.SERVER_START,
            f"Server {started.name} started",
            server_id,
            container_ref=created_ref,
        )
        return started

    def start(self, server_id: str) -> ServerDescriptor:
        claim = self.begin_start(server_id)
        return self.run_start(server_id, claim.token)

    # ============================================================================
    # Stop
    # ============================================================================

    def begin_stop(self, server_id: str) -> Claim:
        """Claim ``stopping``. A stopped server is a no-op claim."""
        return self.state.claim(
            server_id, "stop", ServerStatus.STOPPING, noop_from=(ServerStatus.STOPPED,)
        )

    def run_stop(
        self, server_id: str, token: Optional[str], timeout: Optional[int] = None
    ) -> ServerDescriptor:
        """Stop the container of a claimed server and record ``stopped``.

        A container that no longer exists counts as stopped.

        Raises:
            ContainerOperationError: If the runtime fails to stop the container,
                after ``error`` has been persisted.
        """
        server = self.state.get(server_id)
        ref = server.container_ref
        try:
            self._halt(server_id, ref, timeout)
        except Exception as e:
            self._fail_and_raise(
                server_id, token, ServerStatus.STOPPING, "stop", e, container_ref=ref
            )

        stopped = self.state.commit(
            server_id,
            ServerStatus.STOPPING,
            ServerStatus.STOPPED,
            token,
            container_ref=None,
            last_stopped=utcnow(),
        )
        if stopped is None:
            return self.state.get(server_id)

        self.events.emit(EventType.SERVER_STOP, f"Server {stopped.name} stopped", server_id)
        return stopped

    def stop(self, server_id: str, timeout: Optional[int] = None) -> ServerDescriptor:
        claim = self.begin_stop(server_id)
        if not claim.claimed:
            return claim.server
        return self.run_stop(server_id, claim.token, timeout)

    # ============================================================================
    # Restart
    # ============================================================================

    def begin_restart(self, server_id: str) -> Claim:
        """Claim ``stopping`` as the first half of a restart."""
        return self.state.claim(server_id, "restart", ServerStatus.STOPPING)

    def run_restart(
        self, server_id: str, token: Optional[str], timeout: Optional[int] = None
    ) -> ServerDescriptor:
        """Stop then start a claimed server without releasing ownership in between.

        The start half is not retried: if it fails the server ends in ``error``
        even though the stop half succeeded.
        """
        server = self.state.get(server_id)
        ref = server.container_ref
        try:
            self._halt(server_id, ref, timeout)
        except Exception as e:
            self._fail_and_raise(
                server_id, token, ServerStatus.STOPPING, "restart", e, container_ref=ref
            )

        fields: dict[str, Any] = {"last_stopped": utcnow()} if ref else {}
        handed_over = self.state.commit(
            server_id, ServerStatus.STOPPING, ServerStatus.STARTING, token, **fields
        )
        if handed_over is None:
            raise InvalidTransitionError(server_id, self.state.current_status(server_id), "restart")
        if ref:
            self.events.emit(
                EventType.SERVER_STOP, f"Server {server.name} stopped for restart", server_id
            )
        return self.run_start(server_id, token)

    def restart(self, server_id: str, timeout: Optional[int] = None) -> ServerDescriptor:
        claim = self.begin_restart(server_id)
        return self.run_restart(server_id, claim.token, timeout)

    # ============================================================================
    # Remove
    # ============================================================================

    def remove(self, server_id: str, timeout: Optional[int] = None) -> ServerDescriptor:
        """Delete the runtime container of a server that is being deleted.

        A running server is stopped first. A container that cannot be found is
        not an error.

        Raises:
            InvalidTransitionError: If another operation is mid-flight.
            ContainerOperationError: If the runtime fails to remove the container.
        """
        server = self.state.get(server_id)
        if server.status == ServerStatus.RUNNING:
            self.stop(server_id, timeout)

        claim = self.state.claim(server_id, "remove", ServerStatus.STOPPING)
        ref = claim.server.container_ref
        try:
            self._discard_containers(server_id, ref)
        except Exception as e:
            self._fail_and_raise(
                server_id, claim.token, ServerStatus.STOPPING, "remove", e, container_ref=ref
            )

        removed = self.state.commit(
            server_id, ServerStatus.STOPPING, ServerStatus.STOPPED, claim.token, container_ref=None
        )
        self.events.emit(EventType.SERVER_REMOVE, f"Server {server.name} container removed", server_id)
        return removed or self.state.get(server_id)

    # ============================================================================
    # Logs
    # ============================================================================

    def get_logs(self, server_id: str, tail: int = 100) -> str:
        """Return the last ``tail`` lines of the server's container output.

        Raises:
            ServerNotRunningError: If the server has no container.
            ContainerOperationError: If the runtime call fails.
        """
        server = self.state.get(server_id)
        if not server.container_ref:
            raise ServerNotRunningError(f"Server '{server_id}' has no container", server_id)
        try:
            return self.runtime.get_container_logs(server.container_ref, tail=tail)
        except NotFound as e:
            raise ServerNotRunningError(
                f"Container of server '{server_id}' no longer exists", server_id
            ) from e
        except DockerException as e:
            raise ContainerOperationError(
                f"Failed to read logs of server '{server_id}': {e}", server_id, "logs"
            ) from e

    # ============================================================================
    # Helpers
    # ============================================================================

    def _runtime_call(self, server_id: str, operation: str, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DockerException as e:
            raise ContainerOperationError(
                f"Container {operation} failed for server '{server_id}': {e}",
                server_id,
                operation,
            ) from e

    def _halt(self, server_id: str, ref: Optional[str], timeout: Optional[int]) -> None:
        """Gracefully stop a container, tolerating one that is already gone."""
        if not ref:
            logger.info(f"Server '{server_id}' has no container to stop")
            return
        grace = self.config.stop_timeout if timeout is None else timeout
        try:
            self._runtime_call(server_id, "stop", self.runtime.stop_container, ref, timeout=grace)
        except ContainerOperationError as e:
            if isinstance(e.__cause__, NotFound):
                logger.warning(f"Container {ref} of server '{server_id}' already gone")
                return
            raise

    def _remove_container(self, server_id: str, ref: str) -> None:
        """Force-remove one container; a missing one is not an error."""
        try:
            self._runtime_call(server_id, "remove", self.runtime.remove_container, ref, force=True)
        except ContainerOperationError as e:
            if isinstance(e.__cause__, NotFound):
                logger.debug(f"No container '{ref}' to remove for server '{server_id}'")
                return
            raise

    def _discard_containers(self, server_id: str, ref: Optional[str]) -> None:
        """Force-remove the server's container by reference and by name."""
        candidates = [c for c in (ref, self.container_name(server_id)) if c]
        for candidate in dict.fromkeys(candidates):
            self._remove_container(server_id, candidate)

    def _remove_quietly(self, server_id: str, ref: str) -> None:
        try:
            self._remove_container(server_id, ref)
        except Exception as e:
            logger.error(f"Failed to remove container {ref} of server '{server_id}': {e}")

    def _abandon(self, server_id: str, token: Optional[str], ref: str) -> None:
        """Tear down a container created by a start that lost ownership, then raise.

        Only the start's own container is removed: the deterministic name may
        already belong to the operation that took over.
        """
        self._remove_quietly(server_id, ref)
        if self.state.owns(server_id, token):
            # record deleted underneath us
            self.state.release(server_id)
        current = self.state.current_status(server_id)
        logger.warning(f"Start of server '{server_id}' superseded (now {current}); removed {ref}")
        raise InvalidTransitionError(server_id, current, "start")

    def _fail_and_raise(
        self,
        server_id: str,
        token: Optional[str],
        expected: ServerStatus,
        operation: str,
        cause: Exception,
        abandon_ref: Optional[str] = None,
        **fields: Any,
    ) -> NoReturn:
        """Record a failed operation and raise its typed error.

        A GameServerError is re-raised as is; anything else (for example a
        connection error from below the Docker SDK) is wrapped in
        ContainerOperationError. If the operation no longer owns the server,
        nothing is persisted and InvalidTransitionError is raised instead.
        """
        if isinstance(cause, GameServerError):
            error = cause
        else:
            error = ContainerOperationError(
                f"Container {operation} failed for server '{server_id}': {cause}",
                server_id,
                operation,
            )

        if not self.state.owns(server_id, token):
            if abandon_ref:
                self._remove_quietly(server_id, abandon_ref)
            current = self.state.current_status(server_id)
            logger.warning(
                f"Failed to {operation} server '{server_id}' after being superseded (now {current}): {error}"
            )
            raise InvalidTransitionError(server_id, current, operation) from cause

        logger.error(f"Failed to {operation} server '{server_id}': {error}")
        if self.state.mark_error(server_id, expected, token, **fields) is None and abandon_ref:
            self._remove_quietly(server_id, abandon_ref)
        self.events.emit(
            EventType.SERVER_ERROR,
            f"Failed to {operation} server: {error.message}",
            server_id,
            operation=operation,
            error=type(error).__name__,
        )
        if error is cause:
            raise error
        raise error from cause
