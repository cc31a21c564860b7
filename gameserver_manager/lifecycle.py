"""Authoritative lifecycle status model for game servers.

    stopped -> starting -> running -> stopping -> stopped
    error is reachable from every transitional state

Every check of the current status and the write of the next one happen under
the server's lock, so two racing operations on one server can never both
claim a transition. The long work that follows a claim runs outside the lock.
Each successful claim hands out an ownership token; the owner finishes with
``commit``, a compare-and-swap on both the status and the token, so an
operation that was superseded cannot write over a later claim even when the
status has come back to the value it expects.
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from gameserver_manager.errors import (
    InvalidTransitionError,
    ServerBusyError,
    ServerNotFoundError,
)
from gameserver_manager.locks import ServerLocks
from gameserver_manager.models import SETTINGS_FIELDS, ServerDescriptor, ServerStatus
from gameserver_manager.store import ServerRepository

logger = logging.getLogger(__name__)

# Statuses each operation may be claimed from
ALLOWED_FROM: dict[str, frozenset[ServerStatus]] = {
    "start": frozenset({ServerStatus.STOPPED, ServerStatus.ERROR}),
    "stop": frozenset({ServerStatus.RUNNING, ServerStatus.STARTING, ServerStatus.ERROR}),
    "restart": frozenset({ServerStatus.RUNNING, ServerStatus.ERROR, ServerStatus.STOPPED}),
    "remove": frozenset({ServerStatus.STOPPED, ServerStatus.ERROR}),
}

# Statuses that mean an operation is mid-flight and owns the server
TRANSITIONAL = frozenset({ServerStatus.STARTING, ServerStatus.STOPPING})


@dataclass
class Claim:
    """Outcome of a claim attempt.

    Attributes:
        server: Descriptor after the claim (unchanged when not claimed).
        previous: Status before the claim.
        claimed: False when the operation was a no-op (e.g. stopping a stopped server).
        token: Ownership token to pass to ``commit``; None when not claimed.
    """

    server: ServerDescriptor
    previous: ServerStatus
    claimed: bool = True
    token: Optional[str] = None


class ServerStateMachine:
    """Checked status transitions over a ServerRepository."""

    def __init__(self, servers: ServerRepository, locks: Optional[ServerLocks] = None):
        self.servers = servers
        self.locks = locks or ServerLocks()
        self._owners_guard = threading.Lock()
        self._owners: dict[str, str] = {}

    def get(self, server_id: str) -> ServerDescriptor:
        """Load a descriptor.

        Raises:
            ServerNotFoundError: If the server does not exist.
        """
        server = self.servers.get(server_id)
        if server is None:
            raise ServerNotFoundError(f"Server '{server_id}' not found", server_id)
        return server

    def current_status(self, server_id: str) -> str:
        """Status value for messages; "deleted" when the record is gone."""
        server = self.servers.get(server_id)
        return server.status.value if server else "deleted"

    def owns(self, server_id: str, token: Optional[str]) -> bool:
        with self._owners_guard:
            return token is not None and self._owners.get(server_id) == token

    def claim(
        self,
        server_id: str,
        operation: str,
        to_status: ServerStatus,
        noop_from: Iterable[ServerStatus] = (),
        **fields: Any,
    ) -> Claim:
        """Atomically check the current status and move to ``to_status``.

        The new claim takes ownership away from any operation still running
        on the server.

        Args:
            server_id: Server to transition.
            operation: Key of ALLOWED_FROM.
            to_status: Status written when the claim succeeds.
            noop_from: Statuses where the operation succeeds without a transition.
            **fields: Extra descriptor fields written with the status.

        Raises:
            ServerNotFoundError: If the server does not exist.
            InvalidTransitionError: If the operation is not allowed from the current status.
        """
        with self.locks.hold(server_id):
            server = self.get(server_id)
            previous = server.status
            if previous in noop_from:
                logger.info(f"Server '{server_id}' already {previous.value}, nothing to {operation}")
                return Claim(server=server, previous=previous, claimed=False)
            if previous not in ALLOWED_FROM[operation]:
                raise InvalidTransitionError(server_id, previous.value, operation)

            updated = self.servers.update(server_id, status=to_status, **fields)
            token = uuid.uuid4().hex
            with self._owners_guard:
                self._owners[server_id] = token
            logger.info(
                f"Server '{server_id}' {previous.value} -> {to_status.value} ({operation})"
            )
            return Claim(server=updated, previous=previous, token=token)

    def commit(
        self,
        server_id: str,
        expected: ServerStatus,
        to_status: ServerStatus,
        token: Optional[str],
        **fields: Any,
    ) -> Optional[ServerDescriptor]:
        """Compare-and-swap the status on behalf of the token's owner.

        Ownership ends when the server reaches a settled status.

        Returns:
            The updated descriptor, or None if the status is no longer
            ``expected`` or another claim has taken ownership.
        """
        with self.locks.hold(server_id):
            server = self.servers.get(server_id)
            if server is None or server.status != expected or not self.owns(server_id, token):
                current = server.status.value if server else "deleted"
                logger.warning(
                    f"Server '{server_id}' is {current} under another owner or no longer "
                    f"{expected.value}; not moving to {to_status.value}"
                )
                return None
            updated = self.servers.update(server_id, status=to_status, **fields)
            if to_status not in TRANSITIONAL:
                self.release(server_id)
            if to_status != expected:
                logger.info(f"Server '{server_id}' {expected.value} -> {to_status.value}")
            return updated

    def release(self, server_id: str) -> None:
        with self._owners_guard:
            self._owners.pop(server_id, None)

    def mark_error(
        self, server_id: str, expected: ServerStatus, token: Optional[str], **fields: Any
    ) -> Optional[ServerDescriptor]:
        """Persist ``error`` after a failed operation, best effort.

        Failures to persist are logged, never raised, so they cannot mask the
        error that caused the call.
        """
        try:
            return self.commit(server_id, expected, ServerStatus.ERROR, token, **fields)
        except Exception as e:
            logger.error(f"Failed to persist error status for server '{server_id}': {e}")
            return None

    def update_settings(self, server_id: str, **changes: Any) -> ServerDescriptor:
        """Change configuration fields of a server that is not live.

        Raises:
            ServerNotFoundError: If the server does not exist.
            ServerBusyError: If the server is starting, running or stopping.
            ValueError: If a field is not a setting or a value is invalid.
        """
        unknown = set(changes) - SETTINGS_FIELDS
        if unknown:
            raise ValueError(f"Not updatable: {sorted(unknown)}")

        with self.locks.hold(server_id):
            server = self.get(server_id)
            if server.is_live:
                raise ServerBusyError(
                    f"Server '{server_id}' must be stopped before updating", server_id
                )
            try:
                ServerDescriptor.model_validate({**server.model_dump(), **changes})
            except ValidationError as e:
                raise ValueError(f"Invalid settings for server '{server_id}': {e}") from e

            updated = self.servers.update(server_id, **changes)
            logger.info(f"Updated settings of server '{server_id}': {sorted(changes)}")
            return updated
