"""Typed errors raised by the game-server lifecycle and backup engine.

Callers (typically an HTTP layer) map these onto their own status codes:
not-found, conflict/precondition-failed, or server error.
"""

from typing import Optional


class GameServerError(Exception):
    """Base class for every error raised by gameserver_manager."""

    def __init__(self, message: str, server_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.server_id = server_id


# Lookup errors


class ServerNotFoundError(GameServerError):
    """No server descriptor exists for the given id."""


class BackupNotFoundError(GameServerError):
    """No backup record exists for the given id."""

    def __init__(self, message: str, backup_id: str, server_id: Optional[str] = None):
        super().__init__(message, server_id)
        self.backup_id = backup_id


# Lifecycle errors


class InvalidTransitionError(GameServerError):
    """The requested lifecycle operation is not allowed from the current status."""

    def __init__(self, server_id: str, current: str, requested: str):
        super().__init__(
            f"Cannot {requested} server '{server_id}' while it is {current}", server_id
        )
        self.current = current
        self.requested = requested


class ScriptWriteError(GameServerError):
    """A build-context file could not be written to the server directory."""


class ImageBuildError(GameServerError):
    """The container runtime failed to build the server image."""

    def __init__(self, message: str, server_id: Optional[str] = None, build_log: str = ""):
        super().__init__(message, server_id)
        self.build_log = build_log


class ContainerOperationError(GameServerError):
    """A create/start/stop/remove/inspect call against the runtime failed."""

    def __init__(self, message: str, server_id: Optional[str] = None, operation: str = ""):
        super().__init__(message, server_id)
        self.operation = operation


class ServerNotRunningError(GameServerError):
    """The operation needs a live container but the server has none."""


class ServerBusyError(GameServerError):
    """The operation needs a stopped server but the server is live."""


# Backup errors


class BackupMissingError(GameServerError):
    """The archive file referenced by a backup record does not exist."""


class ArchiveError(GameServerError):
    """Creating or extracting a backup archive failed."""


class RetentionCleanupError(GameServerError):
    """Cleanup of old backups failed for one server (non-fatal to the batch)."""
