"""Game-server container lifecycle and backup orchestration engine."""

from gameserver_manager.errors import (
    ArchiveError,
    BackupMissingError,
    BackupNotFoundError,
    ContainerOperationError,
    GameServerError,
    ImageBuildError,
    InvalidTransitionError,
    RetentionCleanupError,
    ScriptWriteError,
    ServerBusyError,
    ServerNotFoundError,
    ServerNotRunningError,
)
from gameserver_manager.manager import GameServerManager, open_manager
from gameserver_manager.models import (
    BackupRecord,
    BackupStatus,
    ManagerConfig,
    ScriptKind,
    ScriptRecord,
    ServerDescriptor,
    ServerEvent,
    ServerStatus,
    StatsSnapshot,
)

__all__ = [
    "ArchiveError",
    "BackupMissingError",
    "BackupNotFoundError",
    "BackupRecord",
    "BackupStatus",
    "ContainerOperationError",
    "GameServerError",
    "GameServerManager",
    "ImageBuildError",
    "InvalidTransitionError",
    "ManagerConfig",
    "RetentionCleanupError",
    "ScriptKind",
    "ScriptRecord",
    "ScriptWriteError",
    "ServerBusyError",
    "ServerDescriptor",
    "ServerEvent",
    "ServerNotFoundError",
    "ServerNotRunningError",
    "ServerStatus",
    "StatsSnapshot",
    "open_manager",
]
