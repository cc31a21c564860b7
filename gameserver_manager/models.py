"""Pydantic models for gameserver_manager records, snapshots and reports."""

import uuid
from concurrent.futures import Future
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ServerStatus(str, Enum):
    """Lifecycle states of a game server."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


LIVE_STATUSES = frozenset({ServerStatus.STARTING, ServerStatus.RUNNING, ServerStatus.STOPPING})


class ScriptKind(str, Enum):
    """Kinds of script records that make up a build context."""

    DOCKERFILE = "dockerfile"
    CONFIG = "config"
    STARTUP = "startup"


class BackupStatus(str, Enum):
    """States of a backup record."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ManagerConfig(BaseModel):
    """Root configuration model."""

    servers_root: Path = Field(
        default=Path("data/servers"), description="Directory holding one directory per server"
    )
    backups_root: Path = Field(
        default=Path("data/backups"), description="Directory holding backup archives"
    )
    docker_base_url: str = Field(
        default="unix://var/run/docker.sock", description="Docker daemon socket URL"
    )
    image_prefix: str = Field(
        default="gameserver", description="Prefix for image tags and container names"
    )
    container_data_path: str = Field(
        default="/data", description="Mount point of the server directory inside the container"
    )
    stop_timeout: int = Field(
        default=10, ge=0, description="Grace period in seconds before the runtime force-kills"
    )
    max_backups_per_server: int = Field(
        default=5, ge=0, description="Backups kept per server by retention cleanup"
    )
    prune_after_sweep: bool = Field(
        default=False, description="Run retention cleanup after each scheduled backup sweep"
    )
    worker_threads: int = Field(
        default=4, ge=1, description="Worker threads for background operations"
    )
    log_level: str = Field(default="INFO", description="Root log level")


class ServerDescriptor(BaseModel):
    """Durable record describing one game-server instance."""

    id: str = Field(default_factory=new_id, description="Server identifier")
    name: str = Field(..., description="Human-readable server name", examples=["survival-1"])
    game_type: str = Field(..., description="Declared game type", examples=["minecraft"])
    port: int = Field(..., ge=1, le=65535, description="Host and container port")
    memory_mb: int = Field(default=1024, gt=0, description="Memory limit in MB")
    cpu_percent: int = Field(default=100, gt=0, description="CPU limit as percent of one core")
    disk_mb: int = Field(default=10240, gt=0, description="Declared disk allowance in MB")
    auto_restart: bool = Field(default=False, description="Restart unless explicitly stopped")
    backup_enabled: bool = Field(default=True, description="Include in scheduled backups")
    backup_schedule: str = Field(
        default="0 0 * * *", description="Cron expression read by the external scheduler"
    )
    status: ServerStatus = Field(default=ServerStatus.STOPPED, description="Lifecycle status")
    container_ref: Optional[str] = Field(None, description="Runtime container id while one exists")
    last_started: Optional[datetime] = Field(None, description="Last successful start")
    last_stopped: Optional[datetime] = Field(None, description="Last successful stop")

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES


# Fields of a descriptor that callers may change through update_settings.
SETTINGS_FIELDS = frozenset(
    {
        "name",
        "port",
        "memory_mb",
        "cpu_percent",
        "disk_mb",
        "auto_restart",
        "backup_enabled",
        "backup_schedule",
    }
)


class ScriptRecord(BaseModel):
    """Named content blob used to assemble a build context."""

    id: str = Field(default_factory=new_id, description="Script identifier")
    server_id: str = Field(..., description="Owning server")
    kind: ScriptKind = Field(..., description="Build file, config file or startup file")
    name: str = Field(default="", description="Script name")
    content: str = Field(..., description="Script contents")
    created_at: datetime = Field(default_factory=utcnow, description="Creation time")


class BackupRecord(BaseModel):
    """Backup of one server directory."""

    id: str = Field(default_factory=new_id, description="Backup identifier")
    server_id: str = Field(..., description="Owning server")
    name: str = Field(default="", description="Backup label")
    file_path: str = Field(default="", description="Location of the archive file")
    size: int = Field(default=0, ge=0, description="Archive size in bytes")
    status: BackupStatus = Field(default=BackupStatus.IN_PROGRESS, description="Backup status")
    is_automatic: bool = Field(default=False, description="Created by the scheduled sweep")
    created_at: datetime = Field(default_factory=utcnow, description="Creation time")


class StatsSnapshot(BaseModel):
    """Point-in-time resource usage of a running server."""

    timestamp: datetime = Field(default_factory=utcnow, description="Sample time")
    cpu_percent: float = Field(..., description="CPU usage, 100 = one full core")
    memory_used_bytes: int = Field(..., description="Memory in use")
    memory_limit_bytes: int = Field(..., description="Memory limit")
    memory_percent: float = Field(..., description="Memory used as percent of limit")
    network_rx_bytes: int = Field(default=0, description="Bytes received, all interfaces")
    network_tx_bytes: int = Field(default=0, description="Bytes sent, all interfaces")

    @property
    def memory_used_mb(self) -> float:
        return self.memory_used_bytes / (1024 * 1024)

    @property
    def memory_limit_mb(self) -> float:
        return self.memory_limit_bytes / (1024 * 1024)

    @property
    def network_rx_mb(self) -> float:
        return self.network_rx_bytes / (1024 * 1024)

    @property
    def network_tx_mb(self) -> float:
        return self.network_tx_bytes / (1024 * 1024)


class EventType(str, Enum):
    """Kinds of events emitted to listeners."""

    SERVER_START = "server_start"
    SERVER_STOP = "server_stop"
    SERVER_ERROR = "server_error"
    SERVER_REMOVE = "server_remove"
    BACKUP_CREATE = "backup_create"
    BACKUP_RESTORE = "backup_restore"
    BACKUP_DELETE = "backup_delete"
    SYSTEM_ALERT = "system_alert"


class ServerEvent(BaseModel):
    """Lifecycle or backup event delivered to listeners."""

    type: EventType = Field(..., description="Event type")
    message: str = Field(..., description="Human-readable message")
    server_id: Optional[str] = Field(None, description="Server the event concerns")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Extra event data")
    timestamp: datetime = Field(default_factory=utcnow, description="Emission time")


class CleanupReport(BaseModel):
    """Result of one retention cleanup pass."""

    deleted: list[str] = Field(default_factory=list, description="Deleted backup ids")
    failures: dict[str, str] = Field(
        default_factory=dict, description="Server id to failure message"
    )


class SweepReport(BaseModel):
    """Result of one scheduled backup sweep."""

    created: list[str] = Field(default_factory=list, description="Created backup ids")
    failures: dict[str, str] = Field(
        default_factory=dict, description="Server id to failure message"
    )
    cleanup: Optional[CleanupReport] = Field(None, description="Cleanup run after the sweep")


class PendingOperation(BaseModel):
    """Acknowledgement of a long operation running in the background.

    ``server`` is the descriptor as claimed (for example ``starting``);
    ``future`` resolves to the terminal result or raises the typed error.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    operation: str = Field(..., description="Operation name")
    server: ServerDescriptor = Field(..., description="Descriptor when the operation was accepted")
    future: Future = Field(..., description="Completion signal")

    def result(self, timeout: Optional[float] = None) -> Any:
        """Block until the operation finishes and return its result."""
        return self.future.result(timeout=timeout)

    def done(self) -> bool:
        return self.future.done()
