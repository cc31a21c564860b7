"""Backup engine: archive, restore, delete and prune server directories.

Archives are gzip-compressed tarballs of a server's whole persistent
directory, stored flat under the backups root as
``{serverName}-{timestamp}-{backupId}.tar.gz``.
"""

import logging
import shutil
import tarfile
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional

from gameserver_manager.build_context import server_directory
from gameserver_manager.errors import (
    ArchiveError,
    BackupMissingError,
    BackupNotFoundError,
    RetentionCleanupError,
    ServerBusyError,
)
from gameserver_manager.events import EventBus
from gameserver_manager.lifecycle import ServerStateMachine
from gameserver_manager.models import (
    BackupRecord,
    BackupStatus,
    CleanupReport,
    EventType,
    ServerDescriptor,
    new_id,
    utcnow,
)
from gameserver_manager.store import BackupRepository

logger = logging.getLogger(__name__)


def archive_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC timestamp with ':' and '.' replaced, e.g. 2024-05-01T12-30-00-000Z."""
    return moment.strftime("%Y-%m-%dT%H-%M-%S-") + f"{moment.microsecond // 1000:03d}Z"


def archive_filename(server_name: str, moment: datetime, backup_id: str) -> str:
    safe_name = server_name.replace("/", "_").replace("\\", "_")
    return f"{safe_name}-{archive_timestamp(moment)}-{backup_id}.tar.gz"


def newest_first(backups: list[BackupRecord]) -> list[BackupRecord]:
    """Order by creation time descending, ties broken by id descending."""
    return sorted(backups, key=lambda b: (b.created_at, b.id), reverse=True)


def clear_directory(directory: Path) -> None:
    """Delete every entry inside ``directory`` but keep the directory itself.

    The directory is bind-mounted into the container, so it must survive.
    """
    for child in directory.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


class BackupEngine:
    """Creates and restores archives of server directories and enforces retention."""

    def __init__(
        self,
        state: ServerStateMachine,
        backups: BackupRepository,
        events: EventBus,
        servers_root: Path,
        backups_root: Path,
        max_per_server: int = 5,
    ):
        self.state = state
        self.backups = backups
        self.events = events
        self.servers_root = Path(servers_root)
        self.backups_root = Path(backups_root)
        self.max_per_server = max_per_server

    # ============================================================================
    # Create
    # ============================================================================

    def create_backup(
        self, server_id: str, label: Optional[str] = None, is_automatic: bool = False
    ) -> BackupRecord:
        """Archive a server's directory.

        The record is written as ``in_progress`` before any file I/O, so an
        interrupted backup stays visible. A partially written archive is left
        on disk for inspection.

        Args:
            server_id: Server to back up.
            label: Backup name. Defaults to "Backup - <timestamp>".
            is_automatic: True when created by the scheduled sweep.

        Returns:
            The ``completed`` BackupRecord.

        Raises:
            ServerNotFoundError: If the server does not exist.
            ArchiveError: If archiving fails; the record is marked ``failed``.
        """
        with self.state.locks.hold(server_id):
            server = self.state.get(server_id)
            created_at = utcnow()
            backup_id = new_id()
            archive = self.backups_root / archive_filename(server.name, created_at, backup_id)
            record = self.backups.create(
                BackupRecord(
                    id=backup_id,
                    server_id=server_id,
                    name=label or f"Backup - {created_at.isoformat()}",
                    file_path=str(archive),
                    status=BackupStatus.IN_PROGRESS,
                    is_automatic=is_automatic,
                    created_at=created_at,
                )
            )
            logger.info(f"Creating backup {backup_id} for server '{server_id}'")

            try:
                size = self._write_archive(server, archive)
            except (OSError, tarfile.TarError) as e:
                logger.error(f"Backup {backup_id} for server '{server_id}' failed: {e}")
                self._mark_failed(backup_id)
                raise ArchiveError(f"Failed to archive server '{server_id}': {e}", server_id) from e

            record = self.backups.update(backup_id, size=size, status=BackupStatus.COMPLETED)

        logger.info(f"Backup {backup_id} created for server '{server_id}' at {archive} ({size} bytes)")
        self.events.emit(
            EventType.BACKUP_CREATE,
            f"Backup {record.name} completed for server {server.name}",
            server_id,
            backup_id=backup_id,
            size=size,
            is_automatic=is_automatic,
        )
        return record

    def _write_archive(self, server: ServerDescriptor, archive: Path) -> int:
        source = server_directory(self.servers_root, server.id)
        source.mkdir(parents=True, exist_ok=True)
        self.backups_root.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(str(source), arcname=".")
        return archive.stat().st_size

    def _mark_failed(self, backup_id: str) -> None:
        try:
            self.backups.update(backup_id, status=BackupStatus.FAILED)
        except Exception as e:
            logger.error(f"Failed to mark backup {backup_id} as failed: {e}")

    # ============================================================================
    # Restore
    # ============================================================================

    def restore_backup(self, server_id: str, backup_id: str) -> BackupRecord:
        """Replace a stopped server's directory with the contents of a backup.

        Symlinks come back as archived, absolute targets included. An archive
        with a member that would land outside the directory is refused before
        anything is cleared. Otherwise destructive and not rolled back: if
        extraction fails midway the directory is left partially populated and
        needs another restore.

        Raises:
            ServerNotFoundError: If the server does not exist.
            BackupNotFoundError: If the backup does not exist or belongs to another server.
            ServerBusyError: If the server is starting, running or stopping.
            BackupMissingError: If the backup has no completed archive on disk.
            ArchiveError: If the archive is refused, or clearing or extraction fails.
        """
        with self.state.locks.hold(server_id):
            server = self.state.get(server_id)
            if server.is_live:
                raise ServerBusyError(
                    f"Server '{server_id}' must be stopped before restoring a backup", server_id
                )

            backup = self.get_backup(backup_id)
            if backup.server_id != server_id:
                raise BackupNotFoundError(
                    f"Backup '{backup_id}' does not belong to server '{server_id}'",
                    backup_id,
                    server_id,
                )
            archive = Path(backup.file_path) if backup.file_path else None
            if backup.status != BackupStatus.COMPLETED or archive is None or not archive.is_file():
                raise BackupMissingError(
                    f"Backup file not found for backup '{backup_id}'", server_id
                )

            target = server_directory(self.servers_root, server_id)
            logger.info(f"Restoring backup {backup_id} to server '{server_id}'")
            try:
                with tarfile.open(archive, "r:gz") as tar, tempfile.TemporaryDirectory() as scratch:
                    # Vet every member against an empty tree before anything is cleared
                    for member in tar.getmembers():
                        tarfile.tar_filter(member, scratch)
                    target.mkdir(parents=True, exist_ok=True)
                    clear_directory(target)
                    tar.extractall(str(target), filter="tar")
            except (OSError, tarfile.TarError) as e:
                logger.error(f"Restore of backup {backup_id} to server '{server_id}' failed: {e}")
                raise ArchiveError(
                    f"Failed to restore backup '{backup_id}' to server '{server_id}': {e}",
                    server_id,
                ) from e

        logger.info(f"Backup {backup_id} restored to server '{server_id}'")
        self.events.emit(
            EventType.BACKUP_RESTORE,
            f"Backup {backup.name} restored to server {server.name}",
            server_id,
            backup_id=backup_id,
        )
        return backup

    # ============================================================================
    # Lookup and delete
    # ============================================================================

    def get_backup(self, backup_id: str) -> BackupRecord:
        backup = self.backups.get(backup_id)
        if backup is None:
            raise BackupNotFoundError(f"Backup '{backup_id}' not found", backup_id)
        return backup

    def list_backups(self, server_id: str) -> list[BackupRecord]:
        """Backups of a server, newest first."""
        return newest_first(self.backups.list_for_server(server_id))

    def get_archive_path(self, backup_id: str) -> Path:
        """Location of a backup's archive, for download.

        Raises:
            BackupNotFoundError: If the backup does not exist.
            BackupMissingError: If the archive file is absent.
        """
        backup = self.get_backup(backup_id)
        if not backup.file_path or not Path(backup.file_path).is_file():
            raise BackupMissingError(
                f"Backup file not found for backup '{backup_id}'", backup.server_id
            )
        return Path(backup.file_path)

    def delete_backup(self, backup_id: str) -> None:
        """Remove a backup's archive file (if still present), then its record."""
        backup = self.get_backup(backup_id)
        with self.state.locks.hold(backup.server_id):
            self._delete(backup)
        self.events.emit(
            EventType.BACKUP_DELETE,
            f"Backup {backup.name} deleted",
            backup.server_id,
            backup_id=backup_id,
        )

    def _delete(self, backup: BackupRecord) -> None:
        if backup.file_path:
            Path(backup.file_path).unlink(missing_ok=True)
        self.backups.delete(backup.id)
        logger.info(f"Deleted backup {backup.id} of server '{backup.server_id}'")

    # ============================================================================
    # Retention
    # ============================================================================

    def cleanup(self, max_per_server: Optional[int] = None) -> CleanupReport:
        """Keep only the newest ``max_per_server`` backups of every server.

        Each server is pruned independently: a failure is logged and recorded
        in the report, and the remaining servers are still processed.
        """
        keep = self.max_per_server if max_per_server is None else max_per_server
        if keep < 0:
            raise ValueError("max_per_server must be >= 0")

        logger.info(f"Cleaning up old backups (keeping {keep} per server)")
        report = CleanupReport()
        for server in self.state.servers.list_all():
            try:
                with self.state.locks.hold(server.id):
                    self._prune(server.id, keep, report.deleted)
            except Exception as e:
                error = RetentionCleanupError(
                    f"Cleanup failed for server '{server.id}': {e}", server.id
                )
                logger.error(error.message)
                report.failures[server.id] = error.message

        logger.info(
            f"Backup cleanup completed: {len(report.deleted)} deleted, "
            f"{len(report.failures)} servers failed"
        )
        return report

    def _prune(self, server_id: str, keep: int, deleted: list[str]) -> None:
        excess = newest_first(self.backups.list_for_server(server_id))[keep:]
        for backup in excess:
            self._delete(backup)
            deleted.append(backup.id)
