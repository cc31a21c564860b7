"""Unattended backup sweep over all backup-enabled servers.

Only one sweep is executed per call. Reading each server's
``backup_schedule`` and deciding when to call is the job of an external
trigger (cron, a job queue, ...).
"""

import logging

from gameserver_manager.backup import BackupEngine
from gameserver_manager.events import EventBus
from gameserver_manager.models import EventType, SweepReport, utcnow
from gameserver_manager.store import ServerRepository

logger = logging.getLogger(__name__)


class BackupScheduler:
    """Runs automatic backups server by server, isolating failures."""

    def __init__(
        self,
        servers: ServerRepository,
        engine: BackupEngine,
        events: EventBus,
        prune_after_sweep: bool = False,
    ):
        self.servers = servers
        self.engine = engine
        self.events = events
        self.prune_after_sweep = prune_after_sweep

    def run_sweep(self) -> SweepReport:
        """Back up every server with backups enabled.

        A failing server is logged and recorded in the report; the sweep
        continues with the rest.

        Returns:
            SweepReport with created backup ids, per-server failures and, when
            prune_after_sweep is set, the cleanup result.
        """
        servers = self.servers.list_all(backup_enabled=True)
        logger.info(f"Found {len(servers)} servers with backup enabled")

        report = SweepReport()
        for server in servers:
            label = f"Automatic backup - {utcnow().isoformat()}"
            try:
                backup = self.engine.create_backup(server.id, label=label, is_automatic=True)
                report.created.append(backup.id)
                logger.info(f"Scheduled backup created for server '{server.id}'")
            except Exception as e:
                logger.error(f"Error creating scheduled backup for server '{server.id}': {e}")
                report.failures[server.id] = str(e)

        if report.failures:
            self.events.emit(
                EventType.SYSTEM_ALERT,
                f"Scheduled backup failed for {len(report.failures)} server(s)",
                failures=dict(report.failures),
            )

        if self.prune_after_sweep:
            report.cleanup = self.engine.cleanup()

        logger.info(
            f"Scheduled backups completed: {len(report.created)} created, "
            f"{len(report.failures)} failed"
        )
        return report
