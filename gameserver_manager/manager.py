"""Entry point wiring the engine's components together.

The embedding application (for example a web API) builds one
GameServerManager at startup with its repositories and calls into it from
its request handlers; ``open_manager`` does the same as a context manager
that loads configuration and cleans up on exit.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from gameserver_manager.backup import BackupEngine
from gameserver_manager.build_context import BuildContextAssembler
from gameserver_manager.config import load_config
from gameserver_manager.controller import ContainerController
from gameserver_manager.docker_client import DockerClient, RuntimeClient
from gameserver_manager.errors import InvalidTransitionError, ServerBusyError
from gameserver_manager.events import EventBus, Listener
from gameserver_manager.image_builder import ImageBuilder
from gameserver_manager.lifecycle import ServerStateMachine
from gameserver_manager.locks import ServerLocks
from gameserver_manager.logging_setup import configure_logging
from gameserver_manager.models import (
    BackupRecord,
    CleanupReport,
    ManagerConfig,
    PendingOperation,
    ServerDescriptor,
    StatsSnapshot,
    SweepReport,
)
from gameserver_manager.scheduler import BackupScheduler
from gameserver_manager.stats import StatsCollector
from gameserver_manager.store import BackupRepository, ScriptRepository, ServerRepository
from gameserver_manager.tasks import OperationRunner

logger = logging.getLogger(__name__)


class GameServerManager:
    """Facade over lifecycle, stats and backup operations."""

    def __init__(
        self,
        config: ManagerConfig,
        servers: ServerRepository,
        scripts: ScriptRepository,
        backups: BackupRepository,
        runtime: Optional[RuntimeClient] = None,
        events: Optional[EventBus] = None,
    ):
        """Initialize the manager.

        Args:
            config: Engine configuration.
            servers: Server descriptor repository.
            scripts: Script record lookup.
            backups: Backup record repository.
            runtime: Container runtime. Defaults to a DockerClient on
                ``config.docker_base_url``.
            events: Event bus. A new one is created when omitted.
        """
        self.config = config
        self.servers = servers
        self.runtime = runtime if runtime is not None else DockerClient(base_url=config.docker_base_url)
        self.events = events or EventBus()

        self.locks = ServerLocks()
        self.state = ServerStateMachine(servers, self.locks)
        self.controller = ContainerController(
            state=self.state,
            assembler=BuildContextAssembler(scripts, config.servers_root),
            builder=ImageBuilder(self.runtime, config.image_prefix),
            runtime=self.runtime,
            events=self.events,
            config=config,
        )
        self.stats = StatsCollector(self.state, self.runtime)
        self.backup_engine = BackupEngine(
            state=self.state,
            backups=backups,
            events=self.events,
            servers_root=config.servers_root,
            backups_root=config.backups_root,
            max_per_server=config.max_backups_per_server,
        )
        self.scheduler = BackupScheduler(
            servers, self.backup_engine, self.events, prune_after_sweep=config.prune_after_sweep
        )
        self.runner = OperationRunner(max_workers=config.worker_threads)

    def subscribe(self, listener: Listener):
        """Register an event listener. Returns an unsubscribe callable."""
        return self.events.subscribe(listener)

    # ============================================================================
    # Lifecycle (blocking)
    # ============================================================================

    def get_server(self, server_id: str) -> ServerDescriptor:
        return self.state.get(server_id)

    def start_server(self, server_id: str) -> ServerDescriptor:
        return self.controller.start(server_id)

    def stop_server(self, server_id: str, timeout: Optional[int] = None) -> ServerDescriptor:
        return self.controller.stop(server_id, timeout)

    def restart_server(self, server_id: str, timeout: Optional[int] = None) -> ServerDescriptor:
        return self.controller.restart(server_id, timeout)

    def remove_server(self, server_id: str, timeout: Optional[int] = None) -> ServerDescriptor:
        """Remove the server's container, keeping its record."""
        return self.controller.remove(server_id, timeout)

    def delete_server(self, server_id: str, timeout: Optional[int] = None) -> None:
        """Remove the server's container, then its record.

        The record is deleted under the server's lock, and only while no new
        operation has claimed it. Backups and the server directory are left
        in place.

        Raises:
            InvalidTransitionError: If an operation claimed the server after
                its container was removed.
        """
        self.controller.remove(server_id, timeout)
        with self.locks.hold(server_id):
            server = self.state.get(server_id)
            if server.is_live:
                raise InvalidTransitionError(server_id, server.status.value, "delete")
            self.servers.delete(server_id)
            self.state.release(server_id)
            self.locks.discard(server_id)
        logger.info(f"Deleted server '{server_id}'")

    def update_server(self, server_id: str, **changes: Any) -> ServerDescriptor:
        return self.state.update_settings(server_id, **changes)

    def get_stats(self, server_id: str) -> StatsSnapshot:
        return self.stats.collect(server_id)

    def get_logs(self, server_id: str, tail: int = 100) -> str:
        return self.controller.get_logs(server_id, tail)

    # ============================================================================
    # Lifecycle (background)
    # ============================================================================

    def submit_start(self, server_id: str) -> PendingOperation:
        """Claim ``starting`` now and finish the start on a worker.

        Raises:
            InvalidTransitionError: Immediately, if the server cannot start.
        """
        claim = self.controller.begin_start(server_id)
        return self.runner.submit(
            "start", claim.server, self.controller.run_start, server_id, claim.token
        )

    def submit_stop(self, server_id: str, timeout: Optional[int] = None) -> PendingOperation:
        claim = self.controller.begin_stop(server_id)
        if not claim.claimed:
            return self.runner.submit("stop", claim.server, lambda: claim.server)
        return self.runner.submit(
            "stop", claim.server, self.controller.run_stop, server_id, claim.token, timeout
        )

    def submit_restart(self, server_id: str, timeout: Optional[int] = None) -> PendingOperation:
        claim = self.controller.begin_restart(server_id)
        return self.runner.submit(
            "restart", claim.server, self.controller.run_restart, server_id, claim.token, timeout
        )

    # ============================================================================
    # Backups
    # ============================================================================

    def create_backup(
        self, server_id: str, label: Optional[str] = None, is_automatic: bool = False
    ) -> BackupRecord:
        return self.backup_engine.create_backup(server_id, label, is_automatic)

    def submit_backup(self, server_id: str, label: Optional[str] = None) -> PendingOperation:
        server = self.state.get(server_id)
        return self.runner.submit(
            "backup", server, self.backup_engine.create_backup, server_id, label
        )

    def restore_backup(self, server_id: str, backup_id: str) -> BackupRecord:
        return self.backup_engine.restore_backup(server_id, backup_id)

    def submit_restore(self, server_id: str, backup_id: str) -> PendingOperation:
        """Check the restore precondition now and run the restore on a worker.

        Raises:
            ServerBusyError: Immediately, if the server is live. The worker
                checks again before touching the directory.
        """
        server = self.state.get(server_id)
        if server.is_live:
            raise ServerBusyError(
                f"Server '{server_id}' must be stopped before restoring a backup", server_id
            )
        self.backup_engine.get_backup(backup_id)
        return self.runner.submit(
            "restore", server, self.backup_engine.restore_backup, server_id, backup_id
        )

    def delete_backup(self, backup_id: str) -> None:
        self.backup_engine.delete_backup(backup_id)

    def list_backups(self, server_id: str) -> list[BackupRecord]:
        return self.backup_engine.list_backups(server_id)

    def get_backup_archive(self, backup_id: str) -> Path:
        return self.backup_engine.get_archive_path(backup_id)

    def cleanup_backups(self, max_per_server: Optional[int] = None) -> CleanupReport:
        return self.backup_engine.cleanup(max_per_server)

    def run_backup_sweep(self) -> SweepReport:
        return self.scheduler.run_sweep()

    # ============================================================================
    # Shutdown
    # ============================================================================

    def close(self) -> None:
        """Wait for background operations, then close the runtime client."""
        logger.info("Shutting down game server manager...")
        self.runner.shutdown(wait=True)
        self.runtime.close()
        logger.info("Game server manager shut down")


@contextmanager
def open_manager(
    servers: ServerRepository,
    scripts: ScriptRepository,
    backups: BackupRepository,
    config_path: Optional[str] = None,
    config: Optional[ManagerConfig] = None,
    runtime: Optional[RuntimeClient] = None,
) -> Iterator[GameServerManager]:
    """Load configuration, set up logging and yield a ready manager.

    Args:
        servers: Server descriptor repository.
        scripts: Script record lookup.
        backups: Backup record repository.
        config_path: YAML config file, used when ``config`` is not given.
        config: Already-loaded configuration.
        runtime: Container runtime. Defaults to a DockerClient.
    """
    if config is None:
        config = load_config(config_path)
    configure_logging(config.log_level)

    logger.info("Starting game server manager...")
    try:
        manager = GameServerManager(config, servers, scripts, backups, runtime=runtime)
    except Exception as e:
        logger.error(f"Failed to initialize game server manager: {e}")
        raise
    logger.info("Game server manager initialized successfully")

    try:
        yield manager
    finally:
        manager.close()
