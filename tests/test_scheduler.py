from __future__ import annotations

from conftest import FakeRuntime, FlakyBackupStore, make_scripts, make_server
from gameserver_manager.manager import GameServerManager
from gameserver_manager.models import EventType, ManagerConfig, ServerEvent
from gameserver_manager.store import InMemoryBackupStore, InMemoryScriptStore, InMemoryServerStore


def _manager(config: ManagerConfig, backups: InMemoryBackupStore) -> GameServerManager:
    servers = InMemoryServerStore(
        [
            make_server("a"),
            make_server("b", backup_enabled=False),
            make_server("c", port=25570),
        ]
    )
    scripts = InMemoryScriptStore(make_scripts("a"))
    return GameServerManager(config, servers, scripts, backups, runtime=FakeRuntime())


def test_sweep_backs_up_enabled_servers_only(config: ManagerConfig) -> None:
    m = _manager(config, InMemoryBackupStore())
    try:
        report = m.run_backup_sweep()

        [backup] = m.list_backups("a")
        assert backup.is_automatic is True
        assert backup.name.startswith("Automatic backup - ")
        assert m.list_backups("b") == []
        assert len(report.created) == 2
        assert report.failures == {}
        assert report.cleanup is None
    finally:
        m.close()


def test_sweep_continues_past_failing_server(config: ManagerConfig) -> None:
    m = _manager(config, FlakyBackupStore(broken_server="a"))
    alerts: list[ServerEvent] = []
    m.subscribe(lambda e: alerts.append(e) if e.type == EventType.SYSTEM_ALERT else None)
    try:
        report = m.run_backup_sweep()

        assert list(report.failures) == ["a"]
        assert len(m.list_backups("c")) == 1
        [alert] = alerts
        assert "a" in alert.metadata["failures"]
    finally:
        m.close()


def test_sweep_prunes_when_configured(config: ManagerConfig) -> None:
    config = config.model_copy(update={"prune_after_sweep": True, "max_backups_per_server": 1})
    m = _manager(config, InMemoryBackupStore())
    try:
        m.run_backup_sweep()
        report = m.run_backup_sweep()

        assert report.cleanup is not None
        assert len(report.cleanup.deleted) == 2
        assert len(m.list_backups("a")) == 1
        assert len(m.list_backups("c")) == 1
    finally:
        m.close()
